import pytest

from leasedhcp.errors import InvalidTransition
from leasedhcp.lease import Lease, LeaseState, offer


def bound(now=0, lease_time=1000):
    o = offer('aa:bb:cc:dd:ee:ff', '10.0.0.10', now, lease_time, xid=1,
              valid_for=60)
    return o.bind(now, lease_time, xid=2)


def test_offer_window_is_not_the_lease_time():
    o = offer('aa:bb', '10.0.0.10', 100, 3600, xid=7, valid_for=60)
    assert o.state == LeaseState.OFFERED
    assert o.expires_at == 160
    assert o.lease_time == 3600
    assert o.active


def test_bind_sets_timers():
    lease = bound(now=100, lease_time=1000)
    assert lease.state == LeaseState.BOUND
    assert lease.expires_at == 1100
    assert lease.t1 == 600
    assert lease.t2 == 975
    assert lease.xid == 2


def test_renewal_reaffirms_the_same_address():
    lease = bound()
    renewed = lease.renew(now=600, lease_time=1000, xid=3)
    assert renewed.state == LeaseState.BOUND
    assert renewed.address == lease.address
    assert renewed.expires_at == 1600
    # The original record is untouched
    assert lease.expires_at == 1000


def test_timers_advance_to_renewing_then_rebinding():
    lease = bound()
    assert lease.advance_timers(499) is lease
    renewing = lease.advance_timers(500)
    assert renewing.state == LeaseState.RENEWING
    assert lease.advance_timers(900).state == LeaseState.REBINDING
    assert renewing.renew(950, 1000, xid=4).state == LeaseState.BOUND


def test_terminal_states_reject_further_transitions():
    expired = bound().expire(now=1000)
    assert expired.state == LeaseState.EXPIRED
    assert expired.ended_at == 1000
    assert not expired.active
    with pytest.raises(InvalidTransition):
        expired.renew(1001, 1000, xid=5)
    with pytest.raises(InvalidTransition):
        expired.release(1001)

    released = bound().release(now=10)
    with pytest.raises(InvalidTransition):
        released.expire(20)
    with pytest.raises(InvalidTransition):
        released.bind(20, 1000, xid=6)


def test_expire_and_release_are_idempotent():
    expired = bound().expire(now=1000)
    assert expired.expire(now=2000) is expired
    released = bound().release(now=10)
    assert released.release(now=99) is released


def test_offer_cannot_be_renewed_before_it_is_bound():
    o = offer('aa:bb', '10.0.0.10', 0, 1000, xid=1, valid_for=60)
    with pytest.raises(InvalidTransition):
        o.transition(LeaseState.RENEWING)


def test_record_roundtrip():
    lease = bound()
    record = lease.to_record()
    assert record['state'] == 'bound'
    assert Lease.from_record(record) == lease
