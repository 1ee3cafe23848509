import json

import pytest

from conftest import FlakyStore
from leasedhcp.errors import InvalidTransition, StoreUnavailable
from leasedhcp.lease import offer
from leasedhcp.store import JsonLeaseStore
from leasedhcp.table import LeaseTable

SUBNET = '10.0.0.0/24'


def bound_lease(client_id, ip, now=0):
    return offer(client_id, ip, now, 600, xid=1, valid_for=60).bind(
        now, 600, xid=2)


def test_json_store_survives_a_restart(tmp_path):
    path = str(tmp_path / 'leases.json')
    table = LeaseTable(SUBNET, JsonLeaseStore(path))
    table.commit(bound_lease('aa:01', '10.0.0.10'))
    table.commit(bound_lease('aa:02', '10.0.0.11'))
    table.remove('aa:01')

    with open(path) as f:
        saved = json.load(f)
    assert list(saved['subnets'][SUBNET]) == ['aa:02']

    reloaded = LeaseTable(SUBNET, JsonLeaseStore(path))
    leases = reloaded.load()
    assert [l.address for l in leases] == ['10.0.0.11']
    assert reloaded.owner_of('10.0.0.11') == 'aa:02'
    assert reloaded.get('aa:02') == table.get('aa:02')


def test_missing_file_is_an_empty_store(tmp_path):
    store = JsonLeaseStore(str(tmp_path / 'nothing.json'))
    assert store.load(SUBNET) == []


def test_corrupt_file_is_reported(tmp_path):
    path = tmp_path / 'leases.json'
    path.write_text('{"subnets": ')
    with pytest.raises(StoreUnavailable):
        JsonLeaseStore(str(path)).load(SUBNET)


def test_unwritable_location_raises_store_unavailable(tmp_path):
    store = JsonLeaseStore(str(tmp_path / 'missing-dir' / 'leases.json'))
    table = LeaseTable(SUBNET, store)
    with pytest.raises(StoreUnavailable):
        table.commit(bound_lease('aa:01', '10.0.0.10'))
    assert table.get('aa:01') is None
    assert store.load(SUBNET) == []


def test_failed_commit_leaves_memory_untouched():
    store = FlakyStore()
    table = LeaseTable(SUBNET, store)
    first = bound_lease('aa:01', '10.0.0.10')
    table.commit(first)

    store.broken = True
    with pytest.raises(StoreUnavailable):
        table.commit(first.release(now=5))
    assert table.get('aa:01') is first
    assert table.owner_of('10.0.0.10') == 'aa:01'


def test_two_active_leases_cannot_share_an_address():
    table = LeaseTable(SUBNET, FlakyStore())
    table.commit(bound_lease('aa:01', '10.0.0.10'))
    with pytest.raises(InvalidTransition):
        table.commit(bound_lease('aa:02', '10.0.0.10'))


def test_terminal_records_do_not_own_their_address():
    table = LeaseTable(SUBNET, FlakyStore())
    lease = bound_lease('aa:01', '10.0.0.10')
    table.commit(lease)
    table.commit(lease.expire(now=600))
    assert table.owner_of('10.0.0.10') is None
    assert len(table) == 1
    assert table.active() == []
