import enum
from dataclasses import asdict, dataclass, replace

from .errors import InvalidTransition

T1_FRACTION = 0.5
T2_FRACTION = 0.875


class LeaseState(str, enum.Enum):
    OFFERED = 'offered'
    BOUND = 'bound'
    RENEWING = 'renewing'
    REBINDING = 'rebinding'
    EXPIRED = 'expired'
    RELEASED = 'released'


TRANSITIONS = {
    LeaseState.OFFERED: {LeaseState.BOUND, LeaseState.EXPIRED,
                         LeaseState.RELEASED},
    LeaseState.BOUND: {LeaseState.RENEWING, LeaseState.EXPIRED,
                       LeaseState.RELEASED},
    LeaseState.RENEWING: {LeaseState.BOUND, LeaseState.REBINDING,
                          LeaseState.EXPIRED, LeaseState.RELEASED},
    LeaseState.REBINDING: {LeaseState.BOUND, LeaseState.EXPIRED,
                           LeaseState.RELEASED},
    LeaseState.EXPIRED: set(),
    LeaseState.RELEASED: set(),
}

TERMINAL = frozenset({LeaseState.EXPIRED, LeaseState.RELEASED})


@dataclass(frozen=True)
class Lease:
    '''
    One binding of an address to a client. Instances are immutable: every
    state change returns a new Lease, so the table only ever holds records
    that were successfully persisted.
    '''
    client_id: str
    address: str
    state: LeaseState
    granted_at: float
    expires_at: float
    xid: int
    lease_time: int
    hostname: str = None
    hw_address: str = None
    ended_at: float = None

    @property
    def active(self):
        return self.state not in TERMINAL

    @property
    def t1(self):
        return self.granted_at + self.lease_time * T1_FRACTION

    @property
    def t2(self):
        return self.granted_at + self.lease_time * T2_FRACTION

    def transition(self, new_state, **changes):
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(
                f'Lease {self.address} for {self.client_id}: '
                f'{self.state.value} -> {new_state.value} is not allowed')
        return replace(self, state=new_state, **changes)

    def bind(self, now, lease_time, xid, hostname=None):
        '''Acknowledges the lease for a fresh `lease_time` starting now.'''
        return self.transition(LeaseState.BOUND, granted_at=now,
                               expires_at=now + lease_time,
                               lease_time=lease_time, xid=xid,
                               hostname=hostname or self.hostname)

    def renew(self, now, lease_time, xid, hostname=None):
        '''
        Client asked to extend an existing binding. Before T2 this is a
        renewal; from T2 on the client is rebinding. Either way the lease ends
        up BOUND again with the same address.
        '''
        lease = self
        if lease.state == LeaseState.BOUND:
            lease = lease.transition(LeaseState.RENEWING)
        if now >= self.t2 and lease.state == LeaseState.RENEWING:
            lease = lease.transition(LeaseState.REBINDING)
        return lease.bind(now, lease_time, xid, hostname)

    def advance_timers(self, now):
        '''Tracks where the client should be in its T1/T2 cycle.'''
        lease = self
        if lease.state == LeaseState.BOUND and now >= lease.t1:
            lease = lease.transition(LeaseState.RENEWING)
        if lease.state == LeaseState.RENEWING and now >= lease.t2:
            lease = lease.transition(LeaseState.REBINDING)
        return lease

    def expire(self, now):
        if self.state == LeaseState.EXPIRED:
            return self
        return self.transition(LeaseState.EXPIRED, ended_at=now)

    def release(self, now):
        if self.state == LeaseState.RELEASED:
            return self
        return self.transition(LeaseState.RELEASED, ended_at=now)

    def to_record(self):
        record = asdict(self)
        record['state'] = self.state.value
        return record

    @classmethod
    def from_record(cls, record):
        data = dict(record)
        data['state'] = LeaseState(data['state'])
        return cls(**data)


def offer(client_id, address, now, lease_time, xid, valid_for,
          hostname=None, hw_address=None):
    '''An uncommitted lease; `expires_at` is the end of the offer window.'''
    return Lease(client_id=client_id, address=address,
                 state=LeaseState.OFFERED, granted_at=now,
                 expires_at=now + valid_for, xid=xid,
                 lease_time=lease_time, hostname=hostname,
                 hw_address=hw_address)
