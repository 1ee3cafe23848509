import logging
import threading
import time
from dataclasses import dataclass, field, replace

from . import lease as leases
from .errors import (AddressInUse, InvalidTransition, PoolExhausted,
                     ReservationConflict)
from .messages import Decision, DecisionKind
from .pool import FREE, AddressPool
from .reservations import ReservationSet
from .table import LeaseTable

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired_offers: list = field(default_factory=list)  # (client id, IP)
    expired_leases: list = field(default_factory=list)  # (client id, IP)
    purged: list = field(default_factory=list)          # client ids
    reclaimed: list = field(default_factory=list)       # IPs


class SubnetScope:
    '''
    Everything the engine mutates for one subnet. The lock makes the
    pool + table + offer book a single resource: one writer at a time.
    '''
    def __init__(self, subnet, reservations, store):
        self.subnet = subnet
        self.lock = threading.RLock()
        self.reservations = ReservationSet(subnet, reservations)
        self.pool = AddressPool(subnet.dynamic_addresses())
        for ip in self.reservations.addresses():
            self.pool.reserve(ip)
        self.table = LeaseTable(subnet.key, store)
        self.offers = {}  # client id -> OFFERED Lease, never persisted


class AllocationEngine:
    '''
    Decides offers, acknowledgments and rejections for every subnet.

    State is rebuilt from the lease store before the constructor returns, so
    an engine is always safe to serve traffic. Protocol-level problems come
    back as NAK/NONE decisions; StoreUnavailable is the only error that
    escapes an operation, and it leaves the in-memory state untouched.
    '''
    def __init__(self, config, store, clock=time.time, probe=None):
        self.config = config
        self.store = store
        self.clock = clock
        self.probe = probe
        self.scopes = {}
        for subnet in config.subnets:
            self.scopes[subnet.key] = SubnetScope(
                subnet, config.reservations_for(subnet), store)
        for scope in self.scopes.values():
            self.reconcile(scope)

    def scope_for(self, subnet=None):
        if subnet is None:
            if len(self.scopes) != 1:
                raise ValueError('Subnet must be given when several are '
                                 'configured')
            return next(iter(self.scopes.values()))
        if subnet in self.scopes:
            return self.scopes[subnet]
        match = self.config.subnet_for(subnet) if '/' not in subnet else None
        if match is None:
            raise ValueError(f'Unknown subnet "{subnet}"')
        return self.scopes[match.key]

    def reconcile(self, scope):
        '''
        Rebuilds pool status from the persisted leases. Expired leases are
        marked EXPIRED; leases that collide with a reservation, with each
        other, or fall outside the pool are released.
        '''
        now = self.clock()
        with scope.lock:
            records = scope.table.load()
            updates = []
            seen = set()
            for lease in records:
                if not lease.active:
                    continue
                if lease.state == leases.LeaseState.OFFERED:
                    updates.append(lease.expire(now))
                    continue
                if lease.expires_at <= now:
                    updates.append(lease.expire(now))
                    continue
                ip = lease.address
                reserved = scope.reservations.for_client(
                    lease.client_id, lease.hw_address)
                owner = scope.reservations.owner_of(ip)
                is_own_reservation = reserved is not None and \
                    reserved.address == ip
                problem = None
                if reserved and not is_own_reservation:
                    problem = (f'Static client {lease.client_id} has wrong '
                               f'dynamic IP {ip}')
                elif owner and not is_own_reservation:
                    problem = (f'IP {ip} is reserved for {owner} but held by '
                               f'{lease.client_id}')
                elif ip in seen:
                    problem = f'IP {ip} is held by more than one lease'
                elif ip not in scope.pool and not is_own_reservation:
                    problem = f'IP {ip} is outside the pool {scope.subnet.key}'
                if problem:
                    logger.warning(f'⚠️ Conflict: {problem}. Purging.')
                    updates.append(lease.release(now))
                    continue
                seen.add(ip)
            if updates:
                scope.table.commit_many(updates)

            claimed = 0
            for lease in scope.table.active():
                if scope.pool.get_status(lease.address) == FREE:
                    scope.pool.claim(lease.address)
                claimed += 1
            logger.info(f'📁 Rebuilt {scope.subnet.key}: {claimed} active '
                        f'leases, {scope.pool.free_count()} free addresses.')

    def lease_time_for(self, subnet, requested):
        if not requested:
            return subnet.default_lease_time
        return max(1, min(int(requested), subnet.max_lease_time))

    def decision(self, kind, scope, client_id, xid, address=None,
                 lease_time=0, error=None):
        d = Decision(kind=kind, client_id=client_id, xid=xid,
                     subnet=scope.subnet.key, address=address, error=error)
        if kind in (DecisionKind.OFFER, DecisionKind.ACK):
            d.lease_time = lease_time
            d.subnet_mask = scope.subnet.netmask
            d.gateway = scope.subnet.gateway
            d.dns_servers = list(scope.subnet.dns_servers)
        return d

    def nak(self, scope, client_id, xid, error):
        logger.warning(f'NAK: {client_id}: {error}')
        return self.decision(DecisionKind.NAK, scope, client_id, xid,
                             error=error)

    def drop_offer(self, scope, client_id, now, state=None):
        '''Ends an outstanding offer and frees its pool entry if unused.'''
        off = scope.offers.pop(client_id, None)
        if off is None:
            return None
        current = scope.table.get(client_id)
        if not (current and current.active and
                current.address == off.address):
            scope.pool.release(off.address)
        if state == leases.LeaseState.RELEASED:
            return off.release(now)
        return off.expire(now)

    def release_unless_offered(self, scope, client_id, ip):
        off = scope.offers.get(client_id)
        if not (off and off.address == ip):
            scope.pool.release(ip)

    def expire_if_due(self, scope, client_id, now):
        current = scope.table.get(client_id)
        if current and current.active and now >= current.expires_at:
            scope.table.commit(current.expire(now))
            self.release_unless_offered(scope, client_id, current.address)
            logger.info(f'⏳ Lease expired for {client_id}, IPv4 '
                        f'{current.address}.')

    def handle_discover(self, client_id, xid, subnet=None, hw_address=None,
                        lease_time=None, hostname=None):
        scope = self.scope_for(subnet)
        with scope.lock:
            now = self.clock()
            self.expire_if_due(scope, client_id, now)
            granted = self.lease_time_for(scope.subnet, lease_time)
            reserved = scope.reservations.for_client(client_id, hw_address)
            off = scope.offers.get(client_id)
            current = scope.table.get(client_id)

            if reserved:
                ip = reserved.address
            elif off and now <= off.expires_at:
                ip = off.address
            elif current and current.active:
                ip = current.address
            else:
                if off:
                    self.drop_offer(scope, client_id, now)
                    off = None
                try:
                    ip = scope.pool.allocate_next_free()
                except PoolExhausted as e:
                    logger.error(f'❌ Pool {scope.subnet.key} exhausted; no '
                                 f'offer for {client_id}.')
                    return self.decision(DecisionKind.NONE, scope, client_id,
                                         xid, error=e)

            if off and off.address != ip:
                self.drop_offer(scope, client_id, now)
            scope.offers[client_id] = leases.offer(
                client_id, ip, now, granted, xid, self.config.offer_timeout,
                hostname=hostname, hw_address=hw_address)
            logger.info(f'💡 Offering {ip} to {client_id} '
                        f'({scope.subnet.key}).')
            return self.decision(DecisionKind.OFFER, scope, client_id, xid,
                                 address=ip, lease_time=granted)

    def handle_request(self, client_id, xid, requested_address=None,
                       subnet=None, hw_address=None, lease_time=None,
                       hostname=None):
        scope = self.scope_for(subnet)
        with scope.lock:
            now = self.clock()
            self.expire_if_due(scope, client_id, now)
            off = scope.offers.get(client_id)
            if off and now > off.expires_at:
                self.drop_offer(scope, client_id, now)
                off = None
            current = scope.table.get(client_id)
            active = current if current and current.active else None
            reserved = scope.reservations.for_client(client_id, hw_address)
            target = requested_address
            if target is None:
                held = off or active
                target = held.address if held else None
            if target is not None:
                res_owner = scope.reservations.owner_of(target)
                if res_owner and not (reserved and reserved.address == target):
                    return self.nak(scope, client_id, xid, ReservationConflict(
                        f'{target} is reserved for {res_owner}'))
                owner = scope.table.owner_of(target)
                if owner not in (None, client_id):
                    return self.nak(scope, client_id, xid, AddressInUse(
                        f'{target} is leased to {owner}'))

            if off and target == off.address:
                base = off
            elif active and target == active.address:
                base = active
            elif off or active:
                held = (off or active).address
                return self.nak(scope, client_id, xid, InvalidTransition(
                    f'requested {target} but holds {held}'))
            elif current:
                return self.nak(scope, client_id, xid, InvalidTransition(
                    f'lease for {current.address} is {current.state.value}'))
            elif not scope.subnet.authoritative:
                logger.debug(f'Ignoring REQUEST from unknown client '
                             f'{client_id} (not authoritative).')
                return self.decision(DecisionKind.NONE, scope, client_id, xid)
            else:
                return self.nak(scope, client_id, xid, InvalidTransition(
                    f'no offer or lease for {target}'))

            ip = base.address
            if reserved and reserved.address != ip:
                return self.nak(scope, client_id, xid, ReservationConflict(
                    f'{client_id} is reserved {reserved.address}, not {ip}'))

            granted = self.lease_time_for(scope.subnet, lease_time or (
                base.lease_time if base is off else None))
            try:
                if base is off:
                    new = off.bind(now, granted, xid, hostname)
                else:
                    new = active.renew(now, granted, xid, hostname)
            except InvalidTransition as e:
                return self.nak(scope, client_id, xid, e)
            if hw_address and new.hw_address != hw_address:
                new = replace(new, hw_address=hw_address)

            # Persist first; a StoreUnavailable here leaves everything as is
            scope.table.commit(new)

            stale = scope.offers.pop(client_id, None)
            if stale and stale.address != ip:
                scope.pool.release(stale.address)
            if active and active.address != ip:
                scope.pool.release(active.address)

            h = f'"{new.hostname}" ' if new.hostname else ''
            logger.info(f'✨ Lease committed: {ip} for {h}{client_id} '
                        f'(exp={new.expires_at})')
            return self.decision(DecisionKind.ACK, scope, client_id, xid,
                                 address=ip, lease_time=granted)

    def handle_release(self, client_id, address=None, subnet=None, xid=0):
        scope = self.scope_for(subnet)
        with scope.lock:
            self.release_binding(scope, client_id, address, self.clock())
            return self.decision(DecisionKind.NONE, scope, client_id, xid)

    def release_binding(self, scope, client_id, address, now):
        released = None
        off = scope.offers.get(client_id)
        if off and address in (None, off.address):
            self.drop_offer(scope, client_id, now,
                            state=leases.LeaseState.RELEASED)
            released = off.address
        current = scope.table.get(client_id)
        if current and current.active and address in (None, current.address):
            scope.table.commit(current.release(now))
            scope.pool.release(current.address)
            released = current.address
            logger.info(f'👋 Released {current.address} from {client_id}.')
        elif current and current.active:
            logger.warning(f'⚠️ Ignored RELEASE of {address} from '
                           f'{client_id} (holds {current.address}).')
        return released

    def handle_decline(self, client_id, address, subnet=None, xid=0):
        scope = self.scope_for(subnet)
        with scope.lock:
            now = self.clock()
            owner = scope.table.owner_of(address)
            if owner is None:
                owner = next((cid for cid, o in scope.offers.items()
                              if o.address == address), None)
            if owner and owner != client_id:
                logger.warning(f'⚠️ Security: Ignored spoofed DECLINE for '
                               f'{address} from {client_id} (owned by '
                               f'{owner})')
                return self.decision(DecisionKind.NONE, scope, client_id, xid)
            self.release_binding(scope, client_id, address, now)
            until = now + self.config.decline_probation
            if scope.pool.mark_declined(address, until):
                logger.warning(f'⚠️ Received DECLINE for {address} from '
                               f'{client_id}. Quarantining for '
                               f'{self.config.decline_probation}s.')
            return self.decision(DecisionKind.NONE, scope, client_id, xid)

    def withdraw_offer(self, client_id, subnet=None, xid=0):
        '''The client accepted another server's offer.'''
        scope = self.scope_for(subnet)
        with scope.lock:
            off = self.drop_offer(scope, client_id, self.clock())
            if off:
                logger.info(f'Offer of {off.address} to {client_id} '
                            f'withdrawn; client chose another server.')
            return self.decision(DecisionKind.NONE, scope, client_id, xid)

    def sweep(self, now=None):
        '''
        Periodic housekeeping: expires stale offers and leases, advances T1/T2
        states, purges old audit records and reclaims quarantined addresses.
        '''
        report = SweepReport()
        for scope in self.scopes.values():
            ts = self.clock() if now is None else now
            with scope.lock:
                for client_id, off in list(scope.offers.items()):
                    if ts > off.expires_at:
                        self.drop_offer(scope, client_id, ts)
                        report.expired_offers.append((client_id, off.address))

                updates, freed, purge = [], [], []
                for lease in scope.table.records():
                    if lease.active:
                        if ts >= lease.expires_at:
                            updates.append(lease.expire(ts))
                            freed.append((lease.client_id, lease.address))
                        else:
                            advanced = lease.advance_timers(ts)
                            if advanced != lease:
                                updates.append(advanced)
                    else:
                        ended = lease.ended_at if lease.ended_at is not None \
                            else lease.expires_at
                        if ts - ended >= self.config.audit_retention:
                            purge.append(lease.client_id)
                if updates or purge:
                    scope.table.commit_many(updates, purge)
                for client_id, ip in freed:
                    self.release_unless_offered(scope, client_id, ip)
                    logger.info(f'⏳ Lease expired for {client_id}, IPv4 '
                                f'{ip}. Cleaning up.')
                report.expired_leases.extend(freed)
                report.purged.extend(purge)
            report.reclaimed.extend(
                scope.pool.reclaim_declined(ts, self.probe))
        return report

    def leases(self, subnet=None):
        scope = self.scope_for(subnet)
        with scope.lock:
            return sorted(scope.table.records(), key=lambda l: l.client_id)

    def offers(self, subnet=None):
        scope = self.scope_for(subnet)
        with scope.lock:
            return dict(scope.offers)

    def pool_snapshot(self, subnet=None):
        scope = self.scope_for(subnet)
        with scope.lock:
            return scope.pool.snapshot()
