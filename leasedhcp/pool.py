import ipaddress
import logging
import threading

from .config import DECLINE_EXTENSION
from .errors import InvalidTransition, PoolExhausted

logger = logging.getLogger(__name__)

FREE = 'free'
RESERVED = 'reserved'
LEASED = 'leased'
DECLINED = 'declined'


class AddressPool:
    '''
    Status of every dynamically allocatable address in one subnet.

    Addresses are kept in ascending order so that allocation is
    deterministic: the lowest free address always wins. Reserved addresses
    stay in the pool (marked RESERVED) when they fall inside a range, so a
    reservation can never be handed out to somebody else.
    '''
    def __init__(self, addresses):
        self.lock = threading.Lock()
        self.order = sorted(set(addresses), key=ipaddress.IPv4Address)
        self.status = {ip: FREE for ip in self.order}
        self.quarantine = {}  # IP -> probation end timestamp
        self.reserved = set()

    def __contains__(self, ip):
        return ip in self.status

    def __len__(self):
        return len(self.order)

    def reserve(self, ip):
        with self.lock:
            self.reserved.add(ip)
            if ip in self.status:
                if self.status[ip] == LEASED:
                    raise InvalidTransition(
                        f'Cannot reserve {ip}: currently leased')
                self.status[ip] = RESERVED
                self.quarantine.pop(ip, None)

    def allocate_next_free(self):
        with self.lock:
            for ip in self.order:
                if self.status[ip] == FREE:
                    self.status[ip] = LEASED
                    return ip
        raise PoolExhausted(f'No free address among {len(self.order)}')

    def claim(self, ip):
        '''Marks one specific free address as leased.'''
        with self.lock:
            current = self.status.get(ip)
            if current != FREE:
                raise InvalidTransition(
                    f'Cannot claim {ip}: status is {current or "unknown"}')
            self.status[ip] = LEASED

    def release(self, ip):
        with self.lock:
            if self.status.get(ip) == LEASED:
                self.status[ip] = RESERVED if ip in self.reserved else FREE

    def mark_declined(self, ip, until):
        with self.lock:
            if ip not in self.status:
                return False
            if ip in self.reserved:
                logger.warning(f'⚠️ Not quarantining reserved address {ip}')
                self.status[ip] = RESERVED
                return False
            self.status[ip] = DECLINED
            self.quarantine[ip] = until
            return True

    def reclaim_declined(self, now, still_in_use=None):
        '''
        Returns quarantined addresses whose probation is over to the free
        set. If `still_in_use` reports an address as active on the wire, its
        probation is extended instead. Returns the list of restored IPs.
        '''
        with self.lock:
            due = [ip for ip, until in self.quarantine.items() if now >= until]
        restored = []
        for ip in due:
            # The probe may block on netlink, so run it outside the lock
            busy = bool(still_in_use and still_in_use(ip))
            with self.lock:
                if ip not in self.quarantine:
                    continue
                if busy:
                    self.quarantine[ip] = now + DECLINE_EXTENSION
                    continue
                del self.quarantine[ip]
                if self.status.get(ip) == DECLINED:
                    self.status[ip] = FREE
                    restored.append(ip)
        if restored:
            logger.info(f'♻️ Released {len(restored)} IPs from quarantine.')
        return restored

    def get_status(self, ip):
        return self.status.get(ip)

    def free_count(self):
        with self.lock:
            return sum(1 for s in self.status.values() if s == FREE)

    def snapshot(self):
        with self.lock:
            return dict(self.status)
