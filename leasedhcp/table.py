import logging

from .errors import InvalidTransition
from .lease import Lease

logger = logging.getLogger(__name__)


class LeaseTable:
    '''
    Source of truth for the leases of one subnet: client id -> Lease, kept in
    step with the durable store. Every mutation is written to the store
    first; memory only changes once the write succeeded.

    Callers serialize access (the engine holds the subnet lock).
    '''
    def __init__(self, subnet_key, store):
        self.subnet_key = subnet_key
        self.store = store
        self.leases = {}       # client id -> Lease
        self.ip_to_client = {}  # IP -> client id, active leases only

    def __len__(self):
        return len(self.leases)

    def get(self, client_id):
        return self.leases.get(client_id)

    def owner_of(self, ip):
        return self.ip_to_client.get(ip)

    def active(self):
        return [l for l in self.leases.values() if l.active]

    def records(self):
        return list(self.leases.values())

    def snapshot(self):
        return dict(self.leases)

    def load(self):
        '''Reads all persisted records for this subnet into memory.'''
        self.leases.clear()
        self.ip_to_client.clear()
        loaded = []
        for record in self.store.load(self.subnet_key):
            try:
                lease = Lease.from_record(record)
            except (TypeError, ValueError, KeyError) as e:
                logger.error(f'❌ Skipping unreadable lease record '
                             f'{record!r}: {e}')
                continue
            self.leases[lease.client_id] = lease
            if lease.active:
                # First record wins; later duplicates get purged on reconcile
                self.ip_to_client.setdefault(lease.address, lease.client_id)
            loaded.append(lease)
        return loaded

    def commit(self, lease):
        self.commit_many([lease])

    def commit_many(self, leases=(), removals=()):
        for lease in leases:
            owner = self.ip_to_client.get(lease.address)
            if lease.active and owner not in (None, lease.client_id):
                raise InvalidTransition(
                    f'{lease.address} is already leased to {owner}')
        self.store.apply(self.subnet_key,
                         upserts=[l.to_record() for l in leases],
                         deletes=list(removals))
        for client_id in removals:
            self._drop(client_id)
        for lease in leases:
            self._drop(lease.client_id)
            self.leases[lease.client_id] = lease
            if lease.active:
                self.ip_to_client[lease.address] = lease.client_id

    def remove(self, client_id):
        if client_id in self.leases:
            self.commit_many(removals=[client_id])

    def _drop(self, client_id):
        old = self.leases.pop(client_id, None)
        if old and self.ip_to_client.get(old.address) == client_id:
            del self.ip_to_client[old.address]
