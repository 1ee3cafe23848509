import copy
import json
import logging
import os
import threading

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)


class LeaseStore:
    '''
    Keyed record store for leases: subnet -> client id -> record dict.
    `apply` is all-or-nothing: either every upsert and delete lands, or the
    store raises StoreUnavailable and keeps its previous contents.
    '''
    def load(self, subnet_key):
        raise NotImplementedError

    def apply(self, subnet_key, upserts=(), deletes=()):
        raise NotImplementedError

    def put(self, subnet_key, record):
        self.apply(subnet_key, upserts=[record])

    def delete(self, subnet_key, client_id):
        self.apply(subnet_key, deletes=[client_id])


class MemoryLeaseStore(LeaseStore):
    def __init__(self):
        self.lock = threading.Lock()
        self.data = {}

    def load(self, subnet_key):
        with self.lock:
            return copy.deepcopy(list(self.data.get(subnet_key, {}).values()))

    def apply(self, subnet_key, upserts=(), deletes=()):
        with self.lock:
            records = dict(self.data.get(subnet_key, {}))
            for record in upserts:
                records[record['client_id']] = dict(record)
            for client_id in deletes:
                records.pop(client_id, None)
            self.data[subnet_key] = records


class JsonLeaseStore(LeaseStore):
    '''
    All leases in a single JSON document. Every change rewrites the file via
    a temporary file and os.replace(), so a crash never leaves a torn file.
    '''
    def __init__(self, path):
        self.path = path
        self.lock = threading.Lock()
        self.data = None

    def read_file(self):
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r') as f:
                saved = json.load(f)
        except (OSError, ValueError) as e:
            raise StoreUnavailable(
                f'Failed to load lease file {self.path}: {e}')
        subnets = saved.get('subnets') if isinstance(saved, dict) else None
        if not isinstance(subnets, dict):
            raise StoreUnavailable(
                f'Lease file {self.path} has no "subnets" section')
        return subnets

    def ensure_loaded(self):
        if self.data is None:
            self.data = self.read_file()
            count = sum(len(v) for v in self.data.values())
            logger.info(f'📁 Loaded {count} lease records from '
                        f'{self.path}.')

    def load(self, subnet_key):
        with self.lock:
            self.ensure_loaded()
            return copy.deepcopy(list(self.data.get(subnet_key, {}).values()))

    def apply(self, subnet_key, upserts=(), deletes=()):
        with self.lock:
            self.ensure_loaded()
            data = dict(self.data)
            records = dict(data.get(subnet_key, {}))
            for record in upserts:
                records[record['client_id']] = dict(record)
            for client_id in deletes:
                records.pop(client_id, None)
            data[subnet_key] = records
            self.write_file(data)
            self.data = data

    def write_file(self, data):
        tmp_file = self.path + '.tmp'
        try:
            with open(tmp_file, 'w') as f:
                json.dump({'subnets': data}, f, indent=2)
            os.replace(tmp_file, self.path)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f'❌ Failed to write lease file: {e}')
            raise StoreUnavailable(
                f'Failed to write lease file {self.path}: {e}')
