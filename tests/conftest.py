import pytest

from leasedhcp.config import example_config
from leasedhcp.engine import AllocationEngine
from leasedhcp.errors import StoreUnavailable
from leasedhcp.store import MemoryLeaseStore

RESERVED_MAC = '00:14:22:01:23:45'


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FlakyStore(MemoryLeaseStore):
    '''Memory store whose writes can be switched off.'''

    def __init__(self):
        super().__init__()
        self.broken = False

    def apply(self, subnet_key, upserts=(), deletes=()):
        if self.broken:
            raise StoreUnavailable('disk on fire')
        super().apply(subnet_key, upserts, deletes)


def mac(n):
    return f'02:00:00:00:{n // 256:02x}:{n % 256:02x}'


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return example_config()


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def engine(config, store, clock):
    return AllocationEngine(config, store, clock=clock)


class FakeTransport:
    '''Records outgoing replies and replays canned packets on serve().'''

    server_mac = '02:00:00:00:00:fe'

    def __init__(self, inbound=()):
        self.inbound = list(inbound)
        self.sent = []

    def send(self, packet):
        self.sent.append(packet)

    def serve(self, callback):
        for packet in self.inbound:
            callback(packet)
