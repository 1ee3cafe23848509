import logging
import threading
import time

from .engine import AllocationEngine
from .errors import InvalidConfiguration, StoreUnavailable
from .protocol import (NeighbourProbe, ProtocolHandler, RateLimiter,
                       ScapyTransport)
from .store import JsonLeaseStore

logger = logging.getLogger(__name__)

LEASE_FILE = 'dhcp_leases_{INTERFACE}.json'


def configure_logging(level=logging.INFO):
    logging.basicConfig(level=level, format='[%(levelname)s] %(message)s')


class Sweeper(threading.Thread):
    '''Background thread that expires offers and leases on a fixed period.'''

    def __init__(self, engine, interval, limiter=None):
        super().__init__(name='lease-sweeper', daemon=True)
        self.engine = engine
        self.interval = interval
        self.limiter = limiter
        self.stopped = threading.Event()

    def run_once(self):
        try:
            report = self.engine.sweep()
        except StoreUnavailable as e:
            logger.critical(f'⛔ Lease sweep could not persist: {e}')
            return None
        if self.limiter:
            self.limiter.cleanup()
        return report

    def run(self):
        while not self.stopped.wait(self.interval):
            self.run_once()

    def stop(self):
        self.stopped.set()


class DHCPServer:
    '''
    Wires a lease store, the allocation engine, the protocol handler and the
    sweeper together for one interface.
    '''
    def __init__(self, config, interface, server_ip, lease_file=None,
                 subnet=None, store=None, transport=None, probe=None,
                 clock=time.time, rate=2.0, burst=5, idle_timeout=3600):
        if subnet is None and len(config.subnets) > 1:
            raise InvalidConfiguration(
                f'Interface "{interface}" serves {len(config.subnets)} '
                f'subnets; name the one it is attached to')
        self.config = config
        self.iface = interface
        self.server_ip = server_ip
        self.lease_file = lease_file or LEASE_FILE.replace(
            '{INTERFACE}', interface)
        self.store = store or JsonLeaseStore(self.lease_file)
        self.probe = probe if probe is not None else NeighbourProbe()
        self.engine = AllocationEngine(config, self.store, clock=clock,
                                       probe=self.probe)
        self.limiter = RateLimiter(rate=rate, burst=burst,
                                   idle_timeout=idle_timeout)
        self.transport = transport or ScapyTransport(interface)
        self.handler = ProtocolHandler(self.engine, self.transport,
                                       server_ip, subnet=subnet,
                                       limiter=self.limiter)
        self.sweeper = Sweeper(self.engine, config.sweep_interval,
                               limiter=self.limiter)

    def start(self):
        subnets = ', '.join(self.engine.scopes)
        logger.info(f'🚀 DHCP Server active on "{self.iface}"')
        logger.info(f'   IP: {self.server_ip} | Subnets: {subnets}')
        logger.info(f'   Sweep every {self.config.sweep_interval}s')
        self.sweeper.start()
        self.handler.serve_forever()

    def shutdown(self):
        logger.info('🛑 Server shutting down...')
        self.sweeper.stop()
