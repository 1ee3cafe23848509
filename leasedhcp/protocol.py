import logging
import threading
import time

from pyroute2 import IPRoute
from pyroute2.netlink.exceptions import NetlinkError
from scapy.all import get_if_hwaddr, sendp, sniff

from . import codec
from .errors import InvalidConfiguration, MalformedMessage, StoreUnavailable
from .messages import Decline, Discover, Release, Request

logger = logging.getLogger(__name__)

# Neighbour states that mean "somebody answers on this address":
# REACHABLE, STALE, DELAY, PROBE
ACTIVE_NEIGHBOUR_STATES = (2, 4, 8, 16)


class RateLimiter:
    '''
    Per-client token bucket. Each client may send `burst` packets at once
    and then `rate` packets per second; buckets untouched for `idle_timeout`
    seconds are dropped by `cleanup()`.
    '''
    def __init__(self, rate=2.0, burst=5, idle_timeout=3600,
                 clock=time.monotonic):
        self.rate = rate
        self.burst = burst
        self.idle_timeout = idle_timeout
        self.clock = clock
        self.buckets = {}  # client id -> (tokens, last seen)
        self.lock = threading.Lock()

    def is_allowed(self, client_id):
        now = self.clock()
        with self.lock:
            tokens, seen = self.buckets.get(client_id, (self.burst, now))
            tokens = min(self.burst, tokens + (now - seen) * self.rate)
            allowed = tokens >= 1.0
            self.buckets[client_id] = (tokens - 1.0 if allowed else tokens,
                                       now)
        if not allowed:
            logger.debug(f'Rate limit hit for {client_id}')
        return allowed

    def cleanup(self):
        cutoff = self.clock() - self.idle_timeout
        with self.lock:
            idle = [cid for cid, (_, seen) in self.buckets.items()
                    if seen < cutoff]
            for cid in idle:
                del self.buckets[cid]
        if idle:
            logger.debug(f'🧹 Forgot {len(idle)} idle rate-limit buckets')
        return len(idle)


class NeighbourProbe:
    '''
    Checks the kernel neighbour (ARP) table for an address. Used to keep a
    declined address in quarantine while something still answers on it.
    '''
    def __init__(self, ipr_factory=IPRoute):
        self.ipr_factory = ipr_factory

    def __call__(self, ip_str):
        try:
            with self.ipr_factory() as ipr:
                for n in ipr.get_neighbours(dst=ip_str, family=2):
                    if n['state'] in ACTIVE_NEIGHBOUR_STATES:
                        return True
        except (NetlinkError, OSError) as e:
            logger.debug(f'Neighbour lookup for {ip_str} failed: {e}')
        return False


class ScapyTransport:
    '''Layer 2 send/receive of DHCP traffic on one interface.'''

    def __init__(self, interface):
        self.iface = interface
        self._server_mac = None

    @property
    def server_mac(self):
        if self._server_mac is None:
            self._server_mac = get_if_hwaddr(self.iface)
        return self._server_mac

    def send(self, packet):
        sendp(packet, iface=self.iface, verbose=False)

    def serve(self, callback):
        sniff(iface=self.iface, filter='udp and (port 67 or port 68)',
              prn=callback, store=0)


class ProtocolHandler:
    '''
    Drives the allocation engine from wire traffic. This is the only place
    that touches the network: packets come in through the transport, get
    decoded, dispatched, and the engine's decision goes back out encoded.
    '''
    def __init__(self, engine, transport, server_ip, subnet=None,
                 limiter=None):
        if subnet is None and len(engine.scopes) > 1:
            raise InvalidConfiguration(
                f'A default subnet is required when serving '
                f'{len(engine.scopes)} subnets')
        if subnet is not None:
            try:
                subnet = engine.scope_for(subnet).subnet.key
            except ValueError as e:
                raise InvalidConfiguration(str(e))
        self.engine = engine
        self.transport = transport
        self.server_ip = server_ip
        self.subnet = subnet
        self.limiter = limiter

    def subnet_for(self, msg):
        '''
        The subnet a message belongs to: the one holding the address the
        client names (requested address or ciaddr), else the default.
        '''
        ip = getattr(msg, 'requested_address', None) or \
            getattr(msg, 'address', None)
        if ip:
            match = self.engine.config.subnet_for(ip)
            if match is not None:
                return match.key
        return self.subnet

    def dispatch(self, msg):
        engine = self.engine
        subnet = self.subnet_for(msg)
        if isinstance(msg, Discover):
            return engine.handle_discover(
                msg.client_id, msg.xid, subnet=subnet,
                hw_address=msg.hw_address, lease_time=msg.lease_time,
                hostname=msg.hostname)
        if isinstance(msg, Request):
            if msg.server_id and msg.server_id != self.server_ip:
                return engine.withdraw_offer(msg.client_id,
                                             subnet=subnet, xid=msg.xid)
            return engine.handle_request(
                msg.client_id, msg.xid,
                requested_address=msg.requested_address, subnet=subnet,
                hw_address=msg.hw_address, lease_time=msg.lease_time,
                hostname=msg.hostname)
        if isinstance(msg, Release):
            return engine.handle_release(msg.client_id, msg.address,
                                         subnet=subnet, xid=msg.xid)
        if isinstance(msg, Decline):
            logger.info(f'📩 Received DECLINE from {msg.client_id} for '
                        f'{msg.address}')
            return engine.handle_decline(msg.client_id, msg.address,
                                         subnet=subnet, xid=msg.xid)
        raise TypeError(f'Cannot dispatch {type(msg).__name__}')

    def handle_packet(self, packet):
        '''
        Processes one inbound packet. Returns the reply that was sent, or
        None when nothing is owed (garbage, rate limited, silent decisions,
        or a lease store failure).
        '''
        try:
            msg = codec.decode(packet)
        except MalformedMessage as e:
            logger.warning(f'⚠️ Ignoring malformed packet: {e}')
            return None

        if self.limiter and not self.limiter.is_allowed(msg.client_id):
            return None

        try:
            decision = self.dispatch(msg)
        except StoreUnavailable as e:
            logger.critical(f'⛔ Lease store unavailable; dropped '
                            f'{type(msg).__name__.upper()} from '
                            f'{msg.client_id}: {e}')
            return None

        if not decision.replies:
            return None
        reply = codec.encode(decision, msg.hw_address, self.server_ip,
                             self.transport.server_mac)
        self.transport.send(reply)
        logger.info(f'📤 Sent {decision.kind.value.upper()} '
                    f'{decision.address or ""} to {msg.client_id}')
        return reply

    def serve_forever(self):
        self.transport.serve(self.handle_packet)
