import ipaddress
import logging
import re
from dataclasses import dataclass, field

from .errors import InvalidConfiguration

logger = logging.getLogger(__name__)

LEASE_TIME = 3600
MAX_LEASE_TIME = 7200
OFFER_TIMEOUT = 60
DECLINE_PROBATION = 600
DECLINE_EXTENSION = 300
AUDIT_RETENTION = 3600

CLIENT_ID_RE = re.compile(r'[0-9a-f]{2}(:[0-9a-f]{2})*$')


def normalize_client_id(value):
    '''
    Returns the canonical form of a client identifier: lowercase hex octets
    separated by colons. Accepts raw bytes (chaddr, option 61) or a string
    such as "00-14-22-01-23-45".
    '''
    if isinstance(value, (bytes, bytearray)):
        if not value:
            raise ValueError('Empty client identifier')
        return ':'.join(f'{b:02x}' for b in value)
    text = str(value).strip().lower().replace('-', ':')
    if not CLIENT_ID_RE.match(text):
        raise ValueError(f'Invalid client identifier "{value}"')
    return text


def _address(value, what):
    try:
        return ipaddress.IPv4Address(str(value).strip())
    except ValueError:
        raise InvalidConfiguration(f'Invalid {what} address "{value}"')


@dataclass
class Subnet:
    network: str
    ranges: list = field(default_factory=list)
    gateway: str = None
    dns_servers: list = field(default_factory=list)
    default_lease_time: int = LEASE_TIME
    max_lease_time: int = MAX_LEASE_TIME
    exclusions: list = field(default_factory=list)
    authoritative: bool = True

    def __post_init__(self):
        try:
            self.net = ipaddress.IPv4Network(self.network)
        except ValueError as e:
            raise InvalidConfiguration(f'Invalid subnet "{self.network}": {e}')
        self.network = str(self.net)

        if self.default_lease_time <= 0 or self.max_lease_time <= 0:
            raise InvalidConfiguration(
                f'Lease times for {self.network} must be positive')
        if self.default_lease_time > self.max_lease_time:
            raise InvalidConfiguration(
                f'default-lease-time {self.default_lease_time} exceeds '
                f'max-lease-time {self.max_lease_time} in {self.network}')

        if self.gateway is not None:
            gw = _address(self.gateway, 'gateway')
            if gw not in self.net:
                raise InvalidConfiguration(
                    f'Gateway {gw} is outside subnet {self.network}')
            self.gateway = str(gw)
        self.dns_servers = [str(_address(ip, 'DNS server'))
                            for ip in self.dns_servers]

        normalized = []
        for pair in self.ranges:
            try:
                start_str, end_str = pair
            except (TypeError, ValueError):
                raise InvalidConfiguration(
                    f'Range {pair!r} must be a (start, end) pair')
            start = _address(start_str, 'range start')
            end = _address(end_str, 'range end')
            if start > end:
                raise InvalidConfiguration(
                    f'Range start {start} is above range end {end}')
            for ip in (start, end):
                if ip not in self.net:
                    raise InvalidConfiguration(
                        f'Range bound {ip} is outside subnet {self.network}')
                if ip in (self.net.network_address,
                          self.net.broadcast_address):
                    raise InvalidConfiguration(
                        f'Range bound {ip} is the network or broadcast '
                        f'address of {self.network}')
            normalized.append((str(start), str(end)))
        self.ranges = normalized
        self.exclusions = [str(_address(ip, 'excluded'))
                           for ip in self.exclusions]

    @property
    def key(self):
        return self.network

    @property
    def netmask(self):
        return str(self.net.netmask)

    def in_range(self, ip_str):
        ip = ipaddress.IPv4Address(ip_str)
        return any(ipaddress.IPv4Address(start) <= ip <=
                   ipaddress.IPv4Address(end) for start, end in self.ranges)

    def dynamic_addresses(self):
        '''Ascending list of addresses the pool may hand out.'''
        excluded = set(self.exclusions)
        if self.gateway:
            if self.in_range(self.gateway):
                logger.warning(f'⚠️ Gateway {self.gateway} lies inside the '
                               f'dynamic range of {self.network}. Excluding.')
            excluded.add(self.gateway)
        seen = set()
        for start, end in self.ranges:
            first = int(ipaddress.IPv4Address(start))
            last = int(ipaddress.IPv4Address(end))
            for n in range(first, last + 1):
                ip = str(ipaddress.IPv4Address(n))
                if ip not in excluded:
                    seen.add(n)
        return [str(ipaddress.IPv4Address(n)) for n in sorted(seen)]


@dataclass
class Reservation:
    client_id: str
    address: str
    hostname: str = None

    def __post_init__(self):
        try:
            self.client_id = normalize_client_id(self.client_id)
        except ValueError as e:
            raise InvalidConfiguration(str(e))
        self.address = str(_address(self.address, 'reserved'))


def parse_reservation(text):
    '''
    Parses "MAC=IP{,hostname}" into a Reservation, e.g.
    "00:14:22:01:23:45=172.22.0.5,cliente1".
    '''
    parts = text.split('=')
    if len(parts) != 2:
        raise InvalidConfiguration(
            f'Reservation "{text}" must look like MAC=IP{{,hostname}}')
    values = [v.strip() for v in parts[1].split(',')]
    if len(values) > 2 or not values[0]:
        raise InvalidConfiguration(
            f'Reservation "{text}" must look like MAC=IP{{,hostname}}')
    hostname = values[1] if len(values) == 2 and values[1] else None
    return Reservation(parts[0].strip(), values[0], hostname)


@dataclass
class EngineConfig:
    subnets: list
    reservations: list = field(default_factory=list)
    offer_timeout: int = OFFER_TIMEOUT
    decline_probation: int = DECLINE_PROBATION
    audit_retention: int = AUDIT_RETENTION
    sweep_interval: float = None

    def __post_init__(self):
        if not self.subnets:
            raise InvalidConfiguration('At least one subnet is required')
        keys = set()
        for i, a in enumerate(self.subnets):
            if a.key in keys:
                raise InvalidConfiguration(f'Subnet {a.key} declared twice')
            keys.add(a.key)
            for b in self.subnets[i + 1:]:
                if a.net.overlaps(b.net):
                    raise InvalidConfiguration(
                        f'Subnets {a.key} and {b.key} overlap')
        for name in ('offer_timeout', 'decline_probation', 'audit_retention'):
            if getattr(self, name) < 0:
                raise InvalidConfiguration(f'{name} must not be negative')

        shortest = min(s.default_lease_time for s in self.subnets)
        if self.sweep_interval is None:
            self.sweep_interval = shortest / 10
        elif self.sweep_interval <= 0 or self.sweep_interval >= shortest / 8:
            raise InvalidConfiguration(
                f'Sweep interval {self.sweep_interval}s must be positive and '
                f'below {shortest / 8}s (shortest lease time / 8)')

        for r in self.reservations:
            if self.subnet_for(r.address) is None:
                raise InvalidConfiguration(
                    f'Reserved address {r.address} (for {r.client_id}) is not '
                    f'inside any configured subnet')

    def subnet_for(self, ip_str):
        ip = ipaddress.IPv4Address(ip_str)
        for subnet in self.subnets:
            if ip in subnet.net:
                return subnet
        return None

    def reservations_for(self, subnet):
        return [r for r in self.reservations if ipaddress.IPv4Address(
            r.address) in subnet.net]

    @classmethod
    def from_dict(cls, data):
        '''Builds a config from plain data (e.g. a decoded JSON document).'''
        try:
            subnets = []
            for raw in data['subnets']:
                raw = dict(raw)
                raw['ranges'] = [tuple(r.split('-')) if isinstance(r, str)
                                 else tuple(r) for r in raw.get('ranges', [])]
                subnets.append(Subnet(**raw))
            reservations = []
            for raw in data.get('reservations', []):
                if isinstance(raw, str):
                    reservations.append(parse_reservation(raw))
                else:
                    reservations.append(Reservation(**raw))
            options = {k: v for k, v in data.items()
                       if k not in ('subnets', 'reservations')}
            return cls(subnets=subnets, reservations=reservations, **options)
        except (KeyError, TypeError) as e:
            raise InvalidConfiguration(f'Malformed configuration: {e}')


def example_config():
    '''The subnet and host block of a classic dhcpd.conf lab setup.'''
    return EngineConfig(
        subnets=[Subnet(network='172.22.0.0/255.255.0.0',
                        ranges=[('172.22.0.10', '172.22.0.45')],
                        gateway='172.22.0.1',
                        dns_servers=['8.8.8.8', '8.8.4.4'],
                        default_lease_time=3600, max_lease_time=7200)],
        reservations=[Reservation('00:14:22:01:23:45', '172.22.0.5',
                                  'cliente1')])
