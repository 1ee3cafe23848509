import enum
from dataclasses import dataclass, field


def sanitize_hostname(raw):
    '''Printable text of a client-supplied host name (option 12), or None.'''
    if not raw:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode('utf-8', errors='replace')
    # Control characters would break the log format
    name = ''.join(filter(str.isprintable, str(raw))).strip()
    return name or None


class HostnameMixin:
    def __post_init__(self):
        object.__setattr__(self, 'hostname', sanitize_hostname(self.hostname))


@dataclass(frozen=True)
class Discover(HostnameMixin):
    client_id: str
    xid: int
    hw_address: str = None
    lease_time: int = None
    hostname: str = None


@dataclass(frozen=True)
class Request(HostnameMixin):
    client_id: str
    xid: int
    requested_address: str = None
    hw_address: str = None
    lease_time: int = None
    hostname: str = None
    server_id: str = None


@dataclass(frozen=True)
class Release:
    client_id: str
    xid: int
    address: str = None
    hw_address: str = None


@dataclass(frozen=True)
class Decline:
    client_id: str
    xid: int
    address: str = None
    hw_address: str = None


class DecisionKind(str, enum.Enum):
    OFFER = 'offer'
    ACK = 'ack'
    NAK = 'nak'
    NONE = 'none'  # nothing goes back on the wire


@dataclass
class Decision:
    '''
    Result of one engine operation. OFFER/ACK/NAK map directly onto the
    reply message; NONE means the client gets no answer. `error` carries the
    reason for a NAK or NONE when there is one.
    '''
    kind: DecisionKind
    client_id: str
    xid: int
    subnet: str = None
    address: str = None
    lease_time: int = 0
    subnet_mask: str = None
    gateway: str = None
    dns_servers: list = field(default_factory=list)
    error: Exception = None

    @property
    def replies(self):
        return self.kind != DecisionKind.NONE
