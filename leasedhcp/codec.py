'''
Translation between DHCP packets (as scapy layers) and the typed messages
the engine understands.
'''
import logging

from scapy.all import BOOTP, DHCP, IP, UDP, Ether, mac2str

from .config import normalize_client_id
from .errors import MalformedMessage
from .lease import T1_FRACTION, T2_FRACTION
from .messages import Decision, DecisionKind, Decline, Discover, Release, Request

logger = logging.getLogger(__name__)

BOOTREQUEST = 1
BOOTREPLY = 2
BOOTP_MIN_LEN = 240  # fixed BOOTP header plus the DHCP magic cookie
BROADCAST_MAC = 'ff:ff:ff:ff:ff:ff'
BROADCAST_IP = '255.255.255.255'
ANY_IP = '0.0.0.0'

DHCPDISCOVER = 1
DHCPOFFER = 2
DHCPREQUEST = 3
DHCPDECLINE = 4
DHCPACK = 5
DHCPNAK = 6
DHCPRELEASE = 7

MESSAGE_TYPE_NAMES = {
    'discover': DHCPDISCOVER,
    'request': DHCPREQUEST,
    'decline': DHCPDECLINE,
    'release': DHCPRELEASE,
}

REPLY_TYPES = {
    DecisionKind.OFFER: DHCPOFFER,
    DecisionKind.ACK: DHCPACK,
    DecisionKind.NAK: DHCPNAK,
}


def dhcp_options(pkt):
    return {o[0]: o[1] for o in pkt[DHCP].options
            if isinstance(o, tuple) and len(o) > 1}


def get_requested_ip(pkt, opts):
    '''Option 50 if present, else ciaddr.'''
    if opts.get('requested_addr'):
        return str(opts['requested_addr'])
    ciaddr = pkt[BOOTP].ciaddr
    if ciaddr and ciaddr != ANY_IP:
        return str(ciaddr)
    return None


def decode(packet):
    '''
    Turns a sniffed packet (any scapy packet containing BOOTP) or a raw BOOTP
    payload into Discover, Request, Release or Decline. Anything else raises
    MalformedMessage.
    '''
    if isinstance(packet, (bytes, bytearray)):
        if len(packet) < BOOTP_MIN_LEN:
            raise MalformedMessage(
                f'Truncated BOOTP payload ({len(packet)} bytes)')
        packet = BOOTP(bytes(packet))
    if BOOTP not in packet:
        raise MalformedMessage('Not a BOOTP packet')
    bootp = packet[BOOTP]
    if bootp.op != BOOTREQUEST:
        raise MalformedMessage(f'Unexpected BOOTP op {bootp.op}')
    if DHCP not in packet or not packet[DHCP].options:
        raise MalformedMessage('Missing DHCP options')

    opts = dhcp_options(packet)
    msg_type = opts.get('message-type')
    if isinstance(msg_type, str):
        msg_type = MESSAGE_TYPE_NAMES.get(msg_type)
    if msg_type is None:
        raise MalformedMessage('Missing DHCP message type')

    hlen = bootp.hlen
    chaddr = bytes(bootp.chaddr or b'')
    if not 0 < hlen <= 16 or len(chaddr) < hlen:
        raise MalformedMessage(f'Bad hardware address length {hlen}')
    hw_raw = chaddr[:hlen]
    raw_id = opts.get('client_id')
    if isinstance(raw_id, str):
        raw_id = raw_id.encode('latin-1')
    if not raw_id and not any(hw_raw):
        raise MalformedMessage('No client identifier')
    hw_address = normalize_client_id(hw_raw)
    client_id = normalize_client_id(raw_id) if raw_id else hw_address

    xid = bootp.xid
    if msg_type == DHCPDISCOVER:
        return Discover(client_id=client_id, xid=xid, hw_address=hw_address,
                        lease_time=opts.get('lease_time'),
                        hostname=opts.get('hostname'))
    if msg_type == DHCPREQUEST:
        server_id = opts.get('server_id')
        return Request(client_id=client_id, xid=xid,
                       requested_address=get_requested_ip(packet, opts),
                       hw_address=hw_address,
                       lease_time=opts.get('lease_time'),
                       hostname=opts.get('hostname'),
                       server_id=str(server_id) if server_id else None)
    if msg_type == DHCPDECLINE:
        address = get_requested_ip(packet, opts)
        if not address:
            raise MalformedMessage('DECLINE without an address')
        return Decline(client_id=client_id, xid=xid, address=address,
                       hw_address=hw_address)
    if msg_type == DHCPRELEASE:
        ciaddr = bootp.ciaddr
        address = str(ciaddr) if ciaddr and ciaddr != ANY_IP else None
        return Release(client_id=client_id, xid=xid, address=address,
                       hw_address=hw_address)
    raise MalformedMessage(f'Unsupported DHCP message type {msg_type}')


def encode(decision, hw_address, server_ip, server_mac):
    '''Builds the Ether/IP/UDP/BOOTP/DHCP reply for an engine decision.'''
    if decision.kind not in REPLY_TYPES:
        raise ValueError(f'{decision.kind} has no wire representation')
    options = [
        ('message-type', REPLY_TYPES[decision.kind]),
        ('server_id', server_ip),
    ]
    if decision.kind != DecisionKind.NAK:
        options.extend([
            ('lease_time', decision.lease_time),
            ('renewal_time', int(decision.lease_time * T1_FRACTION)),
            ('rebinding_time', int(decision.lease_time * T2_FRACTION)),
            ('subnet_mask', decision.subnet_mask),
        ])
        if decision.gateway:
            options.append(('router', decision.gateway))
        if decision.dns_servers:
            options.append(('name_server', *decision.dns_servers))
    options.append('end')

    is_nak = decision.kind == DecisionKind.NAK
    yiaddr = ANY_IP if is_nak else decision.address
    dst_ip = BROADCAST_IP if is_nak else decision.address
    chaddr = mac2str(hw_address) if hw_address else b''
    dst_mac = hw_address if len(chaddr) == 6 else BROADCAST_MAC
    return (
        Ether(src=server_mac, dst=dst_mac) /
        IP(src=server_ip, dst=dst_ip) /
        UDP(sport=67, dport=68) /
        BOOTP(op=BOOTREPLY, yiaddr=yiaddr, siaddr=server_ip, giaddr=0,
              chaddr=chaddr, xid=decision.xid) /
        DHCP(options=options)
    )


def reply_fields(packet):
    '''Reads an encoded reply back into a Decision (for diagnostics).'''
    opts = dhcp_options(packet)
    kinds = {v: k for k, v in REPLY_TYPES.items()}
    kind = kinds[opts['message-type']]
    dns = []
    for o in packet[DHCP].options:
        if isinstance(o, tuple) and o[0] == 'name_server':
            for value in o[1:]:
                dns.extend(value if isinstance(value, list) else [value])
    yiaddr = packet[BOOTP].yiaddr
    return Decision(
        kind=kind,
        client_id=normalize_client_id(
            bytes(packet[BOOTP].chaddr)[:packet[BOOTP].hlen]),
        xid=packet[BOOTP].xid,
        address=None if yiaddr == ANY_IP else yiaddr,
        lease_time=opts.get('lease_time', 0),
        subnet_mask=opts.get('subnet_mask'),
        gateway=opts.get('router'),
        dns_servers=[str(ip) for ip in dns])
