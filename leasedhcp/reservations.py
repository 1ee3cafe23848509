import ipaddress
import logging

from .errors import InvalidConfiguration

logger = logging.getLogger(__name__)


class ReservationSet:
    '''Fixed client -> address bindings for one subnet.'''

    def __init__(self, subnet, reservations=()):
        self.subnet = subnet
        self.by_client = {}
        self.by_ip = {}
        for r in reservations:
            self.add(r)

    def add(self, r):
        h = f'"{r.hostname}" ' if r.hostname else ''
        ip_obj = ipaddress.IPv4Address(r.address)
        net = self.subnet.net
        if ip_obj not in net:
            raise InvalidConfiguration(
                f'Static IP {r.address} (for {h}{r.client_id}) is outside '
                f'the subnet {net}')
        if ip_obj in (net.network_address, net.broadcast_address):
            raise InvalidConfiguration(
                f'Static IP {r.address} (for {h}{r.client_id}) is the '
                f'network or broadcast address')
        if r.address == self.subnet.gateway:
            raise InvalidConfiguration(
                f'Static IP {r.address} (for {h}{r.client_id}) conflicts '
                f'with the gateway')
        if r.client_id in self.by_client:
            raise InvalidConfiguration(
                f'Client {r.client_id} has more than one reservation')
        if r.address in self.by_ip:
            raise InvalidConfiguration(
                f'Static IP {r.address} is assigned to both '
                f'{self.by_ip[r.address].client_id} and {r.client_id}')
        if self.subnet.in_range(r.address):
            logger.warning(f'⚠️ Static IP {r.address} (for {h}{r.client_id}) '
                           f'lies inside the dynamic range of {net}; it will '
                           f'only be handed to its owner.')
        self.by_client[r.client_id] = r
        self.by_ip[r.address] = r
        logger.info(f'📌 Reserved {r.address} for {h}{r.client_id}')

    def __len__(self):
        return len(self.by_client)

    def __contains__(self, client_id):
        return client_id in self.by_client

    def for_client(self, client_id, hw_address=None):
        '''Looks a client up by its identifier, then by hardware address.'''
        r = self.by_client.get(client_id)
        if r is None and hw_address:
            r = self.by_client.get(hw_address)
        return r

    def owner_of(self, ip):
        r = self.by_ip.get(ip)
        return r.client_id if r else None

    def addresses(self):
        return list(self.by_ip)
