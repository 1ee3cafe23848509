class DHCPError(Exception):
    '''Base class for everything the lease engine raises.'''


class PoolExhausted(DHCPError):
    '''No free address is left in the dynamic pool.'''


class ReservationConflict(DHCPError):
    '''The address is reserved for a different client.'''


class InvalidTransition(DHCPError):
    '''The lease (or pool entry) cannot move to the requested state.'''


class MalformedMessage(DHCPError):
    '''Inbound packet is truncated, garbled or missing required fields.'''


class StoreUnavailable(DHCPError):
    '''The lease store could not be read or written.'''


class InvalidConfiguration(DHCPError):
    '''Subnet, range or reservation settings are inconsistent.'''


class AddressInUse(DHCPError):
    '''The address is bound to a different client's active lease.'''
