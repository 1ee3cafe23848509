'''DHCPv4 lease engine: address pools, lease lifecycle and persistence.'''
from .config import EngineConfig, Reservation, Subnet, parse_reservation
from .engine import AllocationEngine
from .errors import (AddressInUse, DHCPError, InvalidConfiguration,
                     InvalidTransition, MalformedMessage, PoolExhausted,
                     ReservationConflict, StoreUnavailable)
from .lease import Lease, LeaseState
from .messages import Decision, DecisionKind
from .store import JsonLeaseStore, MemoryLeaseStore

__version__ = '0.1.0'
