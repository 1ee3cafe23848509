import threading

import pytest

from leasedhcp.config import DECLINE_EXTENSION
from leasedhcp.errors import InvalidTransition, PoolExhausted
from leasedhcp.pool import DECLINED, FREE, LEASED, RESERVED, AddressPool

ADDRS = ['10.0.0.12', '10.0.0.10', '10.0.0.11', '10.0.0.9']


def test_allocates_in_ascending_order_skipping_taken_entries():
    pool = AddressPool(ADDRS)
    pool.reserve('10.0.0.9')
    pool.mark_declined('10.0.0.10', until=100)
    assert pool.allocate_next_free() == '10.0.0.11'
    assert pool.allocate_next_free() == '10.0.0.12'
    with pytest.raises(PoolExhausted):
        pool.allocate_next_free()


def test_release_is_idempotent():
    pool = AddressPool(ADDRS)
    ip = pool.allocate_next_free()
    pool.release(ip)
    before = pool.snapshot()
    pool.release(ip)
    pool.release(ip)
    pool.release('192.168.0.1')
    assert pool.snapshot() == before
    assert pool.get_status(ip) == FREE


def test_release_never_frees_reserved_or_declined_entries():
    pool = AddressPool(ADDRS)
    pool.reserve('10.0.0.9')
    pool.mark_declined('10.0.0.10', until=100)
    pool.release('10.0.0.9')
    pool.release('10.0.0.10')
    assert pool.get_status('10.0.0.9') == RESERVED
    assert pool.get_status('10.0.0.10') == DECLINED


def test_claim_requires_a_free_entry():
    pool = AddressPool(ADDRS)
    pool.claim('10.0.0.11')
    assert pool.get_status('10.0.0.11') == LEASED
    with pytest.raises(InvalidTransition):
        pool.claim('10.0.0.11')
    with pytest.raises(InvalidTransition):
        pool.claim('10.9.9.9')


def test_declined_addresses_return_after_probation():
    pool = AddressPool(ADDRS)
    assert pool.mark_declined('10.0.0.9', until=100)
    assert pool.reclaim_declined(now=99) == []
    assert pool.reclaim_declined(now=100) == ['10.0.0.9']
    assert pool.get_status('10.0.0.9') == FREE


def test_probation_is_extended_while_address_answers_on_wire():
    pool = AddressPool(ADDRS)
    pool.mark_declined('10.0.0.9', until=100)
    assert pool.reclaim_declined(now=150, still_in_use=lambda ip: True) == []
    assert pool.quarantine['10.0.0.9'] == 150 + DECLINE_EXTENSION
    assert pool.get_status('10.0.0.9') == DECLINED


def test_reserved_addresses_are_not_quarantined():
    pool = AddressPool(ADDRS)
    pool.reserve('10.0.0.9')
    assert not pool.mark_declined('10.0.0.9', until=100)
    assert pool.get_status('10.0.0.9') == RESERVED
    assert not pool.mark_declined('172.16.0.1', until=100)


def test_concurrent_allocation_never_hands_out_an_address_twice():
    addrs = [f'10.0.{i // 250}.{i % 250 + 1}' for i in range(500)]
    pool = AddressPool(addrs)
    got = []
    lock = threading.Lock()
    start = threading.Barrier(8)

    def worker():
        start.wait()
        while True:
            try:
                ip = pool.allocate_next_free()
            except PoolExhausted:
                return
            with lock:
                got.append(ip)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(got) == 500
    assert len(set(got)) == 500
    assert pool.free_count() == 0
