"""
Shared fixtures: role key pairs, an in-memory ledger and deployed contracts.
"""

from __future__ import annotations

import pytest

from pledge import config, crypto
from pledge.actions import deploy_bond, deploy_escrow
from pledge.contracts import Bond, Escrow
from pledge.oracle import MemoryOracle
from pledge.store import MemoryStore


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

@pytest.fixture
def bondholder():
    return crypto.generate_key_pair()


@pytest.fixture
def slasher():
    return crypto.generate_key_pair()


@pytest.fixture
def slash_dest():
    return crypto.generate_key_pair()


@pytest.fixture
def requester():
    return crypto.generate_key_pair()


@pytest.fixture
def worker():
    return crypto.generate_key_pair()


@pytest.fixture
def outsider():
    return crypto.generate_key_pair()


@pytest.fixture
def address():
    """Mainnet P2PKH address of a key pair."""
    def _address(key_pair):
        return crypto.public_key_to_address(key_pair["public_key"])
    return _address


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

@pytest.fixture
def bond(bondholder, slasher, slash_dest):
    return Bond(
        bondholder_pkh=crypto.hash160(bondholder["public_key"]),
        bondholder_pub=bondholder["public_key"],
        lock_until=100,
        slasher_pub=slasher["public_key"],
        slash_dest_pkh=crypto.hash160(slash_dest["public_key"]),
    )


@pytest.fixture
def escrow(requester, worker):
    return Escrow(
        requester_pub=requester["public_key"],
        requester_pkh=crypto.hash160(requester["public_key"]),
        worker_pub=worker["public_key"],
        worker_pkh=crypto.hash160(worker["public_key"]),
        timeout_block=500,
    )


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

@pytest.fixture
def oracle():
    return MemoryOracle(height=0)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def deployed_bond(oracle, store, bondholder, slasher, slash_dest, address):
    """A 10000-sat bond deployed at height 90, locked until block 100."""
    oracle.height = 90
    oracle.fund_address(address(bondholder), 10000 + config.DEPLOY_FEE)
    return deploy_bond(
        oracle,
        bondholder["private_key"],
        slasher["public_key"],
        address(slash_dest),
        amount=10000,
        lock_blocks=10,
        store=store,
    )


@pytest.fixture
def deployed_escrow(oracle, store, requester, worker, address):
    """A 20000-sat escrow deployed at height 0, timing out at block 500."""
    oracle.height = 0
    oracle.fund_address(address(requester), 20000 + config.DEPLOY_FEE)
    return deploy_escrow(
        oracle,
        requester["private_key"],
        worker["public_key"],
        address(worker),
        amount=20000,
        timeout_blocks=500,
        store=store,
    )
