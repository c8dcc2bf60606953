"""
Tests for pledge.status: live contract state resolution.
"""

from __future__ import annotations

import pytest

from pledge.actions import (
    approve_escrow,
    refund_escrow,
    release_bond,
    slash_bond,
    timeout_escrow,
)
from pledge.contracts import ContractStatus
from pledge.errors import MalformedInput
from pledge.status import bond_status, contract_status, escrow_status


class TestBondStatus:
    """Open, released and slashed bonds."""

    def test_open_and_locked(self, oracle, deployed_bond):
        status = bond_status(oracle, deployed_bond["txid"])
        assert status["status"] == ContractStatus.OPEN
        assert status["value"] == 10000
        assert status["current_height"] == 90
        assert status["is_locked"]
        assert status["blocks_left"] == 10
        assert not status["is_spent"]
        assert status["spent_by"] is None

    def test_unlocked_at_lock_height(self, oracle, deployed_bond):
        oracle.height = 100
        status = bond_status(oracle, deployed_bond["txid"])
        assert not status["is_locked"]
        assert status["blocks_left"] == 0

    def test_released(self, oracle, deployed_bond, bondholder):
        oracle.height = 100
        released = release_bond(oracle, deployed_bond["txid"], bondholder["private_key"])
        status = bond_status(oracle, deployed_bond["txid"])
        assert status["status"] == ContractStatus.RELEASED
        assert status["is_spent"]
        assert status["spent_by"] == released["txid"]

    def test_slashed(self, oracle, deployed_bond, slasher):
        slash_bond(oracle, deployed_bond["txid"], slasher["private_key"])
        assert bond_status(oracle, deployed_bond["txid"])["status"] == ContractStatus.SLASHED

    def test_escrow_is_not_a_bond(self, oracle, deployed_escrow):
        with pytest.raises(MalformedInput, match="not a bond"):
            bond_status(oracle, deployed_escrow["txid"])


class TestEscrowStatus:
    """Approved, refunded and timed-out escrows."""

    def test_open(self, oracle, deployed_escrow):
        status = escrow_status(oracle, deployed_escrow["txid"])
        assert status["status"] == ContractStatus.OPEN
        assert status["kind"] == "escrow"
        assert status["gate_height"] == 500
        assert status["blocks_left"] == 500

    def test_approved(self, oracle, deployed_escrow, requester):
        approve_escrow(oracle, deployed_escrow["txid"], requester["private_key"])
        assert escrow_status(oracle, deployed_escrow["txid"])["status"] == ContractStatus.APPROVED

    def test_refunded(self, oracle, deployed_escrow, worker):
        refund_escrow(oracle, deployed_escrow["txid"], worker["private_key"])
        assert escrow_status(oracle, deployed_escrow["txid"])["status"] == ContractStatus.REFUNDED

    def test_timed_out(self, oracle, deployed_escrow, requester):
        oracle.height = 500
        timeout_escrow(oracle, deployed_escrow["txid"], requester["private_key"])
        assert escrow_status(oracle, deployed_escrow["txid"])["status"] == ContractStatus.TIMED_OUT

    def test_generic_lookup(self, oracle, deployed_escrow):
        status = contract_status(oracle, deployed_escrow["txid"])
        assert status["contract"] == deployed_escrow["contract"]

    def test_missing_output(self, oracle, deployed_escrow):
        with pytest.raises(MalformedInput, match="no output"):
            contract_status(oracle, deployed_escrow["txid"], output_index=3)
