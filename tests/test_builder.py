"""
Tests for pledge.builder: spend construction, role signing and funding.
"""

from __future__ import annotations

import dataclasses

import pytest
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from pledge import config, crypto, predicate, script
from pledge.builder import (
    build_funding_transaction,
    build_spend_transaction,
    check_amount,
    fund_transaction,
    sign_p2pkh_inputs,
    sign_spend,
)
from pledge.contracts import Bond, Operation
from pledge.errors import PreconditionFailure, PredicateViolation
from pledge.tx import Transaction, TxInput, TxOutput, Utxo


def _funding(contract, value):
    return Transaction(
        inputs=[TxInput("44" * 32, 0)],
        outputs=[TxOutput(value, contract.locking_script())],
    )


class TestBuildSpend:
    """Unsigned spend construction."""

    def test_single_input_single_output(self, bond):
        funding = _funding(bond, 10000)
        unsigned = build_spend_transaction(bond, funding, 0, Operation.RELEASE, 9000, 150)
        tx = unsigned.tx
        assert len(tx.inputs) == 1
        assert len(tx.outputs) == 1
        assert tx.inputs[0].prev_txid == funding.txid()
        assert tx.inputs[0].prev_index == 0
        assert tx.outputs[0].value == 9000
        assert script.p2pkh_pkh(tx.outputs[0].script) == bond.bondholder_pkh

    def test_gated_operation_sets_locktime_to_height(self, bond):
        unsigned = build_spend_transaction(
            bond, _funding(bond, 10000), 0, Operation.RELEASE, 9000, 150
        )
        assert unsigned.tx.locktime == 150
        assert unsigned.tx.inputs[0].sequence <= config.LOCKTIME_SEQUENCE
        assert not unsigned.tx.is_final(149)

    def test_ungated_operation_is_final(self, bond):
        unsigned = build_spend_transaction(
            bond, _funding(bond, 10000), 0, Operation.SLASH, 9500, 150
        )
        assert unsigned.tx.locktime == 0
        assert unsigned.tx.is_final(0)
        assert unsigned.tx.inputs[0].sequence > config.FINAL_SEQUENCE - config.PREIMAGE_ATTEMPTS

    @pytest.mark.parametrize("amount", range(9000, 9016))
    def test_preimage_always_gives_a_canonical_signature(self, bond, amount):
        unsigned = build_spend_transaction(
            bond, _funding(bond, 10000), 0, Operation.RELEASE, amount, 150
        )
        signature = predicate.preimage_signature(unsigned.preimage())
        assert signature is not None
        r, s = decode_dss_signature(signature[:-1])
        assert r == int.from_bytes(predicate.GENERATOR_PUB[1:], "big")
        assert s <= crypto.HALF_ORDER
        assert crypto.verify_digest(unsigned.sighash(), signature[:-1], predicate.GENERATOR_PUB)

    def test_unsigned_spend_exposes_role(self, bond):
        unsigned = build_spend_transaction(
            bond, _funding(bond, 10000), 0, Operation.SLASH, 9500
        )
        assert unsigned.signer_role == "slasher"
        assert unsigned.signer_pub == bond.slasher_pub
        assert unsigned.recipient_pkh == bond.slash_dest_pkh
        assert len(unsigned.sighash()) == 32

    def test_lock_not_reached(self, bond):
        with pytest.raises(PreconditionFailure, match="bond still locked: 1 blocks remaining") as exc:
            build_spend_transaction(bond, _funding(bond, 10000), 0, Operation.RELEASE, 9000, 99)
        assert exc.value.check == "locktime"

    def test_gated_operation_needs_height(self, escrow):
        with pytest.raises(PreconditionFailure, match="chain height"):
            build_spend_transaction(escrow, _funding(escrow, 20000), 0, Operation.TIMEOUT, 19500)

    def test_escrow_timeout_not_reached(self, escrow):
        with pytest.raises(PreconditionFailure, match="escrow not yet timed out"):
            build_spend_transaction(
                escrow, _funding(escrow, 20000), 0, Operation.TIMEOUT, 19500, 499
            )

    def test_amount_out_of_range(self, bond):
        for amount in (0, -1, 10001):
            with pytest.raises(PredicateViolation, match="invalid amount"):
                build_spend_transaction(bond, _funding(bond, 10000), 0, Operation.SLASH, amount)

    def test_contract_mismatch(self, bond):
        other = dataclasses.replace(bond, lock_until=101)
        with pytest.raises(PreconditionFailure) as exc:
            build_spend_transaction(other, _funding(bond, 10000), 0, Operation.SLASH, 9500)
        assert exc.value.check == "contract_mismatch"

    def test_missing_output(self, bond):
        with pytest.raises(PreconditionFailure) as exc:
            build_spend_transaction(bond, _funding(bond, 10000), 2, Operation.SLASH, 9500)
        assert exc.value.check == "output_index"

    def test_foreign_operation(self, bond):
        with pytest.raises(PredicateViolation, match="not a bond operation"):
            build_spend_transaction(bond, _funding(bond, 10000), 0, Operation.REFUND, 9500)

    def test_check_amount_rejects_bool(self):
        with pytest.raises(PredicateViolation):
            check_amount(True, 10)


class TestSignSpend:
    """Role signing and local predicate preflight."""

    def test_wrong_role_key(self, bond, bondholder):
        unsigned = build_spend_transaction(bond, _funding(bond, 10000), 0, Operation.SLASH, 9500)
        with pytest.raises(PreconditionFailure, match="wallet does not match required role: slasher") as exc:
            sign_spend(unsigned, bondholder["private_key"])
        assert exc.value.check == "role"

    def test_unsigned_spend_not_mutated(self, bond, slasher):
        unsigned = build_spend_transaction(bond, _funding(bond, 10000), 0, Operation.SLASH, 9500)
        tx = sign_spend(unsigned, slasher["private_key"])
        assert unsigned.tx.inputs[0].script_sig == b""
        assert tx.inputs[0].script_sig != b""

    def test_unlocking_script_layout(self, bond, slasher):
        unsigned = build_spend_transaction(bond, _funding(bond, 10000), 0, Operation.SLASH, 9500)
        tx = sign_spend(unsigned, slasher["private_key"])
        pushes = script.pushes_only(script.parse_script(tx.inputs[0].script_sig), "unlock")
        assert len(pushes) == 4
        assert pushes[0] == unsigned.preimage()
        assert pushes[1][-1] == config.DEFAULT_SIGHASH
        assert crypto.verify_digest(unsigned.sighash(), pushes[1][:-1], slasher["public_key"])
        assert script.decode_num(pushes[2]) == 9500
        assert script.decode_num(pushes[3]) == 1

    def test_signed_transaction_round_trips(self, bond, slasher):
        unsigned = build_spend_transaction(bond, _funding(bond, 10000), 0, Operation.SLASH, 9500)
        tx = sign_spend(unsigned, slasher["private_key"])
        assert Transaction.parse(tx.serialize()).txid() == tx.txid()


class TestFunding:
    """P2PKH funding and change."""

    def _own_script(self, key_pair):
        return script.p2pkh_locking_script(crypto.hash160(key_pair["public_key"]))

    def test_change_above_dust(self, outsider):
        target = TxOutput(1000, script.p2pkh_locking_script(b"\x01" * 20))
        tx = fund_transaction([target], [Utxo("aa" * 32, 0, 5000)], outsider["private_key"], 500)
        assert len(tx.outputs) == 2
        assert tx.outputs[1].value == 3500
        assert tx.outputs[1].script == self._own_script(outsider)

    def test_change_at_dust_limit_dropped(self, outsider):
        target = TxOutput(1000, script.p2pkh_locking_script(b"\x01" * 20))
        utxos = [Utxo("aa" * 32, 0, 1500 + config.DUST_LIMIT)]
        tx = fund_transaction([target], utxos, outsider["private_key"], 500)
        assert len(tx.outputs) == 1

    def test_coins_taken_until_covered(self, outsider):
        target = TxOutput(3000, script.p2pkh_locking_script(b"\x01" * 20))
        utxos = [Utxo("aa" * 32, i, 2000) for i in range(5)]
        tx = fund_transaction([target], utxos, outsider["private_key"], 500)
        assert len(tx.inputs) == 2

    def test_insufficient_funds(self, outsider):
        target = TxOutput(3000, script.p2pkh_locking_script(b"\x01" * 20))
        with pytest.raises(PreconditionFailure, match="Need 3500 sats, only 2000 available") as exc:
            fund_transaction([target], [Utxo("aa" * 32, 0, 2000)], outsider["private_key"], 500)
        assert exc.value.check == "funds"

    def test_no_utxos(self, outsider):
        with pytest.raises(PreconditionFailure, match="No UTXOs"):
            fund_transaction([], [], outsider["private_key"], 500)

    def test_inputs_are_signed(self, outsider):
        target = TxOutput(1000, script.p2pkh_locking_script(b"\x01" * 20))
        tx = fund_transaction([target], [Utxo("aa" * 32, 0, 5000)], outsider["private_key"], 500)
        sig, pub = script.pushes_only(script.parse_script(tx.inputs[0].script_sig), "p2pkh")
        assert pub == outsider["public_key"]
        assert crypto.verify_digest(tx.sighash(0), sig[:-1], pub)

    def test_sign_p2pkh_skips_foreign_inputs(self, outsider):
        tx = Transaction(
            inputs=[TxInput("bb" * 32, 0, prev_script=b"\x51", prev_value=1)],
            outputs=[TxOutput(0, b"\x6a")],
        )
        sign_p2pkh_inputs(tx, outsider["private_key"])
        assert tx.inputs[0].script_sig == b""

    def test_contract_at_output_zero(self, bond, outsider):
        tx = build_funding_transaction(
            bond, 10000, [Utxo("aa" * 32, 0, 20000)], outsider["private_key"]
        )
        assert tx.outputs[0].value == 10000
        assert Bond.from_tx(tx, 0) == (bond, 10000)
        assert tx.outputs[1].value == 20000 - 10000 - config.DEPLOY_FEE

    def test_contract_value_must_be_positive(self, bond, outsider):
        with pytest.raises(PreconditionFailure) as exc:
            build_funding_transaction(bond, 0, [Utxo("aa" * 32, 0, 20000)], outsider["private_key"])
        assert exc.value.check == "amount"
