"""
Pledge transaction builder.

Builds the one-input, one-output transactions that spend a covenant, signs
them with the key of the role the operation requires, and checks the result
against the contract predicate before anything leaves the process. Also
builds funding transactions from ordinary P2PKH coins.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from . import config, crypto, predicate, script
from .commitment import commit, commitment_matches, transaction_commitment
from .contracts import CovenantContract, Operation, verify_spend
from .errors import PreconditionFailure, PredicateViolation
from .tx import Transaction, TxInput, TxOutput, Utxo

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Covenant spends
# ---------------------------------------------------------------------------

@dataclass
class UnsignedSpend:
    """A covenant spend waiting for its role signature."""
    tx: Transaction
    contract: CovenantContract
    operation: Operation
    amount: int
    utxo_value: int
    commitment: bytes
    input_index: int = 0

    @property
    def signer_role(self) -> str:
        return self.contract.rule(self.operation).signer

    @property
    def signer_pub(self) -> bytes:
        return self.contract.signer_key(self.operation)

    @property
    def recipient_pkh(self) -> bytes:
        return self.contract.recipient(self.operation)

    def preimage(self) -> bytes:
        return self.tx.sighash_preimage(self.input_index)

    def sighash(self) -> bytes:
        """The digest the role key must sign."""
        return self.tx.sighash(self.input_index)


def check_amount(amount: int, utxo_value: int) -> None:
    """Raise PredicateViolation unless ``0 < amount <= utxo_value``."""
    if isinstance(amount, bool) or not isinstance(amount, int) or not 0 < amount <= utxo_value:
        raise PredicateViolation(
            f"invalid amount: {amount} (must be in (0, {utxo_value}])", "amount"
        )


def build_spend_transaction(
    contract: CovenantContract,
    funding_tx: Transaction,
    output_index: int,
    operation: Operation,
    amount: int,
    chain_height: Optional[int] = None,
) -> UnsignedSpend:
    """Build the unsigned transaction for one contract operation.

    The transaction has exactly one input (the contract UTXO) and exactly
    one output (the payout the operation requires). Time-gated operations
    get ``nLockTime = chain_height`` and a non-final input sequence so the
    ledger enforces the lock.

    The locking predicate derives a signature from the sighash preimage and
    about half of all preimages give a non-canonical one. The input sequence
    is counted down from its starting value until the preimage works; with
    ``nLockTime`` 0 a non-final sequence changes nothing else.

    Args:
        contract: The contract, as decoded from or checked against
            ``funding_tx``.
        funding_tx: The transaction that created the contract UTXO.
        output_index: Index of the contract output in ``funding_tx``.
        operation: The operation to perform.
        amount: Payout in satoshis; the rest of the UTXO value is fee.
        chain_height: Current chain height. Required for gated operations.

    Returns:
        An :class:`UnsignedSpend` ready for :func:`sign_spend`.

    Raises:
        PreconditionFailure: When the contract does not match the funding
            output, or the lock height has not been reached, or no
            input sequence gives a usable preimage.
        PredicateViolation: When the operation does not belong to the
            contract or the amount is out of range.
    """
    rule = contract.rule(operation)

    if not 0 <= output_index < len(funding_tx.outputs):
        raise PreconditionFailure(
            f"Funding transaction has no output {output_index}", "output_index"
        )
    funding_output = funding_tx.outputs[output_index]
    locking_script = contract.locking_script()
    if funding_output.script != locking_script:
        raise PreconditionFailure(
            "Contract fields do not match the funding output's locking script",
            "contract_mismatch",
        )

    utxo_value = funding_output.value
    check_amount(amount, utxo_value)

    locktime = 0
    sequence = config.FINAL_SEQUENCE
    if rule.gate:
        threshold = getattr(contract, rule.gate)
        if chain_height is None:
            raise PreconditionFailure(
                f"{operation.value} needs the current chain height", "locktime"
            )
        if chain_height < threshold:
            raise PreconditionFailure(
                f"{rule.gate_message}: {threshold - chain_height} blocks remaining",
                "locktime",
            )
        locktime = chain_height
        sequence = config.LOCKTIME_SEQUENCE

    tx = Transaction(
        inputs=[TxInput(
            prev_txid=funding_tx.txid(),
            prev_index=output_index,
            sequence=sequence,
            prev_script=locking_script,
            prev_value=utxo_value,
        )],
        outputs=[TxOutput(amount, script.p2pkh_locking_script(contract.recipient(operation)))],
        locktime=locktime,
    )

    for _ in range(config.PREIMAGE_ATTEMPTS):
        if predicate.preimage_signature(tx.sighash_preimage(0)) is not None:
            break
        tx.inputs[0].sequence -= 1
    else:
        raise PreconditionFailure(
            f"No input sequence in {config.PREIMAGE_ATTEMPTS} tries gives a usable preimage",
            "preimage",
        )
    if tx.inputs[0].sequence != sequence:
        log.debug(f"Input sequence lowered to {tx.inputs[0].sequence:#010x} for the preimage")

    digest = transaction_commitment(tx)
    expected = commit(contract.expected_outputs(operation, amount))
    if not commitment_matches(expected, digest):
        raise PredicateViolation("hashOutputs mismatch", "commitment")

    return UnsignedSpend(
        tx=tx,
        contract=contract,
        operation=operation,
        amount=amount,
        utxo_value=utxo_value,
        commitment=digest,
    )


def finalize_spend(unsigned: UnsignedSpend, signature: bytes) -> Transaction:
    """Attach a role signature and run the predicate locally.

    Args:
        unsigned: The spend returned by :func:`build_spend_transaction`.
        signature: DER signature over ``unsigned.sighash()`` followed by the
            sighash type byte.

    Returns:
        A new, complete transaction. ``unsigned`` is not mutated.

    Raises:
        PredicateViolation: When the signed transaction fails the predicate.
    """
    tx = copy.deepcopy(unsigned.tx)
    tx.inputs[unsigned.input_index].script_sig = unsigned.contract.unlocking_script(
        unsigned.operation, signature, unsigned.amount, unsigned.preimage()
    )
    verify_spend(unsigned.contract, tx, unsigned.input_index, unsigned.utxo_value)
    return tx


def sign_spend(unsigned: UnsignedSpend, private_key: bytes) -> Transaction:
    """Sign a covenant spend with the required role key and finalize it.

    Raises:
        PreconditionFailure: When ``private_key`` is not the key of the role
            the operation requires.
        PredicateViolation: When the signed transaction fails the predicate.
    """
    public_key = crypto.public_key_from_private_key(private_key)
    if public_key != unsigned.signer_pub:
        raise PreconditionFailure(
            f"wallet does not match required role: {unsigned.signer_role}", "role"
        )
    signature = crypto.sign_digest(unsigned.sighash(), private_key)
    return finalize_spend(unsigned, signature + bytes([config.DEFAULT_SIGHASH]))


# ---------------------------------------------------------------------------
# P2PKH funding
# ---------------------------------------------------------------------------

def sign_p2pkh_inputs(tx: Transaction, private_key: bytes) -> None:
    """Sign every input locked to the key's P2PKH script, in place."""
    key_pair = crypto.key_pair_from_private_key(private_key)
    own_script = script.p2pkh_locking_script(crypto.hash160(key_pair["public_key"]))
    for i, txin in enumerate(tx.inputs):
        if txin.prev_script != own_script:
            continue
        signature = crypto.sign_digest(tx.sighash(i), private_key)
        txin.script_sig = script.p2pkh_unlocking_script(
            signature + bytes([config.DEFAULT_SIGHASH]), key_pair["public_key"]
        )


def fund_transaction(
    outputs: list[TxOutput],
    utxos: Iterable[Utxo],
    private_key: bytes,
    fee: int,
) -> Transaction:
    """Pay ``outputs`` from the key's P2PKH coins and sign.

    Coins are taken in order until outputs plus fee are covered. Change goes
    back to the key's address when it exceeds the dust limit; smaller change
    is left to the fee.

    Raises:
        PreconditionFailure: When the coins cannot cover outputs plus fee.
    """
    key_pair = crypto.key_pair_from_private_key(private_key)
    own_script = script.p2pkh_locking_script(crypto.hash160(key_pair["public_key"]))
    needed = sum(o.value for o in outputs) + fee

    inputs = []
    total = 0
    for utxo in utxos:
        inputs.append(TxInput(
            prev_txid=utxo.txid,
            prev_index=utxo.index,
            prev_script=own_script,
            prev_value=utxo.value,
        ))
        total += utxo.value
        if total >= needed:
            break

    if not inputs:
        raise PreconditionFailure("No UTXOs available to fund transaction", "funds")
    if total < needed:
        raise PreconditionFailure(f"Need {needed} sats, only {total} available", "funds")

    tx = Transaction(inputs=inputs, outputs=list(outputs))
    change = total - needed
    if change > config.DUST_LIMIT:
        tx.outputs.append(TxOutput(change, own_script))
    else:
        log.debug(f"Dropping {change} sats of change into the fee")

    sign_p2pkh_inputs(tx, private_key)
    return tx


def build_funding_transaction(
    contract: CovenantContract,
    amount: int,
    utxos: Iterable[Utxo],
    private_key: bytes,
    fee: int = config.DEPLOY_FEE,
) -> Transaction:
    """Lock ``amount`` into ``contract`` at output 0.

    Raises:
        PreconditionFailure: When amount is not positive or funds are short.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise PreconditionFailure(f"Contract value must be positive, got {amount}", "amount")
    return fund_transaction(
        [TxOutput(amount, contract.locking_script())], utxos, private_key, fee
    )
