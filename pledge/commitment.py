"""
Pledge output commitment model.

A covenant constrains where its value goes next by comparing a digest of the
outputs it expects against the ``hashOutputs`` field of the spending
transaction's signature-hash preimage. This module produces the canonical
output encoding and that digest.
"""

from __future__ import annotations

from typing import Iterable

from . import crypto, script
from .tx import Transaction, TxOutput


def build_destination_output(destination_hash: bytes, amount: int) -> bytes:
    """Canonical encoding of one payout to a public key hash.

    The encoding is the output's wire form: the value as an 8-byte
    little-endian integer followed by the length-prefixed P2PKH script.

    Args:
        destination_hash: 20-byte public key hash of the recipient.
        amount: Value in satoshis.

    Returns:
        The serialized output.

    Raises:
        ValueError: When the hash is not 20 bytes or amount is negative.
    """
    if amount < 0:
        raise ValueError(f"Output amount cannot be negative: {amount}")
    return TxOutput(amount, script.p2pkh_locking_script(destination_hash)).serialize()


def commit(outputs: Iterable[bytes]) -> bytes:
    """Double SHA-256 over the concatenation of canonical outputs."""
    return crypto.hash256(b"".join(outputs))


def transaction_commitment(tx: Transaction) -> bytes:
    """The commitment digest a transaction actually produces."""
    return commit(txout.serialize() for txout in tx.outputs)


def commitment_matches(expected: bytes, actual: bytes) -> bool:
    return crypto.constant_time_equal(expected, actual)
