"""
Pledge ASSERT1 assertion protocol.

An assertion is a signed claim about a topic, backed by a Bond. It is
recorded in a zero-value ``OP_FALSE OP_RETURN`` output::

    "ASSERT1" <version 0x01> <bond txid, little-endian> <topic> <claim> <DER sig>

The signature covers ``sha256(bond txid || topic || claim)`` with the txid in
display byte order. The signer's public key is not stored: it is read from
the P2PKH input of the transaction carrying the record.

An assertion's weight is the value of its bond *while the bond is unspent*.
Weight is resolved against the chain every time it is asked for.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from . import config, crypto, script
from .builder import fund_transaction
from .errors import MalformedInput
from .oracle import ChainOracle
from .tx import Transaction, TxOutput, Utxo, txid_from_bytes, txid_to_bytes

log = logging.getLogger(__name__)

PROTOCOL_TAG = b"ASSERT1"
PROTOCOL_VERSION = 1
MIN_PUSHES = 6


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Assertion:
    """A decoded ASSERT1 record."""
    bond_txid: str
    topic: str
    claim: str
    signature: bytes
    version: int = PROTOCOL_VERSION

    def digest(self) -> bytes:
        return assertion_digest(self.bond_txid, self.topic, self.claim)


@dataclass(frozen=True)
class Backing:
    """Live state of the bond behind an assertion."""
    bond_txid: str
    output_index: int
    value: int
    spent_by: Optional[str]

    @property
    def live(self) -> bool:
        return self.spent_by is None

    @property
    def weight(self) -> int:
        """Satoshis at stake: the bond value if unspent, else zero."""
        return self.value if self.live else 0


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def assertion_digest(bond_txid: str, topic: str, claim: str) -> bytes:
    """``sha256(txid bytes || utf8(topic) || utf8(claim))``."""
    txid_bytes = crypto.from_hex(bond_txid)
    if len(txid_bytes) != 32:
        raise ValueError(f"bond txid must be 32 bytes, got {len(txid_bytes)}")
    return crypto.sha256(txid_bytes + topic.encode("utf-8") + claim.encode("utf-8"))


def sign_assertion(bond_txid: str, topic: str, claim: str, private_key: bytes) -> Assertion:
    """Sign a claim about ``topic`` backed by the bond ``bond_txid``.

    Raises:
        ValueError: When topic or claim is empty, or the txid is malformed.
    """
    if not topic or not claim:
        raise ValueError("topic and claim must be non-empty")
    signature = crypto.sign_digest(assertion_digest(bond_txid, topic, claim), private_key)
    return Assertion(bond_txid.lower(), topic, claim, signature)


def encode_assertion(assertion: Assertion) -> bytes:
    """The locking script of the data output carrying ``assertion``."""
    return script.data_script([
        PROTOCOL_TAG,
        bytes([assertion.version]),
        txid_to_bytes(assertion.bond_txid),
        assertion.topic.encode("utf-8"),
        assertion.claim.encode("utf-8"),
        assertion.signature,
    ])


def create_assertion_script(
    bond_txid: str, topic: str, claim: str, private_key: bytes
) -> bytes:
    """Sign and encode in one step."""
    return encode_assertion(sign_assertion(bond_txid, topic, claim, private_key))


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _utf8(data: bytes, name: str) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as err:
        raise MalformedInput(f"{name} is not valid UTF-8", name) from err


def decode_assertion_script(locking_script: bytes) -> Assertion:
    """Decode an ASSERT1 data script.

    Raises:
        MalformedInput: When the script is not a data carrier, has fewer than
            six pushes, carries another protocol tag or version, or any field
            is malformed (txid length, UTF-8, DER signature).
    """
    pushes = script.data_pushes(locking_script)
    if len(pushes) < MIN_PUSHES:
        raise MalformedInput(
            f"Not enough data pushes: {len(pushes)} (need {MIN_PUSHES})", "pushes"
        )
    if pushes[0] != PROTOCOL_TAG:
        raise MalformedInput(
            f"Not an ASSERT1 record (prefix: {pushes[0][:16]!r})", "tag"
        )
    if len(pushes[1]) != 1 or pushes[1][0] != PROTOCOL_VERSION:
        raise MalformedInput(f"Unsupported ASSERT1 version: {pushes[1].hex()}", "version")
    if len(pushes[2]) != 32:
        raise MalformedInput(
            f"Bond txid must be 32 bytes, got {len(pushes[2])}", "bond_txid"
        )
    signature = pushes[5]
    if not crypto.is_der_signature(signature):
        raise MalformedInput("Signature is not DER-encoded", "signature")
    return Assertion(
        bond_txid=txid_from_bytes(pushes[2]),
        topic=_utf8(pushes[3], "topic"),
        claim=_utf8(pushes[4], "claim"),
        signature=signature,
        version=pushes[1][0],
    )


def find_assertion_output(tx: Transaction) -> int:
    """Index of the first data-carrier output.

    Raises:
        MalformedInput: When the transaction has no data output.
    """
    for i, txout in enumerate(tx.outputs):
        if script.is_data_script(txout.script):
            return i
    raise MalformedInput("No OP_RETURN found in transaction", "data_output")


def decode_assertion_tx(tx: Transaction) -> Assertion:
    return decode_assertion_script(tx.outputs[find_assertion_output(tx)].script)


def recover_signer_key(tx: Transaction, input_index: int = 0) -> bytes:
    """Read the asserter's public key from a P2PKH input.

    Only standard ``<sig> <pubkey>`` unlocking scripts are understood; any
    other input type cannot reveal its key this way.

    Raises:
        MalformedInput: When the input is missing or not a P2PKH spend.
    """
    if not 0 <= input_index < len(tx.inputs):
        raise MalformedInput(f"Transaction has no input {input_index}", "signer")
    chunks = script.parse_script(tx.inputs[input_index].script_sig)
    if len(chunks) != 2 or not all(c.is_push for c in chunks):
        raise MalformedInput("Input is not a P2PKH spend", "signer")
    public_key = chunks[1].data
    if not crypto.is_public_key(public_key):
        raise MalformedInput("Input does not reveal a compressed public key", "signer")
    return public_key


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def verify_assertion(assertion: Assertion, public_key: bytes) -> bool:
    """Check the assertion signature. Never raises."""
    try:
        digest = assertion.digest()
    except (ValueError, TypeError):
        return False
    return crypto.verify_digest(digest, assertion.signature, public_key)


def resolve_backing(
    assertion: Assertion, oracle: ChainOracle, output_index: int = 0
) -> Backing:
    """Look up the bond behind ``assertion`` as it stands now."""
    bond_tx = oracle.get_tx(assertion.bond_txid)
    if not 0 <= output_index < len(bond_tx.outputs):
        raise MalformedInput(
            f"Bond transaction has no output {output_index}", "bond_output"
        )
    spent_by = oracle.get_utxo_spent_status(assertion.bond_txid, output_index)
    return Backing(
        bond_txid=assertion.bond_txid,
        output_index=output_index,
        value=bond_tx.outputs[output_index].value,
        spent_by=spent_by,
    )


def verify_assertion_tx(
    tx: Transaction,
    oracle: Optional[ChainOracle] = None,
    network: str = config.DEFAULT_NETWORK,
) -> dict:
    """Verify an assertion transaction and, with an oracle, its backing.

    Checks:
     1. signature_valid - the record's signature verifies against the key
        revealed by input 0
     2. bond_live       - the referenced bond output is unspent (only when
        an oracle is given)

    Args:
        tx: The transaction carrying the ASSERT1 record.
        oracle: Optional chain oracle for backing resolution.

    Returns:
        A dict with 'valid' (bool), 'checks' (list of dicts with name,
        passed, message), 'assertion', 'signer' (address) and 'backing'.

    Raises:
        MalformedInput: When the record or signer input cannot be decoded.
    """
    assertion = decode_assertion_tx(tx)
    signer_key = recover_signer_key(tx)
    checks: list[dict] = []

    sig_valid = verify_assertion(assertion, signer_key)
    checks.append({
        "name": "signature_valid",
        "passed": sig_valid,
        "message": (
            "Assertion signature is valid"
            if sig_valid
            else "SIGNATURE INVALID - assertion cannot be trusted"
        ),
    })

    backing = None
    if oracle is not None:
        backing = resolve_backing(assertion, oracle)
        checks.append({
            "name": "bond_live",
            "passed": backing.live,
            "message": (
                f"Bond ACTIVE - {backing.value} sats at stake"
                if backing.live
                else f"Bond SPENT by {backing.spent_by} - assertion no longer backed"
            ),
        })

    return {
        "valid": all(c["passed"] for c in checks),
        "checks": checks,
        "assertion": assertion,
        "signer": crypto.public_key_to_address(signer_key, network),
        "backing": backing,
    }


# ---------------------------------------------------------------------------
# Carrier transaction
# ---------------------------------------------------------------------------

def build_assertion_transaction(
    bond_txid: str,
    topic: str,
    claim: str,
    private_key: bytes,
    utxos: Iterable[Utxo],
    fee: int = config.ASSERT_FEE,
) -> Transaction:
    """Build and sign the transaction publishing an assertion.

    The asserter's own P2PKH coins fund it, so input 0 reveals the signing
    key to verifiers.
    """
    record = create_assertion_script(bond_txid, topic, claim, private_key)
    return fund_transaction([TxOutput(0, record)], utxos, private_key, fee)
