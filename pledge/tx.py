"""
Pledge transaction model.

Serialization and parsing of ledger transactions, transaction ids, and the
FORKID signature hash (the BIP143-style preimage the network signs). The
preimage's ``hashOutputs`` field is what covenant predicates compare against.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Optional

from . import config, crypto
from .errors import MalformedInput


# ---------------------------------------------------------------------------
# Varints and txid byte order
# ---------------------------------------------------------------------------

def encode_varint(n: int) -> bytes:
    if n < 0:
        raise ValueError("varint cannot be negative")
    if n < 0xFD:
        return struct.pack("<B", n)
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def txid_to_bytes(txid: str) -> bytes:
    """Internal (little-endian) byte order of a display-order txid."""
    raw = crypto.from_hex(txid)
    if len(raw) != 32:
        raise ValueError(f"txid must be 32 bytes, got {len(raw)}")
    return raw[::-1]


def txid_from_bytes(raw: bytes) -> str:
    return crypto.to_hex(bytes(raw[::-1]))


class _Reader:
    """Cursor over raw transaction bytes; every read is bounds-checked."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def read(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise MalformedInput(
                f"Transaction truncated at offset {self.pos} (wanted {n} bytes)",
                "transaction",
            )
        out = self.data[self.pos:self.pos + n]
        self.pos += n
        return out

    def u32(self) -> int:
        return struct.unpack("<I", self.read(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self.read(8))[0]

    def varint(self) -> int:
        first = self.read(1)[0]
        if first < 0xFD:
            return first
        if first == 0xFD:
            return struct.unpack("<H", self.read(2))[0]
        if first == 0xFE:
            return self.u32()
        return self.u64()

    def var_bytes(self) -> bytes:
        return self.read(self.varint())


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Utxo:
    """An unspent output as reported by the chain oracle."""
    txid: str
    index: int
    value: int


@dataclass
class TxOutput:
    """A transaction output: value in satoshis and its locking script."""
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + encode_varint(len(self.script)) + self.script


@dataclass
class TxInput:
    """A transaction input.

    ``prev_script`` and ``prev_value`` describe the output being spent. They
    are not part of the wire format but the signature hash commits to them.
    """
    prev_txid: str
    prev_index: int
    script_sig: bytes = b""
    sequence: int = config.FINAL_SEQUENCE
    prev_script: bytes = b""
    prev_value: int = 0

    def outpoint(self) -> bytes:
        return txid_to_bytes(self.prev_txid) + struct.pack("<I", self.prev_index)

    def serialize(self) -> bytes:
        return (
            self.outpoint()
            + encode_varint(len(self.script_sig))
            + self.script_sig
            + struct.pack("<I", self.sequence)
        )


@dataclass
class Transaction:
    """A ledger transaction."""
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    locktime: int = 0
    version: int = config.TX_VERSION

    # -- wire format --------------------------------------------------------

    def serialize(self) -> bytes:
        parts = [struct.pack("<I", self.version), encode_varint(len(self.inputs))]
        parts.extend(txin.serialize() for txin in self.inputs)
        parts.append(encode_varint(len(self.outputs)))
        parts.extend(txout.serialize() for txout in self.outputs)
        parts.append(struct.pack("<I", self.locktime))
        return b"".join(parts)

    def hex(self) -> str:
        return crypto.to_hex(self.serialize())

    def txid(self) -> str:
        return txid_from_bytes(crypto.hash256(self.serialize()))

    @classmethod
    def parse(cls, raw: bytes) -> "Transaction":
        """Parse raw transaction bytes.

        Raises:
            MalformedInput: When the bytes are truncated or have trailing data.
        """
        reader = _Reader(bytes(raw))
        version = reader.u32()
        inputs = []
        for _ in range(reader.varint()):
            prev_txid = txid_from_bytes(reader.read(32))
            prev_index = reader.u32()
            script_sig = reader.var_bytes()
            sequence = reader.u32()
            inputs.append(TxInput(prev_txid, prev_index, script_sig, sequence))
        outputs = []
        for _ in range(reader.varint()):
            value = reader.u64()
            outputs.append(TxOutput(value, reader.var_bytes()))
        locktime = reader.u32()
        if reader.pos != len(reader.data):
            raise MalformedInput(
                f"{len(reader.data) - reader.pos} trailing bytes after transaction",
                "transaction",
            )
        return cls(inputs=inputs, outputs=outputs, locktime=locktime, version=version)

    @classmethod
    def from_hex(cls, hex_str: str) -> "Transaction":
        try:
            raw = crypto.from_hex(hex_str.strip())
        except (ValueError, TypeError) as err:
            raise MalformedInput(f"Invalid transaction hex: {err}", "transaction") from err
        return cls.parse(raw)

    # -- signature hash -----------------------------------------------------

    def hash_prevouts(self) -> bytes:
        return crypto.hash256(b"".join(txin.outpoint() for txin in self.inputs))

    def hash_sequence(self) -> bytes:
        return crypto.hash256(
            b"".join(struct.pack("<I", txin.sequence) for txin in self.inputs)
        )

    def hash_outputs(self) -> bytes:
        """Double SHA-256 of every serialized output, in order."""
        return crypto.hash256(b"".join(txout.serialize() for txout in self.outputs))

    def sighash_preimage(
        self,
        input_index: int,
        sighash_type: int = config.DEFAULT_SIGHASH,
        prev_script: Optional[bytes] = None,
        prev_value: Optional[int] = None,
    ) -> bytes:
        """Build the FORKID signature-hash preimage for one input.

        Only ``SIGHASH_ALL | SIGHASH_FORKID`` is supported; it is the only
        type the covenants and wallets here produce.

        Args:
            input_index: Index of the input being signed.
            sighash_type: Signature hash type byte.
            prev_script: Script code of the spent output. Defaults to the
                input's ``prev_script``.
            prev_value: Value of the spent output. Defaults to the input's
                ``prev_value``.

        Returns:
            The raw preimage bytes.
        """
        if sighash_type != config.DEFAULT_SIGHASH:
            raise ValueError(f"Unsupported sighash type {sighash_type:#04x}")
        if not 0 <= input_index < len(self.inputs):
            raise IndexError(f"Input index {input_index} out of range")
        txin = self.inputs[input_index]
        script_code = txin.prev_script if prev_script is None else prev_script
        value = txin.prev_value if prev_value is None else prev_value
        return b"".join([
            struct.pack("<I", self.version),
            self.hash_prevouts(),
            self.hash_sequence(),
            txin.outpoint(),
            encode_varint(len(script_code)),
            script_code,
            struct.pack("<Q", value),
            struct.pack("<I", txin.sequence),
            self.hash_outputs(),
            struct.pack("<I", self.locktime),
            struct.pack("<I", sighash_type),
        ])

    def sighash(self, input_index: int, sighash_type: int = config.DEFAULT_SIGHASH,
                prev_script: Optional[bytes] = None,
                prev_value: Optional[int] = None) -> bytes:
        """Digest that input signatures are made over."""
        return crypto.hash256(
            self.sighash_preimage(input_index, sighash_type, prev_script, prev_value)
        )

    def is_final(self, height: int) -> bool:
        """Whether the transaction may be mined at ``height``."""
        if self.locktime == 0:
            return True
        if all(txin.sequence == config.FINAL_SEQUENCE for txin in self.inputs):
            return True
        if self.locktime >= config.LOCKTIME_THRESHOLD:
            # Time-based locks are never produced here; treat as not yet final.
            return False
        return self.locktime <= height
