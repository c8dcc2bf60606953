"""
Pledge script primitives.

Push-data and script-number encoding, a chunk parser, and the handful of
standard script templates the package needs: pay-to-public-key-hash locking
and unlocking scripts and the ``OP_FALSE OP_RETURN`` data carrier.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterable, Optional

from .errors import MalformedInput

# ---------------------------------------------------------------------------
# Opcodes
# ---------------------------------------------------------------------------

OP_0 = 0x00
OP_FALSE = OP_0
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1NEGATE = 0x4F
OP_1 = 0x51
OP_16 = 0x60

OP_IF = 0x63
OP_ELSE = 0x67
OP_ENDIF = 0x68
OP_VERIFY = 0x69
OP_RETURN = 0x6A

OP_TOALTSTACK = 0x6B
OP_FROMALTSTACK = 0x6C
OP_2DROP = 0x6D
OP_DROP = 0x75
OP_DUP = 0x76
OP_NIP = 0x77
OP_OVER = 0x78
OP_SWAP = 0x7C

OP_CAT = 0x7E
OP_SPLIT = 0x7F
OP_NUM2BIN = 0x80
OP_BIN2NUM = 0x81
OP_SIZE = 0x82

OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88

OP_1SUB = 0x8C
OP_NOT = 0x91
OP_ADD = 0x93
OP_SUB = 0x94
OP_MOD = 0x97
OP_NUMEQUAL = 0x9C
OP_NUMEQUALVERIFY = 0x9D
OP_LESSTHAN = 0x9F
OP_GREATERTHAN = 0xA0
OP_GREATERTHANOREQUAL = 0xA2

OP_HASH160 = 0xA9
OP_HASH256 = 0xAA
OP_CHECKSIG = 0xAC
OP_CHECKSIGVERIFY = 0xAD


@dataclass(frozen=True)
class Chunk:
    """One parsed script element: an opcode, plus its payload for pushes."""
    opcode: int
    data: Optional[bytes] = None

    @property
    def is_push(self) -> bool:
        return self.data is not None


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def push_data(data: bytes) -> bytes:
    """Encode ``data`` as a single push using the shortest push opcode.

    Empty data becomes ``OP_0``. Single bytes are pushed directly rather
    than as ``OP_1``..``OP_16``; scripts that are executed use
    :func:`push_minimal` instead.
    """
    data = bytes(data)
    n = len(data)
    if n == 0:
        return bytes([OP_0])
    if n < OP_PUSHDATA1:
        return bytes([n]) + data
    if n <= 0xFF:
        return bytes([OP_PUSHDATA1, n]) + data
    if n <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + struct.pack("<H", n) + data
    return bytes([OP_PUSHDATA4]) + struct.pack("<I", n) + data


def push_minimal(data: bytes) -> bytes:
    """Encode ``data`` the way executed scripts must push it.

    Empty data is ``OP_0``, the single bytes 0x01..0x10 are ``OP_1``..``OP_16``
    and 0x81 is ``OP_1NEGATE``. Anything else is :func:`push_data`.
    """
    data = bytes(data)
    if not data:
        return bytes([OP_0])
    if len(data) == 1 and 1 <= data[0] <= 16:
        return bytes([OP_1 + data[0] - 1])
    if data == b"\x81":
        return bytes([OP_1NEGATE])
    return push_data(data)


def push_number(value: int) -> bytes:
    """Push ``value`` as a minimally encoded script number."""
    return push_minimal(encode_num(value))


def encode_num(value: int) -> bytes:
    """Minimal little-endian sign-magnitude script number."""
    if value == 0:
        return b""
    negative = value < 0
    magnitude = abs(value)
    out = bytearray()
    while magnitude:
        out.append(magnitude & 0xFF)
        magnitude >>= 8
    if out[-1] & 0x80:
        out.append(0x80 if negative else 0x00)
    elif negative:
        out[-1] |= 0x80
    return bytes(out)


def decode_num(data: bytes) -> int:
    """Inverse of :func:`encode_num`."""
    if not data:
        return 0
    value = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(data) - 1))))
    return value


def build_script(pushes: Iterable[bytes]) -> bytes:
    return b"".join(push_data(p) for p in pushes)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_script(script: bytes) -> list[Chunk]:
    """Split a script into chunks.

    Args:
        script: Raw script bytes.

    Returns:
        The list of chunks in order. Push opcodes carry their payload;
        ``OP_1NEGATE`` and ``OP_1``..``OP_16`` carry the number they push.

    Raises:
        MalformedInput: When a push runs past the end of the script.
    """
    chunks: list[Chunk] = []
    i = 0
    n = len(script)
    while i < n:
        op = script[i]
        i += 1
        if op == OP_0:
            chunks.append(Chunk(op, b""))
            continue
        if op == OP_1NEGATE:
            chunks.append(Chunk(op, b"\x81"))
            continue
        if OP_1 <= op <= OP_16:
            chunks.append(Chunk(op, bytes([op - OP_1 + 1])))
            continue
        if op < OP_PUSHDATA1:
            size = op
        elif op == OP_PUSHDATA1:
            if i + 1 > n:
                raise MalformedInput("Truncated OP_PUSHDATA1 length", "script")
            size = script[i]
            i += 1
        elif op == OP_PUSHDATA2:
            if i + 2 > n:
                raise MalformedInput("Truncated OP_PUSHDATA2 length", "script")
            size = struct.unpack_from("<H", script, i)[0]
            i += 2
        elif op == OP_PUSHDATA4:
            if i + 4 > n:
                raise MalformedInput("Truncated OP_PUSHDATA4 length", "script")
            size = struct.unpack_from("<I", script, i)[0]
            i += 4
        else:
            chunks.append(Chunk(op))
            continue
        if i + size > n:
            raise MalformedInput(
                f"Push of {size} bytes overruns script at offset {i}", "script"
            )
        chunks.append(Chunk(op, bytes(script[i:i + size])))
        i += size
    return chunks


def pushes_only(chunks: list[Chunk], what: str) -> list[bytes]:
    """Return the payloads of ``chunks``, requiring every chunk to be a push."""
    out = []
    for chunk in chunks:
        if not chunk.is_push:
            raise MalformedInput(
                f"{what}: unexpected opcode {chunk.opcode:#04x}", "script"
            )
        out.append(chunk.data)
    return out


# ---------------------------------------------------------------------------
# Standard templates
# ---------------------------------------------------------------------------

def p2pkh_locking_script(pkh: bytes) -> bytes:
    """``OP_DUP OP_HASH160 <pkh> OP_EQUALVERIFY OP_CHECKSIG``."""
    if len(pkh) != 20:
        raise ValueError(f"Public key hash must be 20 bytes, got {len(pkh)}")
    return (
        bytes([OP_DUP, OP_HASH160])
        + push_data(pkh)
        + bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    )


def p2pkh_pkh(script: bytes) -> Optional[bytes]:
    """Public key hash of a P2PKH locking script, or None for other scripts."""
    if (
        len(script) == 25
        and script[0] == OP_DUP
        and script[1] == OP_HASH160
        and script[2] == 20
        and script[23] == OP_EQUALVERIFY
        and script[24] == OP_CHECKSIG
    ):
        return bytes(script[3:23])
    return None


def p2pkh_unlocking_script(signature: bytes, public_key: bytes) -> bytes:
    """``<sig || sighash byte> <pubkey>``."""
    return push_data(signature) + push_data(public_key)


def data_script(pushes: Iterable[bytes]) -> bytes:
    """Unspendable data carrier: ``OP_FALSE OP_RETURN <push>...``."""
    return bytes([OP_FALSE, OP_RETURN]) + build_script(pushes)


def is_data_script(script: bytes) -> bool:
    return len(script) >= 2 and script[0] == OP_FALSE and script[1] == OP_RETURN


def data_pushes(script: bytes) -> list[bytes]:
    """Payloads following the ``OP_FALSE OP_RETURN`` marker.

    Raises:
        MalformedInput: When the script is not a data carrier or contains
            non-push opcodes after the marker.
    """
    if not is_data_script(script):
        raise MalformedInput("Not an OP_FALSE OP_RETURN script", "data_script")
    return pushes_only(parse_script(script[2:]), "data script")
