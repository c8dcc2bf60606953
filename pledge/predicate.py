"""
Pledge locking predicates.

Compiles a contract's operation table into the script the ledger runs when
the contract output is spent. The unlocking script supplies::

    <sighash preimage> <signature || sighash byte> <amount> <method selector>

Each branch checks the role signature, then proves that the pushed preimage
belongs to the spending input. It derives an ECDSA signature from the
preimage with private key 1 and nonce 1 and checks it against the generator
point with ``OP_CHECKSIGVERIFY``; that only passes when the preimage hashes
to the input's real signature hash. The branch then reads the spent value,
the input sequence, ``hashOutputs`` and ``nLockTime`` out of the preimage
and checks them against the operation.

Uses the opcodes the ledger re-enabled at Genesis (``OP_CAT``,
``OP_SPLIT``, ``OP_NUM2BIN``, ``OP_BIN2NUM`` and big-number arithmetic).
"""

from __future__ import annotations

import struct
from typing import Optional, Sequence

from . import config, crypto, script
from .commitment import build_destination_output
from .script import (
    OP_0,
    OP_1,
    OP_1SUB,
    OP_2DROP,
    OP_ADD,
    OP_BIN2NUM,
    OP_CAT,
    OP_CHECKSIGVERIFY,
    OP_DROP,
    OP_DUP,
    OP_ELSE,
    OP_ENDIF,
    OP_EQUAL,
    OP_EQUALVERIFY,
    OP_FROMALTSTACK,
    OP_GREATERTHAN,
    OP_GREATERTHANOREQUAL,
    OP_HASH256,
    OP_IF,
    OP_LESSTHAN,
    OP_MOD,
    OP_NIP,
    OP_NOT,
    OP_NUM2BIN,
    OP_NUMEQUAL,
    OP_NUMEQUALVERIFY,
    OP_OVER,
    OP_SIZE,
    OP_SPLIT,
    OP_SUB,
    OP_SWAP,
    OP_TOALTSTACK,
    OP_VERIFY,
)

GENERATOR_PUB = bytes.fromhex(
    "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
)
_GENERATOR_X = int.from_bytes(GENERATOR_PUB[1:], "big")

# DER header and r (the generator's x coordinate) of every derived signature.
_DER_PREFIX = bytes([0x30, 0x44, 0x02, 0x20]) + GENERATOR_PUB[1:] + bytes([0x02, 0x20])
_S_MIN = 1 << 248

# value (8) | nSequence (4) | hashOutputs (32) | nLockTime (4) | sighash type (4)
PREIMAGE_TAIL = 52


# ---------------------------------------------------------------------------
# Preimage signatures
# ---------------------------------------------------------------------------

def preimage_signature(preimage: bytes) -> Optional[bytes]:
    """The signature the predicate derives from ``preimage``.

    With private key 1 and nonce 1 the signature is ``r = Gx`` and
    ``s = z + Gx mod n``. The script always encodes ``s`` as 32 bytes, so
    only values in ``[2**248, n/2]`` give a valid low-S DER signature.

    Returns:
        The signature with its sighash byte, or None when ``s`` falls
        outside that range. The spender must then change the preimage
        (the input sequence) and try again.
    """
    z = int.from_bytes(crypto.hash256(preimage), "big")
    s = (z + _GENERATOR_X) % crypto.CURVE_ORDER
    if not _S_MIN <= s <= crypto.HALF_ORDER:
        return None
    return _DER_PREFIX + s.to_bytes(32, "big") + bytes([config.DEFAULT_SIGHASH])


# ---------------------------------------------------------------------------
# Script fragments
# ---------------------------------------------------------------------------

def _ops(*codes: int) -> bytes:
    return bytes(codes)


def _reverse(size: int) -> bytes:
    """Reverse the byte order of the ``size``-byte item on top of the stack."""
    return _ops(OP_1, OP_SPLIT) * (size - 1) + _ops(OP_SWAP, OP_CAT) * (size - 1)


# Unsigned little-endian bytes on top of the stack to a script number.
_UNSIGNED_TO_NUM = script.push_data(b"\x00") + _ops(OP_CAT, OP_BIN2NUM)


def drop_items(count: int) -> bytes:
    return _ops(OP_2DROP) * (count // 2) + _ops(OP_DROP) * (count % 2)


def push_tx() -> bytes:
    """Consume the preimage on top of the stack; fail unless it is the real one."""
    return b"".join([
        _ops(OP_HASH256),
        _reverse(32),
        _UNSIGNED_TO_NUM,
        script.push_number(_GENERATOR_X),
        _ops(OP_ADD),
        script.push_number(crypto.CURVE_ORDER),
        _ops(OP_MOD),
        script.push_number(32),
        _ops(OP_NUM2BIN),
        _reverse(32),
        script.push_data(_DER_PREFIX),
        _ops(OP_SWAP, OP_CAT),
        script.push_data(bytes([config.DEFAULT_SIGHASH])),
        _ops(OP_CAT),
        script.push_data(GENERATOR_PUB),
        _ops(OP_CHECKSIGVERIFY),
    ])


def compile_branch(signer_pub: bytes, recipient_pkh: bytes, gate: Optional[int]) -> bytes:
    """Script for one operation.

    Runs with ``<preimage> <signature> <amount>`` on the stack and leaves a
    single boolean: whether the transaction's outputs are exactly the
    payout of ``amount`` to ``recipient_pkh``.

    Args:
        signer_pub: Compressed public key of the role that must sign.
        recipient_pkh: Public key hash the payout must go to.
        gate: Minimum nLockTime height, or None for ungated operations.
    """
    parts = [
        # role signature, ALL|FORKID only
        _ops(OP_SWAP, OP_DUP, OP_SIZE, OP_1SUB, OP_SPLIT, OP_NIP),
        script.push_data(bytes([config.DEFAULT_SIGHASH])),
        _ops(OP_EQUALVERIFY),
        script.push_data(signer_pub),
        _ops(OP_CHECKSIGVERIFY),
        # <preimage> <amount>
        _ops(OP_OVER),
        push_tx(),
        _ops(OP_SWAP, OP_SIZE),
        script.push_number(PREIMAGE_TAIL),
        _ops(OP_SUB, OP_SPLIT, OP_NIP),
        script.push_number(8),
        _ops(OP_SPLIT),
        script.push_number(4),
        _ops(OP_SPLIT),
        script.push_number(32),
        _ops(OP_SPLIT),
        script.push_number(4),
        _ops(OP_SPLIT, OP_DROP),
        # <amount> <value> <sequence> <hashOutputs> <locktime>
    ]
    if gate is None:
        parts.append(_ops(OP_DROP, OP_TOALTSTACK, OP_DROP))
    else:
        parts += [
            _UNSIGNED_TO_NUM,
            _ops(OP_DUP),
            script.push_number(gate),
            _ops(OP_GREATERTHANOREQUAL, OP_VERIFY),
            script.push_number(config.LOCKTIME_THRESHOLD),
            _ops(OP_LESSTHAN, OP_VERIFY, OP_TOALTSTACK),
            script.push_data(struct.pack("<I", config.FINAL_SEQUENCE)),
            _ops(OP_EQUAL, OP_NOT, OP_VERIFY),
        ]
    parts += [
        # <amount> <value>
        _UNSIGNED_TO_NUM,
        _ops(OP_OVER, OP_GREATERTHANOREQUAL, OP_VERIFY),
        _ops(OP_DUP, OP_0, OP_GREATERTHAN, OP_VERIFY),
        script.push_number(8),
        _ops(OP_NUM2BIN),
        script.push_data(build_destination_output(recipient_pkh, 0)[8:]),
        _ops(OP_CAT, OP_HASH256, OP_FROMALTSTACK, OP_EQUAL),
    ]
    return b"".join(parts)


def compile_predicate(branches: Sequence[bytes]) -> bytes:
    """Dispatch on the method selector to one branch per operation.

    ``branches[i]`` runs for selector ``i``; any other selector fails.
    """
    if not branches:
        raise ValueError("A predicate needs at least one branch")
    last = len(branches) - 1
    out = bytearray()
    for selector, body in enumerate(branches[:-1]):
        out += _ops(OP_DUP) + script.push_number(selector) + _ops(OP_NUMEQUAL, OP_IF, OP_DROP)
        out += body + _ops(OP_ELSE)
    out += script.push_number(last) + _ops(OP_NUMEQUALVERIFY) + branches[-1]
    out += _ops(OP_ENDIF) * last
    return bytes(out)
