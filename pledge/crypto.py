"""
Pledge cryptographic primitives.

Provides secp256k1 key handling and ECDSA signing/verification with DER
signatures, the ledger's hash functions (SHA-256, double SHA-256, HASH160),
base58check addresses and WIF keys, and related utility functions.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    decode_dss_signature,
    encode_dss_signature,
)

from . import config

_CURVE = ec.SECP256K1()
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
HALF_ORDER = CURVE_ORDER // 2
_ECDSA_PREHASHED = ec.ECDSA(Prehashed(hashes.SHA256()))

_BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


# ---------------------------------------------------------------------------
# Key pair generation
# ---------------------------------------------------------------------------

def _load_private_key(private_key: bytes) -> ec.EllipticCurvePrivateKey:
    if not isinstance(private_key, (bytes, bytearray)) or len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")
    value = int.from_bytes(private_key, "big")
    if not 1 <= value < CURVE_ORDER:
        raise ValueError("Private key is out of range for secp256k1")
    return ec.derive_private_key(value, _CURVE)


def _compressed(public_key_obj: ec.EllipticCurvePublicKey) -> bytes:
    return public_key_obj.public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.CompressedPoint,
    )


def generate_key_pair() -> dict:
    """Generate a new secp256k1 key pair.

    Returns:
        A dict with keys:
          - private_key: bytes (32 bytes)
          - public_key: bytes (33-byte compressed point)
          - public_key_hex: str (66-char hex string)
    """
    private_key_obj = ec.generate_private_key(_CURVE)
    private_key = private_key_obj.private_numbers().private_value.to_bytes(32, "big")
    public_key = _compressed(private_key_obj.public_key())
    return {
        "private_key": private_key,
        "public_key": public_key,
        "public_key_hex": to_hex(public_key),
    }


def key_pair_from_private_key(private_key: bytes) -> dict:
    """Reconstruct a key pair from an existing 32-byte private key.

    Raises:
        ValueError: When the key is not 32 bytes or not a valid scalar.
    """
    private_key_obj = _load_private_key(private_key)
    public_key = _compressed(private_key_obj.public_key())
    return {
        "private_key": bytes(private_key),
        "public_key": public_key,
        "public_key_hex": to_hex(public_key),
    }


def public_key_from_private_key(private_key: bytes) -> bytes:
    """Compressed public key for a private key."""
    return key_pair_from_private_key(private_key)["public_key"]


def is_public_key(data: bytes) -> bool:
    """Return True if ``data`` is a valid compressed secp256k1 point."""
    if not isinstance(data, (bytes, bytearray)) or len(data) != 33:
        return False
    if data[0] not in (0x02, 0x03):
        return False
    try:
        ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, bytes(data))
    except ValueError:
        return False
    return True


# ---------------------------------------------------------------------------
# Signing and verification
# ---------------------------------------------------------------------------

def sign_digest(digest: bytes, private_key: bytes) -> bytes:
    """Sign a 32-byte digest with ECDSA over secp256k1.

    The digest is signed as-is (no further hashing). The signature is
    normalised to low-S, as the network's standardness rules require.

    Args:
        digest: The 32-byte message digest.
        private_key: The 32-byte private key.

    Returns:
        A DER-encoded signature.

    Raises:
        TypeError: When digest is not bytes.
        ValueError: When digest is not 32 bytes or the key is invalid.
    """
    if not isinstance(digest, (bytes, bytearray)):
        raise TypeError(
            f"sign_digest() expects digest to be bytes, got {type(digest).__name__}"
        )
    if len(digest) != 32:
        raise ValueError(f"sign_digest() expects a 32-byte digest, got {len(digest)}")
    private_key_obj = _load_private_key(private_key)
    der = private_key_obj.sign(bytes(digest), _ECDSA_PREHASHED)
    r, s = decode_dss_signature(der)
    if s > HALF_ORDER:
        s = CURVE_ORDER - s
    return encode_dss_signature(r, s)


def verify_digest(digest: bytes, signature: bytes, public_key: bytes) -> bool:
    """Verify a DER signature over a 32-byte digest.

    This function never raises on untrusted inputs -- malformed keys,
    malformed signatures and wrong digests all return False.

    Args:
        digest: The 32-byte digest that was signed.
        signature: The DER-encoded signature.
        public_key: The signer's compressed public key.

    Returns:
        True if the signature is valid, False otherwise.
    """
    try:
        if len(digest) != 32:
            return False
        public_key_obj = ec.EllipticCurvePublicKey.from_encoded_point(
            _CURVE, bytes(public_key)
        )
        public_key_obj.verify(bytes(signature), bytes(digest), _ECDSA_PREHASHED)
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def is_der_signature(signature: bytes) -> bool:
    """Return True if ``signature`` parses as a DER ECDSA signature."""
    try:
        r, s = decode_dss_signature(bytes(signature))
    except (ValueError, TypeError):
        return False
    return 0 < r < CURVE_ORDER and 0 < s < CURVE_ORDER


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def sha256(data: bytes) -> bytes:
    """Single SHA-256 digest."""
    return hashlib.sha256(data).digest()


def hash256(data: bytes) -> bytes:
    """Double SHA-256, the ledger's transaction and output hash."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def ripemd160(data: bytes) -> bytes:
    return hashlib.new("ripemd160", data).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD-160 of SHA-256, used for public key hashes.

    Args:
        data: Usually a 33-byte compressed public key.

    Returns:
        The 20-byte hash.
    """
    return ripemd160(sha256(data))


# ---------------------------------------------------------------------------
# Base58check, addresses and WIF
# ---------------------------------------------------------------------------

def base58_encode(data: bytes) -> str:
    n = int.from_bytes(data, "big")
    result = ""
    while n > 0:
        n, r = divmod(n, 58)
        result = _BASE58_ALPHABET[r] + result
    for byte in data:
        if byte == 0:
            result = _BASE58_ALPHABET[0] + result
        else:
            break
    return result


def base58_decode(text: str) -> bytes:
    n = 0
    for ch in text:
        index = _BASE58_ALPHABET.find(ch)
        if index < 0:
            raise ValueError(f"Invalid base58 character: {ch!r}")
        n = n * 58 + index
    body = n.to_bytes((n.bit_length() + 7) // 8, "big") if n else b""
    pad = len(text) - len(text.lstrip(_BASE58_ALPHABET[0]))
    return b"\x00" * pad + body


def base58check_encode(payload: bytes) -> str:
    return base58_encode(payload + hash256(payload)[:4])


def base58check_decode(text: str) -> bytes:
    """Decode a base58check string and verify its checksum.

    Raises:
        ValueError: When the string is not base58 or the checksum is wrong.
    """
    if not isinstance(text, str) or not text:
        raise ValueError("base58check_decode() expects a non-empty string")
    raw = base58_decode(text)
    if len(raw) < 5:
        raise ValueError("base58check payload too short")
    payload, checksum = raw[:-4], raw[-4:]
    if not constant_time_equal(hash256(payload)[:4], checksum):
        raise ValueError("base58check checksum mismatch")
    return payload


def _network(network: str) -> dict:
    try:
        return config.NETWORKS[network]
    except KeyError:
        raise ValueError(f"Unknown network: {network}") from None


def address_from_pkh(pkh: bytes, network: str = config.DEFAULT_NETWORK) -> str:
    """Encode a 20-byte public key hash as a P2PKH address."""
    if len(pkh) != 20:
        raise ValueError(f"Public key hash must be 20 bytes, got {len(pkh)}")
    version = _network(network)["pubkey_version"]
    return base58check_encode(bytes([version]) + bytes(pkh))


def public_key_to_address(public_key: bytes, network: str = config.DEFAULT_NETWORK) -> str:
    return address_from_pkh(hash160(public_key), network)


def pkh_from_address(address: str, network: Optional[str] = None) -> bytes:
    """Decode a P2PKH address to its 20-byte public key hash.

    Args:
        address: A base58check P2PKH address.
        network: When given, the address version must belong to it.

    Returns:
        The public key hash.

    Raises:
        ValueError: When the address is malformed or on another network.
    """
    payload = base58check_decode(address)
    if len(payload) != 21:
        raise ValueError(f"Invalid address length: {address}")
    version = payload[0]
    if network is not None:
        allowed = {_network(network)["pubkey_version"]}
    else:
        allowed = {net["pubkey_version"] for net in config.NETWORKS.values()}
    if version not in allowed:
        raise ValueError(f"Address version {version:#04x} is not a P2PKH address")
    return payload[1:]


def private_key_from_wif(wif: str) -> bytes:
    """Decode a WIF private key (compressed or uncompressed form).

    Raises:
        ValueError: When the WIF is malformed or has an unknown version.
    """
    payload = base58check_decode(wif)
    versions = {net["wif_version"] for net in config.NETWORKS.values()}
    if payload[0] not in versions:
        raise ValueError(f"Unknown WIF version {payload[0]:#04x}")
    if len(payload) == 34 and payload[-1] == 0x01:
        key = payload[1:33]
    elif len(payload) == 33:
        key = payload[1:]
    else:
        raise ValueError("Invalid WIF payload length")
    _load_private_key(key)
    return key


def private_key_to_wif(private_key: bytes, network: str = config.DEFAULT_NETWORK) -> str:
    _load_private_key(private_key)
    version = _network(network)["wif_version"]
    return base58check_encode(bytes([version]) + bytes(private_key) + b"\x01")


# ---------------------------------------------------------------------------
# Hex encoding / decoding
# ---------------------------------------------------------------------------

def to_hex(data: bytes) -> str:
    """Encode a byte sequence to a lowercase hex string."""
    if not isinstance(data, (bytes, bytearray)):
        raise TypeError(
            f"to_hex() expects bytes, got {type(data).__name__}"
        )
    return data.hex()


def from_hex(hex_str: str) -> bytes:
    """Decode a hex string to bytes.

    Raises:
        ValueError: When the hex string has odd length or invalid characters.
    """
    if not isinstance(hex_str, str):
        raise TypeError(
            f"from_hex() expects a string, got {type(hex_str).__name__}"
        )
    if len(hex_str) % 2 != 0:
        raise ValueError(
            f"Invalid hex string: odd length ({len(hex_str)})"
        )
    return bytes.fromhex(hex_str)


# ---------------------------------------------------------------------------
# Constant-time comparison
# ---------------------------------------------------------------------------

def constant_time_equal(a: bytes, b: bytes) -> bool:
    """Constant-time comparison of two byte sequences."""
    return hmac.compare_digest(a, b)


# ---------------------------------------------------------------------------
# Timestamp
# ---------------------------------------------------------------------------

def timestamp() -> str:
    """Create a timestamp string in ISO 8601 format (UTC).

    Returns:
        An ISO 8601 timestamp string like ``"2025-01-15T12:00:00.000Z"``.
    """
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
