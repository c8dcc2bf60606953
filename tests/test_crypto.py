"""
Tests for pledge.crypto: keys, ECDSA/DER, hashes, base58check and WIF.
"""

from __future__ import annotations

import re

import pytest
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from pledge import crypto

GENERATOR_PUB = "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
KEY_ONE = (1).to_bytes(32, "big")


class TestKeyPairGeneration:
    """Key pair generation and derivation."""

    def test_generate_key_pair_correct_sizes(self):
        kp = crypto.generate_key_pair()
        assert len(kp["private_key"]) == 32
        assert len(kp["public_key"]) == 33
        assert len(kp["public_key_hex"]) == 66

    def test_public_key_is_compressed_point(self):
        kp = crypto.generate_key_pair()
        assert kp["public_key"][0] in (0x02, 0x03)
        assert re.fullmatch(r"[0-9a-f]{66}", kp["public_key_hex"])

    def test_generate_key_pair_is_random(self):
        kp1 = crypto.generate_key_pair()
        kp2 = crypto.generate_key_pair()
        assert kp1["private_key"] != kp2["private_key"]

    def test_key_pair_from_private_key_deterministic(self):
        kp = crypto.generate_key_pair()
        kp2 = crypto.key_pair_from_private_key(kp["private_key"])
        assert kp2["public_key"] == kp["public_key"]

    def test_known_public_key(self):
        assert crypto.public_key_from_private_key(KEY_ONE).hex() == GENERATOR_PUB

    def test_invalid_length_rejected(self):
        with pytest.raises(ValueError, match="32 bytes"):
            crypto.key_pair_from_private_key(b"\x01" * 16)

    def test_zero_key_rejected(self):
        with pytest.raises(ValueError, match="out of range"):
            crypto.key_pair_from_private_key(b"\x00" * 32)

    def test_is_public_key(self):
        assert crypto.is_public_key(bytes.fromhex(GENERATOR_PUB))
        assert not crypto.is_public_key(b"\x02" + b"\x00" * 31)
        assert not crypto.is_public_key(b"\x04" + b"\x11" * 32)
        assert not crypto.is_public_key("not bytes")


class TestSignAndVerify:
    """ECDSA signing over 32-byte digests."""

    def test_sign_and_verify(self):
        kp = crypto.generate_key_pair()
        digest = crypto.sha256(b"hello")
        sig = crypto.sign_digest(digest, kp["private_key"])
        assert crypto.verify_digest(digest, sig, kp["public_key"])

    def test_signature_is_low_s(self):
        kp = crypto.generate_key_pair()
        for i in range(8):
            sig = crypto.sign_digest(crypto.sha256(bytes([i])), kp["private_key"])
            _, s = decode_dss_signature(sig)
            assert s <= crypto.HALF_ORDER

    def test_signature_is_der(self):
        kp = crypto.generate_key_pair()
        sig = crypto.sign_digest(crypto.sha256(b"x"), kp["private_key"])
        assert sig[0] == 0x30
        assert crypto.is_der_signature(sig)

    def test_wrong_key_fails(self):
        kp1 = crypto.generate_key_pair()
        kp2 = crypto.generate_key_pair()
        digest = crypto.sha256(b"hello")
        sig = crypto.sign_digest(digest, kp1["private_key"])
        assert not crypto.verify_digest(digest, sig, kp2["public_key"])

    def test_wrong_digest_fails(self):
        kp = crypto.generate_key_pair()
        sig = crypto.sign_digest(crypto.sha256(b"a"), kp["private_key"])
        assert not crypto.verify_digest(crypto.sha256(b"b"), sig, kp["public_key"])

    def test_verify_never_raises_on_garbage(self):
        kp = crypto.generate_key_pair()
        digest = crypto.sha256(b"a")
        assert not crypto.verify_digest(digest, b"\x30\x01", kp["public_key"])
        assert not crypto.verify_digest(digest, b"", b"\x02" * 33)
        assert not crypto.verify_digest(b"short", b"\x30", kp["public_key"])

    def test_sign_rejects_non_bytes_digest(self):
        kp = crypto.generate_key_pair()
        with pytest.raises(TypeError):
            crypto.sign_digest("abc", kp["private_key"])  # type: ignore

    def test_sign_rejects_wrong_digest_length(self):
        kp = crypto.generate_key_pair()
        with pytest.raises(ValueError, match="32-byte digest"):
            crypto.sign_digest(b"\x00" * 31, kp["private_key"])

    def test_is_der_signature_rejects_garbage(self):
        assert not crypto.is_der_signature(b"\x01\x02\x03")
        assert not crypto.is_der_signature(b"")


class TestHashing:
    """Ledger hash functions."""

    def test_sha256_empty(self):
        assert crypto.sha256(b"").hex() == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )

    def test_hash256_empty(self):
        assert crypto.hash256(b"").hex() == (
            "5df6e0e2761359d30a8275058e299fcc0381534545f55cf43e41983f5d4c9456"
        )

    def test_ripemd160_known_vectors(self):
        assert crypto.ripemd160(b"").hex() == "9c1185a5c5e9fc54612808977ee8f548b2258d31"
        assert crypto.ripemd160(b"abc").hex() == "8eb208f7e05d987a9b044a8e98c6b087f15a0bfc"

    def test_hash160_of_generated_key(self):
        kp = crypto.generate_key_pair()
        pkh = crypto.hash160(kp["public_key"])
        assert len(pkh) == 20
        assert pkh == crypto.ripemd160(crypto.sha256(kp["public_key"]))

    def test_hash160_empty(self):
        assert crypto.hash160(b"").hex() == "b472a266d0bd89c13706a4132ccfb16f7c3b9fcb"

    def test_hash160_generator_key(self):
        pkh = crypto.hash160(bytes.fromhex(GENERATOR_PUB))
        assert pkh.hex() == "751e76e8199196d454941c45d1b3a323f1433bd6"


class TestAddressesAndWif:
    """Base58check addresses and WIF keys."""

    def test_known_address(self):
        pub = crypto.public_key_from_private_key(KEY_ONE)
        assert crypto.public_key_to_address(pub) == "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"

    def test_known_wif(self):
        wif = "KwDiBf89QgGbjEhKnhXJuH7LrciVrZi3qYjgd9M7rFU73sVHnoWn"
        assert crypto.private_key_to_wif(KEY_ONE) == wif
        assert crypto.private_key_from_wif(wif) == KEY_ONE

    def test_address_round_trip(self):
        kp = crypto.generate_key_pair()
        pkh = crypto.hash160(kp["public_key"])
        for network in ("main", "test"):
            address = crypto.address_from_pkh(pkh, network)
            assert crypto.pkh_from_address(address, network) == pkh

    def test_testnet_address_rejected_on_mainnet(self):
        pkh = crypto.hash160(crypto.generate_key_pair()["public_key"])
        address = crypto.address_from_pkh(pkh, "test")
        with pytest.raises(ValueError, match="not a P2PKH address"):
            crypto.pkh_from_address(address, "main")

    def test_bad_checksum_rejected(self):
        address = "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"
        tampered = address[:-1] + ("J" if address[-1] != "J" else "K")
        with pytest.raises(ValueError):
            crypto.pkh_from_address(tampered)

    def test_invalid_base58_character(self):
        with pytest.raises(ValueError, match="base58"):
            crypto.base58check_decode("0OIl")

    def test_leading_zero_bytes_preserved(self):
        data = b"\x00\x00\x01\x02"
        assert crypto.base58_decode(crypto.base58_encode(data)) == data

    def test_unknown_network(self):
        with pytest.raises(ValueError, match="Unknown network"):
            crypto.address_from_pkh(b"\x00" * 20, "regtest")


class TestUtilities:
    """Hex helpers, constant-time compare and timestamps."""

    def test_hex_round_trip(self):
        assert crypto.from_hex(crypto.to_hex(b"\x00\xff")) == b"\x00\xff"

    def test_from_hex_odd_length(self):
        with pytest.raises(ValueError, match="odd length"):
            crypto.from_hex("abc")

    def test_to_hex_rejects_str(self):
        with pytest.raises(TypeError):
            crypto.to_hex("abc")  # type: ignore

    def test_constant_time_equal(self):
        assert crypto.constant_time_equal(b"abc", b"abc")
        assert not crypto.constant_time_equal(b"abc", b"abd")

    def test_timestamp_format(self):
        assert re.fullmatch(
            r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z", crypto.timestamp()
        )
