"""
Cryptographic primitives for fairalloc.

This module provides:
- Hashing functions (SHA-256, Keccak-256)
- Fixed-width integer encoding used in every hashed preimage
- Key generation and management
- Digital signatures (ECDSA on secp256k1)

Design Notes:
-------------
SHA-256 is the single hash behind commitments, VRF outputs, entropy mixing
and the entry transcript, so any verifier can recompute every value with a
standard library.

secp256k1 is used for the organizer key: an organizer capability is an
ECDSA signature that the engine checks before any administrative call.
Keccak-256 is retained for Ethereum-style address display of that key.
"""

import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional

from Crypto.Hash import keccak
from py_ecc.secp256k1 import secp256k1


# =============================================================================
# Constants
# =============================================================================

# secp256k1 curve order (number of points on the curve)
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

HASH_SIZE = 32
U64_MAX = 2**64 - 1


# =============================================================================
# Hashing
# =============================================================================


def sha256(data: bytes) -> bytes:
    """
    Compute SHA-256 hash.

    Used for: commitments, VRF outputs, entropy mixing, Merkle transcript.
    """
    return hashlib.sha256(data).digest()


def keccak256(data: bytes) -> bytes:
    """
    Compute Keccak-256 hash (Ethereum-style).

    Used for: organizer address derivation.
    """
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def hash_domain(domain: bytes, *parts: bytes) -> bytes:
    """SHA-256 over a domain tag followed by the concatenated parts."""
    return sha256(domain + b"".join(parts))


# =============================================================================
# Encoding
# =============================================================================


def u64(value: int) -> bytes:
    """Encode a non-negative integer as 8 big-endian bytes."""
    if value < 0 or value > U64_MAX:
        raise ValueError(f"Value {value} does not fit in 64 bits")
    return value.to_bytes(8, byteorder="big")


def bytes_to_u128(data: bytes) -> int:
    """Interpret the first 16 bytes as a big-endian 128-bit integer."""
    if len(data) < 16:
        raise ValueError(f"Need at least 16 bytes, got {len(data)}")
    return int.from_bytes(data[:16], byteorder="big")


def xor_bytes32(*values: int) -> bytes:
    """XOR integers together and encode the result as 32 big-endian bytes."""
    acc = 0
    for value in values:
        acc ^= value
    return (acc % (1 << 256)).to_bytes(32, byteorder="big")


# =============================================================================
# Key Generation
# =============================================================================


@dataclass
class KeyPair:
    """
    An ECDSA keypair on secp256k1.

    Attributes:
        private_key: 32-byte secret key (integer in [1, order-1])
        public_key: 64-byte uncompressed public key (x || y coordinates)
    """
    private_key: bytes  # 32 bytes
    public_key: bytes   # 64 bytes (uncompressed, no 0x04 prefix)

    @property
    def address(self) -> str:
        """
        Derive address from public key (Ethereum-style).

        Address = last 20 bytes of keccak256(public_key), hex-encoded with 0x prefix.
        """
        hash_bytes = keccak256(self.public_key)
        return "0x" + hash_bytes[-20:].hex()

    @property
    def private_key_hex(self) -> str:
        """Return private key as hex string."""
        return self.private_key.hex()

    @property
    def public_key_hex(self) -> str:
        """Return public key as hex string."""
        return self.public_key.hex()


def generate_keypair() -> KeyPair:
    """
    Generate a new random keypair.

    Uses cryptographically secure random number generator.
    """
    private_key_int = secrets.randbelow(SECP256K1_ORDER - 1) + 1
    private_key = private_key_int.to_bytes(32, byteorder="big")
    return KeyPair(private_key=private_key, public_key=private_key_to_public_key(private_key))


def private_key_to_public_key(private_key: bytes) -> bytes:
    """
    Derive public key from private key.

    Args:
        private_key: 32-byte private key

    Returns:
        64-byte uncompressed public key
    """
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")

    public_key_point = secp256k1.privtopub(private_key)
    x_bytes = public_key_point[0].to_bytes(32, byteorder="big")
    y_bytes = public_key_point[1].to_bytes(32, byteorder="big")
    return x_bytes + y_bytes


def address_from_public_key(public_key: bytes) -> str:
    """0x-prefixed address for a 64-byte public key."""
    return "0x" + keccak256(public_key)[-20:].hex()


# =============================================================================
# Digital Signatures (ECDSA)
# =============================================================================


def sign(message_hash: bytes, private_key: bytes) -> bytes:
    """
    Sign a message hash using ECDSA on secp256k1.

    Args:
        message_hash: 32-byte hash of the message to sign
        private_key: 32-byte private key

    Returns:
        64-byte signature (r || s, each 32 bytes)
    """
    if len(message_hash) != 32:
        raise ValueError("Message hash must be 32 bytes")
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")

    v, r, s = secp256k1.ecdsa_raw_sign(message_hash, private_key)

    # Low-s normalization (BIP 62 / EIP-2)
    if s > SECP256K1_ORDER // 2:
        s = SECP256K1_ORDER - s

    return r.to_bytes(32, byteorder="big") + s.to_bytes(32, byteorder="big")


def verify(message_hash: bytes, signature: bytes, public_key: bytes) -> bool:
    """
    Verify an ECDSA signature.

    Args:
        message_hash: 32-byte hash of the signed message
        signature: 64-byte signature (r || s)
        public_key: 64-byte public key (x || y)

    Returns:
        True if signature is valid, False otherwise
    """
    if len(message_hash) != 32 or len(signature) != 64 or len(public_key) != 64:
        return False

    r = int.from_bytes(signature[:32], byteorder="big")
    s = int.from_bytes(signature[32:], byteorder="big")
    if r < 1 or r >= SECP256K1_ORDER:
        return False
    if s < 1 or s >= SECP256K1_ORDER:
        return False

    x = int.from_bytes(public_key[:32], byteorder="big")
    y = int.from_bytes(public_key[32:], byteorder="big")
    public_key_point = (x, y)

    # No recovery id is carried, so try both (Ethereum v=27/28)
    for v in (27, 28):
        try:
            recovered = secp256k1.ecdsa_raw_recover(message_hash, (v, r, s))
        except Exception:
            continue
        if recovered == public_key_point:
            return True

    return False


# =============================================================================
# Utility Functions
# =============================================================================


def bytes_to_hex(data: bytes) -> str:
    """Convert bytes to hex string with 0x prefix."""
    return "0x" + data.hex()


def hex_to_bytes(hex_str: str) -> bytes:
    """Convert hex string (with or without 0x prefix) to bytes."""
    if hex_str.startswith("0x") or hex_str.startswith("0X"):
        hex_str = hex_str[2:]
    return bytes.fromhex(hex_str)


def short_hex(data: bytes, length: int = 8) -> str:
    """Hex prefix for log lines."""
    return data.hex()[:length]
