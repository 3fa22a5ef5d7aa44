"""Key derivation and Curve25519 helpers for the Noise handshake."""

from __future__ import annotations

import hashlib
import hmac
import os
from typing import Tuple

from nacl.bindings import crypto_scalarmult, crypto_scalarmult_base
from nacl.exceptions import CryptoError

NOISE_PUBLIC_KEY_SIZE = 32
NOISE_PRIVATE_KEY_SIZE = 32
BLAKE2S_SIZE = 32


class InvalidPublicKeyError(ValueError):
    """Raised when a Diffie-Hellman exchange yields the all-zero secret."""

    def __init__(self, message: str = "invalid public key") -> None:
        super().__init__(message)


def hmac1(key: bytes, data: bytes) -> bytes:
    """Return HMAC-BLAKE2s of ``data`` under ``key``."""
    return hmac.new(bytes(key), bytes(data), hashlib.blake2s).digest()


def hmac2(key: bytes, in0: bytes, in1: bytes) -> bytes:
    """Return HMAC-BLAKE2s of ``in0`` followed by ``in1`` under ``key``."""
    mac = hmac.new(bytes(key), bytes(in0), hashlib.blake2s)
    mac.update(bytes(in1))
    return mac.digest()


def kdf1(key: bytes, data: bytes) -> bytes:
    """Derive one 32-byte key with HKDF over HMAC-BLAKE2s."""
    return hmac1(hmac1(key, data), b"\x01")


def kdf2(key: bytes, data: bytes) -> Tuple[bytes, bytes]:
    """Derive two 32-byte keys with HKDF over HMAC-BLAKE2s."""
    prk = hmac1(key, data)
    t0 = hmac1(prk, b"\x01")
    t1 = hmac2(prk, t0, b"\x02")
    return t0, t1


def kdf3(key: bytes, data: bytes) -> Tuple[bytes, bytes, bytes]:
    """Derive three 32-byte keys with HKDF over HMAC-BLAKE2s."""
    prk = hmac1(key, data)
    t0 = hmac1(prk, b"\x01")
    t1 = hmac2(prk, t0, b"\x02")
    t2 = hmac2(prk, t1, b"\x03")
    return t0, t1, t2


def is_zero(val: bytes) -> bool:
    """Report, in constant time, whether every byte of ``val`` is zero."""
    data = bytes(val)
    return hmac.compare_digest(data, bytes(len(data)))


def _check_key(key: bytes, size: int, what: str) -> bytes:
    data = bytes(key)
    if len(data) != size:
        raise ValueError(f"{what} must be {size} bytes, got {len(data)}")
    return data


def clamp(sk: bytes) -> bytes:
    """Return ``sk`` clamped as a Curve25519 private scalar."""
    out = bytearray(_check_key(sk, NOISE_PRIVATE_KEY_SIZE, "private key"))
    out[0] &= 248
    out[31] = (out[31] & 127) | 64
    return bytes(out)


def new_private_key() -> bytes:
    """Return a fresh random, clamped private key."""
    return clamp(os.urandom(NOISE_PRIVATE_KEY_SIZE))


def public_key(sk: bytes) -> bytes:
    """Return the Curve25519 public key of private key ``sk``."""
    return crypto_scalarmult_base(_check_key(sk, NOISE_PRIVATE_KEY_SIZE, "private key"))


def shared_secret(sk: bytes, pk: bytes) -> bytes:
    """Return the Curve25519 shared secret of ``sk`` and ``pk``.

    Raises InvalidPublicKeyError when the result is all zeros.
    """
    private = _check_key(sk, NOISE_PRIVATE_KEY_SIZE, "private key")
    public = _check_key(pk, NOISE_PUBLIC_KEY_SIZE, "public key")
    try:
        secret = crypto_scalarmult(private, public)
    except CryptoError as exc:
        raise InvalidPublicKeyError() from exc
    if is_zero(secret):
        raise InvalidPublicKeyError()
    return secret