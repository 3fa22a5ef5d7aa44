"""MAC1/MAC2 computation and cookie replies for handshake messages."""

from __future__ import annotations

import hashlib
import hmac
import os
import threading
import time
from dataclasses import dataclass
from typing import Optional

from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError

from .constants import COOKIE_REFRESH_TIME

LABEL_MAC1 = b"mac1----"
LABEL_COOKIE = b"cookie--"
MESSAGE_COOKIE_REPLY_TYPE = 3

_SIZE = 32
_SIZE128 = 16
_NONCE_SIZE = 24


def _hash(label: bytes, public_key: bytes) -> bytes:
    return hashlib.blake2s(label + bytes(public_key)).digest()


def _mac(key: bytes, data: bytes) -> bytes:
    return hashlib.blake2s(bytes(data), digest_size=_SIZE128, key=key).digest()


def _expired(set_at: Optional[float]) -> bool:
    return set_at is None or time.monotonic() - set_at > COOKIE_REFRESH_TIME


def _mac_offsets(msg) -> tuple:
    smac2 = len(msg) - _SIZE128
    smac1 = smac2 - _SIZE128
    if smac1 < 0:
        raise ValueError("message too short to carry MACs")
    return smac1, smac2


@dataclass(frozen=True)
class CookieReply:
    """A cookie reply message: an encrypted cookie for the given receiver."""

    receiver: int
    nonce: bytes
    cookie: bytes
    type: int = MESSAGE_COOKIE_REPLY_TYPE


class CookieChecker:
    """Verifies MACs on incoming messages and issues cookie replies."""

    def __init__(self, public_key: bytes) -> None:
        self._lock = threading.RLock()
        self._mac1_key = _hash(LABEL_MAC1, public_key)
        self._encryption_key = _hash(LABEL_COOKIE, public_key)
        self._secret = bytes(_SIZE)
        self._secret_set: Optional[float] = None

    def check_mac1(self, msg: bytes) -> bool:
        """Report whether ``msg`` carries a valid mac1."""
        smac1, smac2 = _mac_offsets(msg)
        with self._lock:
            mac1 = _mac(self._mac1_key, msg[:smac1])
        return hmac.compare_digest(mac1, bytes(msg[smac1:smac2]))

    def check_mac2(self, msg: bytes, src: bytes) -> bool:
        """Report whether ``msg`` carries a valid mac2 for source ``src``."""
        _, smac2 = _mac_offsets(msg)
        with self._lock:
            if _expired(self._secret_set):
                return False
            cookie = _mac(self._secret, src)
        mac2 = _mac(cookie, msg[:smac2])
        return hmac.compare_digest(mac2, bytes(msg[smac2:]))

    def create_reply(self, msg: bytes, receiver: int, src: bytes) -> CookieReply:
        """Build a cookie reply to ``msg`` from source ``src``."""
        if not 0 <= receiver <= 0xFFFFFFFF:
            raise ValueError(f"receiver index out of range: {receiver}")
        smac1, smac2 = _mac_offsets(msg)
        with self._lock:
            if _expired(self._secret_set):
                self._secret = os.urandom(_SIZE)
                self._secret_set = time.monotonic()
            cookie = _mac(self._secret, src)
            nonce = os.urandom(_NONCE_SIZE)
            sealed = crypto_aead_xchacha20poly1305_ietf_encrypt(
                cookie, bytes(msg[smac1:smac2]), nonce, self._encryption_key
            )
        return CookieReply(receiver=receiver, nonce=nonce, cookie=sealed)


class CookieGenerator:
    """Adds MACs to outgoing messages and keeps the cookie last received."""

    def __init__(self, public_key: bytes) -> None:
        self._lock = threading.RLock()
        self._mac1_key = _hash(LABEL_MAC1, public_key)
        self._encryption_key = _hash(LABEL_COOKIE, public_key)
        self._cookie = bytes(_SIZE128)
        self._cookie_set: Optional[float] = None
        self._last_mac1: Optional[bytes] = None

    def consume_reply(self, reply: CookieReply) -> bool:
        """Decrypt and store the cookie in ``reply``; report success."""
        with self._lock:
            if self._last_mac1 is None:
                return False
            try:
                cookie = crypto_aead_xchacha20poly1305_ietf_decrypt(
                    bytes(reply.cookie), self._last_mac1, bytes(reply.nonce),
                    self._encryption_key,
                )
            except (CryptoError, ValueError, TypeError):
                return False
            self._cookie_set = time.monotonic()
            self._cookie = cookie
            return True

    def add_macs(self, msg: bytearray) -> None:
        """Write mac1, and mac2 when a fresh cookie is held, into ``msg`` in place."""
        if not isinstance(msg, (bytearray, memoryview)):
            raise TypeError("message must be a mutable buffer")
        smac1, smac2 = _mac_offsets(msg)
        with self._lock:
            mac1 = _mac(self._mac1_key, msg[:smac1])
            msg[smac1:smac2] = mac1
            self._last_mac1 = mac1
            if _expired(self._cookie_set):
                return
            msg[smac2:] = _mac(self._cookie, msg[:smac2])