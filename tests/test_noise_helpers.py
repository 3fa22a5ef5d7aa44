import pytest

from wireguard.noise_helpers import (
    InvalidPublicKeyError,
    clamp,
    hmac1,
    hmac2,
    is_zero,
    kdf1,
    kdf2,
    kdf3,
    new_private_key,
    public_key,
    shared_secret,
)


def test_hmac_lengths_and_determinism():
    assert len(hmac1(b"k", b"data")) == 32
    assert hmac1(b"k", b"data") == hmac1(b"k", b"data")
    assert hmac1(b"k", b"data") != hmac1(b"j", b"data")


def test_hmac2_equals_hmac1_of_concatenation():
    assert hmac2(b"key", b"abc", b"def") == hmac1(b"key", b"abcdef")


def test_kdf_outputs_are_consistent_prefixes():
    key, data = b"\x07" * 32, b"input"
    t0 = kdf1(key, data)
    a0, a1 = kdf2(key, data)
    b0, b1, b2 = kdf3(key, data)
    assert t0 == a0 == b0
    assert a1 == b1
    assert len({b0, b1, b2}) == 3
    assert all(len(x) == 32 for x in (b0, b1, b2))


def test_is_zero():
    assert is_zero(bytes(32))
    assert is_zero(b"")
    assert not is_zero(b"\x00\x01")


def test_clamp_bits():
    zero = clamp(bytes(32))
    assert zero[0] == 0
    assert zero[31] == 64
    ones = clamp(b"\xff" * 32)
    assert ones[0] == 248
    assert ones[31] == 127
    assert ones[1:31] == b"\xff" * 30


def test_clamp_rejects_wrong_size():
    with pytest.raises(ValueError):
        clamp(b"\x00" * 31)


def test_new_private_key_is_clamped():
    sk = new_private_key()
    assert len(sk) == 32
    assert clamp(sk) == sk


def test_public_key_known_vector():
    sk = bytes.fromhex("77076d0a7318a57d3c16c17251b26645df4c2f87ebc0992ab177fba51db92c2a")
    assert public_key(sk).hex() == (
        "8520f0098930a754748b7ddcb43ef75a0dbf3a0d26381af4eba4a98eaa9b4e6a"
    )


def test_shared_secret_is_symmetric():
    a, b = new_private_key(), new_private_key()
    assert shared_secret(a, public_key(b)) == shared_secret(b, public_key(a))


def test_shared_secret_rejects_zero_point():
    with pytest.raises(InvalidPublicKeyError):
        shared_secret(new_private_key(), bytes(32))