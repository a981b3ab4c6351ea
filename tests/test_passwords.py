import pytest
from passlib.crypto.digest import pbkdf2_hmac

from todoapp.passwords import PBKDF2_ITERATIONS, hash_password, verify_password


def test_hash_verifies_and_rejects_other_passwords():
    stored = hash_password("pw123456")
    assert verify_password("pw123456", stored)
    assert not verify_password("pw1234567", stored)
    assert not verify_password("", stored)


def test_hash_is_salted():
    first = hash_password("same")
    second = hash_password("same")
    assert first != second
    assert verify_password("same", first)
    assert verify_password("same", second)


def test_hash_format():
    algorithm, iterations, salt, key = hash_password("pw").split("$")
    assert algorithm == "pbkdf2"
    assert int(iterations) == PBKDF2_ITERATIONS == 120_000
    assert len(salt) == 32
    assert len(key) == 64
    int(salt, 16)
    int(key, 16)


def test_verify_uses_stored_iteration_count():
    salt = bytes(range(16))
    key = pbkdf2_hmac("sha256", "old-password".encode(), salt, 1000, 32)
    stored = f"pbkdf2$1000${salt.hex()}${key.hex()}"
    assert verify_password("old-password", stored)
    assert not verify_password("new-password", stored)


def test_non_ascii_password():
    stored = hash_password("密码-pässwörd")
    assert verify_password("密码-pässwörd", stored)


@pytest.mark.parametrize(
    "stored",
    [
        "",
        "garbage",
        "pbkdf2$120000$00112233",
        "pbkdf2$120000$0011$2233$4455",
        "bcrypt$120000$00112233445566778899aabbccddeeff$00",
        "pbkdf2$abc$00112233445566778899aabbccddeeff$00",
        "pbkdf2$-5$00112233445566778899aabbccddeeff$00",
        "pbkdf2$0$00112233445566778899aabbccddeeff$00",
        "pbkdf2$1000$zz112233445566778899aabbccddeeff$00",
        "pbkdf2$1000$00112233445566778899aabbccddeeff$xyz",
        "pbkdf2$1000$001$00",
        "pbkdf2$1000$$00",
        "pbkdf2$1000$00 11$00",
    ],
)
def test_malformed_hashes_fail_closed(stored):
    assert verify_password("pw", stored) is False


def test_truncated_key_is_rejected():
    stored = hash_password("pw")
    assert not verify_password("pw", stored[:-2])
