"""
passwords.py - Password hashing

Stored format, all numbers in hex except the iteration count:

    pbkdf2$<iterations>$<salt>$<derived key>

The iteration count travels with each hash so it can be raised later
without invalidating existing hashes. Verification fails closed: anything
it cannot parse is a mismatch.
"""

import re
import secrets

from passlib.crypto.digest import pbkdf2_hmac
from passlib.utils import consteq

ALGORITHM = "pbkdf2"
PBKDF2_ITERATIONS = 120_000
SALT_LENGTH = 16
KEY_LENGTH = 32

_HEX = re.compile(r"[0-9a-fA-F]+")
_DIGITS = re.compile(r"[0-9]+")


def _derive(password: str, salt: bytes, iterations: int) -> bytes:
    return pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, KEY_LENGTH)


def _unhex(value: str) -> bytes | None:
    if not _HEX.fullmatch(value) or len(value) % 2:
        return None
    return bytes.fromhex(value)


def hash_password(password: str) -> str:
    salt = secrets.token_bytes(SALT_LENGTH)
    key = _derive(password, salt, PBKDF2_ITERATIONS)
    return f"{ALGORITHM}${PBKDF2_ITERATIONS}${salt.hex()}${key.hex()}"


def verify_password(password: str, stored_hash: str) -> bool:
    if not isinstance(stored_hash, str):
        return False
    parts = stored_hash.split("$")
    if len(parts) != 4:
        return False
    algorithm, iterations_raw, salt_hex, key_hex = parts
    if algorithm != ALGORITHM or not _DIGITS.fullmatch(iterations_raw):
        return False
    iterations = int(iterations_raw)
    if iterations <= 0:
        return False

    salt = _unhex(salt_hex)
    expected = _unhex(key_hex)
    if salt is None or expected is None:
        return False

    derived = _derive(password, salt, iterations)
    if len(derived) != len(expected):
        return False
    return consteq(derived, expected)
