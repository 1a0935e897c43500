"""
auth/passwords.py -- Password hashing with Argon2id (argon2-cffi).

Argon2id is salted and memory-hard: each hash embeds a fresh random salt and
the cost parameters in its encoded form ("$argon2id$v=19$m=...,t=...,p=...$
salt$digest"), so nothing besides the encoded string needs storing.
Verification re-derives the digest with the embedded salt and compares in
constant time.

Cost parameters come from core.config.get_settings(). When they change,
needs_rehash() reports True for hashes made with the old parameters and the
login flow upgrades them transparently after a successful password check.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from core.config import get_settings

_settings = get_settings()

_hasher = PasswordHasher(
    time_cost=_settings.argon2_time_cost,
    memory_cost=_settings.argon2_memory_cost,
    parallelism=_settings.argon2_parallelism,
)


def hash_password(plain: str) -> str:
    """Return the encoded Argon2id hash of a plaintext password."""
    return _hasher.hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the encoded hash.

    Never raises for a mismatch or a malformed stored hash; both are False.
    """
    try:
        return _hasher.verify(hashed, plain)
    except (VerificationError, InvalidHashError):
        return False


def needs_rehash(hashed: str) -> bool:
    """Return True if the hash was produced with outdated cost parameters."""
    try:
        return _hasher.check_needs_rehash(hashed)
    except InvalidHashError:
        return True


# Timing equalization dummy hash.
# Verified whenever the login email is unknown so the response time for a
# missing account matches the one for a wrong password.
DUMMY_HASH: str = hash_password("healthdiary_timing_dummy")
