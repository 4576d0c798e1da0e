"""
Password & opaque-token hashing helpers.

- Passwords are hashed with bcrypt directly (passlib is unmaintained
  and broken with bcrypt>=4.1).  ``bcrypt.checkpw`` compares in
  constant time.  bcrypt only reads the first 72 bytes; longer input is
  cut there explicitly because bcrypt>=5 rejects it.
- Refresh tokens are stored as SHA-256 hashes only.
- Verification / reset tokens are URL-safe random strings.
"""

import hashlib
import secrets

import bcrypt

BCRYPT_MAX_BYTES = 72


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:BCRYPT_MAX_BYTES]


# Compared against when the email is unknown so a miss costs the same
# bcrypt work as a real password check.
_DUMMY_HASH = bcrypt.hashpw(b"fintrack-dummy-password", bcrypt.gensalt())


# ── Password hashing ────────────────────────────────────────────────


def hash_password(plain: str) -> str:
    return bcrypt.hashpw(_encode(plain), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    if not hashed:
        bcrypt.checkpw(_encode(plain), _DUMMY_HASH)
        return False
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError:
        # Corrupt / non-bcrypt hash in the row.
        return False


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt comparison without a real hash (unknown user)."""
    verify_password(plain, None)


# ── Token hashing ───────────────────────────────────────────────────


def hash_token(token: str) -> str:
    """SHA-256 hash — suitable for high-entropy tokens like JWTs."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_secure_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)
