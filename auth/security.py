"""
auth/security.py -- Passphrase hashing, credential checks, random codes.

Security design decisions:
  Passphrases: normalized (trimmed, lower-cased) before hashing so chat
       clients that change case or add whitespace still match. New hashes use
       bcrypt; the per-user salt column stores the bcrypt salt, so
       hash_passphrase(p, salt) is deterministic and comparable. Rows whose
       salt is not a bcrypt salt were written by the legacy scheme,
       hex(SHA-256(normalized + salt)), and are still verified with it.

  Comparisons: hmac.compare_digest everywhere a secret is compared (hashes,
       client secrets, bearer tokens).

  Timing: authenticate() runs a bcrypt check against _DUMMY_HASH when the
       identifier is unknown, so response time does not reveal whether a PIN
       or email exists.

  Random codes: secrets.token_urlsafe(32) gives 256 bits of entropy for
       session ids, one-time tokens, authorization codes and bearer tokens.

Layer rule: no imports from api/, web/, or oauth2/. Store imports are
TYPE_CHECKING only so auth/store.py can import the helpers here.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from typing import TYPE_CHECKING

import bcrypt

from auth.models import PIN_MAX, PIN_MIN, User, UserStatus

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection

    from auth.store import UserStore

logger = logging.getLogger("gptauth.auth")

# bcrypt ignores (4.x) or rejects (5.x) input past 72 bytes.
_BCRYPT_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Random codes
# ---------------------------------------------------------------------------


def generate_code() -> str:
    """Return a URL-safe random code with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# Passphrase hashing
# ---------------------------------------------------------------------------


def normalize_passphrase(passphrase: str) -> str:
    return passphrase.strip().lower()


def generate_salt() -> str:
    return bcrypt.gensalt().decode("utf-8")


def _is_bcrypt_salt(salt: str) -> bool:
    return salt.startswith("$2")


def hash_passphrase(passphrase: str, salt: str) -> str:
    """Hash a passphrase with the given per-user salt.

    A bcrypt salt selects bcrypt; anything else selects the legacy SHA-256
    scheme. The result is what the users.pass_hash column stores.
    """
    normalized = normalize_passphrase(passphrase)
    if _is_bcrypt_salt(salt):
        secret = normalized.encode("utf-8")[:_BCRYPT_MAX_BYTES]
        return bcrypt.hashpw(secret, salt.encode("utf-8")).decode("utf-8")
    return hashlib.sha256((normalized + salt).encode("utf-8")).hexdigest()


def verify_passphrase(passphrase: str, pass_hash: str, pass_salt: str) -> bool:
    """Return True if the passphrase matches the stored hash."""
    try:
        computed = hash_passphrase(passphrase, pass_salt)
    except ValueError:
        # malformed bcrypt salt in storage
        logger.warning("Unusable passphrase salt in storage")
        return False
    return hmac.compare_digest(computed.encode("utf-8"), pass_hash.encode("utf-8"))


# Computed once at module load so the first unknown-identifier attempt costs
# the same as later ones.
_DUMMY_SALT: str = generate_salt()
_DUMMY_HASH: str = hash_passphrase("gptauth_timing_dummy", _DUMMY_SALT)


def hash_new_passphrase(passphrase: str) -> tuple[str, str]:
    """Return (pass_hash, pass_salt) for a brand new passphrase."""
    salt = generate_salt()
    return hash_passphrase(passphrase, salt), salt


# ---------------------------------------------------------------------------
# Credential checks
# ---------------------------------------------------------------------------


def _parse_pin(identifier: str) -> int | None:
    try:
        pin = int(identifier.strip())
    except ValueError:
        return None
    return pin if PIN_MIN <= pin <= PIN_MAX else None


def authenticate(conn: Connection, store: UserStore, identifier: str, passphrase: str) -> User | None:
    """Resolve an identifier (email or PIN) plus passphrase to an ACTIVE user.

    An identifier containing "@" is looked up as an email, anything else as
    a PIN. Returns None for unknown identifiers, wrong passphrases and users
    that are not ACTIVE. Never raises for bad input.
    """
    if not identifier or not passphrase:
        return None
    if "@" in identifier:
        user = store.read_user(conn, email=identifier)
    else:
        pin = _parse_pin(identifier)
        user = store.read_user(conn, pin=pin) if pin is not None else None

    if user is None:
        verify_passphrase(passphrase, _DUMMY_HASH, _DUMMY_SALT)
        return None
    if not verify_passphrase(passphrase, user.pass_hash, user.pass_salt):
        logger.info("Passphrase mismatch for user #%s", user.user_ref)
        return None
    if user.status != UserStatus.ACTIVE:
        logger.info("User #%s is %s, login refused", user.user_ref, user.status.value)
        return None
    return user


def load_user(conn: Connection, store: UserStore, pin: int, passphrase: str) -> User | None:
    """PIN + passphrase login used by chat clients. Same rules as authenticate()."""
    return authenticate(conn, store, str(pin), passphrase)


def is_static_bearer(token: str | None, allowed: list[str]) -> bool:
    """Return True if token appears in the static bearer allow-list."""
    if not token:
        return False
    matched = False
    for candidate in allowed:
        # no early exit: every entry is compared
        if hmac.compare_digest(token.encode("utf-8"), candidate.encode("utf-8")):
            matched = True
    return matched


def extract_bearer(authorization: str | None) -> str | None:
    """Pull the token out of an `Authorization: Bearer <token>` header value."""
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def has_bearer_in_request(request, allowed: list[str]) -> bool:
    """Check the request's Authorization header against the static allow-list.

    Failures are logged and reported as False, never raised.
    """
    token = extract_bearer(request.headers.get("Authorization"))
    if token is None:
        logger.info("No bearer token in request to %s", request.url.path)
        return False
    if not is_static_bearer(token, allowed):
        logger.info("Bearer token rejected for %s", request.url.path)
        return False
    return True
