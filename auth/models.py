"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; stores and routes do the work.

Layer rule: no imports from api/, web/, or oauth2/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"
    UNVERIFIED = "UNVERIFIED"  # registered, email not confirmed yet


class TokenType(str, Enum):
    ACCOUNT_UNLOCK = "ACCOUNT_UNLOCK"
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    PROFILE_EDIT = "PROFILE_EDIT"


# PINs are four-digit numbers.
PIN_MIN = 1000
PIN_MAX = 9999


@dataclass
class User:
    """A registered identity.

    user_ref is the owning identifier shared with the host application. It is
    assigned by the store when None. pin is a short public identifier paired
    with the passphrase for chat-based access; the store generates it.

    pass_salt is either a bcrypt salt ("$2b$...") or, for rows created before
    the bcrypt migration, an opaque string used with the legacy SHA-256 hash.
    """

    email: str
    pass_hash: str
    pass_salt: str
    user_ref: int | None = None
    pin: int | None = None
    status: UserStatus = UserStatus.UNVERIFIED
    locale: str | None = None
    date_created: datetime | None = None


@dataclass
class UserSession:
    """Server-side login session. The id travels in a cookie."""

    user_ref: int
    session_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    date_created: datetime | None = None


@dataclass
class Token:
    """One-time token backing email verification and profile edits.

    Immutable once stored: the only valid mutations are create and delete.
    There is no expiry; a token lives until it is consumed.
    """

    user_ref: int
    type: TokenType
    code: str | None = None
    date_created: datetime | None = None


@dataclass
class OpenAIUser:
    """Link between a user and the ephemeral id a ChatGPT conversation sent.

    One user can be seen under several ephemeral ids; (user_ref, ephemeral_id)
    is the key. date_last is refreshed whenever the pair calls again.
    """

    user_ref: int
    ephemeral_id: str
    date_created: datetime | None = None
    date_last: datetime | None = None
