"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository for users,
login sessions, one-time tokens and OpenAI ephemeral-user links; the _row_to_* / _*_to_row pairs are the
mappers. Route code never touches SQL directly.

Every method takes the caller's Connection as its first argument. The store
never opens, commits or rolls back a transaction -- see core/db.py.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(pin) and UNIQUE(email) are the real guards against concurrent
  registrations. The PIN retry loop in create_user() only avoids most
  collisions before the insert; a racing creator still fails with
  sqlalchemy.exc.IntegrityError, which the handler turns into SERVER_ERROR.

Layer rule: no imports from api/, web/, or oauth2/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Mapping

from sqlalchemy import Column, Integer, String, Table, Text
from sqlalchemy.engine import Connection

from auth.models import PIN_MAX, PIN_MIN, OpenAIUser, Token, TokenType, User, UserSession, UserStatus
from auth.security import generate_code, generate_salt, hash_passphrase
from core.db import from_iso, metadata, now_utc, to_iso

logger = logging.getLogger("gptauth.auth.store")

_PIN_ATTEMPTS = 100

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_users = Table(
    "users",
    metadata,
    Column("user_ref", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("pass_hash", Text, nullable=False),
    Column("pass_salt", Text, nullable=False),
    Column("pin", Integer, nullable=False, unique=True),
    Column("status", String(20), nullable=False, server_default=UserStatus.UNVERIFIED.value),
    Column("locale", String(16)),
    Column("date_created", String(32), nullable=False),
)

_sessions = Table(
    "user_sessions",
    metadata,
    Column("session_id", String(64), primary_key=True),
    Column("user_ref", Integer, nullable=False, index=True),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("date_created", String(32), nullable=False),
)

_tokens = Table(
    "tokens",
    metadata,
    Column("code", String(64), primary_key=True),
    Column("user_ref", Integer, nullable=False, index=True),
    Column("type", String(30), nullable=False),
    Column("date_created", String(32), nullable=False),
)

_openai_users = Table(
    "openai_users",
    metadata,
    Column("user_ref", Integer, primary_key=True),
    Column("ephemeral_id", String(255), primary_key=True),
    Column("date_created", String(32), nullable=False),
    Column("date_last", String(32), nullable=False),
)


class PinExhaustedError(RuntimeError):
    """No free PIN was found within the allowed attempts."""


class TokenImmutableError(Exception):
    """Raised on any attempt to update a one-time token."""

    def __init__(self) -> None:
        super().__init__("Updating a token is not allowed. Delete the existing token and create a new one.")


def normalize_email(email: str | None) -> str | None:
    return email.strip().lower() if isinstance(email, str) else None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, UserSession, Token and OpenAIUser entities.

    Usage:
        store = UserStore()
        with db.transaction() as conn:
            user = store.create_user(conn, User(email="a@b.com", pass_hash=h, pass_salt=s))
            same = store.read_user(conn, pin=user.pin)
    """

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def _pin_taken(self, conn: Connection, pin: int) -> bool:
        row = conn.execute(_users.select().where(_users.c.pin == pin)).first()
        return row is not None

    def _generate_pin(self, conn: Connection) -> int:
        for _ in range(_PIN_ATTEMPTS):
            pin = PIN_MIN + secrets.randbelow(PIN_MAX - PIN_MIN + 1)
            if not self._pin_taken(conn, pin):
                return pin
        raise PinExhaustedError(f"No free PIN found after {_PIN_ATTEMPTS} attempts")

    def create_user(self, conn: Connection, user: User) -> User:
        """Insert a new user with a freshly generated unique PIN.

        The supplied pin (if any) is ignored. Raises IntegrityError if the
        email is already registered.
        """
        row = _user_to_row(user)
        row["email"] = normalize_email(user.email)
        row["pin"] = self._generate_pin(conn)
        row["date_created"] = to_iso(user.date_created or now_utc())
        if row["user_ref"] is None:
            del row["user_ref"]
        result = conn.execute(_users.insert().values(**row))
        user_ref = user.user_ref if user.user_ref is not None else result.inserted_primary_key[0]
        created = self.read_user(conn, ref=user_ref)
        logger.info("User #%s created", user_ref)
        return created

    def read_user(
        self,
        conn: Connection,
        ref: int | None = None,
        email: str | None = None,
        pin: int | None = None,
    ) -> User | None:
        """Look up a user by user_ref, PIN or email (checked in that order).

        Returns None when no key is given or nothing matches.
        """
        if ref is not None:
            clause = _users.c.user_ref == ref
        elif pin is not None:
            if not PIN_MIN <= pin <= PIN_MAX:
                logger.info("PIN %s is outside the PIN range", pin)
                return None
            clause = _users.c.pin == pin
        elif email:
            clause = _users.c.email == normalize_email(email)
        else:
            return None
        row = conn.execute(_users.select().where(clause)).mappings().first()
        if row is None:
            logger.info("User not found (ref/pin/email: %s/%s/%s)", ref or "", pin or "", email or "")
            return None
        return _row_to_user(row)

    def update_user(self, conn: Connection, user: User) -> User | None:
        """Persist email, pass_hash, status and locale. Returns None if missing."""
        result = conn.execute(
            _users.update()
            .where(_users.c.user_ref == user.user_ref)
            .values(
                email=normalize_email(user.email),
                pass_hash=user.pass_hash,
                status=UserStatus(user.status).value,
                locale=user.locale,
            )
        )
        if result.rowcount == 0:
            logger.info("User #%s not found for update", user.user_ref)
            return None
        logger.info("User #%s updated", user.user_ref)
        return self.read_user(conn, ref=user.user_ref)

    def update_passphrase(self, conn: Connection, user_ref: int, passphrase: str) -> User | None:
        """Re-hash the passphrase with a fresh salt. Returns None if the user is missing."""
        user = self.read_user(conn, ref=user_ref)
        if user is None or not passphrase:
            logger.info("Passphrase not updated for user #%s", user_ref)
            return None
        salt = generate_salt()
        conn.execute(
            _users.update()
            .where(_users.c.user_ref == user_ref)
            .values(pass_salt=salt, pass_hash=hash_passphrase(passphrase, salt))
        )
        logger.info("Passphrase for user #%s updated", user_ref)
        return self.read_user(conn, ref=user_ref)

    def delete_user(self, conn: Connection, user_ref: int) -> bool:
        result = conn.execute(_users.delete().where(_users.c.user_ref == user_ref))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, conn: Connection, session: UserSession) -> UserSession:
        """Insert a session under a newly generated random id."""
        row = _session_to_row(session)
        row["session_id"] = generate_code()
        row["date_created"] = to_iso(session.date_created or now_utc())
        conn.execute(_sessions.insert().values(**row))
        logger.info("Session created for user #%s", session.user_ref)
        return self.read_session(conn, row["session_id"])

    def read_session(self, conn: Connection, session_id: str | None) -> UserSession | None:
        if not session_id:
            return None
        row = conn.execute(_sessions.select().where(_sessions.c.session_id == session_id)).mappings().first()
        return _row_to_session(row) if row is not None else None

    def update_session(self, conn: Connection, session: UserSession) -> UserSession | None:
        """Refresh ip_address and user_agent. Nothing else on a session changes."""
        result = conn.execute(
            _sessions.update()
            .where(_sessions.c.session_id == session.session_id)
            .values(ip_address=session.ip_address, user_agent=session.user_agent)
        )
        if result.rowcount == 0:
            return None
        return self.read_session(conn, session.session_id)

    def delete_session(self, conn: Connection, session_id: str) -> bool:
        result = conn.execute(_sessions.delete().where(_sessions.c.session_id == session_id))
        return result.rowcount > 0

    def list_sessions(self, conn: Connection, user_ref: int | None = None) -> list[UserSession]:
        query = _sessions.select().order_by(_sessions.c.date_created)
        if user_ref is not None:
            query = query.where(_sessions.c.user_ref == user_ref)
        return [_row_to_session(r) for r in conn.execute(query).mappings()]

    # ------------------------------------------------------------------
    # One-time tokens
    # ------------------------------------------------------------------

    def create_token(self, conn: Connection, user_ref: int, token_type: TokenType) -> Token:
        """Issue a new one-time token with a random code."""
        token = Token(
            user_ref=user_ref,
            type=TokenType(token_type),
            code=generate_code(),
            date_created=now_utc(),
        )
        conn.execute(_tokens.insert().values(**_token_to_row(token)))
        logger.info("Token %s created for user #%s", token.type.value, user_ref)
        return token

    def read_token(self, conn: Connection, code: str | None) -> Token | None:
        """Single lookup by code. No side effect and no expiry check."""
        if not code:
            logger.info("Cannot look up a token without a code")
            return None
        row = conn.execute(_tokens.select().where(_tokens.c.code == code)).mappings().first()
        if row is None:
            logger.info("Token not found")
            return None
        return _row_to_token(row)

    def delete_token(self, conn: Connection, code: str) -> bool:
        """Remove a token. Returns False if it was already gone."""
        result = conn.execute(_tokens.delete().where(_tokens.c.code == code))
        return result.rowcount > 0

    def list_tokens(self, conn: Connection, user_ref: int | None = None) -> list[Token]:
        query = _tokens.select().order_by(_tokens.c.date_created)
        if user_ref is not None:
            query = query.where(_tokens.c.user_ref == user_ref)
        return [_row_to_token(r) for r in conn.execute(query).mappings()]

    def update_token(self, conn: Connection, token: Token) -> Token:
        raise TokenImmutableError()

    # ------------------------------------------------------------------
    # OpenAI ephemeral users
    # ------------------------------------------------------------------

    def create_openai_user(self, conn: Connection, oai_user: OpenAIUser) -> OpenAIUser:
        """Link an ephemeral id to a user. Both dates default to now."""
        now = now_utc()
        row = _openai_user_to_row(oai_user)
        row["date_created"] = to_iso(oai_user.date_created or now)
        row["date_last"] = to_iso(oai_user.date_last or now)
        conn.execute(_openai_users.insert().values(**row))
        logger.info("OpenAI ephemeral id linked to user #%s", oai_user.user_ref)
        return self.read_openai_user(conn, oai_user.user_ref, oai_user.ephemeral_id)

    def read_openai_user(
        self,
        conn: Connection,
        user_ref: int,
        ephemeral_id: str | None = None,
    ) -> OpenAIUser | None:
        """Exact pair lookup, or the most recently seen link when no id is given."""
        query = _openai_users.select().where(_openai_users.c.user_ref == user_ref)
        if ephemeral_id is not None:
            query = query.where(_openai_users.c.ephemeral_id == ephemeral_id)
        row = conn.execute(query.order_by(_openai_users.c.date_last.desc())).mappings().first()
        if row is None:
            logger.info("No OpenAI link for user #%s", user_ref)
            return None
        return _row_to_openai_user(row)

    def update_date_last(self, conn: Connection, user_ref: int, ephemeral_id: str) -> OpenAIUser:
        """Mark the pair as seen now, creating the link on first sight."""
        result = conn.execute(
            _openai_users.update()
            .where(_openai_users.c.user_ref == user_ref, _openai_users.c.ephemeral_id == ephemeral_id)
            .values(date_last=to_iso(now_utc()))
        )
        if result.rowcount == 0:
            return self.create_openai_user(conn, OpenAIUser(user_ref=user_ref, ephemeral_id=ephemeral_id))
        return self.read_openai_user(conn, user_ref, ephemeral_id)

    def delete_openai_users(self, conn: Connection, user_ref: int) -> int:
        result = conn.execute(_openai_users.delete().where(_openai_users.c.user_ref == user_ref))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_to_row(user: User) -> dict:
    return {
        "user_ref": user.user_ref,
        "email": user.email,
        "pass_hash": user.pass_hash,
        "pass_salt": user.pass_salt,
        "pin": user.pin,
        "status": UserStatus(user.status).value,
        "locale": user.locale,
        "date_created": to_iso(user.date_created),
    }


def _row_to_user(row: Mapping) -> User:
    return User(
        user_ref=row["user_ref"],
        email=row["email"],
        pass_hash=row["pass_hash"],
        pass_salt=row["pass_salt"],
        pin=row["pin"],
        status=UserStatus(row["status"]),
        locale=row["locale"],
        date_created=from_iso(row["date_created"]),
    )


def _session_to_row(session: UserSession) -> dict:
    return {
        "session_id": session.session_id,
        "user_ref": session.user_ref,
        "ip_address": session.ip_address,
        "user_agent": session.user_agent,
        "date_created": to_iso(session.date_created),
    }


def _row_to_session(row: Mapping) -> UserSession:
    return UserSession(
        session_id=row["session_id"],
        user_ref=row["user_ref"],
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        date_created=from_iso(row["date_created"]),
    )


def _token_to_row(token: Token) -> dict:
    return {
        "code": token.code,
        "user_ref": token.user_ref,
        "type": TokenType(token.type).value,
        "date_created": to_iso(token.date_created),
    }


def _row_to_token(row: Mapping) -> Token:
    return Token(
        code=row["code"],
        user_ref=row["user_ref"],
        type=TokenType(row["type"]),
        date_created=from_iso(row["date_created"]),
    )


def _openai_user_to_row(oai_user: OpenAIUser) -> dict:
    return {
        "user_ref": oai_user.user_ref,
        "ephemeral_id": oai_user.ephemeral_id,
        "date_created": to_iso(oai_user.date_created),
        "date_last": to_iso(oai_user.date_last),
    }


def _row_to_openai_user(row: Mapping) -> OpenAIUser:
    return OpenAIUser(
        user_ref=row["user_ref"],
        ephemeral_id=row["ephemeral_id"],
        date_created=from_iso(row["date_created"]),
        date_last=from_iso(row["date_last"]),
    )
