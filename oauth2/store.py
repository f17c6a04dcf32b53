"""
oauth2/store.py -- SQLAlchemy Core persistence for clients, codes and tokens.

Pattern: Repository + Data Mapper, same shape as auth/store.py. Every method
takes the caller's Connection; the handler owns the transaction.

Single use of an authorization code is enforced by delete_code(): the token
endpoint deletes the code inside its transaction and requires exactly one
row to be removed. Two concurrent redemptions cannot both see rowcount == 1.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping

from sqlalchemy import Column, Integer, String, Table, Text
from sqlalchemy.engine import Connection

from auth.security import generate_code
from core.db import from_iso, metadata, now_utc, to_iso
from oauth2.models import AccessToken, AuthorizationCode, Client, ClientStatus

logger = logging.getLogger("gptauth.oauth2.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_clients = Table(
    "oauth2_clients",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", String(64), nullable=False, unique=True),
    Column("client_secret", Text, nullable=False),
    Column("name", Text, nullable=False),
    Column("redirect_uri", Text, nullable=False),
    Column("status", String(20), nullable=False, server_default=ClientStatus.ACTIVE.value),
    Column("date_created", String(32), nullable=False),
)

_codes = Table(
    "oauth2_codes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(64), nullable=False, unique=True),
    Column("client_ref", Integer, nullable=False),
    Column("user_ref", Integer, nullable=False),
    Column("date_expired", String(32), nullable=False),
    Column("redirect_uri", Text),
    Column("scope", Text),
)

_tokens = Table(
    "oauth2_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("access_token", String(64), nullable=False, unique=True),
    Column("refresh_token", String(64), nullable=False, unique=True),
    Column("client_ref", Integer, nullable=False),
    Column("user_ref", Integer, nullable=False, index=True),
    Column("date_expire", String(32), nullable=False),
    Column("scope", Text),
    Column("date_created", String(32), nullable=False),
)


def _without_id(row: dict) -> dict:
    if row.get("id") is None:
        row.pop("id", None)
    return row


class OAuth2Store:
    """Repository for Client, AuthorizationCode and AccessToken entities."""

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def create_client(self, conn: Connection, client: Client) -> Client:
        row = _without_id(_client_to_row(client))
        row["date_created"] = to_iso(client.date_created or now_utc())
        result = conn.execute(_clients.insert().values(**row))
        client_pk = client.id if client.id is not None else result.inserted_primary_key[0]
        logger.info("OAuth2 client #%s (%s) registered", client_pk, client.name)
        return self.read_client(conn, id=client_pk)

    def register_client(self, conn: Connection, name: str, redirect_uri: str) -> Client:
        """Create an ACTIVE client with a fresh client_id and client_secret."""
        return self.create_client(
            conn,
            Client(
                client_id=str(uuid.uuid4()),
                client_secret=generate_code(),
                name=name,
                redirect_uri=redirect_uri,
                status=ClientStatus.ACTIVE,
            ),
        )

    def read_client(self, conn: Connection, id: int | None = None, client_id: str | None = None) -> Client | None:
        if id is not None:
            clause = _clients.c.id == id
        elif client_id:
            clause = _clients.c.client_id == client_id
        else:
            return None
        row = conn.execute(_clients.select().where(clause)).mappings().first()
        return _row_to_client(row) if row is not None else None

    def list_clients(self, conn: Connection) -> list[Client]:
        rows = conn.execute(_clients.select().order_by(_clients.c.id)).mappings()
        return [_row_to_client(r) for r in rows]

    # ------------------------------------------------------------------
    # Authorization codes
    # ------------------------------------------------------------------

    def create_code(self, conn: Connection, code: AuthorizationCode) -> AuthorizationCode:
        """Persist an authorization code, generating the code value if absent."""
        row = _without_id(_code_to_row(code))
        if not row["code"]:
            row["code"] = generate_code()
        result = conn.execute(_codes.insert().values(**row))
        code_pk = code.id if code.id is not None else result.inserted_primary_key[0]
        logger.info("Authorization code #%s issued to client #%s", code_pk, code.client_ref)
        return self.read_code(conn, row["code"])

    def read_code(self, conn: Connection, code: str | None) -> AuthorizationCode | None:
        if not code:
            return None
        row = conn.execute(_codes.select().where(_codes.c.code == code)).mappings().first()
        return _row_to_code(row) if row is not None else None

    def delete_code(self, conn: Connection, code_id: int) -> bool:
        """Remove a code. False means another request already consumed it."""
        result = conn.execute(_codes.delete().where(_codes.c.id == code_id))
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def create_access_token(self, conn: Connection, token: AccessToken) -> AccessToken:
        """Persist an access/refresh pair, generating either value if absent."""
        row = _without_id(_access_token_to_row(token))
        row["access_token"] = row["access_token"] or generate_code()
        row["refresh_token"] = row["refresh_token"] or generate_code()
        row["date_created"] = to_iso(token.date_created or now_utc())
        conn.execute(_tokens.insert().values(**row))
        logger.info("Access token issued for user #%s via client #%s", token.user_ref, token.client_ref)
        return self.read_access_token(conn, access_token=row["access_token"])

    def read_access_token(
        self, conn: Connection, id: int | None = None, access_token: str | None = None
    ) -> AccessToken | None:
        if id is not None:
            clause = _tokens.c.id == id
        elif access_token:
            clause = _tokens.c.access_token == access_token
        else:
            return None
        row = conn.execute(_tokens.select().where(clause)).mappings().first()
        return _row_to_access_token(row) if row is not None else None

    def delete_access_token(self, conn: Connection, token_id: int) -> bool:
        result = conn.execute(_tokens.delete().where(_tokens.c.id == token_id))
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _client_to_row(client: Client) -> dict:
    return {
        "id": client.id,
        "client_id": client.client_id,
        "client_secret": client.client_secret,
        "name": client.name,
        "redirect_uri": client.redirect_uri,
        "status": ClientStatus(client.status).value,
        "date_created": to_iso(client.date_created),
    }


def _row_to_client(row: Mapping) -> Client:
    return Client(
        id=row["id"],
        client_id=row["client_id"],
        client_secret=row["client_secret"],
        name=row["name"],
        redirect_uri=row["redirect_uri"],
        status=ClientStatus(row["status"]),
        date_created=from_iso(row["date_created"]),
    )


def _code_to_row(code: AuthorizationCode) -> dict:
    return {
        "id": code.id,
        "code": code.code,
        "client_ref": code.client_ref,
        "user_ref": code.user_ref,
        "date_expired": to_iso(code.date_expired),
        "redirect_uri": code.redirect_uri,
        "scope": code.scope,
    }


def _row_to_code(row: Mapping) -> AuthorizationCode:
    return AuthorizationCode(
        id=row["id"],
        code=row["code"],
        client_ref=row["client_ref"],
        user_ref=row["user_ref"],
        date_expired=from_iso(row["date_expired"]),
        redirect_uri=row["redirect_uri"],
        scope=row["scope"],
    )


def _access_token_to_row(token: AccessToken) -> dict:
    return {
        "id": token.id,
        "access_token": token.access_token,
        "refresh_token": token.refresh_token,
        "client_ref": token.client_ref,
        "user_ref": token.user_ref,
        "date_expire": to_iso(token.date_expire),
        "scope": token.scope,
        "date_created": to_iso(token.date_created),
    }


def _row_to_access_token(row: Mapping) -> AccessToken:
    return AccessToken(
        id=row["id"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        client_ref=row["client_ref"],
        user_ref=row["user_ref"],
        date_expire=from_iso(row["date_expire"]),
        scope=row["scope"],
        date_created=from_iso(row["date_created"]),
    )
