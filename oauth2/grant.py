"""
oauth2/grant.py -- Authorization-code grant logic, independent of HTTP.

issue_code() runs when a logged-in user reaches the consent page;
exchange_code() runs behind POST /token. Both work inside the caller's
transaction and raise OAuth2Error for protocol failures, which web/routes.py
turns into an RFC 6749 error response.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import hmac
import logging
from datetime import timedelta

from sqlalchemy.engine import Connection

from core.db import now_utc
from oauth2.models import AccessToken, AuthorizationCode, Client, ClientStatus
from oauth2.store import OAuth2Store

logger = logging.getLogger("gptauth.oauth2")

GRANT_TYPE_AUTHORIZATION_CODE = "authorization_code"
RESPONSE_TYPE_CODE = "code"


class OAuth2Error(Exception):
    """Protocol-level failure carrying the RFC 6749 error code and HTTP status."""

    def __init__(self, error: str, description: str, status_code: int = 400) -> None:
        super().__init__(description)
        self.error = error
        self.description = description
        self.status_code = status_code


def _secrets_match(given: str, expected: str) -> bool:
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


# ---------------------------------------------------------------------------
# /authorize
# ---------------------------------------------------------------------------


def resolve_client(
    conn: Connection,
    store: OAuth2Store,
    client_id: str | None,
    redirect_uri: str | None,
    response_type: str | None,
) -> tuple[Client, str]:
    """Validate an authorization request. Returns the client and effective redirect URI.

    Raises OAuth2Error:
      400 unsupported_response_type -- response_type is not "code"
      404 invalid_client            -- unknown or inactive client
      400 invalid_request           -- redirect_uri differs from the registered one
    """
    if response_type != RESPONSE_TYPE_CODE:
        raise OAuth2Error("unsupported_response_type", "Only response_type=code is supported.")
    client = store.read_client(conn, client_id=client_id) if client_id else None
    if client is None or client.status != ClientStatus.ACTIVE:
        logger.info("Authorization request for unknown or inactive client %r", client_id)
        raise OAuth2Error("invalid_client", "Unknown client.", status_code=404)
    effective = redirect_uri or client.redirect_uri
    if effective != client.redirect_uri:
        logger.info("Redirect URI mismatch for client #%s", client.id)
        raise OAuth2Error("invalid_request", "redirect_uri does not match the registered URI.")
    return client, effective


def issue_code(
    conn: Connection,
    store: OAuth2Store,
    client: Client,
    user_ref: int,
    redirect_uri: str,
    scope: str | None,
    ttl_seconds: int,
) -> AuthorizationCode:
    return store.create_code(
        conn,
        AuthorizationCode(
            client_ref=client.id,
            user_ref=user_ref,
            date_expired=now_utc() + timedelta(seconds=ttl_seconds),
            redirect_uri=redirect_uri,
            scope=scope,
        ),
    )


# ---------------------------------------------------------------------------
# /token
# ---------------------------------------------------------------------------


def exchange_code(
    conn: Connection,
    store: OAuth2Store,
    client_id: str,
    client_secret: str,
    code: str,
    redirect_uri: str,
    ttl_seconds: int,
) -> AccessToken:
    """Redeem an authorization code for an access/refresh token pair.

    Parameter presence and grant_type are checked by the caller before the
    transaction is opened. The code is consumed on success; the caller's
    rollback restores it if anything after the delete fails.
    """
    now = now_utc()
    auth_code = store.read_code(conn, code)
    if auth_code is None or auth_code.date_expired < now:
        logger.info("Invalid or expired authorization code presented")
        raise OAuth2Error("invalid_grant", "Invalid or expired authorization code.")

    client = store.read_client(conn, id=auth_code.client_ref)
    if (
        client is None
        or client.status != ClientStatus.ACTIVE
        or not _secrets_match(client_id, client.client_id)
        or not _secrets_match(client_secret, client.client_secret)
    ):
        logger.info("Client authentication failed for code #%s", auth_code.id)
        raise OAuth2Error("invalid_client", "Invalid client credentials.", status_code=401)

    if auth_code.redirect_uri and auth_code.redirect_uri != redirect_uri:
        logger.info("Redirect URI mismatch on code #%s", auth_code.id)
        raise OAuth2Error("invalid_grant", "redirect_uri does not match the authorization request.")

    if not store.delete_code(conn, auth_code.id):
        logger.info("Authorization code #%s already redeemed", auth_code.id)
        raise OAuth2Error("invalid_grant", "Invalid or expired authorization code.")

    token = store.create_access_token(
        conn,
        AccessToken(
            client_ref=client.id,
            user_ref=auth_code.user_ref,
            date_expire=now + timedelta(seconds=ttl_seconds),
            scope=auth_code.scope,
        ),
    )
    if token is None:
        raise RuntimeError("Access token was not persisted")
    return token
