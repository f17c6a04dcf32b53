"""
auth/dependencies.py -- FastAPI Depends() helpers for service authentication.

Two credentials are accepted in the Authorization: Bearer header, checked in
priority order:
  1. A static token from settings.auth_bearer_tokens -- service-to-service
     calls (the host application, chat plugins). No user is attached.
  2. A valid, unexpired OAuth2 access token issued by POST /token. The
     owning user and client are attached.

resolve_request_auth() is the soft variant (returns None on failure).
require_service_auth() accepts either credential and raises HTTP 403.
require_static_bearer() accepts only the static allow-list and raises 403.

Layer rule: no imports from api/ or web/. The OAuth2 store is read from
app.state, not imported, so auth/ stays independent of oauth2/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request

from auth.security import extract_bearer, has_bearer_in_request, is_static_bearer
from core.db import now_utc

logger = logging.getLogger("gptauth.auth")


@dataclass
class RequestAuth:
    """Who is calling. user_ref/client_ref are set only for OAuth2 tokens."""

    kind: str  # "static" | "oauth2"
    user_ref: int | None = None
    client_ref: int | None = None


def _forbidden() -> HTTPException:
    return HTTPException(
        status_code=403,
        detail={"code": "forbidden", "message": "Valid bearer token required."},
    )


def resolve_request_auth(request: Request) -> RequestAuth | None:
    """Authenticate the request's bearer token. Never raises."""
    token = extract_bearer(request.headers.get("Authorization"))
    if token is None:
        logger.info("No bearer token on %s", request.url.path)
        return None

    settings = request.app.state.settings
    if is_static_bearer(token, settings.auth_bearer_tokens):
        return RequestAuth(kind="static")

    db = request.app.state.db
    with db.transaction() as conn:
        access = request.app.state.oauth2_store.read_access_token(conn, access_token=token)
    if access is None or access.date_expire < now_utc():
        logger.info("Bearer token rejected on %s", request.url.path)
        return None
    return RequestAuth(kind="oauth2", user_ref=access.user_ref, client_ref=access.client_ref)


def require_service_auth(request: Request) -> RequestAuth:
    """Require a static bearer or an OAuth2 access token. Raises HTTP 403.

    Use as a FastAPI dependency:
        @router.post("/signup/init")
        def route(body: SignUpInitRequest, auth: RequestAuth = Depends(require_service_auth)): ...
    """
    auth = resolve_request_auth(request)
    if auth is None:
        raise _forbidden()
    return auth


def require_static_bearer(request: Request) -> RequestAuth:
    """Require a token from the static allow-list. Raises HTTP 403."""
    if not has_bearer_in_request(request, request.app.state.settings.auth_bearer_tokens):
        raise _forbidden()
    return RequestAuth(kind="static")
