"""
auth/sessions.py -- Cookie-backed login sessions for the interactive flow.

The cookie carries only the random session id; everything else lives in the
user_sessions table. Sessions older than settings.session_lifetime_seconds
are deleted on read and treated as absent.

Layer rule: no imports from api/, web/, or oauth2/. Request and Response are
the Starlette objects FastAPI hands to route handlers.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import Request, Response
from sqlalchemy.engine import Connection

from auth.models import User, UserSession
from auth.store import UserStore
from core.config import Settings
from core.db import now_utc

logger = logging.getLogger("gptauth.auth.sessions")

DEFAULT_USER_AGENT = "Unknown"


def client_ip(request: Request) -> str | None:
    """First hop of X-Forwarded-For, else the socket peer address."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


class SessionManager:
    """Create, look up and terminate UserSessions tied to a cookie."""

    def __init__(self, store: UserStore, settings: Settings) -> None:
        self.store = store
        self.cookie_name = settings.session_cookie_name
        self.lifetime_seconds = settings.session_lifetime_seconds
        self.secure = settings.secure_cookies
        self.samesite = settings.cookie_samesite

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, conn: Connection, session: UserSession) -> UserSession:
        return self.store.create_session(conn, session)

    def read(self, conn: Connection, session_id: str) -> UserSession | None:
        return self.store.read_session(conn, session_id)

    def update(self, conn: Connection, session: UserSession) -> UserSession | None:
        return self.store.update_session(conn, session)

    def delete(self, conn: Connection, session: UserSession) -> bool:
        return self.store.delete_session(conn, session.session_id)

    # ------------------------------------------------------------------
    # Request / response helpers
    # ------------------------------------------------------------------

    def _expired(self, session: UserSession) -> bool:
        if session.date_created is None:
            return False
        return session.date_created + timedelta(seconds=self.lifetime_seconds) < now_utc()

    def get_session_from_request(self, conn: Connection, request: Request) -> UserSession | None:
        """Return the live session named by the request cookie, or None.

        No cookie means no lookup at all.
        """
        session_id = request.cookies.get(self.cookie_name)
        if not session_id:
            logger.info("No session cookie in request")
            return None
        session = self.store.read_session(conn, session_id)
        if session is None:
            logger.info("Session from cookie not found")
            return None
        if self._expired(session):
            logger.info("Session for user #%s expired", session.user_ref)
            self.store.delete_session(conn, session.session_id)
            return None
        logger.info("Session found for user #%s", session.user_ref)
        return session

    def establish(self, conn: Connection, user: User, request: Request, response: Response) -> UserSession:
        """Persist a new session for user and set its cookie on response."""
        session = self.create(
            conn,
            UserSession(
                user_ref=user.user_ref,
                ip_address=client_ip(request),
                user_agent=request.headers.get("User-Agent") or DEFAULT_USER_AGENT,
            ),
        )
        self.set_cookie(response, session.session_id)
        return session

    def terminate(self, conn: Connection, request: Request, response: Response) -> bool:
        """Delete the request's session (if any) and clear the cookie."""
        session_id = request.cookies.get(self.cookie_name)
        removed = bool(session_id) and self.store.delete_session(conn, session_id)
        response.delete_cookie(self.cookie_name, httponly=True, samesite=self.samesite, secure=self.secure)
        if removed:
            logger.info("Session terminated")
        return removed

    def set_cookie(self, response: Response, session_id: str) -> None:
        response.set_cookie(
            self.cookie_name,
            value=session_id,
            httponly=True,
            samesite=self.samesite,
            secure=self.secure,
            max_age=self.lifetime_seconds,
        )
