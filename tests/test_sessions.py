"""
tests/test_sessions.py -- SessionManager against a real store and bare Starlette requests.
"""

from __future__ import annotations

from datetime import timedelta

from fastapi import Request, Response

from auth.models import UserSession
from auth.sessions import DEFAULT_USER_AGENT, SessionManager, client_ip
from core.config import Settings
from core.db import now_utc

COOKIE = "gptauth_session"


def _request(headers: dict[str, str] | None = None, client=("9.9.9.9", 5000)) -> Request:
    raw = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw, "client": client})


class SpyStore:
    """Records read_session calls; never finds anything."""

    def __init__(self) -> None:
        self.reads: list[str] = []

    def read_session(self, conn, session_id):
        self.reads.append(session_id)
        return None


def test_client_ip_prefers_first_forwarded_hop() -> None:
    assert client_ip(_request({"X-Forwarded-For": "1.1.1.1, 2.2.2.2"})) == "1.1.1.1"
    assert client_ip(_request()) == "9.9.9.9"
    assert client_ip(_request(client=None)) is None


def test_no_cookie_means_no_lookup(db) -> None:
    store = SpyStore()
    manager = SessionManager(store, Settings())
    with db.transaction() as conn:
        assert manager.get_session_from_request(conn, _request()) is None
    assert store.reads == []


def test_unknown_cookie_is_looked_up(db) -> None:
    store = SpyStore()
    manager = SessionManager(store, Settings())
    with db.transaction() as conn:
        assert manager.get_session_from_request(conn, _request({"Cookie": f"{COOKIE}=nope"})) is None
    assert store.reads == ["nope"]


def test_establish_sets_cookie_and_persists(db, user_store, make_user) -> None:
    user = make_user()
    manager = SessionManager(user_store, Settings(session_lifetime_seconds=3600))
    response = Response()
    with db.transaction() as conn:
        session = manager.establish(conn, user, _request({"X-Forwarded-For": "7.7.7.7"}), response)
        found = manager.get_session_from_request(conn, _request({"Cookie": f"{COOKIE}={session.session_id}"}))

    assert found == session
    assert session.ip_address == "7.7.7.7"
    assert session.user_agent == DEFAULT_USER_AGENT
    cookie = response.headers["set-cookie"]
    assert f"{COOKIE}={session.session_id}" in cookie
    assert "HttpOnly" in cookie
    assert "Max-Age=3600" in cookie


def test_expired_session_is_deleted(db, user_store) -> None:
    manager = SessionManager(user_store, Settings(session_lifetime_seconds=60))
    with db.transaction() as conn:
        old = user_store.create_session(
            conn, UserSession(user_ref=1, date_created=now_utc() - timedelta(seconds=120))
        )
        request = _request({"Cookie": f"{COOKIE}={old.session_id}"})
        assert manager.get_session_from_request(conn, request) is None
        assert user_store.read_session(conn, old.session_id) is None


def test_terminate_clears_cookie(db, user_store) -> None:
    manager = SessionManager(user_store, Settings())
    response = Response()
    with db.transaction() as conn:
        session = manager.create(conn, UserSession(user_ref=1))
        assert manager.terminate(conn, _request({"Cookie": f"{COOKIE}={session.session_id}"}), response)
        assert manager.read(conn, session.session_id) is None
        assert manager.terminate(conn, _request(), Response()) is False
    assert f'{COOKIE}=""' in response.headers["set-cookie"]
