"""
web/routes.py -- OAuth2 authorization-code endpoints and the login pages.

These routes serve the browser half of the grant (server-rendered HTML with
Jinja2) and the back-channel token exchange. They share app.state with the
JSON API (same database, stores, session manager).

Routes:
  GET|POST /authorize -- login form, credential check, consent page with code
  POST     /token     -- authorization_code grant; RFC 6749 JSON responses
  POST     /logout    -- end the cookie session

/authorize state machine:
  no session + GET                -> login form (200)
  no session + POST, fields blank -> login form with error (400)
  no session + POST, bad login    -> login form with error (401)
  no session + POST, good login   -> session cookie + 303 back to the same URL
  session (any method)            -> validate client, issue code, consent page

Security:
  POST /authorize and POST /token share the login rate limit.
  Client secrets and bearer tokens are compared with hmac.compare_digest.
  The authorization code is deleted in the same transaction that issues the
  token, so a replayed code is rejected with invalid_grant.
  Cache-Control: no-store on every credential-bearing response.
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from auth.security import authenticate
from core.limiter import limiter, login_rate_limit
from oauth2.grant import GRANT_TYPE_AUTHORIZATION_CODE, OAuth2Error, exchange_code, issue_code, resolve_client

logger = logging.getLogger("gptauth.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

_NO_CACHE = {"Cache-Control": "no-store", "Pragma": "no-cache"}

_ERROR_MESSAGES: dict[str, str] = {
    "missing_fields": "Enter your email or PIN and your passphrase.",
    "bad_credentials": "Invalid credentials.",
}

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _callback_url(redirect_uri: str, code: str, state: Optional[str]) -> str:
    """Append code (and state, when given) to the client's redirect URI."""
    parts = urlsplit(redirect_uri)
    params = {"code": code}
    if state:
        params["state"] = state
    query = f"{parts.query}&{urlencode(params)}" if parts.query else urlencode(params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def _login_page(request: Request, error: Optional[str] = None, status_code: int = 200) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "oauth2/login.html",
        {"action": str(request.url), "error_msg": _ERROR_MESSAGES.get(error or "")},
        status_code=status_code,
        headers={"Cache-Control": "no-store"},
    )


def _error_page(request: Request, status_code: int, message: str) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "oauth2/error.html",
        {"message": message},
        status_code=status_code,
    )


def _token_error(exc: OAuth2Error) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "error_description": exc.description},
        headers=_NO_CACHE,
    )


# ---------------------------------------------------------------------------
# /authorize
# ---------------------------------------------------------------------------


@router.api_route("/authorize", methods=["GET", "POST"], response_class=HTMLResponse)
@limiter.limit(login_rate_limit, methods=["POST"])
async def authorize(request: Request) -> HTMLResponse:
    """Interactive login and consent for the authorization-code grant.

    OAuth2 parameters (client_id, redirect_uri, response_type, state, scope)
    travel in the query string on both methods; the login form posts back to
    the same URL with identifier and password in the body.
    """
    state = request.app.state
    query = request.query_params
    form = await request.form() if request.method == "POST" else None

    try:
        with state.db.transaction() as conn:
            session = state.sessions.get_session_from_request(conn, request)

            if session is not None:
                client, redirect_uri = resolve_client(
                    conn,
                    state.oauth2_store,
                    query.get("client_id"),
                    query.get("redirect_uri"),
                    query.get("response_type"),
                )
                code = issue_code(
                    conn,
                    state.oauth2_store,
                    client,
                    session.user_ref,
                    redirect_uri,
                    query.get("scope"),
                    state.settings.auth_code_ttl_seconds,
                )
                return templates.TemplateResponse(
                    request,
                    "oauth2/authorize.html",
                    {
                        "client_name": client.name,
                        "code": code.code,
                        "redirect_uri": redirect_uri,
                        "callback_url": _callback_url(redirect_uri, code.code, query.get("state")),
                        "state": query.get("state"),
                        "scope": query.get("scope"),
                    },
                    headers={"Cache-Control": "no-store"},
                )

            if form is None:
                return _login_page(request)

            identifier = (form.get("identifier") or "").strip()
            password = form.get("password") or ""
            if not identifier or not password:
                return _login_page(request, error="missing_fields", status_code=400)

            user = authenticate(conn, state.user_store, identifier, password)
            if user is None:
                return _login_page(request, error="bad_credentials", status_code=401)

            response = RedirectResponse(str(request.url), status_code=303)
            state.sessions.establish(conn, user, request, response)
            response.headers["Cache-Control"] = "no-store"
            logger.info("User #%s logged in", user.user_ref)
            return response
    except OAuth2Error as exc:
        return _error_page(request, exc.status_code, exc.description)
    except Exception:
        logger.exception("Authorization request failed")
        return _error_page(request, 500, "An unexpected error occurred. Please try again later.")


# ---------------------------------------------------------------------------
# /token
# ---------------------------------------------------------------------------


@router.post("/token")
@limiter.limit(login_rate_limit)
def token(
    request: Request,
    grant_type: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
) -> JSONResponse:
    """Exchange an authorization code for an access/refresh token pair.

    grant_type and parameter presence are checked before the transaction is
    opened.
    """
    if grant_type != GRANT_TYPE_AUTHORIZATION_CODE:
        return _token_error(OAuth2Error("unsupported_grant_type", "Only authorization_code is supported."))
    if not (client_id and client_secret and code and redirect_uri):
        return _token_error(
            OAuth2Error("invalid_request", "client_id, client_secret, code and redirect_uri are required.")
        )

    state = request.app.state
    ttl = state.settings.access_token_ttl_seconds
    try:
        with state.db.transaction() as conn:
            issued = exchange_code(conn, state.oauth2_store, client_id, client_secret, code, redirect_uri, ttl)
    except OAuth2Error as exc:
        return _token_error(exc)
    except Exception:
        logger.exception("Token exchange failed")
        return _token_error(OAuth2Error("server_error", "Token issuance failed.", status_code=500))

    logger.info("Access token #%s issued", issued.id)
    return JSONResponse(
        content={
            "access_token": issued.access_token,
            "refresh_token": issued.refresh_token,
            "token_type": "Bearer",
            "expires_in": ttl,
        },
        headers=_NO_CACHE,
    )


# ---------------------------------------------------------------------------
# /logout
# ---------------------------------------------------------------------------


@router.post("/logout")
def logout(request: Request) -> JSONResponse:
    """Delete the cookie session (if any) and clear the cookie."""
    state = request.app.state
    resp = JSONResponse(content={"message": "Logged out."})
    with state.db.transaction() as conn:
        state.sessions.terminate(conn, request, resp)
    return resp
