"""
auth/verification.py -- Email a one-time token link to a user.

Used by sign-up (EMAIL_VERIFICATION, "signup" template, verify link) and by
profile edit (PROFILE_EDIT, "update" template, update link). An existing
token code may be passed in to resend the same link instead of issuing a
new token.

Layer rule: no imports from api/, web/, or oauth2/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.engine import Connection

from auth.models import Token, TokenType
from auth.store import UserStore
from core.config import Settings
from core.emails import EmailRenderer, EmailSender

logger = logging.getLogger("gptauth.auth.verification")


class EmailResult(str, Enum):
    SUCCESS = "SUCCESS"
    EMAIL_SEND_FAILED = "EMAIL_SEND_FAILED"
    USER_NOT_FOUND = "USER_NOT_FOUND"


@dataclass
class EmailOutcome:
    result: EmailResult
    token: Token | None = None


_TEMPLATES = {
    TokenType.EMAIL_VERIFICATION: "signup",
    TokenType.PROFILE_EDIT: "update",
}


def _link(settings: Settings, token: Token) -> str:
    if token.type == TokenType.PROFILE_EDIT:
        return settings.update_link(token.code)
    return settings.verify_link(token.code)


def send_verification_email(
    conn: Connection,
    store: UserStore,
    renderer: EmailRenderer,
    sender: EmailSender,
    settings: Settings,
    user_ref: int,
    token_code: str | None = None,
    token_type: TokenType = TokenType.EMAIL_VERIFICATION,
) -> EmailOutcome:
    """Create (or reuse) a one-time token and email its link to the user.

    A supplied token_code is reused only if it exists, belongs to the user
    and has the requested type; otherwise a new token is created. Store
    errors propagate to the caller's transaction boundary.
    """
    user = store.read_user(conn, ref=user_ref)
    if user is None:
        return EmailOutcome(EmailResult.USER_NOT_FOUND)

    token = store.read_token(conn, token_code) if token_code else None
    if token is None or token.user_ref != user_ref or token.type != token_type:
        token = store.create_token(conn, user_ref, token_type)

    message = renderer.render(
        _TEMPLATES.get(token_type, "signup"),
        to=user.email,
        locale=user.locale or settings.default_locale,
        verify_link=_link(settings, token),
        pin=user.pin,
    )
    if not sender.send(message):
        logger.info("Verification email for user #%s was not sent", user_ref)
        return EmailOutcome(EmailResult.EMAIL_SEND_FAILED, token)
    logger.info("%s email sent to user #%s", token_type.value, user_ref)
    return EmailOutcome(EmailResult.SUCCESS, token)
