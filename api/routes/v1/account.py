"""
api/routes/v1/account.py -- Sign-up, profile update and test-email endpoints.

Routes:
  POST /api/v1/signup/init   -- register a user, email the verification link (service auth)
  POST /api/v1/signup/verify -- redeem an EMAIL_VERIFICATION token, activate the user
  POST /api/v1/update/init   -- email a PROFILE_EDIT link for a PIN (static bearer only)
  POST /api/v1/update/load   -- profile behind a PROFILE_EDIT token
  POST /api/v1/update/save   -- change passphrase/locale, consume the token
  POST /api/v1/test/email    -- send a message to the calling user's address (service auth)

Every handler runs in exactly one transaction (core/db.py). Business outcomes
are HTTP 200 with a resultCode; an unexpected exception is logged, the
transaction rolls back, and the handler answers SERVER_ERROR (SERVICE_ERROR
for test/email). Missing or wrong bearer credentials are HTTP 403 from the
auth dependencies.

One-time tokens are consumed by deleting them inside the same transaction
that applies their effect (verify and save).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from api.models import (
    SignUpInitCode,
    SignUpInitRequest,
    SignUpInitResponse,
    SignUpVerifyCode,
    SignUpVerifyResponse,
    TestEmailCode,
    TestEmailRequest,
    TestEmailResponse,
    TokenRequest,
    UpdateInitCode,
    UpdateInitRequest,
    UpdateInitResponse,
    UpdateLoadCode,
    UpdateLoadResponse,
    UpdateSaveCode,
    UpdateSaveRequest,
    UpdateSaveResponse,
)
from auth.dependencies import RequestAuth, require_service_auth, require_static_bearer
from auth.models import OpenAIUser, TokenType, User, UserStatus
from auth.security import hash_new_passphrase, load_user
from auth.store import UserStore
from auth.verification import EmailResult, send_verification_email
from core.emails import OutgoingEmail

logger = logging.getLogger("gptauth.api.account")

OPENAI_EPHEMERAL_USER_HEADER = "openai-ephemeral-user-id"

# Auth policy:
# - POST /api/v1/signup/init:   static bearer or OAuth2 access token (require_service_auth)
# - POST /api/v1/signup/verify: public -- the token in the body is the credential
# - POST /api/v1/update/init:   static bearer only (require_static_bearer)
# - POST /api/v1/update/load:   public -- the token in the body is the credential
# - POST /api/v1/update/save:   public -- the token in the body is the credential
# - POST /api/v1/test/email:    static bearer or OAuth2 access token (require_service_auth)
router = APIRouter()

_MSG_SERVER_ERROR = (
    "Unfortunately, an error occurred while processing your request. Please try again later. "
    "If the issue persists, contact the application support team."
)
_MSG_CONSENT_REQUIRED = (
    "Registration cannot proceed because you did not agree to the data processing terms. "
    "Please provide your consent to continue."
)
_MSG_EMAIL_TAKEN = (
    "The provided email is already registered. If you have forgotten your PIN or passphrase, "
    "use the account recovery feature or contact the administrator. Re-registration is not possible."
)
_MSG_SIGNUP_OK = (
    "Registration has been initiated and a verification email has been sent. "
    "Follow the link in the email to complete the registration. Your PIN is {pin}. "
    "Keep it together with your passphrase: you need both to use the application via chat."
)


def _profile(user: User) -> dict:
    return {
        "date_created": user.date_created,
        "email": user.email,
        "locale": user.locale,
        "pin": user.pin,
        "status": user.status.value,
    }


def _trace_openai(request: Request) -> str | None:
    """Log the openai-* headers of a ChatGPT call and return its ephemeral user id."""
    headers = {k: v for k, v in request.headers.items() if k.lower().startswith("openai-")}
    if headers:
        logger.info("OpenAI headers: %s", headers)
    return request.headers.get(OPENAI_EPHEMERAL_USER_HEADER) or None


# ---------------------------------------------------------------------------
# Sign-up
# ---------------------------------------------------------------------------


@router.post("/signup/init", response_model=SignUpInitResponse)
def signup_init(
    request: Request,
    body: SignUpInitRequest,
    auth: RequestAuth = Depends(require_service_auth),
) -> SignUpInitResponse:
    """Register a new UNVERIFIED user and email the verification link.

    The consent flag is checked before any database access.
    """
    ephemeral_id = _trace_openai(request)
    if not body.is_consent:
        logger.info("Sign-up refused: no consent to data processing")
        return SignUpInitResponse(result_code=SignUpInitCode.CONSENT_REQUIRED, instructions=_MSG_CONSENT_REQUIRED)

    state = request.app.state
    store: UserStore = state.user_store
    try:
        with state.db.transaction() as conn:
            if store.read_user(conn, email=body.email) is not None:
                logger.info("Sign-up refused: email already registered")
                return SignUpInitResponse(
                    result_code=SignUpInitCode.EMAIL_ALREADY_REGISTERED,
                    instructions=_MSG_EMAIL_TAKEN,
                )
            pass_hash, pass_salt = hash_new_passphrase(body.pass_phrase)
            user = store.create_user(
                conn,
                User(
                    email=body.email,
                    pass_hash=pass_hash,
                    pass_salt=pass_salt,
                    locale=body.locale or None,
                    status=UserStatus.UNVERIFIED,
                ),
            )
            if ephemeral_id:
                store.create_openai_user(conn, OpenAIUser(user_ref=user.user_ref, ephemeral_id=ephemeral_id))
            outcome = send_verification_email(
                conn,
                store,
                state.email_renderer,
                state.email_sender,
                state.settings,
                user.user_ref,
                token_type=TokenType.EMAIL_VERIFICATION,
            )
            if outcome.result != EmailResult.SUCCESS:
                logger.warning("Verification email for user #%s: %s", user.user_ref, outcome.result.value)
    except Exception:
        logger.exception("Sign-up failed")
        return SignUpInitResponse(result_code=SignUpInitCode.SERVER_ERROR, instructions=_MSG_SERVER_ERROR)

    return SignUpInitResponse(
        result_code=SignUpInitCode.SUCCESS,
        pin=user.pin,
        instructions=_MSG_SIGNUP_OK.format(pin=user.pin),
    )


@router.post("/signup/verify", response_model=SignUpVerifyResponse)
def signup_verify(request: Request, body: TokenRequest) -> SignUpVerifyResponse:
    """Activate the user behind an EMAIL_VERIFICATION token and consume the token."""
    state = request.app.state
    store: UserStore = state.user_store
    try:
        with state.db.transaction() as conn:
            token = store.read_token(conn, body.token)
            if token is None or token.type != TokenType.EMAIL_VERIFICATION:
                return SignUpVerifyResponse(result_code=SignUpVerifyCode.INVALID_TOKEN)
            user = store.read_user(conn, ref=token.user_ref)
            if user is None:
                return SignUpVerifyResponse(result_code=SignUpVerifyCode.USER_NOT_FOUND)
            if user.status == UserStatus.UNVERIFIED:
                user.status = UserStatus.ACTIVE
                user = store.update_user(conn, user)
            if not store.delete_token(conn, token.code):
                # consumed by a concurrent request
                return SignUpVerifyResponse(result_code=SignUpVerifyCode.INVALID_TOKEN)
            logger.info("User #%s verified the email address", user.user_ref)
            return SignUpVerifyResponse(result_code=SignUpVerifyCode.SUCCESS, **_profile(user))
    except Exception:
        logger.exception("Email verification failed")
        return SignUpVerifyResponse(result_code=SignUpVerifyCode.SERVER_ERROR, instructions=_MSG_SERVER_ERROR)


# ---------------------------------------------------------------------------
# Profile update
# ---------------------------------------------------------------------------


@router.post("/update/init", response_model=UpdateInitResponse)
def update_init(
    request: Request,
    body: UpdateInitRequest,
    auth: RequestAuth = Depends(require_static_bearer),
) -> UpdateInitResponse:
    """Email a fresh PROFILE_EDIT link to the owner of the PIN.

    Answers SUCCESS whether or not the PIN exists, so the endpoint cannot be
    used to enumerate registered PINs.
    """
    state = request.app.state
    store: UserStore = state.user_store
    logger.info("Profile update requested for PIN %s", body.pin)
    try:
        with state.db.transaction() as conn:
            user = store.read_user(conn, pin=body.pin) if body.pin is not None else None
            if user is None:
                logger.info("No user found for PIN %s", body.pin)
            else:
                outcome = send_verification_email(
                    conn,
                    store,
                    state.email_renderer,
                    state.email_sender,
                    state.settings,
                    user.user_ref,
                    token_type=TokenType.PROFILE_EDIT,
                )
                if outcome.result != EmailResult.SUCCESS:
                    logger.warning("Profile edit email for user #%s: %s", user.user_ref, outcome.result.value)
    except Exception:
        logger.exception("Profile update init failed")
        return UpdateInitResponse(
            result_code=UpdateInitCode.SERVER_ERROR,
            instructions="An unexpected error occurred during the profile update process.",
        )
    return UpdateInitResponse(
        result_code=UpdateInitCode.SUCCESS,
        instructions="If the PIN is registered, an email with a profile edit link has been sent.",
    )


@router.post("/update/load", response_model=UpdateLoadResponse)
def update_load(request: Request, body: TokenRequest) -> UpdateLoadResponse:
    """Return the profile behind a PROFILE_EDIT token without consuming it."""
    state = request.app.state
    store: UserStore = state.user_store
    try:
        with state.db.transaction() as conn:
            token = store.read_token(conn, body.token)
            if token is None or token.type != TokenType.PROFILE_EDIT:
                return UpdateLoadResponse(result_code=UpdateLoadCode.INVALID_TOKEN)
            user = store.read_user(conn, ref=token.user_ref)
            if user is None:
                return UpdateLoadResponse(result_code=UpdateLoadCode.INVALID_TOKEN)
            return UpdateLoadResponse(result_code=UpdateLoadCode.SUCCESS, **_profile(user))
    except Exception:
        logger.exception("Profile load failed")
        return UpdateLoadResponse(result_code=UpdateLoadCode.SERVER_ERROR)


@router.post("/update/save", response_model=UpdateSaveResponse)
def update_save(request: Request, body: UpdateSaveRequest) -> UpdateSaveResponse:
    """Apply passphrase and locale changes, then delete the PROFILE_EDIT token.

    A second save with the same token answers INVALID_TOKEN.
    """
    if not body.token:
        return UpdateSaveResponse(result_code=UpdateSaveCode.INVALID_TOKEN)

    state = request.app.state
    store: UserStore = state.user_store
    try:
        with state.db.transaction() as conn:
            token = store.read_token(conn, body.token)
            if token is None or token.type != TokenType.PROFILE_EDIT:
                logger.info("Profile save with an invalid token")
                return UpdateSaveResponse(result_code=UpdateSaveCode.INVALID_TOKEN)
            if body.passphrase is not None and not body.passphrase:
                return UpdateSaveResponse(result_code=UpdateSaveCode.INVALID_INPUT)

            user = store.read_user(conn, ref=token.user_ref)
            if user is None:
                return UpdateSaveResponse(result_code=UpdateSaveCode.INVALID_TOKEN)
            if body.passphrase:
                user = store.update_passphrase(conn, user.user_ref, body.passphrase)
            if body.locale:
                user.locale = body.locale
                store.update_user(conn, user)
            if not store.delete_token(conn, token.code):
                raise RuntimeError("Profile edit token vanished during save")
            logger.info("Profile of user #%s saved, token consumed", user.user_ref)
    except Exception:
        logger.exception("Profile save failed")
        return UpdateSaveResponse(result_code=UpdateSaveCode.SERVER_ERROR)
    return UpdateSaveResponse(result_code=UpdateSaveCode.SUCCESS)


# ---------------------------------------------------------------------------
# Test email
# ---------------------------------------------------------------------------


@router.post("/test/email", response_model=TestEmailResponse)
def test_email(
    request: Request,
    body: TestEmailRequest,
    auth: RequestAuth = Depends(require_service_auth),
) -> TestEmailResponse:
    """Send a message to the caller's registered address.

    The user is the owner of the OAuth2 access token when there is one, else
    the ACTIVE user matching pin + passPhrase.
    """
    ephemeral_id = _trace_openai(request)
    state = request.app.state
    store: UserStore = state.user_store
    try:
        with state.db.transaction() as conn:
            if auth.user_ref is not None:
                user = store.read_user(conn, ref=auth.user_ref)
            elif body.pin is not None and body.pass_phrase:
                user = load_user(conn, store, body.pin, body.pass_phrase)
            else:
                user = None
            if user is not None and ephemeral_id:
                store.update_date_last(conn, user.user_ref, ephemeral_id)
        if user is None:
            return TestEmailResponse(
                result_code=TestEmailCode.UNAUTHENTICATED,
                instructions=(
                    "Authentication failed. Ensure your PIN and passphrase are correct "
                    "and your account is active."
                ),
            )
        sent = state.email_sender.send(
            OutgoingEmail(
                to=user.email,
                subject=body.subject or "GPT Message",
                text=body.message or "This email was sent without a message body.",
            )
        )
    except Exception:
        logger.exception("Test email failed")
        return TestEmailResponse(
            result_code=TestEmailCode.SERVICE_ERROR,
            instructions="An unexpected error occurred while processing your request. Please try again later.",
        )
    if not sent:
        return TestEmailResponse(
            result_code=TestEmailCode.SERVICE_ERROR,
            instructions="The email could not be sent due to an internal error. Please try again later.",
        )
    return TestEmailResponse(
        result_code=TestEmailCode.SUCCESS,
        instructions="The email was sent. Check the registered mailbox for the message.",
    )
