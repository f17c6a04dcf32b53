"""
API request and response models for the gpt-user-auth JSON endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire names are camelCase (isConsent, passPhrase, resultCode) because the
callers are chat-plugin actions described by an OpenAPI schema. Python code
uses the snake_case attribute names; populate_by_name accepts both.

Business outcomes always travel as HTTP 200 with a resultCode; only the
ErrorResponse envelope is used for 4xx/5xx.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ---------------------------------------------------------------------------
# Result codes
# ---------------------------------------------------------------------------


class SignUpInitCode(str, Enum):
    CONSENT_REQUIRED = "CONSENT_REQUIRED"
    EMAIL_ALREADY_REGISTERED = "EMAIL_ALREADY_REGISTERED"
    SERVER_ERROR = "SERVER_ERROR"
    SUCCESS = "SUCCESS"


class SignUpVerifyCode(str, Enum):
    INVALID_TOKEN = "INVALID_TOKEN"
    SERVER_ERROR = "SERVER_ERROR"
    SUCCESS = "SUCCESS"
    USER_NOT_FOUND = "USER_NOT_FOUND"


class UpdateInitCode(str, Enum):
    SERVER_ERROR = "SERVER_ERROR"
    SUCCESS = "SUCCESS"


class UpdateLoadCode(str, Enum):
    INVALID_TOKEN = "INVALID_TOKEN"
    SERVER_ERROR = "SERVER_ERROR"
    SUCCESS = "SUCCESS"


class UpdateSaveCode(str, Enum):
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_TOKEN = "INVALID_TOKEN"
    SERVER_ERROR = "SERVER_ERROR"
    SUCCESS = "SUCCESS"


class TestEmailCode(str, Enum):
    SERVICE_ERROR = "SERVICE_ERROR"
    SUCCESS = "SUCCESS"
    UNAUTHENTICATED = "UNAUTHENTICATED"


# ---------------------------------------------------------------------------
# Sign-up
# ---------------------------------------------------------------------------


class SignUpInitRequest(CamelModel):
    """Request body for POST /api/v1/signup/init."""

    email: str = Field(min_length=3, max_length=255)
    is_consent: Optional[bool] = None
    locale: Optional[str] = Field(default=None, max_length=16)
    pass_phrase: str = Field(min_length=1, max_length=255)


class SignUpInitResponse(CamelModel):
    result_code: SignUpInitCode
    instructions: str = ""
    pin: Optional[int] = None


class TokenRequest(CamelModel):
    """Request body carrying a one-time token code (verify, update/load)."""

    token: Optional[str] = Field(default=None, max_length=128)


class ProfileFields(CamelModel):
    """User profile as returned to the web front (no secrets)."""

    date_created: Optional[datetime] = None
    email: Optional[str] = None
    locale: Optional[str] = None
    pin: Optional[int] = None
    status: Optional[str] = None


class SignUpVerifyResponse(ProfileFields):
    result_code: SignUpVerifyCode
    instructions: str = ""


# ---------------------------------------------------------------------------
# Profile update
# ---------------------------------------------------------------------------


class UpdateInitRequest(CamelModel):
    """Request body for POST /api/v1/update/init."""

    email: Optional[str] = Field(default=None, max_length=255)
    pin: Optional[int] = None


class UpdateInitResponse(CamelModel):
    result_code: UpdateInitCode
    instructions: str = ""


class UpdateLoadResponse(ProfileFields):
    result_code: UpdateLoadCode


class UpdateSaveRequest(CamelModel):
    """Request body for POST /api/v1/update/save."""

    token: Optional[str] = Field(default=None, max_length=128)
    locale: Optional[str] = Field(default=None, max_length=16)
    passphrase: Optional[str] = Field(default=None, max_length=255)


class UpdateSaveResponse(CamelModel):
    result_code: UpdateSaveCode


# ---------------------------------------------------------------------------
# Test email
# ---------------------------------------------------------------------------


class TestEmailRequest(CamelModel):
    """Request body for POST /api/v1/test/email.

    pin + passPhrase identify the user when the caller is not an OAuth2
    access token.
    """

    pass_phrase: Optional[str] = Field(default=None, max_length=255)
    pin: Optional[int] = None
    message: Optional[str] = Field(default=None, max_length=10000)
    subject: Optional[str] = Field(default=None, max_length=255)


class TestEmailResponse(CamelModel):
    result_code: TestEmailCode
    instructions: str = ""


# ---------------------------------------------------------------------------
# Shared envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
