"""
oauth2/models.py -- Domain dataclasses for the authorization-code grant.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ClientStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


@dataclass
class Client:
    """A registered relying party (for example a custom GPT)."""

    client_id: str
    client_secret: str
    name: str
    redirect_uri: str
    status: ClientStatus = ClientStatus.ACTIVE
    id: int | None = None
    date_created: datetime | None = None


@dataclass
class AuthorizationCode:
    """Short-lived code handed to the client after consent.

    Valid while date_expired >= now, and only until it is redeemed.
    client_ref and user_ref point at Client.id and User.user_ref.
    """

    client_ref: int
    user_ref: int
    date_expired: datetime
    code: str | None = None
    redirect_uri: str | None = None
    scope: str | None = None
    id: int | None = None


@dataclass
class AccessToken:
    """Access/refresh token pair. Both values are generated when absent."""

    client_ref: int
    user_ref: int
    date_expire: datetime
    access_token: str | None = None
    refresh_token: str | None = None
    scope: str | None = None
    id: int | None = None
    date_created: datetime | None = None
