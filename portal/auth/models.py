from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict


@dataclass(frozen=True)
class CallbackParameters:
    """Query parameters the provider sends back to the callback route."""

    code: str
    state: Optional[str] = None
    session_state: Optional[str] = None


@dataclass(frozen=True)
class TokenExchangeRequest:
    """Form body for the authorization_code grant. Contains the client secret."""

    code: str
    client_id: str
    client_secret: str = field(repr=False)
    redirect_uri: str
    scope: str
    grant_type: str = "authorization_code"

    def form(self) -> Dict[str, str]:
        return {
            "code": self.code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": self.grant_type,
            "scope": self.scope,
        }


class TokenResponse(BaseModel):
    """
    Token endpoint response body.

    Strict: a missing or mistyped field fails validation. Extra fields
    (refresh_token, ext_expires_in, ...) are ignored.
    """

    model_config = ConfigDict(extra="ignore", strict=True)

    access_token: str
    expires_in: int
    scope: str
    token_type: str
    id_token: str


@dataclass(frozen=True)
class SessionUser:
    """Signed-in user carried in the session cookie (no tokens)."""

    provider: str  # microsoft
    subject: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    grants: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Authenticated:
    redirect_target: str
    user: SessionUser


@dataclass(frozen=True)
class AuthenticationError:
    """Opaque failure outcome. `reason` is for logs and tests, never for clients."""

    reason: str = ""


AuthOutcome = Union[Authenticated, AuthenticationError]
