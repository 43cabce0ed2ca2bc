from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

MICROSOFT_LOGIN_HOST = "https://login.microsoftonline.com"
GRAPH_USER_READ_SCOPE = "https://graph.microsoft.com/user.read"
GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"
CALLBACK_PATH = "/api/microsoft/callback"


class ConfigError(ValueError):
    """Missing or invalid configuration. Fatal at startup."""


@dataclass(frozen=True)
class ProviderConfig:
    auth_url: str
    token_url: str
    client_id: str
    client_secret: str
    tenant: str
    callback_url: str
    scope: str  # requested on the authorization redirect
    token_scope: str  # sent with the code exchange
    base_url: str  # post-login destination

    # Opt-in identity token signature/claims verification.
    verify_id_token: bool = False

    @property
    def jwks_url(self) -> str:
        return f"{MICROSOFT_LOGIN_HOST}/{self.tenant}/discovery/v2.0/keys"

    def __repr__(self) -> str:
        # Never render the client secret.
        return (
            f"ProviderConfig(auth_url={self.auth_url!r}, token_url={self.token_url!r}, "
            f"client_id={self.client_id!r}, client_secret='***', tenant={self.tenant!r}, "
            f"callback_url={self.callback_url!r}, scope={self.scope!r}, token_scope={self.token_scope!r}, "
            f"base_url={self.base_url!r}, verify_id_token={self.verify_id_token!r})"
        )


@dataclass(frozen=True)
class SessionConfig:
    session_secret: str
    session_ttl_seconds: int
    cookie_secure: bool
    verify_state: bool
    static_dir: str


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name, "") or default).strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_str(name).lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    return default


def _require(name: str) -> str:
    value = _env_str(name)
    if not value:
        raise ConfigError(f"{name} is required")
    return value


def _base_url() -> str:
    domain = _env_str("PORTAL_DOMAIN", "localhost").rstrip("/")
    if domain.startswith("http://") or domain.startswith("https://"):
        return domain
    return f"http://{domain}"


@lru_cache(maxsize=1)
def load_provider_config() -> ProviderConfig:
    """
    Load the Microsoft client configuration from environment variables.

    MICROSOFT_CLIENT_ID, MICROSOFT_CLIENT_SECRET and MICROSOFT_CLIENT_TENANT are required;
    PORTAL_DOMAIN (default: localhost) fixes both the callback URL and the post-login target.
    """
    client_id = _require("MICROSOFT_CLIENT_ID")
    client_secret = _require("MICROSOFT_CLIENT_SECRET")
    tenant = _require("MICROSOFT_CLIENT_TENANT")
    base_url = _base_url()

    return ProviderConfig(
        # Authorization goes through the multi-tenant endpoint; the token exchange is tenant-bound.
        auth_url=f"{MICROSOFT_LOGIN_HOST}/common/oauth2/v2.0/authorize",
        token_url=f"{MICROSOFT_LOGIN_HOST}/{tenant}/oauth2/v2.0/token",
        client_id=client_id,
        client_secret=client_secret,
        tenant=tenant,
        callback_url=f"{base_url}{CALLBACK_PATH}",
        scope=GRAPH_USER_READ_SCOPE,
        token_scope=GRAPH_DEFAULT_SCOPE,
        base_url=base_url,
        verify_id_token=_env_bool("MICROSOFT_VERIFY_ID_TOKEN", False),
    )


@lru_cache(maxsize=1)
def load_session_config() -> SessionConfig:
    """
    Load session/cookie settings.

    AUTH_SESSION_SECRET is required: without it no session can be signed and the
    gate could never let an authenticated user through.
    """
    secret = _require("AUTH_SESSION_SECRET")

    raw_ttl = _env_str("AUTH_SESSION_TTL_SECONDS", "43200")  # 12h default
    try:
        ttl = int(float(raw_ttl))
    except (ValueError, OverflowError):
        raise ConfigError(f"AUTH_SESSION_TTL_SECONDS must be a number (got {raw_ttl!r})")
    if ttl <= 60:
        ttl = 60

    # Default: secure cookies when the portal is served over https; otherwise allow local dev.
    cookie_secure = _env_bool("AUTH_COOKIE_SECURE", _base_url().startswith("https://"))

    return SessionConfig(
        session_secret=secret,
        session_ttl_seconds=ttl,
        cookie_secure=cookie_secure,
        verify_state=_env_bool("AUTH_VERIFY_STATE", True),
        static_dir=_env_str("PORTAL_STATIC_DIR", "public"),
    )
