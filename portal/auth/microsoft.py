from __future__ import annotations

import json
import logging
import time
import uuid
from functools import lru_cache
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import jwt  # PyJWT
import requests
from pydantic import ValidationError

from portal.auth.config import MICROSOFT_LOGIN_HOST, ProviderConfig, load_provider_config
from portal.auth.grants import PERMISSION_STATIC_READ
from portal.auth.models import (
    Authenticated,
    AuthenticationError,
    AuthOutcome,
    CallbackParameters,
    SessionUser,
    TokenExchangeRequest,
    TokenResponse,
)
from portal.auth.util import tokens_match

logger = logging.getLogger(__name__)

TOKEN_REQUEST_TIMEOUT_SECONDS = 10
JWKS_CACHE_SECONDS = 3600

_jwks_cache: Dict[str, Tuple[float, Optional[Dict[str, Any]]]] = {}


class IdTokenError(ValueError):
    """Identity token failed signature or claims verification."""


def build_authorization_url(cfg: ProviderConfig) -> str:
    """
    Build the provider authorization URL.

    Pure function of the configuration: the same config always yields the same URL,
    so callers compute it once and reuse it for every redirect.
    """
    params = {
        "redirect_uri": cfg.callback_url,
        "client_id": cfg.client_id,
        "access_type": "offline",
        "response_type": "code",
        "scope": cfg.scope,
    }
    return f"{cfg.auth_url}?{urlencode(params)}"


def with_state(authorization_url: str, state: str) -> str:
    """Append a per-request anti-CSRF `state` to a prebuilt authorization URL."""
    return f"{authorization_url}&{urlencode({'state': state})}"


def _get_jwks(session: requests.Session, jwks_uri: str) -> Dict[str, Any]:
    """
    Fetch the tenant's JSON Web Key Set.
    Caches result for 1 hour per JWKS URI.
    """
    ts, cached = _jwks_cache.get(jwks_uri, (0.0, None))
    now = time.time()
    if cached is not None and now - ts < JWKS_CACHE_SECONDS:
        return cached
    r = session.get(jwks_uri, timeout=TOKEN_REQUEST_TIMEOUT_SECONDS)
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise IdTokenError("Invalid JWKS")
    _jwks_cache[jwks_uri] = (now, data)
    return data


def validate_id_token(cfg: ProviderConfig, session: requests.Session, id_token: str) -> Dict[str, Any]:
    """
    Verify a Microsoft identity token.
    - Verifies the RS256 signature using the tenant's published keys
    - Validates audience (our client id) and expiry
    - Checks the issuer matches the token's own tenant (`tid`)
    """
    hdr = jwt.get_unverified_header(id_token)
    kid = str(hdr.get("kid") or "")
    if not kid:
        raise IdTokenError("ID token missing kid")

    keys = _get_jwks(session, cfg.jwks_url).get("keys")
    if not isinstance(keys, list):
        raise IdTokenError("Invalid JWKS keys")

    jwk = None
    for k in keys:
        if isinstance(k, dict) and str(k.get("kid") or "") == kid:
            jwk = k
            break
    if jwk is None:
        raise IdTokenError("Unknown signing key (kid)")

    key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk))
    claims = jwt.decode(
        id_token,
        key=key,
        algorithms=["RS256"],
        audience=cfg.client_id,
        options={"require": ["exp", "iat", "iss", "aud"]},
    )
    if not isinstance(claims, dict):
        raise IdTokenError("Invalid ID token claims")

    # The v2.0 issuer embeds the tenant the user signed in through.
    tid = str(claims.get("tid") or "")
    if not tid or claims.get("iss") != f"{MICROSOFT_LOGIN_HOST}/{tid}/v2.0":
        raise IdTokenError("Issuer mismatch")
    # Only a tenant GUID can be compared with `tid`; `common`/`organizations` and domain names are not checked.
    if _is_tenant_id(cfg.tenant) and tid.lower() != cfg.tenant.lower():
        raise IdTokenError("Tenant mismatch")
    return claims


def _is_tenant_id(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _unverified_claims(id_token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(id_token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        logger.debug("ID token claims unreadable: %s", e)
        return {}
    return claims if isinstance(claims, dict) else {}


def _session_user(claims: Dict[str, Any]) -> SessionUser:
    subject = str(claims.get("oid") or claims.get("sub") or "").strip() or None
    email = str(claims.get("email") or claims.get("preferred_username") or "").strip().lower() or None
    name = str(claims.get("name") or "").strip() or None
    return SessionUser(
        provider="microsoft",
        subject=subject,
        email=email,
        name=name,
        grants=(PERMISSION_STATIC_READ,),
    )


class DeadlineExceeded(Exception):
    """The token exchange ran past its overall time budget."""


def _remaining(deadline: float) -> float:
    left = deadline - time.monotonic()
    if left <= 0:
        raise DeadlineExceeded("token exchange exceeded its deadline")
    return left


def _read_body(resp: requests.Response, deadline: float) -> bytes:
    """
    Read the whole response body before `deadline` (a time.monotonic() value).

    requests' timeout only bounds each socket read, so a slow sender could stretch
    the body indefinitely. Token bodies are small: read them a byte at a time (each
    read returns as soon as any data arrives) and shrink the socket timeout to the
    time left before every read.
    """
    conn = getattr(resp.raw, "connection", None)
    sock = getattr(conn, "sock", None)
    chunks = resp.iter_content(chunk_size=1)
    body = bytearray()
    while True:
        left = _remaining(deadline)
        if sock is not None:
            sock.settimeout(left)
        try:
            chunk = next(chunks)
        except StopIteration:
            break
        body += chunk
    _remaining(deadline)
    return bytes(body)


def _body_preview(resp: requests.Response, deadline: float, limit: int = 2000) -> str:
    try:
        return _read_body(resp, deadline)[:limit].decode("utf-8", errors="replace")
    except (requests.RequestException, DeadlineExceeded):
        return "<unreadable>"


class CallbackExchanger:
    """
    Turns a provider callback into an AuthOutcome.

    One instance per process: it owns the prebuilt authorization URL and the HTTP
    session reused for every token exchange.
    """

    def __init__(self, cfg: ProviderConfig, session: Optional[requests.Session] = None):
        self.cfg = cfg
        self.session = session if session is not None else requests.Session()
        self.authorization_url = build_authorization_url(cfg)
        logger.info("Microsoft auth configured: %r", cfg)

    def token_request(self, code: str) -> TokenExchangeRequest:
        return TokenExchangeRequest(
            code=code,
            client_id=self.cfg.client_id,
            client_secret=self.cfg.client_secret,
            redirect_uri=self.cfg.callback_url,
            scope=self.cfg.token_scope,
        )

    def handle_callback(self, params: CallbackParameters, *, expected_state: Optional[str] = None) -> AuthOutcome:
        """
        Exchange the authorization code and validate the token response.

        When `expected_state` is given, the callback's `state` must match it; otherwise
        the state is only logged. Every failure is terminal (no retries) and collapses
        into the same AuthenticationError.
        """
        logger.info("Microsoft callback received (session_state=%s)", params.session_state or "-")

        if expected_state is not None and not tokens_match(expected_state, params.state):
            logger.warning("OAuth state mismatch on callback")
            return AuthenticationError("state")
        if not (params.code or "").strip():
            logger.warning("Callback without authorization code")
            return AuthenticationError("code")

        token_request = self.token_request(params.code)
        # One budget for the whole exchange: connect, headers and body.
        deadline = time.monotonic() + TOKEN_REQUEST_TIMEOUT_SECONDS
        try:
            resp = self.session.post(
                self.cfg.token_url,
                data=token_request.form(),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=TOKEN_REQUEST_TIMEOUT_SECONDS,
                stream=True,
            )
        except requests.RequestException as e:
            logger.error("Token exchange request failed: %s", e)
            return AuthenticationError("transport")

        try:
            if not 200 <= resp.status_code < 300:
                logger.error(
                    "Token exchange rejected (status=%s): %s", resp.status_code, _body_preview(resp, deadline)
                )
                return AuthenticationError("status")

            try:
                body = _read_body(resp, deadline)
            except DeadlineExceeded as e:
                logger.error("Token exchange timed out: %s", e)
                return AuthenticationError("transport")
            except requests.RequestException as e:
                logger.error("Token response body unreadable: %s", e)
                return AuthenticationError("body")
        finally:
            resp.close()

        try:
            tokens = TokenResponse.model_validate_json(body)
        except ValidationError as e:
            logger.error("Token response did not parse: %s", e)
            return AuthenticationError("parse")

        logger.debug(
            "Token response: token_type=%s expires_in=%s scope=%s",
            tokens.token_type,
            tokens.expires_in,
            tokens.scope,
        )

        if self.cfg.verify_id_token:
            try:
                claims = validate_id_token(self.cfg, self.session, tokens.id_token)
            except (IdTokenError, jwt.PyJWTError, requests.RequestException) as e:
                logger.error("ID token verification failed: %s", e)
                return AuthenticationError("id_token")
        else:
            # Unverified: identity is display-only.
            claims = _unverified_claims(tokens.id_token)

        user = _session_user(claims)
        logger.info("Microsoft sign-in succeeded (subject=%s)", user.subject or "-")
        return Authenticated(redirect_target=self.cfg.base_url, user=user)


@lru_cache(maxsize=1)
def get_exchanger() -> CallbackExchanger:
    """Process-wide exchanger built from the startup configuration."""
    return CallbackExchanger(load_provider_config())
