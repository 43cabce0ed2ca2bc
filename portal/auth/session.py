from __future__ import annotations

import json
from dataclasses import asdict
from typing import Optional

from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from portal.auth.config import SessionConfig
from portal.auth.models import SessionUser


def session_cookie_name(cfg: SessionConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-portal_session" if cfg.cookie_secure else "portal_session"


SESSION_SALT = "portal-session-v1"


def _serializer(cfg: SessionConfig) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key=cfg.session_secret, salt=SESSION_SALT)


def encode_session(cfg: SessionConfig, user: SessionUser) -> str:
    payload = asdict(user)
    payload["grants"] = list(user.grants)
    # Keep cookie small and non-sensitive (no access tokens).
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    return _serializer(cfg).dumps(raw)


def decode_session(cfg: SessionConfig, value: str | None) -> Optional[SessionUser]:
    if not value:
        return None
    try:
        raw = _serializer(cfg).loads(value, max_age=cfg.session_ttl_seconds)
        data = json.loads(raw)
        if not isinstance(data, dict):
            return None
        grants = data.get("grants")
        if not isinstance(grants, list):
            grants = []
        subject = data.get("subject")
        email = data.get("email")
        name = data.get("name")
        return SessionUser(
            provider=str(data.get("provider") or "").strip() or "microsoft",
            subject=str(subject) if subject else None,
            email=str(email) if email else None,
            name=str(name) if name else None,
            grants=tuple(str(g) for g in grants if g),
        )
    except (BadSignature, BadTimeSignature, ValueError):
        return None


def clear_session_cookie_kwargs(cfg: SessionConfig) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": "",
        "max_age": 0,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def session_cookie_kwargs(cfg: SessionConfig, value: str) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": value,
        "max_age": cfg.session_ttl_seconds,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }
