from __future__ import annotations

import base64
import hmac
import os


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def tokens_match(expected: str | None, received: str | None) -> bool:
    """Constant-time comparison; empty values never match."""
    a = (expected or "").strip()
    b = (received or "").strip()
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
