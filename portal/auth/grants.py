from __future__ import annotations

from typing import Set

from fastapi import Request

PERMISSION_STATIC_READ = "static:read"


def extract_grants(request: Request) -> Set[str]:
    """
    Return the permissions carried by the request's session.

    No session (or an invalid/expired one) means no grants.
    """
    from portal.auth.config import load_session_config
    from portal.auth.session import decode_session, session_cookie_name

    cfg = load_session_config()
    user = decode_session(cfg, request.cookies.get(session_cookie_name(cfg)))
    if user is None:
        return set()
    request.state.user = user
    return set(user.grants)
