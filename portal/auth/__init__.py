"""
Microsoft sign-in for the static portal.

Design goals:
- OAuth2 authorization-code flow against the Microsoft identity platform (v2.0).
- Opaque failures at the HTTP boundary; diagnostics go to the logs only.
- Cookie-based session (HttpOnly) carrying the grants the request gate checks.
"""
