"""
Opt-in identity token verification against a locally generated RSA key.
"""

from __future__ import annotations

import dataclasses
import json
import time
from unittest.mock import MagicMock, patch

import jwt
import pytest
import requests
from cryptography.hazmat.primitives.asymmetric import rsa

from portal.auth.config import ProviderConfig
from portal.auth.microsoft import CallbackExchanger, IdTokenError, _get_jwks, validate_id_token
from portal.auth.models import Authenticated, AuthenticationError, CallbackParameters

TID = "9188040d-6c67-4c5b-b112-36a304b66dad"


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def cfg() -> ProviderConfig:
    return ProviderConfig(
        auth_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        token_url="https://login.microsoftonline.com/tenant-abc/oauth2/v2.0/token",
        client_id="client-123",
        client_secret="shh-secret",
        tenant="tenant-abc",
        callback_url="http://localhost/api/microsoft/callback",
        scope="https://graph.microsoft.com/user.read",
        token_scope="https://graph.microsoft.com/.default",
        base_url="http://localhost",
        verify_id_token=True,
    )


def _jwks(key, kid: str = "k1") -> dict:
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(key.public_key()))
    jwk["kid"] = kid
    return {"keys": [jwk]}


def _id_token(key, *, kid: str = "k1", **overrides) -> str:
    now = int(time.time())
    claims = {
        "aud": "client-123",
        "iss": f"https://login.microsoftonline.com/{TID}/v2.0",
        "tid": TID,
        "iat": now,
        "exp": now + 600,
        "oid": "user-oid",
        "preferred_username": "ada@example.com",
        "name": "Ada",
    }
    claims.update(overrides)
    return jwt.encode(claims, key, algorithm="RS256", headers={"kid": kid})


def test_valid_token_yields_claims(cfg, signing_key) -> None:
    with patch("portal.auth.microsoft._get_jwks", return_value=_jwks(signing_key)):
        claims = validate_id_token(cfg, MagicMock(), _id_token(signing_key))
    assert claims["oid"] == "user-oid"


def test_wrong_audience_is_rejected(cfg, signing_key) -> None:
    with patch("portal.auth.microsoft._get_jwks", return_value=_jwks(signing_key)):
        with pytest.raises(jwt.InvalidAudienceError):
            validate_id_token(cfg, MagicMock(), _id_token(signing_key, aud="someone-else"))


def test_expired_token_is_rejected(cfg, signing_key) -> None:
    past = int(time.time()) - 3600
    with patch("portal.auth.microsoft._get_jwks", return_value=_jwks(signing_key)):
        with pytest.raises(jwt.ExpiredSignatureError):
            validate_id_token(cfg, MagicMock(), _id_token(signing_key, iat=past - 600, exp=past))


def test_issuer_must_match_tenant(cfg, signing_key) -> None:
    token = _id_token(signing_key, iss="https://login.microsoftonline.com/other-tenant/v2.0")
    with patch("portal.auth.microsoft._get_jwks", return_value=_jwks(signing_key)):
        with pytest.raises(IdTokenError, match="Issuer"):
            validate_id_token(cfg, MagicMock(), token)


def test_unknown_kid_is_rejected(cfg, signing_key) -> None:
    with patch("portal.auth.microsoft._get_jwks", return_value=_jwks(signing_key, kid="other")):
        with pytest.raises(IdTokenError, match="kid"):
            validate_id_token(cfg, MagicMock(), _id_token(signing_key))


def test_foreign_signature_is_rejected(cfg, signing_key) -> None:
    attacker = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    with patch("portal.auth.microsoft._get_jwks", return_value=_jwks(signing_key)):
        with pytest.raises(jwt.InvalidSignatureError):
            validate_id_token(cfg, MagicMock(), _id_token(attacker))


def test_jwks_is_cached(cfg) -> None:
    session = MagicMock()
    session.get.return_value.json.return_value = {"keys": []}
    assert _get_jwks(session, cfg.jwks_url) == {"keys": []}
    assert _get_jwks(session, cfg.jwks_url) == {"keys": []}
    session.get.assert_called_once_with(
        "https://login.microsoftonline.com/tenant-abc/discovery/v2.0/keys", timeout=10
    )


def _exchange(cfg, id_token: str):
    resp = MagicMock()
    resp.status_code = 200
    raw = json.dumps(
        {"access_token": "tok", "expires_in": 3600, "scope": "x", "token_type": "Bearer", "id_token": id_token}
    ).encode("utf-8")
    resp.iter_content.side_effect = lambda chunk_size=1: iter([raw])
    session = MagicMock(spec=requests.Session)
    session.post.return_value = resp
    return CallbackExchanger(cfg, session=session).handle_callback(CallbackParameters(code="abc123"))


def test_exchange_with_verified_token(cfg, signing_key) -> None:
    with patch("portal.auth.microsoft._get_jwks", return_value=_jwks(signing_key)):
        outcome = _exchange(cfg, _id_token(signing_key))
    assert isinstance(outcome, Authenticated)
    assert outcome.user.subject == "user-oid"


def test_exchange_rejects_opaque_token_when_verifying(cfg, signing_key) -> None:
    with patch("portal.auth.microsoft._get_jwks", return_value=_jwks(signing_key)):
        outcome = _exchange(cfg, "eyJ...")
    assert outcome == AuthenticationError("id_token")


def test_exchange_fails_when_jwks_unreachable(cfg, signing_key) -> None:
    with patch("portal.auth.microsoft._get_jwks", side_effect=requests.ConnectionError("down")):
        outcome = _exchange(cfg, _id_token(signing_key))
    assert outcome == AuthenticationError("id_token")


def test_tenant_id_must_match_token_tenant(cfg, signing_key) -> None:
    pinned = dataclasses.replace(cfg, tenant=TID.upper())
    other = "72f988bf-86f1-41af-91ab-2d7cd011db47"
    with patch("portal.auth.microsoft._get_jwks", return_value=_jwks(signing_key)):
        assert validate_id_token(pinned, MagicMock(), _id_token(signing_key))["tid"] == TID
        token = _id_token(signing_key, tid=other, iss=f"https://login.microsoftonline.com/{other}/v2.0")
        with pytest.raises(IdTokenError, match="Tenant"):
            validate_id_token(pinned, MagicMock(), token)


def test_tenant_alias_accepts_any_tenant(cfg, signing_key) -> None:
    common = dataclasses.replace(cfg, tenant="common")
    other = "72f988bf-86f1-41af-91ab-2d7cd011db47"
    token = _id_token(signing_key, tid=other, iss=f"https://login.microsoftonline.com/{other}/v2.0")
    with patch("portal.auth.microsoft._get_jwks", return_value=_jwks(signing_key)):
        assert validate_id_token(common, MagicMock(), token)["tid"] == other
