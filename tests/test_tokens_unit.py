import base64
import json

import pytest

from sentinel_auth.config import Settings
from sentinel_auth.service.tokens import (
    TokenIssuer,
    extract_bearer,
    new_one_shot_token,
    new_refresh_token,
)


def _tamper_payload(token, **changes):
    header, payload, signature = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    claims = json.loads(base64.urlsafe_b64decode(padded))
    claims.update(changes)
    forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{forged}.{signature}"


def test_issue_pair_claims(issuer, clock):
    pair = issuer.issue_pair("user-1", "owner@example.com")

    claims = issuer.verify_access(pair.access_token)

    assert claims["sub"] == "user-1"
    assert claims["email"] == "owner@example.com"
    assert claims["iss"] == "sentinel-auth"
    assert claims["aud"] == "sentinel-clients"
    assert pair.access_expires_at == clock() + issuer.access_ttl
    assert pair.refresh_expires_at == clock() + issuer.refresh_ttl
    assert pair.token_type == "bearer"


def test_refresh_tokens_are_opaque_and_unique(issuer):
    first = issuer.issue_pair("user-1", "owner@example.com")
    second = issuer.issue_pair("user-1", "owner@example.com")

    assert first.refresh_token != second.refresh_token
    assert "." not in first.refresh_token
    assert issuer.verify_access(first.refresh_token) is None


def test_expired_access_token_rejected(issuer, clock):
    pair = issuer.issue_pair("user-1", "owner@example.com")

    clock.advance(minutes=15, seconds=29)
    assert issuer.verify_access(pair.access_token) is not None

    clock.advance(seconds=2)
    assert issuer.verify_access(pair.access_token) is None


def test_tampered_token_rejected(issuer):
    pair = issuer.issue_pair("user-1", "owner@example.com")

    assert issuer.verify_access(_tamper_payload(pair.access_token, sub="admin")) is None


def test_token_from_other_secret_rejected(settings, issuer):
    other = TokenIssuer(settings.model_copy(update={"jwt_secret": "x" * 40}))
    pair = other.issue_pair("user-1", "owner@example.com")

    assert issuer.verify_access(pair.access_token) is None


def test_wrong_audience_rejected(settings, clock):
    foreign = TokenIssuer(settings.model_copy(update={"jwt_audience": "elsewhere"}), clock=clock)
    pair = foreign.issue_pair("user-1", "owner@example.com")

    assert TokenIssuer(settings, clock=clock).verify_access(pair.access_token) is None


def test_none_algorithm_rejected(issuer):
    pair = issuer.issue_pair("user-1", "owner@example.com")
    _, payload, _ = pair.access_token.split(".")
    header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")

    assert issuer.verify_access(f"{header}.{payload}.") is None


@pytest.mark.parametrize("garbage", ["", "abc", "a.b", "not.a.jwt", "a.b.c.d"])
def test_malformed_tokens_rejected(issuer, garbage):
    assert issuer.verify_access(garbage) is None


def test_non_ascii_signature_rejected(issuer):
    header, payload, _ = issuer.issue_pair("user-1", "owner@example.com").access_token.split(".")

    assert issuer.verify_access(f"{header}.{payload}.\u00e9\u00e9") is None
    assert issuer.verify_access(f"{header}.{payload}.\u00c3\u00a9") is None


def test_issuer_requires_secret():
    settings = Settings.model_construct(jwt_secret=None)

    with pytest.raises(RuntimeError):
        TokenIssuer(settings)


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Bearer abc", "abc"),
        ("bearer  abc ", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        ("Bearer   ", None),
        (None, None),
    ],
)
def test_extract_bearer(header, expected):
    assert extract_bearer(header) == expected


def test_random_token_lengths():
    assert len(new_refresh_token()) == 64
    assert len(new_one_shot_token()) == 43
