import base64
import json
from urllib.parse import parse_qs, urlparse

from kidsmin.config import Settings
from kidsmin.service.tokens import (
    SESSION_TOKEN_TYPE,
    SET_PASSWORD_TOKEN_TYPE,
    TokenError,
    TokenService,
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _settings(**overrides) -> Settings:
    base = {
        "jwt_secret": "unit-test-secret-that-is-long-enough-0123456789",
        "frontend_url": "https://portal.example.org/",
    }
    base.update(overrides)
    return Settings(**base)


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return json.loads(base64.urlsafe_b64decode(segment + padding))


def test_session_token_round_trip():
    service = TokenService(_settings())
    token = service.issue_session_token("ind-1")

    check = service.verify_session_token(token)

    assert check.ok
    assert check.subject == "ind-1"
    payload = _payload(token)
    assert payload["typ"] == SESSION_TOKEN_TYPE
    assert payload["exp"] - payload["iat"] == 480 * 60


def test_set_password_token_carries_credentials_id():
    service = TokenService(_settings())
    token = service.issue_set_password_token("cred-9")

    check = service.verify_set_password_token(token)

    assert check.ok
    assert check.credentials_id == "cred-9"
    assert _payload(token)["typ"] == SET_PASSWORD_TOKEN_TYPE


def test_token_types_are_not_interchangeable():
    service = TokenService(_settings())
    session = service.issue_session_token("ind-1")
    set_password = service.issue_set_password_token("cred-1")

    wrong_path = service.verify_set_password_token(session)
    assert not wrong_path.ok
    assert wrong_path.error is TokenError.WRONG_TYPE

    assert service.verify_session_token(set_password).error is TokenError.WRONG_TYPE


def test_expired_token_rejected_after_leeway():
    clock = FakeClock()
    service = TokenService(_settings(set_password_token_ttl_minutes=10), clock=clock)
    token = service.issue_set_password_token("cred-1")

    clock.now += 10 * 60 + 60
    assert service.verify_set_password_token(token).ok

    clock.now += 120
    check = service.verify_set_password_token(token)
    assert not check.ok
    assert check.error is TokenError.EXPIRED


def test_tampered_payload_fails_signature():
    service = TokenService(_settings())
    header, _, signature = service.issue_session_token("ind-1").split(".")
    forged = base64.urlsafe_b64encode(
        json.dumps({"typ": "session", "sub": "someone-else"}).encode()
    ).decode().rstrip("=")

    check = service.verify(f"{header}.{forged}.{signature}")

    assert not check.ok
    assert check.error is TokenError.BAD_SIGNATURE


def test_token_signed_with_other_secret_rejected():
    issuer = TokenService(_settings(jwt_secret="another-secret-entirely-0123456789abcdef"))
    token = issuer.issue_session_token("ind-1")

    assert TokenService(_settings()).verify_session_token(token).error is TokenError.BAD_SIGNATURE


def test_malformed_tokens():
    service = TokenService(_settings())
    for token in (None, "", "abc", "a.b", "a.b.c.d"):
        check = service.verify(token)
        assert not check.ok
        assert check.error in (TokenError.MALFORMED, TokenError.BAD_SIGNATURE)

    header, payload, _ = service.issue_session_token("ind-1").split(".")
    check = service.verify_session_token(f"{header}.{payload}.é")
    assert not check.ok
    assert check.error is TokenError.MALFORMED


def test_audience_mismatch_rejected():
    token = TokenService(_settings(jwt_audience="other-app")).issue_session_token("ind-1")
    assert not TokenService(_settings()).verify_session_token(token).ok


def test_set_password_url_is_url_encoded_and_trailing_slash_free():
    service = TokenService(_settings())
    token = service.issue_set_password_token("cred-1")

    url = service.build_set_password_url(token)

    parsed = urlparse(url)
    assert url.startswith("https://portal.example.org/set-password?token=")
    assert parse_qs(parsed.query)["token"] == [token]
