import pytest

from kidsmin.logging import _redact_pii, email_fingerprint
from kidsmin.service.auth import mask_email
from kidsmin.service.tokens import validate_password_policy


@pytest.mark.parametrize(
    "password",
    ["Valid12345!Pass", "Abcdefghij1!", "Correct-Horse-9-Battery"],
)
def test_policy_accepts_strong_passwords(password):
    assert validate_password_policy(password)


@pytest.mark.parametrize(
    "password",
    [
        None,
        "",
        "short1!",
        "alllowercase12345!",
        "Short1!a",  # too short
        "alllowercase1!",  # no upper
        "ALLUPPERCASE1!",  # no lower
        "NoDigitsHere!!",  # no digit
        "NoSymbols12345",  # no symbol
    ],
)
def test_policy_rejects_weak_passwords(password):
    assert not validate_password_policy(password)


def test_mask_email_keeps_first_and_last_character():
    assert mask_email("johndoe@example.com") == "j*****e@example.com"
    assert mask_email("ab@example.com") == "a*@example.com"
    assert mask_email("x@example.com") == "x*@example.com"
    assert mask_email("not-an-email") == "***"


def test_log_redaction_masks_secrets_but_keeps_fingerprints():
    event = {
        "event": "login_rejected",
        "password": "hunter2",
        "email": "a@example.com",
        "email_hash": email_fingerprint("a@example.com"),
        "authorization": "Bearer abc",
    }

    redacted = _redact_pii(None, "info", dict(event))

    assert redacted["password"] != "hunter2"
    assert redacted["email"] != "a@example.com"
    assert redacted["email_hash"] == event["email_hash"]
    assert redacted["authorization"] != "Bearer abc"


def test_email_fingerprint_is_stable_and_short():
    assert email_fingerprint("a@example.com") == email_fingerprint("a@example.com")
    assert len(email_fingerprint("a@example.com")) == 16
