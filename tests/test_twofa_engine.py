from datetime import timedelta

import pytest

from kidsmin.config import Settings
from kidsmin.service.errors import MailDeliveryError
from kidsmin.service.twofa import ChallengeFailure, TwoFactorEngine, generate_numeric_code
from kidsmin.storage.memory import MemoryStore
from kidsmin.storage.models import utcnow


class FakeClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(store, mailer, fast_hasher, clock):
    settings = Settings(
        jwt_secret="unit-test-secret-that-is-long-enough-0123456789",
        twofa_code_ttl_minutes=5,
        twofa_code_length=6,
        twofa_max_attempts=3,
    )
    return TwoFactorEngine(store, mailer, settings, hasher=fast_hasher, clock=clock)


def test_generate_numeric_code_length_and_alphabet():
    for length in (4, 6, 10):
        code = generate_numeric_code(length)
        assert len(code) == length
        assert code.isdigit()


async def test_issue_stores_hash_and_mails_code(engine, store, mailer):
    issued = await engine.issue_email_challenge("cred-1", "a@example.com", "Ada L")

    assert issued.channel == "email"
    assert issued.ttl_minutes == 5
    code = mailer.codes[-1]
    challenge = store.get_twofa_challenge("cred-1")
    assert challenge is not None
    assert challenge.code_hash != code
    assert challenge.attempts == 0
    assert challenge.channel == engine.settings.twofa_channel.value


async def test_code_is_single_use(engine, mailer):
    await engine.issue_email_challenge("cred-1", "a@example.com", "Ada L")
    code = mailer.codes[-1]

    first = await engine.verify_challenge("cred-1", code)
    second = await engine.verify_challenge("cred-1", code)

    assert first.ok
    assert not second.ok
    assert second.reason is ChallengeFailure.NO_CHALLENGE


async def test_reissue_invalidates_previous_code(engine, mailer):
    await engine.issue_email_challenge("cred-1", "a@example.com", "Ada L")
    old_code = mailer.codes[-1]
    await engine.issue_email_challenge("cred-1", "a@example.com", "Ada L")
    new_code = mailer.codes[-1]

    if old_code != new_code:
        result = await engine.verify_challenge("cred-1", old_code)
        assert result.reason is ChallengeFailure.BAD_CODE
    assert (await engine.verify_challenge("cred-1", new_code)).ok


async def test_reissue_resets_attempts(engine, store, mailer):
    await engine.issue_email_challenge("cred-1", "a@example.com", "Ada L")
    await engine.verify_challenge("cred-1", "not-a-code")
    assert store.get_twofa_challenge("cred-1").attempts == 1

    await engine.issue_email_challenge("cred-1", "a@example.com", "Ada L")
    assert store.get_twofa_challenge("cred-1").attempts == 0


async def test_expired_code_rejected_and_kept(engine, store, mailer, clock):
    await engine.issue_email_challenge("cred-1", "a@example.com", "Ada L")
    code = mailer.codes[-1]

    clock.now += timedelta(minutes=5, seconds=1)
    result = await engine.verify_challenge("cred-1", code)

    assert result.reason is ChallengeFailure.EXPIRED
    assert store.get_twofa_challenge("cred-1") is not None


async def test_bad_code_increments_attempts(engine, mailer):
    await engine.issue_email_challenge("cred-1", "a@example.com", "Ada L")

    first = await engine.verify_challenge("cred-1", "000000x")
    second = await engine.verify_challenge("cred-1", "")

    assert first.reason is ChallengeFailure.BAD_CODE
    assert first.attempts == 1
    assert second.attempts == 2


async def test_lockout_blocks_even_correct_code(engine, mailer):
    await engine.issue_email_challenge("cred-1", "a@example.com", "Ada L")
    code = mailer.codes[-1]
    for _ in range(3):
        await engine.verify_challenge("cred-1", "wrong")

    result = await engine.verify_challenge("cred-1", code)

    assert not result.ok
    assert result.reason is ChallengeFailure.LOCKED


async def test_zero_max_attempts_disables_lockout(store, mailer, fast_hasher):
    settings = Settings(
        jwt_secret="unit-test-secret-that-is-long-enough-0123456789",
        twofa_max_attempts=0,
    )
    engine = TwoFactorEngine(store, mailer, settings, hasher=fast_hasher)
    await engine.issue_email_challenge("cred-1", "a@example.com", "Ada L")
    code = mailer.codes[-1]
    for _ in range(10):
        await engine.verify_challenge("cred-1", "wrong")

    assert (await engine.verify_challenge("cred-1", code)).ok


async def test_verify_without_challenge(engine):
    result = await engine.verify_challenge("cred-unknown", "123456")
    assert result.reason is ChallengeFailure.NO_CHALLENGE


async def test_mail_failure_propagates(engine, mailer):
    mailer.fail = True
    with pytest.raises(MailDeliveryError):
        await engine.issue_email_challenge("cred-1", "a@example.com", "Ada L")


async def test_reissue_during_verification_keeps_new_challenge(engine, store, mailer, monkeypatch):
    await engine.issue_email_challenge("cred-1", "a@example.com", "Ada L")
    old_code = mailer.codes[-1]
    code_matches = engine._code_matches

    def match_then_reissue(code_hash, attempt):
        matched = code_matches(code_hash, attempt)
        store.upsert_twofa_challenge("cred-1", "newer-hash", utcnow() + timedelta(minutes=5))
        return matched

    monkeypatch.setattr(engine, "_code_matches", match_then_reissue)

    result = await engine.verify_challenge("cred-1", old_code)

    assert not result.ok
    assert result.reason is ChallengeFailure.NO_CHALLENGE
    assert store.get_twofa_challenge("cred-1").code_hash == "newer-hash"
