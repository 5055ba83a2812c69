"""Unit tests for the auth flows against the in-memory store.

Covers login with and without 2FA, code verification, reset requests,
set-password, invites and the one-time admin bootstrap.
"""

from urllib.parse import parse_qs, urlparse

import pytest

from kidsmin.config import Settings
from kidsmin.service.auth import AuthService, SessionGrant, TwoFactorRequired
from kidsmin.service.errors import (
    AdminAlreadyExistsError,
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidTokenError,
    MailDeliveryError,
    NotFoundError,
    TwoFactorError,
    ValidationError,
    WeakPasswordError,
)
from kidsmin.storage.memory import MemoryStore
from kidsmin.storage.models import NATIONAL_ENTITY_NAME, OPEN_ENDED, Role

PASSWORD = "Sunday-School-2024!"


def _settings(**overrides) -> Settings:
    base = {
        "jwt_secret": "unit-test-secret-that-is-long-enough-0123456789",
        "frontend_url": "https://portal.example.org",
        "twofa_enabled": False,
        "twofa_max_attempts": 3,
    }
    base.update(overrides)
    return Settings(**base)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def make_service(store, mailer, fast_hasher):
    def _make(**overrides) -> AuthService:
        return AuthService(store, _settings(**overrides), mailer=mailer, hasher=fast_hasher)

    return _make


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def active_user(store, fast_hasher):
    individual = store.create_individual("Ada", "Lovelace")
    creds = store.create_credentials(individual.id, "Ada@Example.com")
    store.activate_with_password(creds.id, fast_hasher.hash(PASSWORD))
    return individual, creds


def _token_from_url(url: str) -> str:
    return parse_qs(urlparse(url).query)["token"][0]


class TestLogin:
    async def test_missing_fields(self, service):
        with pytest.raises(ValidationError) as excinfo:
            await service.login("", None)
        assert excinfo.value.detail["missing"] == ["email", "password"]

    async def test_unknown_email_and_wrong_password_look_the_same(self, service, active_user):
        with pytest.raises(InvalidCredentialsError) as unknown:
            await service.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await service.login("ada@example.com", "Not-The-Password-1!")
        assert unknown.value.message == wrong.value.message == "Invalid credentials"
        assert unknown.value.status_code == 401

    async def test_inactive_credentials_rejected(self, service, store):
        individual = store.create_individual("Grace", "Hopper")
        store.create_credentials(individual.id, "grace@example.com")
        with pytest.raises(InvalidCredentialsError):
            await service.login("grace@example.com", PASSWORD)

    async def test_success_without_twofa_returns_session_and_roles(
        self, service, store, active_user
    ):
        individual, _ = active_user
        national = store.ensure_national_entity()
        store.assign_role(individual.id, national.id, Role.CMC)

        outcome = await service.login("  ADA@example.com ", PASSWORD)

        assert isinstance(outcome, SessionGrant)
        assert service.tokens.verify_session_token(outcome.token).subject == individual.id
        roles = outcome.to_dict()["roles"]
        assert len(roles) == 1
        assert roles[0]["role"] == "CMC"
        assert roles[0]["targetName"] == NATIONAL_ENTITY_NAME
        assert roles[0]["active"] == OPEN_ENDED.isoformat()

    async def test_ended_roles_are_not_returned(self, service, store, active_user):
        from datetime import date

        individual, _ = active_user
        national = store.ensure_national_entity()
        store.assign_role(individual.id, national.id, Role.COACH, active=date(2020, 6, 30))

        outcome = await service.login("ada@example.com", PASSWORD)

        assert outcome.roles == []

    async def test_global_twofa_issues_challenge(self, make_service, mailer, active_user):
        service = make_service(twofa_enabled=True)

        outcome = await service.login("ada@example.com", PASSWORD)

        assert isinstance(outcome, TwoFactorRequired)
        assert outcome.to_dict() == {
            "status": "2FA_REQUIRED",
            "method": "email",
            "ttlMinutes": 5,
            "emailMasked": "a*a@example.com",
        }
        assert mailer.sent[-1]["kind"] == "twofa"
        assert mailer.sent[-1]["to"] == "ada@example.com"

    async def test_per_account_twofa(self, service, store, mailer, active_user):
        _, creds = active_user
        store.credentials[creds.id].twofa_enabled = True

        outcome = await service.login("ada@example.com", PASSWORD)

        assert isinstance(outcome, TwoFactorRequired)
        assert len(mailer.codes) == 1

    async def test_twofa_mail_failure_propagates(self, make_service, mailer, active_user):
        service = make_service(twofa_enabled=True)
        mailer.fail = True
        with pytest.raises(MailDeliveryError):
            await service.login("ada@example.com", PASSWORD)


class TestVerifyTwoFactor:
    async def test_code_exchanged_for_session(self, make_service, mailer, active_user):
        service = make_service(twofa_enabled=True)
        individual, _ = active_user
        await service.login("ada@example.com", PASSWORD)

        grant = await service.verify_two_factor("ada@example.com", mailer.codes[-1])

        assert service.tokens.verify_session_token(grant.token).subject == individual.id

    async def test_unknown_email(self, service):
        with pytest.raises(TwoFactorError) as excinfo:
            await service.verify_two_factor("nobody@example.com", "123456")
        assert excinfo.value.detail == {"reason": "NO_CHALLENGE"}

    async def test_bad_code(self, make_service, mailer, active_user):
        service = make_service(twofa_enabled=True)
        await service.login("ada@example.com", PASSWORD)

        with pytest.raises(TwoFactorError) as excinfo:
            await service.verify_two_factor("ada@example.com", "x")
        assert excinfo.value.message == "Invalid code"
        assert excinfo.value.reason == "BAD_CODE"
        assert excinfo.value.error_code == "invalid_code"

    async def test_locked_challenge_reported_as_expired(self, make_service, mailer, active_user):
        service = make_service(twofa_enabled=True)
        await service.login("ada@example.com", PASSWORD)
        code = mailer.codes[-1]
        for _ in range(3):
            with pytest.raises(TwoFactorError):
                await service.verify_two_factor("ada@example.com", "wrong")

        with pytest.raises(TwoFactorError) as excinfo:
            await service.verify_two_factor("ada@example.com", code)
        assert excinfo.value.message == "Code expired"
        assert excinfo.value.reason == "EXPIRED"

    async def test_missing_code(self, service):
        with pytest.raises(ValidationError):
            await service.verify_two_factor("ada@example.com", "")


class TestPasswordReset:
    async def test_unknown_email_sends_nothing(self, service, mailer):
        await service.request_password_reset("nobody@example.com")
        assert mailer.sent == []

    async def test_known_email_gets_reset_link(self, service, mailer, active_user):
        _, creds = active_user

        await service.request_password_reset("ADA@example.com")

        message = mailer.sent[-1]
        assert message["kind"] == "reset"
        assert message["url"].startswith("https://portal.example.org/set-password?token=")
        check = service.tokens.verify_set_password_token(_token_from_url(message["url"]))
        assert check.credentials_id == creds.id

    async def test_mail_failure_is_not_reported(self, service, mailer, active_user):
        mailer.fail = True
        await service.request_password_reset("ada@example.com")

    async def test_missing_email(self, service):
        with pytest.raises(ValidationError):
            await service.request_password_reset("  ")


class TestSetPassword:
    async def test_policy_checked_before_token(self, service):
        with pytest.raises(WeakPasswordError) as excinfo:
            await service.set_password("garbage", "weak")
        assert excinfo.value.status_code == 422

    async def test_invalid_token(self, service):
        with pytest.raises(InvalidTokenError):
            await service.set_password("not.a.token", PASSWORD)

    async def test_session_token_rejected(self, service, active_user):
        individual, _ = active_user
        session = service.tokens.issue_session_token(individual.id)
        with pytest.raises(InvalidTokenError):
            await service.set_password(session, PASSWORD)

    async def test_unknown_credentials(self, service):
        token = service.tokens.issue_set_password_token("missing-credentials")
        with pytest.raises(InvalidTokenError):
            await service.set_password(token, PASSWORD)

    async def test_activates_and_enables_login(self, service, store, mailer):
        individual = store.create_individual("Grace", "Hopper")
        await service.invite_existing_individual(individual.id, "grace@example.com")
        token = _token_from_url(mailer.last_url)

        await service.set_password(token, PASSWORD)

        creds = store.find_credentials_by_email("grace@example.com")
        assert creds.is_active
        assert creds.password_hash and creds.password_hash != PASSWORD
        outcome = await service.login("grace@example.com", PASSWORD)
        assert isinstance(outcome, SessionGrant)


class TestInvite:
    async def test_missing_fields(self, service):
        with pytest.raises(ValidationError) as excinfo:
            await service.invite_existing_individual(None, "a@example.com")
        assert excinfo.value.message == "Missing individualId."

    async def test_unknown_individual(self, service):
        with pytest.raises(NotFoundError):
            await service.invite_existing_individual("nope", "a@example.com")

    async def test_creates_inactive_credentials_and_mails_link(self, service, store, mailer):
        individual = store.create_individual("Grace", "Hopper")

        sent = await service.invite_existing_individual(
            individual.id, "Grace@Example.com", invited_by="admin-1"
        )

        assert sent is True
        creds = store.get_credentials_for_individual(individual.id)
        assert creds.email == "grace@example.com"
        assert not creds.is_active
        assert creds.password_hash is None
        assert mailer.sent[-1]["kind"] == "set_password"
        assert mailer.sent[-1]["to"] == "grace@example.com"

    async def test_reinvite_updates_email_on_same_row(self, service, store):
        individual = store.create_individual("Grace", "Hopper")
        await service.invite_existing_individual(individual.id, "grace@example.com")
        first = store.get_credentials_for_individual(individual.id)

        await service.invite_existing_individual(individual.id, "hopper@example.com")

        second = store.get_credentials_for_individual(individual.id)
        assert second.id == first.id
        assert second.email == "hopper@example.com"
        assert store.find_credentials_by_email("grace@example.com") is None

    async def test_email_owned_by_someone_else(self, service, store, active_user):
        individual = store.create_individual("Grace", "Hopper")
        with pytest.raises(DuplicateEmailError):
            await service.invite_existing_individual(individual.id, "ada@example.com")

    async def test_mail_failure_keeps_credentials(self, service, store, mailer):
        individual = store.create_individual("Grace", "Hopper")
        mailer.fail = True

        sent = await service.invite_existing_individual(individual.id, "grace@example.com")

        assert sent is False
        assert store.get_credentials_for_individual(individual.id) is not None


class TestBootstrapFirstAdmin:
    async def test_creates_admin_with_national_role(self, service, store, mailer):
        assert service.admin_exists() is False

        result = await service.bootstrap_first_admin(" Ada ", "Lovelace", "Admin@Example.com")

        assert service.admin_exists() is True
        assert result.email_sent is True
        individual = store.get_individual(result.individual_id)
        assert (individual.first_name, individual.grade, individual.special) == (
            "Ada",
            "Adult",
            True,
        )
        creds = store.get_credentials(result.credentials_id)
        assert creds.email == "admin@example.com"
        assert not creds.is_active
        roles = store.list_active_roles(result.individual_id)
        assert [(r.role, r.target_name, r.target_level) for r in roles] == [
            ("ADMIN", NATIONAL_ENTITY_NAME, "NATIONAL")
        ]
        assert mailer.sent[-1]["kind"] == "set_password"

    async def test_second_bootstrap_forbidden(self, service):
        await service.bootstrap_first_admin("Ada", "Lovelace", "admin@example.com")
        with pytest.raises(AdminAlreadyExistsError) as excinfo:
            await service.bootstrap_first_admin("Eve", "Other", "eve@example.com")
        assert excinfo.value.status_code == 403

    async def test_duplicate_email_leaves_nothing_behind(self, service, store, active_user):
        individuals_before = len(store.individuals)

        with pytest.raises(DuplicateEmailError):
            await service.bootstrap_first_admin("Eve", "Other", "ada@example.com")

        assert len(store.individuals) == individuals_before
        assert store.admin_exists() is False
        assert store.admin_bootstrap is None

    async def test_lost_race_rolls_back(self, service, store):
        # Another process committed its bootstrap marker after our admin_exists() check
        store.claim_admin_bootstrap("someone-else")

        with pytest.raises(AdminAlreadyExistsError):
            await service.bootstrap_first_admin("Eve", "Other", "eve@example.com")

        assert store.find_credentials_by_email("eve@example.com") is None
        assert store.admin_exists() is False

    async def test_mail_failure_still_creates_admin(self, service, mailer):
        mailer.fail = True

        result = await service.bootstrap_first_admin("Ada", "Lovelace", "admin@example.com")

        assert result.email_sent is False
        assert service.admin_exists() is True

    async def test_missing_fields(self, service):
        with pytest.raises(ValidationError) as excinfo:
            await service.bootstrap_first_admin("Ada", "", None)
        assert excinfo.value.detail["missing"] == ["lastName", "email"]


class TestAuthenticate:
    def test_bearer_session_token(self, service, active_user):
        individual, _ = active_user
        token = service.tokens.issue_session_token(individual.id)

        ctx = service.authenticate(f"bearer {token}")

        assert ctx.individual_id == individual.id
        assert ctx.token_payload["typ"] == "session"

    def test_rejects_missing_malformed_and_wrong_type(self, service, active_user):
        _, creds = active_user
        assert service.authenticate(None) is None
        assert service.authenticate("Basic abc") is None
        assert service.authenticate("Bearer not-a-token") is None
        set_password = service.tokens.issue_set_password_token(creds.id)
        assert service.authenticate(f"Bearer {set_password}") is None

    def test_unknown_subject(self, service):
        token = service.tokens.issue_session_token("deleted-individual")
        assert service.authenticate(f"Bearer {token}") is None
