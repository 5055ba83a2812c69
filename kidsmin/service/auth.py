from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from kidsmin.config import Settings
from kidsmin.logging import email_fingerprint, get_logger
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
from kidsmin.service.roles import RoleResolver
from kidsmin.service.tokens import (
    PASSWORD_POLICY_MESSAGE,
    TokenService,
    validate_password_policy,
)
from kidsmin.service.twofa import ChallengeFailure, TwoFactorEngine
from kidsmin.storage.common import normalize_email
from kidsmin.storage.errors import ConstraintViolation
from kidsmin.storage.models import (
    Credentials,
    Individual,
    Role,
    RoleView,
)

logger = get_logger(__name__)

TWO_FA_REQUIRED = "2FA_REQUIRED"

# User-facing messages; LOCKED is deliberately indistinguishable from EXPIRED
_CHALLENGE_MESSAGES = {
    ChallengeFailure.NO_CHALLENGE: ("No active challenge", ChallengeFailure.NO_CHALLENGE),
    ChallengeFailure.EXPIRED: ("Code expired", ChallengeFailure.EXPIRED),
    ChallengeFailure.LOCKED: ("Code expired", ChallengeFailure.EXPIRED),
    ChallengeFailure.BAD_CODE: ("Invalid code", ChallengeFailure.BAD_CODE),
}


class AuthStore(Protocol):
    def transaction(self): ...

    def find_credentials_by_email(self, email: str) -> Optional[Credentials]: ...

    def get_credentials(self, credentials_id: str) -> Optional[Credentials]: ...

    def create_credentials(
        self, individual_id: str, email: str, *, twofa_enabled: bool = False
    ) -> Credentials: ...

    def upsert_credentials_for_individual(
        self, individual_id: str, email: str
    ) -> Credentials: ...

    def activate_with_password(self, credentials_id: str, password_hash: str) -> bool: ...

    def get_individual(self, individual_id: str) -> Optional[Individual]: ...

    def create_individual(
        self, first_name: str, last_name: str, *, grade: str = "Adult", special: bool = False
    ) -> Individual: ...

    def ensure_national_entity(self): ...

    def assign_role(self, individual_id: str, target_id: str, role: Role, **kwargs): ...

    def list_active_roles(self, individual_id: str) -> List[RoleView]: ...

    def admin_exists(self) -> bool: ...

    def claim_admin_bootstrap(self, individual_id: str) -> None: ...


class Mailer(Protocol):
    def send(self, to_email: str, subject: str, text_body: str, html_body: str) -> None: ...

    def send_two_factor_code(
        self, to_email: str, display_name: str, code: str, ttl_minutes: int
    ) -> None: ...

    def send_set_password(self, to_email: str, url: str) -> None: ...

    def send_password_reset(self, to_email: str, url: str) -> None: ...


@dataclass
class AuthContext:
    individual_id: str
    token_payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionGrant:
    token: str
    roles: List[RoleView]

    def to_dict(self) -> dict:
        return {"token": self.token, "roles": [role.to_dict() for role in self.roles]}


@dataclass
class TwoFactorRequired:
    method: str
    ttl_minutes: int
    email_masked: str

    def to_dict(self) -> dict:
        return {
            "status": TWO_FA_REQUIRED,
            "method": self.method,
            "ttlMinutes": self.ttl_minutes,
            "emailMasked": self.email_masked,
        }


@dataclass
class BootstrapResult:
    individual_id: str
    credentials_id: str
    email_sent: bool


def mask_email(email: str) -> str:
    """Reveal only the first and last character of the local part.

    >>> mask_email("johndoe@example.com")
    'j*****e@example.com'
    >>> mask_email("jo@example.com")
    'j*@example.com'
    """
    if not email or "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    if len(local) <= 2:
        return f"{local[:1]}*@{domain}"
    return f"{local[0]}{'*' * (len(local) - 2)}{local[-1]}@{domain}"


def _require(**fields: Optional[str]) -> None:
    missing = [name for name, value in fields.items() if not value or not str(value).strip()]
    if missing:
        raise ValidationError(
            f"Missing {', '.join(missing)}.", detail={"missing": missing}
        )


class AuthService:
    """Login, 2FA, set-password/reset, invite and first-admin bootstrap flows.

    Store calls are synchronous and row-atomic. Password/code hashing and
    mail dispatch run in worker threads so the event loop stays free.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        mailer: Mailer,
        tokens: Optional[TokenService] = None,
        twofa: Optional[TwoFactorEngine] = None,
        roles: Optional[RoleResolver] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.mailer = mailer
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self.tokens = tokens or TokenService(settings)
        self.twofa = twofa or TwoFactorEngine(
            store, mailer, settings, hasher=self._pwd_hasher
        )
        self.roles = roles or RoleResolver(store)
        self.logger = logger

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _password_matches(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # ------------------------------------------------------------------
    # Login and 2FA
    # ------------------------------------------------------------------

    def _grant_session(self, individual_id: str) -> SessionGrant:
        roles = self.roles.active_roles_for_individual(individual_id)
        token = self.tokens.issue_session_token(individual_id)
        self.logger.info("session_issued", individual_id=individual_id, roles=len(roles))
        return SessionGrant(token=token, roles=roles)

    def _requires_two_factor(self, creds: Credentials) -> bool:
        return bool(self.settings.twofa_enabled or creds.twofa_enabled)

    async def login(
        self, email: Optional[str], password: Optional[str]
    ) -> Union[SessionGrant, TwoFactorRequired]:
        _require(email=email, password=password)
        normalized = normalize_email(email)
        creds = self.store.find_credentials_by_email(normalized)
        if not creds or not creds.is_active or not creds.password_hash:
            self.logger.info("login_rejected", email_hash=email_fingerprint(normalized))
            raise InvalidCredentialsError()
        matches = await asyncio.to_thread(
            self._password_matches, creds.password_hash, password
        )
        if not matches:
            self.logger.info("login_rejected", email_hash=email_fingerprint(normalized))
            raise InvalidCredentialsError()

        if self._requires_two_factor(creds):
            individual = self.store.get_individual(creds.individual_id)
            display_name = individual.display_name if individual else ""
            issued = await self.twofa.issue_email_challenge(creds.id, creds.email, display_name)
            self.logger.info("login_twofa_required", credentials_id=creds.id)
            return TwoFactorRequired(
                method=issued.channel,
                ttl_minutes=issued.ttl_minutes,
                email_masked=mask_email(creds.email),
            )
        return self._grant_session(creds.individual_id)

    async def verify_two_factor(self, email: Optional[str], code: Optional[str]) -> SessionGrant:
        _require(email=email, code=code)
        creds = self.store.find_credentials_by_email(normalize_email(email))
        if not creds:
            message, reason = _CHALLENGE_MESSAGES[ChallengeFailure.NO_CHALLENGE]
            raise TwoFactorError(message, reason=reason.value)
        result = await self.twofa.verify_challenge(creds.id, code)
        if not result.ok:
            message, reason = _CHALLENGE_MESSAGES[result.reason]
            raise TwoFactorError(message, reason=reason.value)
        return self._grant_session(creds.individual_id)

    # ------------------------------------------------------------------
    # Set-password links
    # ------------------------------------------------------------------

    async def _send_set_password_link(self, creds: Credentials, *, reset: bool) -> bool:
        """Mail a set-password link. Returns False (after logging) if delivery failed."""
        token = self.tokens.issue_set_password_token(creds.id)
        url = self.tokens.build_set_password_url(token)
        send = self.mailer.send_password_reset if reset else self.mailer.send_set_password
        try:
            await asyncio.to_thread(send, creds.email, url)
        except MailDeliveryError as exc:
            self.logger.error(
                "set_password_mail_failed",
                credentials_id=creds.id,
                reset=reset,
                error=exc.message,
            )
            return False
        return True

    async def request_password_reset(self, email: Optional[str]) -> None:
        """Mail a reset link if the address is known. The caller sees the same result either way."""
        _require(email=email)
        normalized = normalize_email(email)
        creds = self.store.find_credentials_by_email(normalized)
        self.logger.info(
            "password_reset_requested",
            email_hash=email_fingerprint(normalized),
            known=creds is not None,
        )
        if creds is None:
            return
        await self._send_set_password_link(creds, reset=True)

    async def set_password(self, token: Optional[str], password: Optional[str]) -> None:
        if not validate_password_policy(password):
            raise WeakPasswordError(PASSWORD_POLICY_MESSAGE)
        check = self.tokens.verify_set_password_token(token)
        if not check.ok:
            self.logger.warning(
                "set_password_token_rejected",
                reason=check.error.value if check.error else None,
            )
            raise InvalidTokenError()
        credentials_id = check.credentials_id
        password_hash = await asyncio.to_thread(self._hash_password, password)
        if not self.store.activate_with_password(credentials_id, password_hash):
            self.logger.warning("set_password_credentials_missing", credentials_id=credentials_id)
            raise InvalidTokenError()
        self.logger.info("password_set", credentials_id=credentials_id)

    # ------------------------------------------------------------------
    # Invite and bootstrap
    # ------------------------------------------------------------------

    async def invite_existing_individual(
        self,
        individual_id: Optional[str],
        email: Optional[str],
        *,
        invited_by: Optional[str] = None,
    ) -> bool:
        """Attach an email to an individual and mail them a set-password link.

        Returns whether the invite mail was handed off; the credentials row
        is kept either way.
        """
        _require(individualId=individual_id, email=email)
        if self.store.get_individual(individual_id) is None:
            raise NotFoundError("Individual not found")
        try:
            creds = self.store.upsert_credentials_for_individual(
                individual_id, normalize_email(email)
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise DuplicateEmailError() from exc
            raise
        self.logger.info(
            "individual_invited",
            individual_id=individual_id,
            credentials_id=creds.id,
            invited_by=invited_by,
        )
        return await self._send_set_password_link(creds, reset=False)

    def _bootstrap_write(
        self, first_name: str, last_name: str, email: str
    ) -> tuple[Individual, Credentials]:
        with self.store.transaction():
            individual = self.store.create_individual(
                first_name, last_name, grade="Adult", special=True
            )
            creds = self.store.create_credentials(individual.id, email)
            national = self.store.ensure_national_entity()
            self.store.assign_role(individual.id, national.id, Role.ADMIN)
            # Fails at write time if another bootstrap already committed
            self.store.claim_admin_bootstrap(individual.id)
        return individual, creds

    async def bootstrap_first_admin(
        self,
        first_name: Optional[str],
        last_name: Optional[str],
        email: Optional[str],
    ) -> BootstrapResult:
        _require(firstName=first_name, lastName=last_name, email=email)
        if self.store.admin_exists():
            raise AdminAlreadyExistsError()
        try:
            individual, creds = self._bootstrap_write(
                first_name.strip(), last_name.strip(), normalize_email(email)
            )
        except ConstraintViolation as exc:
            if exc.constraint == "admin_bootstrap":
                self.logger.warning("admin_bootstrap_race_lost")
                raise AdminAlreadyExistsError() from exc
            if exc.field == "email":
                raise DuplicateEmailError() from exc
            raise
        self.logger.info(
            "admin_bootstrapped", individual_id=individual.id, credentials_id=creds.id
        )
        # The admin row is committed; mail failure must not undo or fail it
        email_sent = await self._send_set_password_link(creds, reset=False)
        return BootstrapResult(
            individual_id=individual.id, credentials_id=creds.id, email_sent=email_sent
        )

    def admin_exists(self) -> bool:
        return self.store.admin_exists()

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip()

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve a ``Bearer`` session token to the caller's identity, or None."""
        token = self._extract_bearer(authorization)
        if not token:
            return None
        check = self.tokens.verify_session_token(token)
        if not check.ok:
            return None
        individual_id = check.subject
        if self.store.get_individual(individual_id) is None:
            return None
        return AuthContext(individual_id=individual_id, token_payload=check.payload)
