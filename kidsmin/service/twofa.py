from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from kidsmin.config import Settings
from kidsmin.logging import get_logger
from kidsmin.storage.models import utcnow

logger = get_logger(__name__)


class ChallengeFailure(str, Enum):
    NO_CHALLENGE = "NO_CHALLENGE"
    EXPIRED = "EXPIRED"
    BAD_CODE = "BAD_CODE"
    LOCKED = "LOCKED"


@dataclass
class IssuedChallenge:
    channel: str
    ttl_minutes: int


@dataclass
class ChallengeResult:
    ok: bool
    reason: Optional[ChallengeFailure] = None
    attempts: int = 0


def generate_numeric_code(length: int) -> str:
    """Return ``length`` digits, each drawn uniformly from 0-9 by the OS CSPRNG."""
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


class TwoFactorEngine:
    """Email one-time-code challenges, one live challenge per credential.

    Codes are stored only as argon2id hashes. Issuing a new challenge
    overwrites the previous one and resets its attempt counter. An expired
    challenge stays in the store until it is replaced.
    """

    def __init__(
        self,
        store,
        mailer,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.settings = settings
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._clock = clock
        self.logger = logger

    @property
    def ttl_minutes(self) -> int:
        return self.settings.twofa_code_ttl_minutes

    @property
    def channel(self) -> str:
        return self.settings.twofa_channel.value

    async def issue_email_challenge(
        self, credentials_id: str, email: str, display_name: str
    ) -> IssuedChallenge:
        code = generate_numeric_code(self.settings.twofa_code_length)
        code_hash = await asyncio.to_thread(self._hasher.hash, code)
        expires_at = self._clock() + timedelta(minutes=self.ttl_minutes)
        self.store.upsert_twofa_challenge(
            credentials_id, code_hash, expires_at, channel=self.channel
        )
        self.logger.info(
            "twofa_challenge_issued",
            credentials_id=credentials_id,
            channel=self.channel,
            ttl_minutes=self.ttl_minutes,
        )
        # Nothing durable the caller depends on precedes this, so failures propagate
        await asyncio.to_thread(
            self.mailer.send_two_factor_code, email, display_name, code, self.ttl_minutes
        )
        return IssuedChallenge(channel=self.channel, ttl_minutes=self.ttl_minutes)

    def _code_matches(self, code_hash: str, code_attempt: str) -> bool:
        try:
            return self._hasher.verify(code_hash, code_attempt)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def verify_challenge(
        self, credentials_id: str, code_attempt: Optional[str]
    ) -> ChallengeResult:
        challenge = self.store.get_twofa_challenge(credentials_id)
        if challenge is None:
            return ChallengeResult(ok=False, reason=ChallengeFailure.NO_CHALLENGE)

        if self._clock() > challenge.expires_at:
            self.logger.info("twofa_challenge_expired", credentials_id=credentials_id)
            return ChallengeResult(
                ok=False, reason=ChallengeFailure.EXPIRED, attempts=challenge.attempts
            )

        max_attempts = self.settings.twofa_max_attempts
        if max_attempts and challenge.attempts >= max_attempts:
            self.logger.warning(
                "twofa_challenge_locked",
                credentials_id=credentials_id,
                attempts=challenge.attempts,
            )
            return ChallengeResult(
                ok=False, reason=ChallengeFailure.LOCKED, attempts=challenge.attempts
            )

        attempt = (code_attempt or "").strip()
        matched = bool(attempt) and await asyncio.to_thread(
            self._code_matches, challenge.code_hash, attempt
        )
        if not matched:
            attempts = self.store.increment_twofa_attempts(credentials_id)
            self.logger.warning(
                "twofa_bad_code", credentials_id=credentials_id, attempts=attempts
            )
            return ChallengeResult(ok=False, reason=ChallengeFailure.BAD_CODE, attempts=attempts)

        # Only the verification that deletes this exact challenge wins; a
        # reissued code in between leaves the new challenge in place
        if not self.store.delete_twofa_challenge(credentials_id, code_hash=challenge.code_hash):
            return ChallengeResult(ok=False, reason=ChallengeFailure.NO_CHALLENGE)
        self.logger.info("twofa_challenge_verified", credentials_id=credentials_id)
        return ChallengeResult(ok=True, attempts=challenge.attempts)
