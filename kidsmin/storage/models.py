from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

# A role assignment is current while its "active" column holds this date
OPEN_ENDED = date(9999, 12, 31)

NATIONAL_ENTITY_NAME = "National Office"

VALID_GRADES = ("Adult", "12", "11", "10", "9")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class EntityLevel(str, Enum):
    DENOMINATION = "DENOMINATION"
    NATIONAL = "NATIONAL"
    REGIONAL = "REGIONAL"
    DISTRICT = "DISTRICT"
    CHURCH = "CHURCH"


class Role(str, Enum):
    ADMIN = "ADMIN"
    CMC = "CMC"
    CDR = "CDR"
    POG = "POG"
    COACH = "COACH"


class TargetType(str, Enum):
    ENTITY = "ENTITY"


@dataclass
class Individual:
    id: str
    first_name: str
    last_name: str
    grade: str = "Adult"
    special: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


@dataclass
class Credentials:
    """Login record for one individual.

    ``password_hash`` stays ``None`` until the owner sets a password through a
    set-password link, and ``is_active`` only flips to ``True`` at that point.
    """

    id: str
    individual_id: str
    email: str
    password_hash: Optional[str] = None
    is_active: bool = False
    twofa_enabled: bool = False
    twofa_preferred: str = "email"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TwoFactorChallenge:
    credentials_id: str
    code_hash: str
    expires_at: datetime
    channel: str = "email"
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Entity:
    id: str
    name: str
    level: EntityLevel
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RoleAssignment:
    id: str
    individual_id: str
    target_id: str
    role: Role
    target_type: TargetType = TargetType.ENTITY
    active: date = OPEN_ENDED
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_current(self) -> bool:
        return self.active == OPEN_ENDED


@dataclass
class RoleView:
    """Role assignment joined with its target entity, as returned to clients."""

    target_type: str
    target_id: str
    target_name: Optional[str]
    target_level: Optional[str]
    role: str
    active: date
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "targetType": self.target_type,
            "targetId": self.target_id,
            "targetName": self.target_name,
            "targetLevel": self.target_level,
            "role": self.role,
            "active": self.active.isoformat(),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
