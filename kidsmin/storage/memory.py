from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from kidsmin.logging import get_logger
from kidsmin.storage.common import normalize_email
from kidsmin.storage.errors import ConstraintViolation
from kidsmin.storage.models import (
    NATIONAL_ENTITY_NAME,
    OPEN_ENDED,
    Credentials,
    Entity,
    EntityLevel,
    Individual,
    Role,
    RoleAssignment,
    RoleView,
    TargetType,
    TwoFactorChallenge,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-memory backing store persisted to a JSON snapshot under ``fs_root``.

    Every public method holds ``_data_lock``. ``transaction()`` holds the same
    lock for the whole block, so a multi-write sequence is isolated from other
    threads and is rolled back to a snapshot if the block raises.
    """

    def __init__(self, fs_root: str = "/tmp/kidsmin") -> None:
        self.logger = get_logger(__name__)
        self.individuals: Dict[str, Individual] = {}
        self.credentials: Dict[str, Credentials] = {}
        self.challenges: Dict[str, TwoFactorChallenge] = {}
        self.entities: Dict[str, Entity] = {}
        self.role_assignments: Dict[str, RoleAssignment] = {}
        self.admin_bootstrap: Optional[dict] = None
        # RLock so store methods can be called from inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            snapshot = self._snapshot()
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                self.logger.warning("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth -= 1
            self._commit()

    def _snapshot(self) -> dict:
        return {
            "individuals": copy.deepcopy(self.individuals),
            "credentials": copy.deepcopy(self.credentials),
            "challenges": copy.deepcopy(self.challenges),
            "entities": copy.deepcopy(self.entities),
            "role_assignments": copy.deepcopy(self.role_assignments),
            "admin_bootstrap": copy.deepcopy(self.admin_bootstrap),
        }

    def _restore(self, snapshot: dict) -> None:
        self.individuals = snapshot["individuals"]
        self.credentials = snapshot["credentials"]
        self.challenges = snapshot["challenges"]
        self.entities = snapshot["entities"]
        self.role_assignments = snapshot["role_assignments"]
        self.admin_bootstrap = snapshot["admin_bootstrap"]

    def _commit(self) -> None:
        # Writes inside a transaction are flushed once, when the outermost block exits
        if self._tx_depth == 0:
            self._persist_state()

    # ------------------------------------------------------------------
    # Individuals and entities
    # ------------------------------------------------------------------

    def create_individual(
        self,
        first_name: str,
        last_name: str,
        *,
        grade: str = "Adult",
        special: bool = False,
    ) -> Individual:
        with self._data_lock:
            individual = Individual(
                id=new_id(),
                first_name=first_name,
                last_name=last_name,
                grade=grade,
                special=special,
            )
            self.individuals[individual.id] = individual
            self._commit()
            return individual

    def get_individual(self, individual_id: str) -> Optional[Individual]:
        with self._data_lock:
            return self.individuals.get(individual_id)

    def create_entity(self, name: str, level: EntityLevel) -> Entity:
        with self._data_lock:
            entity = Entity(id=new_id(), name=name, level=EntityLevel(level))
            self.entities[entity.id] = entity
            self._commit()
            return entity

    def ensure_national_entity(self) -> Entity:
        with self._data_lock:
            for entity in self.entities.values():
                if entity.level == EntityLevel.NATIONAL:
                    return entity
            return self.create_entity(NATIONAL_ENTITY_NAME, EntityLevel.NATIONAL)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def _email_owner(self, email: str) -> Optional[Credentials]:
        for creds in self.credentials.values():
            if creds.email == email:
                return creds
        return None

    def find_credentials_by_email(self, email: str) -> Optional[Credentials]:
        with self._data_lock:
            return self._email_owner(normalize_email(email))

    def get_credentials(self, credentials_id: str) -> Optional[Credentials]:
        with self._data_lock:
            return self.credentials.get(credentials_id)

    def get_credentials_for_individual(self, individual_id: str) -> Optional[Credentials]:
        with self._data_lock:
            for creds in self.credentials.values():
                if creds.individual_id == individual_id:
                    return creds
            return None

    def create_credentials(
        self, individual_id: str, email: str, *, twofa_enabled: bool = False
    ) -> Credentials:
        normalized = normalize_email(email)
        with self._data_lock:
            if self._email_owner(normalized) is not None:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if self.get_credentials_for_individual(individual_id) is not None:
                raise ConstraintViolation(
                    "credentials already exist", {"field": "individual_id"}
                )
            creds = Credentials(
                id=new_id(),
                individual_id=individual_id,
                email=normalized,
                twofa_enabled=twofa_enabled,
            )
            self.credentials[creds.id] = creds
            self._commit()
            return creds

    def upsert_credentials_for_individual(self, individual_id: str, email: str) -> Credentials:
        normalized = normalize_email(email)
        with self._data_lock:
            existing = self.get_credentials_for_individual(individual_id)
            if existing is None:
                return self.create_credentials(individual_id, normalized)
            owner = self._email_owner(normalized)
            if owner is not None and owner.id != existing.id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            existing.email = normalized
            existing.updated_at = utcnow()
            self._commit()
            return existing

    def activate_with_password(self, credentials_id: str, password_hash: str) -> bool:
        with self._data_lock:
            creds = self.credentials.get(credentials_id)
            if creds is None:
                return False
            creds.password_hash = password_hash
            creds.is_active = True
            creds.updated_at = utcnow()
            self._commit()
            return True

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def assign_role(
        self,
        individual_id: str,
        target_id: str,
        role: Role,
        *,
        active: date = OPEN_ENDED,
    ) -> RoleAssignment:
        with self._data_lock:
            assignment = RoleAssignment(
                id=new_id(),
                individual_id=individual_id,
                target_id=target_id,
                role=Role(role),
                target_type=TargetType.ENTITY,
                active=active,
            )
            self.role_assignments[assignment.id] = assignment
            self._commit()
            return assignment

    def list_active_roles(self, individual_id: str) -> List[RoleView]:
        with self._data_lock:
            views = []
            for assignment in self.role_assignments.values():
                if assignment.individual_id != individual_id or not assignment.is_current:
                    continue
                entity = self.entities.get(assignment.target_id)
                views.append(
                    RoleView(
                        target_type=assignment.target_type.value,
                        target_id=assignment.target_id,
                        target_name=entity.name if entity else None,
                        target_level=entity.level.value if entity else None,
                        role=assignment.role.value,
                        active=assignment.active,
                        created_at=assignment.created_at,
                        updated_at=assignment.updated_at,
                    )
                )
            return views

    def admin_exists(self) -> bool:
        with self._data_lock:
            return any(
                assignment.role == Role.ADMIN for assignment in self.role_assignments.values()
            )

    def claim_admin_bootstrap(self, individual_id: str) -> None:
        with self._data_lock:
            if self.admin_bootstrap is not None:
                raise ConstraintViolation(
                    "admin already bootstrapped", {"constraint": "admin_bootstrap"}
                )
            self.admin_bootstrap = {
                "individual_id": individual_id,
                "created_at": self._serialize_datetime(utcnow()),
            }
            self._commit()

    # ------------------------------------------------------------------
    # Two-factor challenges
    # ------------------------------------------------------------------

    def upsert_twofa_challenge(
        self,
        credentials_id: str,
        code_hash: str,
        expires_at: datetime,
        *,
        channel: str = "email",
    ) -> TwoFactorChallenge:
        with self._data_lock:
            now = utcnow()
            previous = self.challenges.get(credentials_id)
            challenge = TwoFactorChallenge(
                credentials_id=credentials_id,
                code_hash=code_hash,
                expires_at=expires_at,
                channel=channel,
                attempts=0,
                created_at=previous.created_at if previous else now,
                updated_at=now,
            )
            self.challenges[credentials_id] = challenge
            self._commit()
            return challenge

    def get_twofa_challenge(self, credentials_id: str) -> Optional[TwoFactorChallenge]:
        with self._data_lock:
            challenge = self.challenges.get(credentials_id)
            # Callers get a copy so counters only change through the store
            return copy.copy(challenge) if challenge else None

    def increment_twofa_attempts(self, credentials_id: str) -> int:
        with self._data_lock:
            challenge = self.challenges.get(credentials_id)
            if challenge is None:
                return 0
            challenge.attempts += 1
            challenge.updated_at = utcnow()
            self._commit()
            return challenge.attempts

    def delete_twofa_challenge(
        self, credentials_id: str, *, code_hash: Optional[str] = None
    ) -> bool:
        """Remove the challenge; with ``code_hash``, only if it is still that challenge."""
        with self._data_lock:
            current = self.challenges.get(credentials_id)
            if current is None or (code_hash is not None and current.code_hash != code_hash):
                return False
            del self.challenges[credentials_id]
            self._commit()
            return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "individuals": [self._serialize_individual(i) for i in self.individuals.values()],
            "credentials": [self._serialize_credentials(c) for c in self.credentials.values()],
            "challenges": [self._serialize_challenge(c) for c in self.challenges.values()],
            "entities": [self._serialize_entity(e) for e in self.entities.values()],
            "role_assignments": [
                self._serialize_role_assignment(r) for r in self.role_assignments.values()
            ],
            "admin_bootstrap": self.admin_bootstrap,
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.individuals = {
            i["id"]: self._deserialize_individual(i) for i in data.get("individuals", [])
        }
        self.credentials = {
            c["id"]: self._deserialize_credentials(c) for c in data.get("credentials", [])
        }
        self.challenges = {
            c["credentials_id"]: self._deserialize_challenge(c)
            for c in data.get("challenges", [])
        }
        self.entities = {e["id"]: self._deserialize_entity(e) for e in data.get("entities", [])}
        self.role_assignments = {
            r["id"]: self._deserialize_role_assignment(r)
            for r in data.get("role_assignments", [])
        }
        self.admin_bootstrap = data.get("admin_bootstrap")
        self.logger.info(
            "memory_store_loaded",
            individuals=len(self.individuals),
            credentials=len(self.credentials),
        )
        return True

    def _serialize_individual(self, individual: Individual) -> dict:
        return {
            "id": individual.id,
            "first_name": individual.first_name,
            "last_name": individual.last_name,
            "grade": individual.grade,
            "special": individual.special,
            "created_at": self._serialize_datetime(individual.created_at),
        }

    def _deserialize_individual(self, data: dict) -> Individual:
        return Individual(
            id=str(data["id"]),
            first_name=data["first_name"],
            last_name=data["last_name"],
            grade=data.get("grade", "Adult"),
            special=bool(data.get("special", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_credentials(self, creds: Credentials) -> dict:
        return {
            "id": creds.id,
            "individual_id": creds.individual_id,
            "email": creds.email,
            "password_hash": creds.password_hash,
            "is_active": creds.is_active,
            "twofa_enabled": creds.twofa_enabled,
            "twofa_preferred": creds.twofa_preferred,
            "created_at": self._serialize_datetime(creds.created_at),
            "updated_at": self._serialize_datetime(creds.updated_at),
        }

    def _deserialize_credentials(self, data: dict) -> Credentials:
        return Credentials(
            id=str(data["id"]),
            individual_id=str(data["individual_id"]),
            email=data["email"],
            password_hash=data.get("password_hash"),
            is_active=bool(data.get("is_active", False)),
            twofa_enabled=bool(data.get("twofa_enabled", False)),
            twofa_preferred=data.get("twofa_preferred", "email"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_challenge(self, challenge: TwoFactorChallenge) -> dict:
        return {
            "credentials_id": challenge.credentials_id,
            "code_hash": challenge.code_hash,
            "channel": challenge.channel,
            "attempts": challenge.attempts,
            "expires_at": self._serialize_datetime(challenge.expires_at),
            "created_at": self._serialize_datetime(challenge.created_at),
            "updated_at": self._serialize_datetime(challenge.updated_at),
        }

    def _deserialize_challenge(self, data: dict) -> TwoFactorChallenge:
        return TwoFactorChallenge(
            credentials_id=str(data["credentials_id"]),
            code_hash=data["code_hash"],
            channel=data.get("channel", "email"),
            attempts=int(data.get("attempts", 0)),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_entity(self, entity: Entity) -> dict:
        return {
            "id": entity.id,
            "name": entity.name,
            "level": entity.level.value,
            "created_at": self._serialize_datetime(entity.created_at),
        }

    def _deserialize_entity(self, data: dict) -> Entity:
        return Entity(
            id=str(data["id"]),
            name=data["name"],
            level=EntityLevel(data["level"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_role_assignment(self, assignment: RoleAssignment) -> dict:
        return {
            "id": assignment.id,
            "individual_id": assignment.individual_id,
            "target_type": assignment.target_type.value,
            "target_id": assignment.target_id,
            "role": assignment.role.value,
            "active": assignment.active.isoformat(),
            "created_at": self._serialize_datetime(assignment.created_at),
            "updated_at": self._serialize_datetime(assignment.updated_at),
        }

    def _deserialize_role_assignment(self, data: dict) -> RoleAssignment:
        return RoleAssignment(
            id=str(data["id"]),
            individual_id=str(data["individual_id"]),
            target_type=TargetType(data.get("target_type", TargetType.ENTITY.value)),
            target_id=str(data["target_id"]),
            role=Role(data["role"]),
            active=date.fromisoformat(data["active"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )
