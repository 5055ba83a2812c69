from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from kidsmin.logging import get_logger
from kidsmin.storage.common import normalize_email
from kidsmin.storage.errors import ConstraintViolation, StoreUnavailable
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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS individual (
        id UUID PRIMARY KEY,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        grade TEXT NOT NULL DEFAULT 'Adult',
        special BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entity (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        level TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credentials (
        id UUID PRIMARY KEY,
        individual_id UUID NOT NULL UNIQUE REFERENCES individual(id),
        email TEXT NOT NULL,
        password_hash TEXT,
        is_active BOOLEAN NOT NULL DEFAULT FALSE,
        twofa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        twofa_preferred TEXT NOT NULL DEFAULT 'email',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT credentials_active_requires_password
            CHECK (is_active = FALSE OR password_hash IS NOT NULL)
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS credentials_email_lower_key ON credentials (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS twofa_challenge (
        credentials_id UUID PRIMARY KEY REFERENCES credentials(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        channel TEXT NOT NULL DEFAULT 'email',
        attempts INTEGER NOT NULL DEFAULT 0,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_assignment (
        id UUID PRIMARY KEY,
        individual_id UUID NOT NULL REFERENCES individual(id),
        target_type TEXT NOT NULL DEFAULT 'ENTITY',
        target_id UUID NOT NULL,
        role TEXT NOT NULL,
        active DATE NOT NULL DEFAULT DATE '9999-12-31',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS role_assignment_individual_idx ON role_assignment (individual_id)",
    """
    CREATE TABLE IF NOT EXISTS admin_bootstrap (
        singleton BOOLEAN PRIMARY KEY DEFAULT TRUE CHECK (singleton),
        individual_id UUID NOT NULL REFERENCES individual(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_REQUIRED_TABLES = (
    "individual",
    "entity",
    "credentials",
    "twofa_challenge",
    "role_assignment",
    "admin_bootstrap",
)


class PostgresStore:
    """Postgres-backed store for individuals, credentials, roles and 2FA challenges.

    Single statements run on a pooled connection that commits when the
    ``with`` block exits. Inside ``transaction()`` every store call reuses
    the transaction's connection, so the whole block commits or rolls back
    together.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._tx_conn: ContextVar[Optional[Connection]] = ContextVar(
            f"kidsmin_pg_tx_{id(self)}", default=None
        )
        self._ensure_schema()
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        active = self._tx_conn.get()
        if active is not None:
            yield active
            return
        with self.pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        if self._tx_conn.get() is not None:
            yield self
            return
        # pool.connection() commits on clean exit and rolls back on error
        with self.pool.connection() as conn:
            token = self._tx_conn.set(conn)
            try:
                yield self
            except Exception as exc:
                self.logger.warning(
                    "postgres_transaction_rolled_back", error_type=type(exc).__name__
                )
                raise
            finally:
                self._tx_conn.reset(token)

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            self.logger.error("postgres_schema_missing", tables=missing)
            raise StoreUnavailable(f"missing required tables: {', '.join(missing)}")

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_individual(row: dict) -> Individual:
        return Individual(
            id=str(row["id"]),
            first_name=row["first_name"],
            last_name=row["last_name"],
            grade=row.get("grade", "Adult"),
            special=bool(row.get("special", False)),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_credentials(row: dict) -> Credentials:
        return Credentials(
            id=str(row["id"]),
            individual_id=str(row["individual_id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            is_active=bool(row.get("is_active", False)),
            twofa_enabled=bool(row.get("twofa_enabled", False)),
            twofa_preferred=row.get("twofa_preferred") or "email",
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_challenge(row: dict) -> TwoFactorChallenge:
        return TwoFactorChallenge(
            credentials_id=str(row["credentials_id"]),
            code_hash=row["code_hash"],
            channel=row.get("channel") or "email",
            attempts=int(row.get("attempts") or 0),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_entity(row: dict) -> Entity:
        return Entity(
            id=str(row["id"]),
            name=row["name"],
            level=EntityLevel(row["level"]),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_role_view(row: dict) -> RoleView:
        return RoleView(
            target_type=row.get("target_type") or TargetType.ENTITY.value,
            target_id=str(row["target_id"]),
            target_name=row.get("target_name"),
            target_level=row.get("target_level"),
            role=row["role"],
            active=row["active"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

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
        individual = Individual(
            id=new_id(),
            first_name=first_name,
            last_name=last_name,
            grade=grade,
            special=special,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO individual (id, first_name, last_name, grade, special, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    individual.id,
                    first_name,
                    last_name,
                    grade,
                    special,
                    individual.created_at,
                ),
            )
        return individual

    def get_individual(self, individual_id: str) -> Optional[Individual]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM individual WHERE id = %s", (individual_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_individual(row)

    def create_entity(self, name: str, level: EntityLevel) -> Entity:
        entity = Entity(id=new_id(), name=name, level=EntityLevel(level))
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO entity (id, name, level, created_at) VALUES (%s, %s, %s, %s)",
                (entity.id, name, entity.level.value, entity.created_at),
            )
        return entity

    def ensure_national_entity(self) -> Entity:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM entity WHERE level = %s ORDER BY created_at LIMIT 1",
                (EntityLevel.NATIONAL.value,),
            ).fetchone()
        if row:
            return self._row_to_entity(row)
        return self.create_entity(NATIONAL_ENTITY_NAME, EntityLevel.NATIONAL)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def find_credentials_by_email(self, email: str) -> Optional[Credentials]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credentials WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
        if not row:
            return None
        return self._row_to_credentials(row)

    def get_credentials(self, credentials_id: str) -> Optional[Credentials]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credentials WHERE id = %s", (credentials_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_credentials(row)

    def get_credentials_for_individual(self, individual_id: str) -> Optional[Credentials]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credentials WHERE individual_id = %s", (individual_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_credentials(row)

    def create_credentials(
        self, individual_id: str, email: str, *, twofa_enabled: bool = False
    ) -> Credentials:
        creds = Credentials(
            id=new_id(),
            individual_id=individual_id,
            email=normalize_email(email),
            twofa_enabled=twofa_enabled,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO credentials (id, individual_id, email, password_hash, is_active,
                                             twofa_enabled, created_at, updated_at)
                    VALUES (%s, %s, %s, NULL, FALSE, %s, %s, %s)
                    """,
                    (
                        creds.id,
                        individual_id,
                        creds.email,
                        twofa_enabled,
                        creds.created_at,
                        creds.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise self._unique_violation(exc) from exc
        return creds

    def upsert_credentials_for_individual(self, individual_id: str, email: str) -> Credentials:
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO credentials (id, individual_id, email, password_hash, is_active,
                                             created_at, updated_at)
                    VALUES (%s, %s, %s, NULL, FALSE, now(), now())
                    ON CONFLICT (individual_id) DO UPDATE
                    SET email = EXCLUDED.email,
                        updated_at = now()
                    RETURNING *
                    """,
                    (new_id(), individual_id, normalized),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._unique_violation(exc) from exc
        return self._row_to_credentials(row)

    def activate_with_password(self, credentials_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE credentials
                SET password_hash = %s, is_active = TRUE, updated_at = now()
                WHERE id = %s
                """,
                (password_hash, credentials_id),
            )
        return bool(cur.rowcount)

    @staticmethod
    def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
        if "individual_id" in constraint:
            return ConstraintViolation("credentials already exist", {"field": "individual_id"})
        return ConstraintViolation("email already exists", {"field": "email"})

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
        assignment = RoleAssignment(
            id=new_id(),
            individual_id=individual_id,
            target_id=target_id,
            role=Role(role),
            target_type=TargetType.ENTITY,
            active=active,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO role_assignment (id, individual_id, target_type, target_id, role,
                                             active, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    assignment.id,
                    individual_id,
                    assignment.target_type.value,
                    target_id,
                    assignment.role.value,
                    active,
                    assignment.created_at,
                    assignment.updated_at,
                ),
            )
        return assignment

    def list_active_roles(self, individual_id: str) -> List[RoleView]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT ra.target_type, ra.target_id, e.name AS target_name,
                       e.level AS target_level, ra.role, ra.active,
                       ra.created_at, ra.updated_at
                FROM role_assignment ra
                LEFT JOIN entity e ON e.id = ra.target_id
                WHERE ra.individual_id = %s AND ra.active = %s
                ORDER BY ra.created_at
                """,
                (individual_id, OPEN_ENDED),
            ).fetchall()
        return [self._row_to_role_view(row) for row in rows]

    def admin_exists(self) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM role_assignment WHERE role = %s LIMIT 1",
                (Role.ADMIN.value,),
            ).fetchone()
        return row is not None

    def claim_admin_bootstrap(self, individual_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO admin_bootstrap (singleton, individual_id) VALUES (TRUE, %s)",
                    (individual_id,),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "admin already bootstrapped", {"constraint": "admin_bootstrap"}
            ) from exc

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO twofa_challenge (credentials_id, code_hash, channel, attempts,
                                             expires_at, created_at, updated_at)
                VALUES (%s, %s, %s, 0, %s, now(), now())
                ON CONFLICT (credentials_id) DO UPDATE
                SET code_hash = EXCLUDED.code_hash,
                    channel = EXCLUDED.channel,
                    attempts = 0,
                    expires_at = EXCLUDED.expires_at,
                    updated_at = now()
                RETURNING *
                """,
                (credentials_id, code_hash, channel, expires_at),
            ).fetchone()
        return self._row_to_challenge(row)

    def get_twofa_challenge(self, credentials_id: str) -> Optional[TwoFactorChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM twofa_challenge WHERE credentials_id = %s",
                (credentials_id,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_challenge(row)

    def increment_twofa_attempts(self, credentials_id: str) -> int:
        with self._connect() as conn:
            row: Any = conn.execute(
                """
                UPDATE twofa_challenge
                SET attempts = attempts + 1, updated_at = now()
                WHERE credentials_id = %s
                RETURNING attempts
                """,
                (credentials_id,),
            ).fetchone()
        return int(row["attempts"]) if row else 0

    def delete_twofa_challenge(
        self, credentials_id: str, *, code_hash: Optional[str] = None
    ) -> bool:
        sql = "DELETE FROM twofa_challenge WHERE credentials_id = %s"
        params: tuple = (credentials_id,)
        if code_hash is not None:
            sql += " AND code_hash = %s"
            params = (credentials_id, code_hash)
        with self._connect() as conn:
            cur = conn.execute(sql, params)
        return bool(cur.rowcount)
