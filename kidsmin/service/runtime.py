from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from kidsmin.config import Settings, get_settings, reset_settings_cache
from kidsmin.logging import get_logger
from kidsmin.service.auth import AuthService
from kidsmin.service.email import EmailService
from kidsmin.service.people import PeopleService
from kidsmin.service.roles import RoleResolver
from kidsmin.service.tokens import TokenService
from kidsmin.service.twofa import TwoFactorEngine
from kidsmin.storage.memory import MemoryStore
from kidsmin.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with '***' for logging.

    Example: postgresql://app:secret@db:5432/kidsmin -> postgresql://app:***@db:5432/kidsmin
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store and service instances shared by the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=None
                if self.settings.use_memory_store
                else _mask_url_password(self.settings.database_url),
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            dev_mode=self.settings.email_dev_mode,
        )
        self.tokens = TokenService(self.settings)
        self.roles = RoleResolver(self.store)
        self.twofa = TwoFactorEngine(self.store, self.email, self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            mailer=self.email,
            tokens=self.tokens,
            twofa=self.twofa,
            roles=self.roles,
        )
        self.people = PeopleService(self.store)

        logger.info(
            "runtime_initialized",
            email_configured=self.email.is_configured,
            email_dev_mode=self.email.dev_mode,
            twofa_forced=self.settings.twofa_enabled,
            twofa_max_attempts=self.settings.twofa_max_attempts,
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
