from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tokenwarden.config import get_settings, reset_settings_cache
from tokenwarden.logging import get_logger
from tokenwarden.service.email import EmailService
from tokenwarden.service.lifecycle import TokenLifecycleManager
from tokenwarden.service.passwords import PasswordHasher
from tokenwarden.storage.memory import MemoryStore
from tokenwarden.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: postgresql://app:secret@db:5432/tokens -> postgresql://app:***@db:5432/tokens
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app and scripts."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                # Test runs never share state through the filesystem
                fs_root = None if self.settings.test_mode else self.settings.shared_fs_root
                self.store = MemoryStore(fs_root=fs_root)
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info(
                "runtime_store_initialized",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url)
                if store_type == "postgres"
                else None,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService.from_settings(self.settings)
        if not self.email.is_configured:
            logger.warning(
                "email_not_configured",
                message="SMTP_HOST or EMAIL_FROM_ADDRESS missing; reset links are logged instead of sent",
            )
        self.lifecycle = TokenLifecycleManager(
            self.store,
            self.settings,
            hasher=PasswordHasher.from_settings(self.settings),
            notifier=self.email,
        )

    def close(self) -> None:
        self.lifecycle.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
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
        runtime = Runtime()
        return runtime
