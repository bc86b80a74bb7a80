from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from llmhub.config import get_settings, reset_settings_cache
from llmhub.logging import get_logger
from llmhub.service.auth import AuthService
from llmhub.service.email import EmailService
from llmhub.service.tokens import TokenLifecycleService
from llmhub.service.users import UserService
from llmhub.storage.memory import MemoryStore
from llmhub.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging.

    Example: postgresql://app:secret@db:5432/llmhub -> postgresql://app:***@db:5432/llmhub
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
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
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            token_ttl_hours=self.settings.token_ttl_hours,
        )
        if not self.email.is_configured:
            logger.warning("email_not_configured", message="mail will be logged, not sent")

        self.tokens = TokenLifecycleService(self.store, self.email, self.settings)
        self.auth = AuthService(self.store, self.tokens, self.settings)
        self.users = UserService(self.store)

    def close(self) -> None:
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            # Re-check under the lock; another thread may have built it
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read with an empty memory store.

    Only allowed in TEST_MODE.
    """

    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if settings.use_memory_store:
            state_file = Path(settings.shared_fs_root) / "state" / "memory_store.json"
            state_file.unlink(missing_ok=True)
        runtime = Runtime()
        return runtime
