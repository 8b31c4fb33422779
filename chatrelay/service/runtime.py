from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from chatrelay.config import get_settings, reset_settings_cache
from chatrelay.logging import get_logger
from chatrelay.service.audit import AuditPolicy
from chatrelay.service.auth import TokenVerifier
from chatrelay.service.cancellation import CancellationRegistry
from chatrelay.service.completion import build_completion_backend
from chatrelay.service.credentials import CredentialPool
from chatrelay.service.orchestrator import ChatTurnOrchestrator
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cancellations = CancellationRegistry()
        self.credentials = CredentialPool(self.store, self.settings.chat_models)
        self.audit_policy = AuditPolicy.from_settings(self.settings)
        self.backend = build_completion_backend(self.settings)
        self.tokens = TokenVerifier(self.settings)
        self.orchestrator = ChatTurnOrchestrator(
            store=self.store,
            credentials=self.credentials,
            backend=self.backend,
            registry=self.cancellations,
            audit_policy=self.audit_policy,
            settings=self.settings,
        )
        self._seed_bootstrap_credential()
        logger.info(
            "runtime_init_completed",
            backend=str(self.backend.mode.value),
            models=self.settings.chat_models,
        )

    def _seed_bootstrap_credential(self) -> None:
        if not self.settings.bootstrap_api_key or self.store.list_credentials():
            return
        roles = {"user", "vip", *self.settings.privileged_roles}
        self.credentials.upsert(
            secret=self.settings.bootstrap_api_key,
            models=self.settings.chat_models,
            roles=roles,
            remark="bootstrap",
        )
        logger.info("bootstrap_credential_seeded", models=self.settings.chat_models)


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
