from __future__ import annotations

import threading
from typing import Optional

from xserver.config import get_settings, reset_settings_cache
from xserver.logging import get_logger
from xserver.service.app_config import AppConfigService
from xserver.service.auth import AuthService
from xserver.service.clock import Clock, utc_now
from xserver.service.email import EmailService
from xserver.service.posts import PostService
from xserver.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, clock: Optional[Clock] = None):
        self.settings = get_settings()
        self.clock: Clock = clock or utc_now
        logger.info(
            "runtime_init_started",
            persist_state=self.settings.persist_state,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                persist=self.settings.persist_state,
                secret_key=self.settings.mfa_secret_key or self.settings.jwt_secret,
            )
        except (OSError, RuntimeError, ValueError) as exc:
            logger.error(
                "runtime_store_init_failed",
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
        )
        if not self.email.is_configured:
            logger.warning(
                "email_not_configured",
                message="two-factor codes will be logged instead of emailed",
            )
        self.auth = AuthService(
            self.store,
            self.settings,
            notifier=self.email,
            clock=self.clock,
        )
        self.posts = PostService(self.store, clock=self.clock)
        self.app_config = AppConfigService(self.settings, clock=self.clock)
        logger.info("runtime_init_complete")

    def run_maintenance(self) -> dict:
        """Purge expired tokens and challenges, then prune idle device sessions."""
        purged = self.auth.cleanup_expired_states()
        pruned = self.auth.prune_idle_sessions()
        result = {**purged, "sessions": pruned}
        if any(result.values()):
            logger.info("maintenance_completed", **result)
        return result


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the first check skips the lock once the
    runtime exists, the second prevents two threads from both creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, clock: Optional[Clock] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock)
        return runtime
