from __future__ import annotations

import threading
import time
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from eventauth.config import Settings, get_settings, reset_settings_cache
from eventauth.logging import get_logger
from eventauth.service.notifier import AccountNotifier
from eventauth.service.passwords import PasswordService
from eventauth.service.sessions import SessionLifecycle
from eventauth.service.token_sweeper import TokenSweeper
from eventauth.service.tokens import TokenIssuer, TokenVerifier
from eventauth.storage.errors import StoreUnavailableError
from eventauth.storage.memory import MemoryCache, MemoryStore
from eventauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
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
    """Holds the service instances shared by the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            redis_url=_mask_url_password(self.settings.redis_url),
        )
        self.store = MemoryStore()
        self.cache: Union[RedisCache, MemoryCache] = self._build_cache()

        self.issuer = TokenIssuer.from_settings(self.settings, clock=clock)
        self.verifier = TokenVerifier.from_settings(self.settings, clock=clock)
        self.notifier = AccountNotifier(
            base_url=self.settings.app_base_url,
            dev_mode=self.settings.notifier_dev_mode,
        )
        self.passwords = PasswordService(
            self.store,
            self.issuer,
            self.settings,
            notifier=self.notifier,
            clock=clock,
        )
        self.sessions = SessionLifecycle(
            self.store,
            self.cache,
            self.issuer,
            self.verifier,
            self.passwords,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
            clock=clock,
        )
        # Password changes, resets and admin actions end every session
        self.passwords.session_invalidator = self._invalidate_sessions
        self.sweeper = TokenSweeper(
            self.cache,
            self.verifier,
            interval=self.settings.token_cleanup_interval_seconds,
            clock=clock,
        )

    async def _invalidate_sessions(self, account_id: str) -> None:
        await self.sessions.force_invalidate(account_id)

    def _fallback_allowed(self) -> bool:
        return self.settings.test_mode or self.settings.allow_redis_fallback_dev

    def _build_cache(self) -> Union[RedisCache, MemoryCache]:
        redis_url = self.settings.redis_url
        if redis_url and not redis_url.startswith("memory://"):
            return RedisCache(
                redis_url,
                socket_timeout=self.settings.redis_operation_timeout,
                operation_timeout=self.settings.redis_operation_timeout,
            )
        if not self._fallback_allowed():
            raise RuntimeError(
                "Redis is required for the token revocation store; set REDIS_URL or "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            )
        self._log_fallback(None)
        return MemoryCache(clock=self.clock)

    def _log_fallback(self, error: Optional[BaseException]) -> None:
        mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(error) if error else "redis_url_missing",
            message=(
                f"Running without Redis under {mode}; refresh records and the "
                "access-token blacklist are process-local."
            ),
            mode=mode,
        )

    def _use_cache(self, cache: Union[RedisCache, MemoryCache]) -> None:
        self.cache = cache
        self.sessions.cache = cache
        self.sweeper.cache = cache

    async def verify_cache(self) -> None:
        """Check revocation store connectivity at startup.

        Falls back to the in-process store only when TEST_MODE or
        ALLOW_REDIS_FALLBACK_DEV permits it.
        """
        try:
            await self.cache.verify_connection()
        except StoreUnavailableError as exc:
            if not self._fallback_allowed():
                raise RuntimeError(
                    "Redis is required for the token revocation store"
                ) from exc
            self._log_fallback(exc)
            await self.cache.close()
            self._use_cache(MemoryCache(clock=self.clock))

    async def start_background(self) -> None:
        if self.settings.token_cleanup_enabled:
            await self.sweeper.start()

    async def shutdown(self) -> None:
        await self.sweeper.stop()
        await self.cache.close()


runtime: Runtime | None = None
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


def reset_runtime_for_tests(**kwargs) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **kwargs)
        return runtime
