"""Periodic sweep of stale refresh records.

Refresh records normally expire through their store TTL. The sweep catches
records whose token no longer verifies (expired early by a lifetime change
or signed with a rotated secret) and stamps ``token_cleanup_last_run``.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from eventauth.logging import get_logger
from eventauth.service.tokens import TokenVerifier
from eventauth.storage.common import RevocationStore
from eventauth.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 6 * 60 * 60
MAX_BACKOFF_SECONDS = 300


class TokenSweeper:
    """Background task that owns the refresh-record sweep.

    Started and stopped by the application lifespan; never scheduled at
    import time.
    """

    def __init__(
        self,
        cache: RevocationStore,
        verifier: TokenVerifier,
        *,
        interval: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.verifier = verifier
        self.interval = interval
        self.clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background sweep."""
        if self._running:
            logger.warning("token_sweeper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("token_sweeper_started", interval_seconds=self.interval)

    async def stop(self) -> None:
        """Stop the background sweep."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("token_sweeper_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "token_sweeper_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(MAX_BACKOFF_SECONDS, 30 * (2 ** (consecutive_errors - 3)))
                    logger.warning(
                        "token_sweeper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)

    async def run_once(self) -> int:
        """Remove refresh records whose token no longer verifies.

        Returns the number of records removed. Store failures for a single
        record are logged and skipped; a failure listing records propagates
        to the loop.
        """
        removed = 0
        subjects = await self.cache.iter_refresh_subjects()
        for subject in subjects:
            try:
                record = await self.cache.get_refresh(subject)
                if record is None:
                    continue
                result = self.verifier.verify_refresh(record.token)
                if result.valid and result.subject == subject:
                    continue
                await self.cache.delete_refresh(subject)
                removed += 1
            except StoreUnavailableError as exc:
                logger.warning("token_sweep_record_failed", account_id=subject, error=str(exc))
        marker = datetime.fromtimestamp(self.clock(), tz=timezone.utc).isoformat()
        await self.cache.set_cleanup_marker(marker)
        logger.info("token_cleanup_completed", removed=removed, scanned=len(subjects))
        return removed
