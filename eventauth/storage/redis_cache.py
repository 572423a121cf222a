from __future__ import annotations

import asyncio
from typing import Any, Awaitable, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from eventauth.logging import get_logger
from eventauth.storage.common import (
    CLEANUP_MARKER_KEY,
    REFRESH_PREFIX,
    blacklist_key,
    refresh_key,
)
from eventauth.storage.errors import StoreUnavailableError
from eventauth.storage.models import RefreshTokenRecord

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed revocation store for refresh records and the access-token blacklist."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        if client is None:
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        """Await a redis command under the operation timeout.

        Any redis or timeout failure is re-raised as ``StoreUnavailableError``
        so callers decide between failing open and failing closed.
        """
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "redis_operation_timeout",
                operation=operation,
                timeout=self.operation_timeout,
            )
            raise StoreUnavailableError(operation, exc) from exc
        except (RedisError, OSError) as exc:
            logger.warning("redis_operation_failed", operation=operation, error=str(exc))
            raise StoreUnavailableError(operation, exc) from exc

    async def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        await self._call("ping", self.client.ping())

    async def put_refresh(
        self, subject: str, record: RefreshTokenRecord, ttl_seconds: int
    ) -> None:
        await self._call(
            "put_refresh",
            self.client.set(
                refresh_key(subject), record.to_json(), ex=max(1, int(ttl_seconds))
            ),
        )

    async def get_refresh(self, subject: str) -> Optional[RefreshTokenRecord]:
        raw = await self._call("get_refresh", self.client.get(refresh_key(subject)))
        if not raw:
            return None
        try:
            return RefreshTokenRecord.from_json(raw)
        except (ValueError, KeyError, TypeError):
            # A corrupt record cannot match any presented token
            logger.warning("refresh_record_corrupt", subject=subject)
            return None

    async def delete_refresh(self, subject: str) -> None:
        await self._call("delete_refresh", self.client.delete(refresh_key(subject)))

    async def blacklist(self, token: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self._call(
            "blacklist",
            self.client.set(blacklist_key(token), "true", ex=int(ttl_seconds)),
        )

    async def is_blacklisted(self, token: str) -> bool:
        return bool(
            await self._call("is_blacklisted", self.client.exists(blacklist_key(token)))
        )

    async def _scan_keys(self, prefix: str) -> List[str]:
        async def _collect() -> List[str]:
            return [key async for key in self.client.scan_iter(match=f"{prefix}*")]

        return await self._call("scan", _collect())

    async def count_keys(self, prefix: str) -> int:
        return len(await self._scan_keys(prefix))

    async def iter_refresh_subjects(self) -> List[str]:
        keys = await self._scan_keys(REFRESH_PREFIX)
        return [key[len(REFRESH_PREFIX):] for key in keys]

    async def set_cleanup_marker(self, value: str) -> None:
        await self._call("set_cleanup_marker", self.client.set(CLEANUP_MARKER_KEY, value))

    async def get_cleanup_marker(self) -> Optional[str]:
        return await self._call("get_cleanup_marker", self.client.get(CLEANUP_MARKER_KEY))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
