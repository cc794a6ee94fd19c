from __future__ import annotations

import asyncio
import json
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authcore.logging import get_logger
from authcore.storage.cache_keys import CacheKeys

logger = get_logger(__name__)

T = TypeVar("T")

_CACHE_ERRORS = (RedisError, asyncio.TimeoutError, OSError)


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


class KeyedCache:
    """JSON key/value cache over Redis with TTLs, batches and advisory locks.

    The cache is an optimisation only. Every backend error is logged and
    reported as a miss (reads) or ``False``/``None`` (writes), never raised.
    When the backend is unreachable at construction time the instance runs in
    disabled mode: writes return ``False``, reads miss, locks are never
    granted, and callers see the same behaviour as a cold cache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    LOCK_WAIT_SECONDS = 0.1
    SCAN_BATCH_SIZE = 100

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Any = None,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        lock_wait_seconds: float = LOCK_WAIT_SECONDS,
    ) -> None:
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.lock_wait_seconds = lock_wait_seconds
        self.client = client
        self.enabled = client is not None
        if client is None and redis_url:
            self.client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=operation_timeout,
                socket_connect_timeout=operation_timeout,
            )
            try:
                self.verify_connection()
                self.enabled = True
            except _CACHE_ERRORS as exc:
                logger.warning(
                    "cache_disabled",
                    reason="health_probe_failed",
                    error=str(exc),
                )
        elif client is None:
            logger.warning("cache_disabled", reason="redis_url_missing")

    @property
    def mode(self) -> str:
        return "enabled" if self.enabled else "disabled"

    def verify_connection(self) -> None:
        """Ping the backend with a short-lived synchronous client.

        A sync client keeps the async client from binding to a temporary
        event loop during startup.
        """
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.operation_timeout,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, op: str, key: Any, awaitable: Awaitable[T]) -> tuple[bool, Optional[T]]:
        try:
            result = await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except _CACHE_ERRORS as exc:
            logger.warning("cache_operation_failed", op=op, key=key, error=str(exc))
            return False, None
        return True, result

    @staticmethod
    def _dumps(value: Any) -> str:
        return json.dumps(value, default=_json_default, separators=(",", ":"))

    @staticmethod
    def _loads(raw: Any) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return raw

    async def get(self, key: str) -> Any:
        if not self.enabled:
            return None
        ok, raw = await self._call("get", key, self.client.get(key))
        return self._loads(raw) if ok else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.enabled or value is None:
            return False
        ex = max(1, int(ttl)) if ttl else None
        ok, result = await self._call("set", key, self.client.set(key, self._dumps(value), ex=ex))
        return bool(ok and result)

    async def delete(self, key: str) -> bool:
        if not self.enabled:
            return False
        ok, removed = await self._call("delete", key, self.client.delete(key))
        return bool(ok and removed)

    async def delete_batch(self, keys: Iterable[str]) -> int:
        """Delete explicit keys in one round trip; preferred over patterns."""
        key_list = list(keys)
        if not self.enabled or not key_list:
            return 0
        ok, removed = await self._call("delete_batch", key_list, self.client.delete(*key_list))
        return int(removed or 0) if ok else 0

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern`` using incremental SCAN.

        Cost grows with the whole keyspace, not the match count. Avoid on
        request paths; use :meth:`delete_batch` with known keys instead.
        """
        if not self.enabled:
            return 0
        removed = 0
        cursor = 0
        while True:
            ok, page = await self._call(
                "scan",
                pattern,
                self.client.scan(cursor=cursor, match=pattern, count=self.SCAN_BATCH_SIZE),
            )
            if not ok:
                return removed
            cursor, keys = page
            if keys:
                removed += await self.delete_batch(keys)
            if int(cursor) == 0:
                return removed

    async def exists(self, key: str, *, default: bool = False) -> bool:
        """Key presence; ``default`` is returned when the cache cannot answer."""
        if not self.enabled:
            return default
        ok, count = await self._call("exists", key, self.client.exists(key))
        return bool(count) if ok else default

    async def expire(self, key: str, ttl: int) -> bool:
        if not self.enabled:
            return False
        ok, result = await self._call("expire", key, self.client.expire(key, max(1, int(ttl))))
        return bool(ok and result)

    async def ttl(self, key: str) -> int:
        """Remaining lifetime in seconds; ``-2`` when missing or unavailable."""
        if not self.enabled:
            return -2
        ok, remaining = await self._call("ttl", key, self.client.ttl(key))
        return int(remaining) if ok and remaining is not None else -2

    async def increment(self, key: str, amount: int = 1) -> Optional[int]:
        """Atomically add ``amount``; ``None`` means no counter is available."""
        if not self.enabled:
            return None
        ok, value = await self._call("increment", key, self.client.incrby(key, amount))
        return int(value) if ok else None

    async def decrement(self, key: str, amount: int = 1) -> Optional[int]:
        if not self.enabled:
            return None
        ok, value = await self._call("decrement", key, self.client.decrby(key, amount))
        return int(value) if ok else None

    async def acquire_lock(self, key: str, ttl: int = 10) -> bool:
        if not self.enabled:
            return False
        ok, acquired = await self._call(
            "acquire_lock",
            key,
            self.client.set(CacheKeys.lock(key), "1", nx=True, ex=max(1, int(ttl))),
        )
        return bool(ok and acquired)

    async def release_lock(self, key: str) -> bool:
        return await self.delete(CacheKeys.lock(key))

    async def get_or_set(
        self, key: str, fetcher: Callable[[], Awaitable[Any]], ttl: Optional[int] = None
    ) -> Any:
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await fetcher()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    async def get_or_set_with_lock(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
        lock_ttl: int = 10,
    ) -> Any:
        """Read-through with best-effort single flight.

        The lock holder re-checks, fetches and stores. A caller that loses
        the lock waits ``lock_wait_seconds``, re-checks once, and on a second
        miss fetches locally without storing. Under contention the fetcher
        can therefore run more than once; waiters never block on the holder.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        if not self.enabled:
            return await fetcher()

        if await self.acquire_lock(key, lock_ttl):
            try:
                cached = await self.get(key)
                if cached is not None:
                    return cached
                value = await fetcher()
                if value is not None:
                    await self.set(key, value, ttl)
                return value
            finally:
                await self.release_lock(key)

        await asyncio.sleep(self.lock_wait_seconds)
        cached = await self.get(key)
        if cached is not None:
            return cached
        logger.info("cache_lock_contended_local_fetch", key=key)
        return await fetcher()

    async def get_batch(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return the cached subset of ``keys``; misses are omitted."""
        key_list = list(keys)
        if not self.enabled or not key_list:
            return {}
        ok, values = await self._call("get_batch", key_list, self.client.mget(key_list))
        if not ok:
            return {}
        found: Dict[str, Any] = {}
        for key, raw in zip(key_list, values):
            if raw is not None:
                found[key] = self._loads(raw)
        return found

    async def set_batch(self, items: Dict[str, Any], ttl: Optional[int] = None) -> bool:
        if not self.enabled or not items:
            return False
        ex = max(1, int(ttl)) if ttl else None
        pipe = self.client.pipeline(transaction=False)
        for key, value in items.items():
            pipe.set(key, self._dumps(value), ex=ex)
        ok, results = await self._call("set_batch", list(items), pipe.execute())
        return bool(ok and results and all(results))

    async def health_check(self) -> bool:
        if not self.enabled:
            return False
        ok, pong = await self._call("ping", None, self.client.ping())
        return bool(ok and pong)

    async def close(self) -> None:
        if self.client is None:
            return
        try:
            await self.client.aclose()
        except _CACHE_ERRORS as exc:
            logger.warning("cache_close_failed", error=str(exc))
