"""
Eligibility result caches: in-process and Redis.

Entries are keyed by ``(workspace_id, generation, model_id, plan)``.
Each workspace has a generation counter; invalidating a workspace bumps
the counter and deletes every entry under the workspace prefix. A
reader captures the generation before computing a result and writes
under that generation, so a result computed before an invalidation can
only land on a key nobody reads any more.

The cache is advisory. A Redis failure is logged and treated as a miss.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from tenantauth.services.eligibility import EligibilityResult

logger = logging.getLogger(__name__)


class EligibilityCache(Protocol):
    """Interface shared by the cache backends."""

    async def generation(self, workspace_id: str) -> int:
        ...

    async def get(
        self, workspace_id: str, generation: int, model_id: str, plan: str
    ) -> Optional[EligibilityResult]:
        ...

    async def set(
        self,
        workspace_id: str,
        generation: int,
        model_id: str,
        plan: str,
        result: EligibilityResult,
    ) -> None:
        ...

    async def invalidate_workspace(self, workspace_id: str) -> None:
        ...


_Key = Tuple[str, int, str, str]


class MemoryEligibilityCache:
    """Bounded in-process cache with per-entry TTL.

    Generations come from one counter shared by all workspaces and at
    most ``max_entries`` of them are remembered. A forgotten workspace
    reads the highest generation ever forgotten, which is above anything
    a reader could have captured for it before, so late writes still miss.

    Args:
        ttl_seconds: Entry lifetime.
        max_entries: Oldest entries (and generations) are evicted beyond this size.
        timer: Monotonic time source in seconds.
    """

    def __init__(
        self,
        ttl_seconds: int = 1800,
        max_entries: int = 10_000,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._timer = timer
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: "OrderedDict[_Key, Tuple[float, EligibilityResult]]" = OrderedDict()
        self._generations: "OrderedDict[str, int]" = OrderedDict()
        self._counter = 0
        self._floor = 0

    def _current_generation(self, workspace_id: str) -> int:
        return self._generations.get(workspace_id, self._floor)

    async def generation(self, workspace_id: str) -> int:
        with self._lock:
            return self._current_generation(workspace_id)

    async def get(
        self, workspace_id: str, generation: int, model_id: str, plan: str
    ) -> Optional[EligibilityResult]:
        key = (workspace_id, generation, model_id, plan)
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            expires_at, result = item
            if self._timer() >= expires_at:
                del self._entries[key]
                return None
            return result.model_copy(deep=True)

    async def set(
        self,
        workspace_id: str,
        generation: int,
        model_id: str,
        plan: str,
        result: EligibilityResult,
    ) -> None:
        with self._lock:
            if self._current_generation(workspace_id) != generation:
                return
            key = (workspace_id, generation, model_id, plan)
            self._entries[key] = (self._timer() + self._ttl_seconds, result.model_copy(deep=True))
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    async def invalidate_workspace(self, workspace_id: str) -> None:
        with self._lock:
            self._counter += 1
            self._generations[workspace_id] = self._counter
            self._generations.move_to_end(workspace_id)
            while len(self._generations) > self._max_entries:
                _, forgotten = self._generations.popitem(last=False)
                self._floor = max(self._floor, forgotten)
            for key in [k for k in self._entries if k[0] == workspace_id]:
                del self._entries[key]
        logger.debug("Eligibility cache invalidated", extra={"workspace_id": workspace_id})

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisEligibilityCache:
    """Redis-backed cache shared across processes.

    Keys: ``{prefix}:{workspace}:{generation}:{model}:{plan}`` for entries and
    ``{prefix}:gen:{workspace}`` for the generation counter.

    Args:
        client: ``redis.asyncio`` client created with ``decode_responses=True``.
        ttl_seconds: Entry lifetime.
        key_prefix: Namespace for every key.
    """

    def __init__(
        self,
        client: Any,
        ttl_seconds: int = 1800,
        key_prefix: str = "tenantauth:elig",
    ) -> None:
        self._client = client
        self._ttl_seconds = ttl_seconds
        self._key_prefix = key_prefix.rstrip(":")

    def _key(self, workspace_id: str, generation: int, model_id: str, plan: str) -> str:
        return f"{self._key_prefix}:{workspace_id}:{generation}:{model_id}:{plan}"

    def _generation_key(self, workspace_id: str) -> str:
        return f"{self._key_prefix}:gen:{workspace_id}"

    async def generation(self, workspace_id: str) -> int:
        try:
            value = await self._client.get(self._generation_key(workspace_id))
        except Exception as e:
            logger.warning("Redis generation read failed", extra={"error": str(e)})
            return -1
        return int(value) if value is not None else 0

    async def get(
        self, workspace_id: str, generation: int, model_id: str, plan: str
    ) -> Optional[EligibilityResult]:
        if generation < 0:
            return None
        try:
            data = await self._client.get(self._key(workspace_id, generation, model_id, plan))
        except Exception as e:
            logger.warning("Redis get failed", extra={"error": str(e)})
            return None
        if data is None:
            return None
        try:
            return EligibilityResult.model_validate_json(data)
        except ValueError:
            logger.warning("Discarding unreadable eligibility cache entry")
            return None

    async def set(
        self,
        workspace_id: str,
        generation: int,
        model_id: str,
        plan: str,
        result: EligibilityResult,
    ) -> None:
        if generation < 0:
            return
        try:
            await self._client.set(
                self._key(workspace_id, generation, model_id, plan),
                result.model_dump_json(),
                ex=self._ttl_seconds,
            )
        except Exception as e:
            logger.warning("Redis set failed", extra={"error": str(e)})

    async def invalidate_workspace(self, workspace_id: str) -> None:
        try:
            await self._client.incr(self._generation_key(workspace_id))
            keys = [
                key
                async for key in self._client.scan_iter(
                    match=f"{self._key_prefix}:{workspace_id}:*"
                )
            ]
            if keys:
                await self._client.delete(*keys)
        except Exception:
            logger.exception(
                "Redis invalidation failed; entries expire by TTL",
                extra={"workspace_id": workspace_id},
            )
