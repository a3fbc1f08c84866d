from __future__ import annotations

import contextlib
from typing import Iterator, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from sessionauth.logging import get_logger
from sessionauth.storage.errors import BackendUnavailable
from sessionauth.storage.kv import ttl_millis

logger = get_logger(__name__)


@contextlib.contextmanager
def _translate_errors(op: str) -> Iterator[None]:
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        raise BackendUnavailable(
            f"redis {op} failed", {"op": op, "error_type": type(exc).__name__}
        ) from exc


class RedisBackend:
    """Key-value backend on top of redis.asyncio."""

    # Atomic compare-and-set: replace value and TTL only if the current value matches
    _COMPARE_AND_SET_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current == ARGV[1] then
  redis.call('SET', KEYS[1], ARGV[2], 'PX', tonumber(ARGV[3]))
  return 1
end
return 0
"""

    _COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._compare_and_set = self.client.register_script(
            self._COMPARE_AND_SET_SCRIPT
        )
        self._compare_and_delete = self.client.register_script(
            self._COMPARE_AND_DELETE_SCRIPT
        )

    async def set(
        self, key: str, value: str, ttl: float, *, only_if_absent: bool = False
    ) -> bool:
        with _translate_errors("set"):
            result = await self.client.set(
                key, value, px=ttl_millis(ttl), nx=only_if_absent
            )
        return bool(result)

    async def get(self, key: str) -> Optional[str]:
        with _translate_errors("get"):
            return await self.client.get(key)

    async def delete(self, key: str) -> bool:
        with _translate_errors("delete"):
            removed = await self.client.delete(key)
        return bool(removed)

    async def compare_and_set(
        self, key: str, expected: str, value: str, ttl: float
    ) -> bool:
        with _translate_errors("compare_and_set"):
            swapped = await self._compare_and_set(
                keys=[key], args=[expected, value, ttl_millis(ttl)]
            )
        return bool(int(swapped))

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        with _translate_errors("compare_and_delete"):
            removed = await self._compare_and_delete(keys=[key], args=[expected])
        return bool(int(removed))

    async def ping(self) -> bool:
        with _translate_errors("ping"):
            return bool(await self.client.ping())

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down."""
        await self.client.aclose()
        logger.debug("redis_backend_closed")
