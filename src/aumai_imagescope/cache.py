"""Fetch-through cache over an optional key-value backend."""

from __future__ import annotations

import logging
from typing import Protocol, TypeVar

import redis.asyncio as aioredis
from pydantic import ValidationError
from pydantic_core import PydanticSerializationError
from redis.exceptions import RedisError

from aumai_imagescope.errors import CacheFailure
from aumai_imagescope.models import CachedEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_NAMESPACE = "imagescope"
DEFAULT_TTL_SECONDS = 3600


class CacheBackend(Protocol):
    """Key-scoped operations the cache needs.  Must tolerate concurrent use."""

    async def exists(self, key: str) -> bool: ...

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def expire(self, key: str, seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


class Fetcher(Protocol[T]):
    """A source of one value, addressable by a stable cache key."""

    output_type: type[T]

    def key(self) -> str: ...

    async def fetch(self) -> T: ...


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisCacheBackend:
    """:class:`CacheBackend` on top of ``redis.asyncio``.

    The client's connection pool is shared by every concurrent caller.
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCacheBackend:
        return cls(aioredis.from_url(url, decode_responses=True))

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(key))
        except RedisError as exc:
            raise CacheFailure(f"failed to check whether {key} exists in redis", exc) from exc

    async def get(self, key: str) -> str | None:
        try:
            value = await self._client.get(key)
        except RedisError as exc:
            raise CacheFailure(f"failed to read {key} from redis", exc) from exc
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str) -> None:
        try:
            await self._client.set(key, value)
        except RedisError as exc:
            raise CacheFailure(f"failed to write {key} to redis", exc) from exc

    async def expire(self, key: str, seconds: int) -> None:
        try:
            await self._client.expire(key, seconds)
        except RedisError as exc:
            raise CacheFailure(f"failed to set expiry of {key} in redis", exc) from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as exc:
            raise CacheFailure(f"failed to delete {key} from redis", exc) from exc

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Fetch-through cache
# ---------------------------------------------------------------------------


class FetchThroughCache:
    """Serve a fetcher's value from the cache, fetching and storing on a miss.

    With no backend every call goes straight to the fetcher.  Failed fetches
    are never stored.  Two concurrent misses on the same key may both fetch
    and both write; the later write wins.

    Args:
        backend: Cache backend, or ``None`` to disable caching.
        ttl_seconds: Expiry applied to every stored entry.
        namespace: Prefix of every key, ``<namespace>:<fetcher key>``.
    """

    def __init__(
        self,
        backend: CacheBackend | None = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.namespace = namespace

    @property
    def enabled(self) -> bool:
        return self.backend is not None

    def cache_key(self, fetcher: Fetcher[T]) -> str:
        return f"{self.namespace}:{fetcher.key()}"

    async def get(self, fetcher: Fetcher[T]) -> CachedEntry[T]:
        """Return the cached entry for *fetcher*, fetching it on a miss.

        Raises:
            CacheFailure: the backend could not be read, or holds a value that
                does not decode.
            ImageScopeError: whatever the fetcher raised.
        """
        entry_type = CachedEntry[fetcher.output_type]  # type: ignore[valid-type]

        if self.backend is None:
            return entry_type.now(await fetcher.fetch())

        key = self.cache_key(fetcher)
        if await self.backend.exists(key):
            raw = await self.backend.get(key)
            # None here means the key expired between EXISTS and GET.
            if raw is not None:
                try:
                    entry = entry_type.model_validate_json(raw)
                except ValidationError as exc:
                    raise CacheFailure(f"cached value of {key} cannot be decoded", exc) from exc
                logger.debug("Cache hit for %s", key)
                return entry

        logger.debug("Cache miss for %s", key)
        entry = entry_type.now(await fetcher.fetch())
        await self._store(self.backend, key, entry)
        return entry

    async def _store(
        self, backend: CacheBackend, key: str, entry: CachedEntry[T]
    ) -> None:
        """Best effort: a failed write is logged and the entry still returned.

        A value whose expiry could not be set is deleted again so that it is
        never served past its TTL.
        """
        try:
            payload = entry.model_dump_json(by_alias=True)
            await backend.set(key, payload)
        except (CacheFailure, PydanticSerializationError) as exc:
            logger.warning("Could not cache %s: %s", key, exc)
            return

        try:
            await backend.expire(key, self.ttl_seconds)
        except CacheFailure as exc:
            logger.warning("Could not set expiry of %s, dropping it: %s", key, exc)
            try:
                await backend.delete(key)
            except CacheFailure as delete_exc:
                logger.error("Could not drop %s, it has no expiry: %s", key, delete_exc)


__all__ = [
    "CacheBackend",
    "FetchThroughCache",
    "Fetcher",
    "RedisCacheBackend",
]
