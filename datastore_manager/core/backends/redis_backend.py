"""
Redis-backed datastore backend.

Purpose
-------
Implement the backend protocol on top of redis.asyncio so the access layer
can run against a real networked key-value store.

Storage Layout
--------------
- {ns}:entry:{store}:{scope}:{key}     hash   value (JSON), version, updated_at
- {ns}:index:{store}:{scope}           zset   key names, score 0 (lex order)
- {ns}:versions:{store}:{scope}:{key}  list   JSON version records, newest first
- {ns}:version_seq                     string monotonic version counter

Key pages use ZRANGEBYLEX; the page token is the last key name of the
previous page. Version pages use list offsets as tokens.

Error Mapping
-------------
- AuthenticationError / NoPermissionError        -> Unauthorized
- ConnectionError / TimeoutError / BusyLoading   -> TransientError
- any other RedisError                           -> BackendError

The client is created with retry_on_timeout=False: RetryPolicy owns retries.
"""

from __future__ import annotations

import json
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from redis.asyncio.client import Redis as AsyncRedis
from redis.exceptions import (
    AuthenticationError,
    BusyLoadingError,
    ConnectionError as RedisConnectionError,
    NoPermissionError,
    RedisError,
    TimeoutError as RedisTimeoutError,
)

from datastore_manager.core.config.config import Config
from datastore_manager.core.constants import MAX_PAYLOAD_BYTES
from datastore_manager.core.datastore.types import (
    KeyInfo,
    KeyPage,
    VersionInfo,
    VersionPage,
    VersionedValue,
)
from datastore_manager.core.datastore.validation import encode_payload
from datastore_manager.core.exceptions import (
    BackendError,
    PayloadTooLarge,
    TransientError,
    Unauthorized,
)
from datastore_manager.core.logging.logger import get_logger

logger = get_logger(__name__)

VERSION_HISTORY_LIMIT = 100


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisDataStoreBackend:
    """
    Backend storing datastore entries in Redis.

    Example
    -------
    >>> backend = await RedisDataStoreBackend.connect("redis://localhost:6379/0")
    >>> layer = DataStoreAccessLayer(backend)
    >>> ...
    >>> await backend.close()
    """

    def __init__(
        self,
        client: AsyncRedis,
        namespace: str = "datastore",
        max_payload_bytes: int = MAX_PAYLOAD_BYTES,
    ) -> None:
        self._client = client
        self.namespace = namespace
        self.max_payload_bytes = max_payload_bytes

    @classmethod
    async def connect(
        cls,
        url: Optional[str] = None,
        *,
        namespace: str = "datastore",
        socket_timeout: Optional[int] = None,
        max_connections: Optional[int] = None,
    ) -> "RedisDataStoreBackend":
        """Create a client from a URL (default Config.REDIS_URL) and verify it with PING."""
        url = url or Config.REDIS_URL
        client: AsyncRedis = AsyncRedis.from_url(
            url,
            socket_timeout=socket_timeout or Config.REDIS_SOCKET_TIMEOUT,
            encoding="utf-8",
            decode_responses=True,
            max_connections=max_connections or Config.REDIS_MAX_CONNECTIONS,
            retry_on_timeout=False,
            health_check_interval=30,
        )
        backend = cls(client, namespace=namespace)
        try:
            await backend.ping()
        except Exception:
            await client.aclose()
            raise

        logger.info(
            "Redis datastore backend connected",
            extra={"namespace": namespace, "max_connections": max_connections or Config.REDIS_MAX_CONNECTIONS},
        )
        return backend

    async def ping(self) -> bool:
        async with self._errors("ping"):
            return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()

    # ════════════════════════════════════════════════════════════════════
    # Key helpers
    # ════════════════════════════════════════════════════════════════════

    def _entry_key(self, store: str, scope: str, key: str) -> str:
        return f"{self.namespace}:entry:{store}:{scope}:{key}"

    def _index_key(self, store: str, scope: str) -> str:
        return f"{self.namespace}:index:{store}:{scope}"

    def _versions_key(self, store: str, scope: str, key: str) -> str:
        return f"{self.namespace}:versions:{store}:{scope}:{key}"

    @asynccontextmanager
    async def _errors(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except (AuthenticationError, NoPermissionError) as exc:
            raise Unauthorized(f"Redis rejected {operation}: {exc}") from exc
        except (RedisConnectionError, RedisTimeoutError, BusyLoadingError) as exc:
            raise TransientError(f"Redis unavailable during {operation}", exc) from exc
        except RedisError as exc:
            raise BackendError(operation, exc) from exc

    # ════════════════════════════════════════════════════════════════════
    # Backend protocol
    # ════════════════════════════════════════════════════════════════════

    async def get(self, store: str, scope: str, key: str) -> Optional[VersionedValue]:
        async with self._errors("get"):
            raw = await self._client.hgetall(self._entry_key(store, scope, key))
        if not raw:
            return None

        fields = {_text(k): _text(v) for k, v in raw.items()}
        updated_at = fields.get("updated_at")
        return VersionedValue(
            value=json.loads(fields["value"]),
            version=fields.get("version"),
            updated_at=float(updated_at) if updated_at else None,
        )

    async def set(self, store: str, scope: str, key: str, value: Any) -> str:
        encoded = encode_payload(value)
        size = len(encoded.encode("utf-8"))
        if size > self.max_payload_bytes:
            raise PayloadTooLarge(size, self.max_payload_bytes)

        now = time.time()
        async with self._errors("set"):
            seq = await self._client.incr(f"{self.namespace}:version_seq")
            version = f"v{int(seq):08d}"
            record = json.dumps({"version": version, "created_at": now, "size_bytes": size})

            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(
                    self._entry_key(store, scope, key),
                    mapping={"value": encoded, "version": version, "updated_at": repr(now)},
                )
                pipe.zadd(self._index_key(store, scope), {key: 0})
                pipe.lpush(self._versions_key(store, scope, key), record)
                pipe.ltrim(self._versions_key(store, scope, key), 0, VERSION_HISTORY_LIMIT - 1)
                await pipe.execute()
        return version

    async def delete(self, store: str, scope: str, key: str) -> bool:
        async with self._errors("delete"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(self._entry_key(store, scope, key))
                pipe.zrem(self._index_key(store, scope), key)
                pipe.delete(self._versions_key(store, scope, key))
                removed, _, _ = await pipe.execute()
        return bool(removed)

    async def list_keys(
        self,
        store: str,
        scope: str,
        *,
        prefix: Optional[str] = None,
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> KeyPage:
        lower = "-"
        upper = "+"
        if prefix:
            lower = f"[{prefix}"
            upper = f"[{prefix}\xff"
        if page_token and (not prefix or page_token >= prefix):
            lower = f"({page_token}"

        async with self._errors("list_keys"):
            names = await self._client.zrangebylex(
                self._index_key(store, scope), lower, upper, start=0, num=page_size + 1
            )
            names = [_text(n) for n in names]
            page = names[:page_size]

            versions = []
            if page:
                async with self._client.pipeline(transaction=False) as pipe:
                    for name in page:
                        pipe.hmget(self._entry_key(store, scope, name), "version", "updated_at")
                    versions = await pipe.execute()

        keys = []
        for name, (version, updated_at) in zip(page, versions):
            keys.append(
                KeyInfo(
                    name=name,
                    version=_text(version),
                    updated_at=float(updated_at) if updated_at else None,
                )
            )
        next_token = page[-1] if len(names) > page_size else None
        return KeyPage(keys=tuple(keys), next_page_token=next_token)

    async def list_versions(
        self,
        store: str,
        scope: str,
        key: str,
        *,
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> VersionPage:
        start = int(page_token) if page_token else 0
        async with self._errors("list_versions"):
            raw = await self._client.lrange(
                self._versions_key(store, scope, key), start, start + page_size
            )

        records = [json.loads(_text(r)) for r in raw]
        page = records[:page_size]
        versions = tuple(
            VersionInfo(
                version=r["version"],
                created_at=float(r["created_at"]),
                size_bytes=int(r.get("size_bytes", 0)),
            )
            for r in page
        )
        next_token = str(start + page_size) if len(records) > page_size else None
        return VersionPage(versions=versions, next_page_token=next_token)
