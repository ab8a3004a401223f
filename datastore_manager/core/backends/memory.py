"""
In-memory backend.

A process-local implementation of the backend protocol with the same
observable behaviour as a remote store: JSON-encoded storage, version
tokens, version history, lexicographic key pagination and the payload size
ceiling. Used for local development and throughout the test-suite.

Test hooks
----------
- `latency`: seconds awaited before each call (0 still yields to the loop)
- `inject_failure(error, times, operation)`: raise `error` on the next
  `times` matching calls
- `hold(operation)`: returns an asyncio.Event; matching calls wait on it
  after their latency, before touching storage, until it is set
- `calls`: Counter of calls per operation name
"""

from __future__ import annotations

import asyncio
import json
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from datastore_manager.core.constants import MAX_PAYLOAD_BYTES
from datastore_manager.core.datastore.types import (
    KeyInfo,
    KeyPage,
    VersionInfo,
    VersionPage,
    VersionedValue,
)
from datastore_manager.core.datastore.validation import encode_payload
from datastore_manager.core.exceptions import PayloadTooLarge
from datastore_manager.core.logging.logger import get_logger

logger = get_logger(__name__)

ErrorFactory = Union[BaseException, Callable[[], BaseException]]


@dataclass
class _StoredKey:
    encoded: str
    version: str
    updated_at: float
    history: List[VersionInfo] = field(default_factory=list)


@dataclass
class _Fault:
    error: ErrorFactory
    remaining: int
    operation: Optional[str]

    def matches(self, operation: str) -> bool:
        return self.remaining > 0 and (self.operation is None or self.operation == operation)

    def build(self) -> BaseException:
        self.remaining -= 1
        if isinstance(self.error, BaseException):
            return self.error
        return self.error()


class InMemoryDataStoreBackend:
    def __init__(
        self,
        *,
        latency: float = 0.0,
        max_payload_bytes: int = MAX_PAYLOAD_BYTES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.latency = latency
        self.max_payload_bytes = max_payload_bytes
        self._sleep = sleep
        self._clock = clock
        self._data: Dict[Tuple[str, str], Dict[str, _StoredKey]] = {}
        self._faults: List[_Fault] = []
        self._holds: Dict[str, asyncio.Event] = {}
        self._version_counter = 0
        self.calls: Counter = Counter()

    # ════════════════════════════════════════════════════════════════════
    # Test hooks
    # ════════════════════════════════════════════════════════════════════

    def inject_failure(
        self,
        error: ErrorFactory,
        times: int = 1,
        operation: Optional[str] = None,
    ) -> None:
        """Fail the next `times` calls (of `operation`, or of any call) with `error`."""
        self._faults.append(_Fault(error=error, remaining=times, operation=operation))

    def clear_failures(self) -> None:
        self._faults.clear()

    def hold(self, operation: str) -> asyncio.Event:
        event = asyncio.Event()
        self._holds[operation] = event
        return event

    def release(self, operation: str) -> None:
        event = self._holds.pop(operation, None)
        if event is not None:
            event.set()

    def seed(self, store: str, scope: str, key: str, value: Any) -> str:
        """Write directly, bypassing latency, faults and counters."""
        return self._write(store, scope, key, value)

    def raw(self, store: str, scope: str, key: str) -> Optional[Any]:
        entry = self._data.get((store, scope), {}).get(key)
        return json.loads(entry.encoded) if entry else None

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        await self._sleep(self.latency)

        event = self._holds.get(operation)
        if event is not None:
            await event.wait()

        for fault in self._faults:
            if fault.matches(operation):
                error = fault.build()
                logger.debug(
                    "Injected backend failure",
                    extra={"operation": operation, "error_type": type(error).__name__},
                )
                raise error
        self._faults = [f for f in self._faults if f.remaining > 0]

    # ════════════════════════════════════════════════════════════════════
    # Backend protocol
    # ════════════════════════════════════════════════════════════════════

    async def get(self, store: str, scope: str, key: str) -> Optional[VersionedValue]:
        await self._enter("get")
        entry = self._data.get((store, scope), {}).get(key)
        if entry is None:
            return None
        return VersionedValue(
            value=json.loads(entry.encoded),
            version=entry.version,
            updated_at=entry.updated_at,
        )

    async def set(self, store: str, scope: str, key: str, value: Any) -> str:
        await self._enter("set")
        return self._write(store, scope, key, value)

    async def delete(self, store: str, scope: str, key: str) -> bool:
        await self._enter("delete")
        bucket = self._data.get((store, scope), {})
        entry = bucket.pop(key, None)
        return entry is not None

    async def list_keys(
        self,
        store: str,
        scope: str,
        *,
        prefix: Optional[str] = None,
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> KeyPage:
        await self._enter("list_keys")
        bucket = self._data.get((store, scope), {})
        names = sorted(
            name
            for name in bucket
            if (prefix is None or name.startswith(prefix))
            and (page_token is None or name > page_token)
        )
        page = names[:page_size]
        next_token = page[-1] if len(names) > page_size else None
        return KeyPage(
            keys=tuple(
                KeyInfo(name=n, version=bucket[n].version, updated_at=bucket[n].updated_at)
                for n in page
            ),
            next_page_token=next_token,
        )

    async def list_versions(
        self,
        store: str,
        scope: str,
        key: str,
        *,
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> VersionPage:
        await self._enter("list_versions")
        entry = self._data.get((store, scope), {}).get(key)
        history = list(reversed(entry.history)) if entry else []
        start = int(page_token) if page_token else 0
        page = history[start:start + page_size]
        end = start + len(page)
        return VersionPage(
            versions=tuple(page),
            next_page_token=str(end) if end < len(history) else None,
        )

    # ════════════════════════════════════════════════════════════════════
    # Storage
    # ════════════════════════════════════════════════════════════════════

    def _write(self, store: str, scope: str, key: str, value: Any) -> str:
        encoded = encode_payload(value)
        size = len(encoded.encode("utf-8"))
        if size > self.max_payload_bytes:
            raise PayloadTooLarge(size, self.max_payload_bytes)

        self._version_counter += 1
        version = f"v{self._version_counter:08d}"
        now = self._clock()

        bucket = self._data.setdefault((store, scope), {})
        previous = bucket.get(key)
        history = previous.history if previous else []
        history.append(VersionInfo(version=version, created_at=now, size_bytes=size))
        bucket[key] = _StoredKey(encoded=encoded, version=version, updated_at=now, history=history)
        return version
