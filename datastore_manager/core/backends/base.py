"""
Backend protocol consumed by the access layer.

A backend is the remote key-value store: get / set / delete / list keys /
list versions, addressed by (store, scope, key). Every method is a
coroutine. Backends signal failure by raising:

- Throttled        backend rate limit hit on this call (retryable)
- TransientError   timeout / connection problem (retryable)
- Unauthorized     permission denied (permanent)
- PayloadTooLarge  serialized value above the size ceiling (permanent)
- InvalidKey       name rejected by the backend (permanent)

Any other exception is treated as a permanent BackendError by RetryPolicy.
`get` returns None only when the backend confirms the key is absent.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from datastore_manager.core.datastore.types import KeyPage, VersionedValue, VersionPage


@runtime_checkable
class DataStoreBackend(Protocol):
    async def get(self, store: str, scope: str, key: str) -> Optional[VersionedValue]:
        ...

    async def set(self, store: str, scope: str, key: str, value: Any) -> str:
        """Store `value` and return the new version token."""
        ...

    async def delete(self, store: str, scope: str, key: str) -> bool:
        """Remove the key; return whether it existed."""
        ...

    async def list_keys(
        self,
        store: str,
        scope: str,
        *,
        prefix: Optional[str] = None,
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> KeyPage:
        ...

    async def list_versions(
        self,
        store: str,
        scope: str,
        key: str,
        *,
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> VersionPage:
        ...
