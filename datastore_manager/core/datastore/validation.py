"""
Key, name and payload validation.

Checks run before any budget is consumed, so a malformed request never
costs a remote call. Each `validate_*` function raises the matching
DataStoreError subclass; the access layer converts those into result
errors.

Rules
-----
- Keys: 1-50 characters of letters, digits, underscore or hyphen.
- Store names and scopes: 1-50 characters, same set plus ".".
  ":" is never allowed because it separates cache key parts.
- Payloads: JSON-serializable, encoded UTF-8 size <= the byte limit.
"""

from __future__ import annotations

import json
import re
from typing import Any

from datastore_manager.core.constants import (
    MAX_KEY_LENGTH,
    MAX_PAYLOAD_BYTES,
    MAX_STORE_NAME_LENGTH,
)
from datastore_manager.core.exceptions import InvalidKey, InvalidPayload, PayloadTooLarge

_KEY_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
_NAME_PATTERN = re.compile(r"[A-Za-z0-9_.-]+")


def _require_str(field_name: str, value: Any) -> None:
    # Wrong types are programming errors, not backend conditions.
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a str, got {type(value).__name__}")


def validate_key(key: Any) -> str:
    _require_str("key", key)
    if not key:
        raise InvalidKey("key", key, "must not be empty")
    if len(key) > MAX_KEY_LENGTH:
        raise InvalidKey("key", key, f"longer than {MAX_KEY_LENGTH} characters")
    if not _KEY_PATTERN.fullmatch(key):
        raise InvalidKey("key", key, "only letters, digits, '_' and '-' are allowed")
    return key


def validate_name(field_name: str, name: Any) -> str:
    """Validate a store name or scope."""
    _require_str(field_name, name)
    if not name:
        raise InvalidKey(field_name, name, "must not be empty")
    if len(name) > MAX_STORE_NAME_LENGTH:
        raise InvalidKey(field_name, name, f"longer than {MAX_STORE_NAME_LENGTH} characters")
    if not _NAME_PATTERN.fullmatch(name):
        raise InvalidKey(field_name, name, "only letters, digits, '_', '-' and '.' are allowed")
    return name


def encode_payload(value: Any) -> str:
    """Canonical JSON encoding used for size checks and storage."""
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise InvalidPayload(str(exc)) from exc


def payload_size(value: Any) -> int:
    return len(encode_payload(value).encode("utf-8"))


def validate_payload(value: Any, limit_bytes: int = MAX_PAYLOAD_BYTES) -> int:
    """Return the encoded size of `value`; raise if it cannot be stored."""
    size = payload_size(value)
    if size > limit_bytes:
        raise PayloadTooLarge(size, limit_bytes)
    return size
