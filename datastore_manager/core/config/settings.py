"""
DataStoreConfig: construction-time configuration for the access layer.

Purpose
-------
Hold every tunable of the access layer in one immutable value that is passed
to `DataStoreAccessLayer` when it is built. Nothing here is re-read from the
environment at runtime.

Responsibilities
----------------
- Provide documented defaults for retry, budget, cache, metrics and limits
- Validate types and bounds, raising ConfigValidationError on bad input
- Build instances from a mapping, a YAML file (PyYAML), or environment
  variables (python-dotenv)

Configuration Keys
------------------
- max_retries                : int   (default 3, total attempts)
- base_retry_delay_seconds   : float (default 0.5)
- max_retry_delay_seconds    : float (default 8.0)
- retry_jitter               : float (default 0.2)
- request_budget_per_window  : int   (default 100)
- read/write/delete_window_seconds : float (default 6.0)
- list_window_seconds        : float (default 60.0)
- throttle_cooldown_seconds  : float (default 10.0)
- cache_ttl_seconds          : float (default 300.0)
- cache_max_size_mb          : float (default 100.0)
- cache_max_entries          : int   (default 1000)
- metrics_capacity           : int   (default 50000)
- alert_cooldown_seconds     : float (default 30.0)
- max_payload_bytes          : int   (default 4000000)
- default_scope              : str   (default "global")
- list_page_size             : int   (default 100)

`window_duration_seconds` is accepted by the loaders as a shorthand: a number
sets every class window, a mapping sets the named classes only.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional, Union

import yaml
from dotenv import load_dotenv

from datastore_manager.core import constants as C
from datastore_manager.core.config.errors import ConfigLoadError, ConfigValidationError

_OPERATION_CLASSES = ("read", "write", "delete", "list")


@dataclass(frozen=True)
class DataStoreConfig:
    """Immutable access layer configuration. See module docstring for keys."""

    max_retries: int = C.DEFAULT_MAX_RETRIES
    base_retry_delay_seconds: float = C.DEFAULT_RETRY_BASE_DELAY_SECONDS
    max_retry_delay_seconds: float = C.DEFAULT_RETRY_MAX_DELAY_SECONDS
    retry_jitter: float = C.DEFAULT_RETRY_JITTER

    request_budget_per_window: int = C.DEFAULT_REQUEST_BUDGET_PER_WINDOW
    read_window_seconds: float = C.DEFAULT_READ_WINDOW_SECONDS
    write_window_seconds: float = C.DEFAULT_WRITE_WINDOW_SECONDS
    delete_window_seconds: float = C.DEFAULT_DELETE_WINDOW_SECONDS
    list_window_seconds: float = C.DEFAULT_LIST_WINDOW_SECONDS
    throttle_cooldown_seconds: float = C.DEFAULT_THROTTLE_COOLDOWN_SECONDS

    cache_ttl_seconds: float = C.DEFAULT_CACHE_TTL_SECONDS
    cache_max_size_mb: float = C.DEFAULT_CACHE_MAX_SIZE_MB
    cache_max_entries: int = C.DEFAULT_CACHE_MAX_ENTRIES

    metrics_capacity: int = C.DEFAULT_METRICS_CAPACITY
    alert_cooldown_seconds: float = C.DEFAULT_ALERT_COOLDOWN_SECONDS

    max_payload_bytes: int = C.MAX_PAYLOAD_BYTES
    default_scope: str = C.DEFAULT_SCOPE
    list_page_size: int = C.DEFAULT_LIST_PAGE_SIZE

    def __post_init__(self) -> None:
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            expected = type(f.default)
            if expected is float and isinstance(value, int) and not isinstance(value, bool):
                object.__setattr__(self, f.name, float(value))
                continue
            if not isinstance(value, expected) or isinstance(value, bool):
                raise ConfigValidationError(f.name, value, f"expected {expected.__name__}")

        if self.max_retries < 1:
            raise ConfigValidationError("max_retries", self.max_retries, "must be >= 1")
        if self.request_budget_per_window < 1:
            raise ConfigValidationError(
                "request_budget_per_window", self.request_budget_per_window, "must be >= 1"
            )
        if not 0.0 <= self.retry_jitter < 1.0:
            raise ConfigValidationError("retry_jitter", self.retry_jitter, "must be in [0, 1)")
        if self.max_retry_delay_seconds < self.base_retry_delay_seconds:
            raise ConfigValidationError(
                "max_retry_delay_seconds",
                self.max_retry_delay_seconds,
                "must be >= base_retry_delay_seconds",
            )
        if not self.default_scope:
            raise ConfigValidationError("default_scope", self.default_scope, "must not be empty")

        for name in (
            "base_retry_delay_seconds",
            "read_window_seconds",
            "write_window_seconds",
            "delete_window_seconds",
            "list_window_seconds",
            "cache_ttl_seconds",
            "cache_max_size_mb",
            "cache_max_entries",
            "metrics_capacity",
            "max_payload_bytes",
            "list_page_size",
        ):
            if getattr(self, name) <= 0:
                raise ConfigValidationError(name, getattr(self, name), "must be positive")

        for name in ("throttle_cooldown_seconds", "alert_cooldown_seconds"):
            if getattr(self, name) < 0:
                raise ConfigValidationError(name, getattr(self, name), "must not be negative")

    # =========================================================================
    # Derived values
    # =========================================================================

    @property
    def cache_max_bytes(self) -> int:
        return int(self.cache_max_size_mb * 1024 * 1024)

    def window_seconds(self, operation_class: str) -> float:
        """Window duration for "read", "write", "delete" or "list"."""
        if operation_class not in _OPERATION_CLASSES:
            raise ValueError(f"Unknown operation class: {operation_class!r}")
        return getattr(self, f"{operation_class}_window_seconds")

    def replace(self, **changes: Any) -> "DataStoreConfig":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    # =========================================================================
    # Loaders
    # =========================================================================

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DataStoreConfig":
        """
        Build from a plain mapping.

        Unknown keys raise ConfigValidationError rather than being ignored,
        so typos in config files surface at startup.
        """
        values: Dict[str, Any] = dict(data)
        known = {f.name for f in dataclasses.fields(cls)}

        windows = values.pop("window_duration_seconds", None)
        if windows is not None:
            values.update(_expand_windows(windows))

        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigValidationError(unknown[0], values[unknown[0]], "unknown configuration key")
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "DataStoreConfig":
        """
        Load from a YAML file.

        The file may hold the keys at its root or under a `datastore:` section.
        An empty file yields the defaults.
        """
        path = Path(path)
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle)
        except OSError as exc:
            raise ConfigLoadError(str(path), "file could not be read", exc) from exc
        except yaml.YAMLError as exc:
            raise ConfigLoadError(str(path), "malformed YAML", exc) from exc

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigLoadError(str(path), f"root must be a mapping, got {type(data).__name__}")
        section = data.get("datastore", data)
        if not isinstance(section, dict):
            raise ConfigLoadError(str(path), "'datastore' section must be a mapping")
        return cls.from_mapping(section)

    @classmethod
    def from_env(
        cls,
        prefix: str = "DATASTORE_",
        environ: Optional[Mapping[str, str]] = None,
    ) -> "DataStoreConfig":
        """
        Build from environment variables such as DATASTORE_MAX_RETRIES.

        A .env file is loaded first when reading the real process environment.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        values: MutableMapping[str, Any] = {}
        for f in dataclasses.fields(cls):
            raw = environ.get(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            values[f.name] = _coerce(f.name, raw, type(f.default))

        raw_windows = environ.get(f"{prefix}WINDOW_DURATION_SECONDS")
        if raw_windows is not None:
            values.update(_expand_windows(_coerce("window_duration_seconds", raw_windows, float)))
        return cls(**values)


def _coerce(name: str, raw: str, target: type) -> Any:
    if target is str:
        return raw
    try:
        return target(raw)
    except ValueError as exc:
        raise ConfigValidationError(name, raw, f"expected {target.__name__}") from exc


def _expand_windows(windows: Any) -> Dict[str, Any]:
    if isinstance(windows, Mapping):
        unknown = sorted(set(windows) - set(_OPERATION_CLASSES))
        if unknown:
            raise ConfigValidationError("window_duration_seconds", windows, f"unknown class {unknown[0]!r}")
        return {f"{name}_window_seconds": value for name, value in windows.items()}
    return {f"{name}_window_seconds": windows for name in _OPERATION_CLASSES}
