"""
Configuration error hierarchy.

Exception Hierarchy
-------------------
ConfigError (base)
├── ConfigValidationError (type / bounds validation failures)
└── ConfigLoadError (file missing or unreadable, malformed YAML)
"""

from __future__ import annotations

from typing import Any, Optional


class ConfigError(Exception):
    """
    Base exception for all configuration-related errors.

    Example
    -------
    >>> try:
    ...     config = DataStoreConfig.from_yaml("datastore.yaml")
    ... except ConfigError as e:
    ...     logger.error(f"Config load failed: {e}")
    """
    pass


class ConfigValidationError(ConfigError):
    """
    Raised when a configuration value fails validation.

    This exception is raised when:
    - A field has the wrong type or cannot be coerced
    - A value is out of bounds (e.g. non-positive window)
    - An unknown field name is supplied
    """

    def __init__(self, field_name: str, value: Any, reason: str) -> None:
        self.field_name = field_name
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid value for {field_name}={value!r}: {reason}")


class ConfigLoadError(ConfigError):
    """Raised when a configuration source cannot be read or parsed."""

    def __init__(self, source: str, reason: str, original_error: Optional[BaseException] = None) -> None:
        self.source = source
        self.reason = reason
        self.original_error = original_error
        super().__init__(f"Failed to load configuration from {source}: {reason}")
