"""
DataStore Access Layer Infrastructure Constants

Purpose
-------
Provide infrastructure-level constants for the datastore access layer:
request budgets, retry schedule, cache bounds, metric retention, alert
thresholds, and payload/key limits enforced by the backend.

IMPORTANT:
These are starting calibrations. Runtime values are always taken from a
`DataStoreConfig` passed at construction; constants only seed its defaults.

Design Notes
------------
- Values are annotated with typing.Final to signal immutability
- Grouped by functional area for easy scanning and maintenance
- No side effects at import time
"""

from __future__ import annotations

from typing import Final

# ============================================================================
# RETRY & BACKOFF
# ============================================================================

DEFAULT_MAX_RETRIES: Final[int] = 3  # Total attempts, not additional ones
DEFAULT_RETRY_BASE_DELAY_SECONDS: Final[float] = 0.5
DEFAULT_RETRY_MAX_DELAY_SECONDS: Final[float] = 8.0
DEFAULT_RETRY_JITTER: Final[float] = 0.2  # +/-20% of each delay

# ============================================================================
# REQUEST BUDGET
# ============================================================================

DEFAULT_REQUEST_BUDGET_PER_WINDOW: Final[int] = 100
DEFAULT_READ_WINDOW_SECONDS: Final[float] = 6.0
DEFAULT_WRITE_WINDOW_SECONDS: Final[float] = 6.0
DEFAULT_DELETE_WINDOW_SECONDS: Final[float] = 6.0
DEFAULT_LIST_WINDOW_SECONDS: Final[float] = 60.0

# Cooldown applied to an operation class after the backend kept throttling
DEFAULT_THROTTLE_COOLDOWN_SECONDS: Final[float] = 10.0

# ============================================================================
# CACHE
# ============================================================================

DEFAULT_CACHE_TTL_SECONDS: Final[float] = 300.0
DEFAULT_CACHE_MAX_SIZE_MB: Final[float] = 100.0
DEFAULT_CACHE_MAX_ENTRIES: Final[int] = 1_000
DEFAULT_CACHE_CLEANUP_INTERVAL_SECONDS: Final[float] = 60.0

# Cache key separator (store:scope:key); forbidden inside names
CACHE_KEY_SEPARATOR: Final[str] = ":"

# ============================================================================
# BACKEND LIMITS
# ============================================================================

MAX_PAYLOAD_BYTES: Final[int] = 4_000_000
MAX_KEY_LENGTH: Final[int] = 50
MAX_STORE_NAME_LENGTH: Final[int] = 50
DEFAULT_SCOPE: Final[str] = "global"
DEFAULT_LIST_PAGE_SIZE: Final[int] = 100
MIN_LIST_PAGE_SIZE: Final[int] = 10
MAX_LIST_PAGE_SIZE: Final[int] = 500

# ============================================================================
# METRICS & ALERTING
# ============================================================================

DEFAULT_METRICS_CAPACITY: Final[int] = 50_000
DEFAULT_OPERATION_HISTORY_LIMIT: Final[int] = 50
RECENT_ERRORS_LIMIT: Final[int] = 10
DEFAULT_AGGREGATION_WINDOW_SECONDS: Final[float] = 60.0
ALERT_CHECK_MIN_INTERVAL_SECONDS: Final[float] = 1.0
DEFAULT_ALERT_COOLDOWN_SECONDS: Final[float] = 30.0
ALERT_HISTORY_LIMIT: Final[int] = 100

# Latency thresholds (p95, milliseconds)
LATENCY_WARNING_MS: Final[float] = 500.0
LATENCY_CRITICAL_MS: Final[float] = 1_000.0

# Success rate below this raises a critical alert
SUCCESS_RATE_CRITICAL: Final[float] = 0.95

# Cache hit rate thresholds and minimum lookups before they apply
CACHE_HIT_RATE_WARNING: Final[float] = 0.6
CACHE_HIT_RATE_CRITICAL: Final[float] = 0.4
CACHE_HIT_RATE_MIN_SAMPLES: Final[int] = 20

# ============================================================================
# ADAPTIVE CONTROL
# ============================================================================

DEFAULT_SAMPLING_INTERVAL_SECONDS: Final[float] = 1.0
CACHE_GROWTH_FACTOR: Final[float] = 1.2
CACHE_SHRINK_FACTOR: Final[float] = 0.9
CACHE_HIT_RATE_TARGET: Final[float] = 0.8
CACHE_MEMORY_WARNING_RATIO: Final[float] = 0.8  # Fraction of the byte ceiling
CACHE_MAX_ENTRIES_CEILING: Final[int] = 10_000

ERROR_RATE_HIGH: Final[float] = 0.05
ERROR_RATE_LOW: Final[float] = 0.01
LATENCY_LOW_MS: Final[float] = 100.0
LATENCY_HIGH_MS: Final[float] = 300.0
LOW_THROUGHPUT_OPS: Final[float] = 50.0

INTER_REQUEST_DELAY_STEP_SECONDS: Final[float] = 0.05
MAX_INTER_REQUEST_DELAY_SECONDS: Final[float] = 1.0
PAGE_SIZE_STEP: Final[int] = 10

OPTIMIZATION_HISTORY_LIMIT: Final[int] = 50
