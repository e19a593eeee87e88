"""SignGate constants: filesystem layout, policy weights, and limits."""

from __future__ import annotations

from enum import IntEnum

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


class ExitCode(IntEnum):
    SUCCESS = 0
    ERROR = 1
    CONFIG_ERROR = 2
    STORAGE_ERROR = 3
    INVALID_INPUT = 4
    AUDIT_CHAIN_BROKEN = 6


# ---------------------------------------------------------------------------
# Filesystem layout
# ---------------------------------------------------------------------------

SIGNGATE_DIR_NAME = ".signgate"
CONFIG_FILENAME = "config.toml"
DB_FILENAME = "signgate.db"

# ---------------------------------------------------------------------------
# Time units (milliseconds)
# ---------------------------------------------------------------------------

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS

# ---------------------------------------------------------------------------
# Event kinds
# ---------------------------------------------------------------------------

EVENT_KIND_GENERIC = -1  # stored sentinel: "applies to any kind"
MIN_EVENT_KIND = 0
MAX_EVENT_KIND = 65535

# Individually listed sensitive kinds
KIND_METADATA = 0
KIND_CONTACTS = 3
KIND_ENCRYPTED_DM = 4
KIND_GIFT_WRAP = 1059
KIND_REPORT = 1984
KIND_MUTE_LIST = 10000
KIND_RELAY_LIST = 10002
KIND_BOOKMARK_LIST = 10003
KIND_SEARCH_RELAY_LIST = 10004
KIND_BLOCKED_RELAY_LIST = 10006
KIND_DM_RELAY_LIST = 10050

SENSITIVE_KINDS: frozenset[int] = frozenset(
    {
        KIND_METADATA,
        KIND_CONTACTS,
        KIND_ENCRYPTED_DM,
        KIND_GIFT_WRAP,
        KIND_REPORT,
        KIND_MUTE_LIST,
        KIND_RELAY_LIST,
        KIND_BOOKMARK_LIST,
        KIND_SEARCH_RELAY_LIST,
        KIND_BLOCKED_RELAY_LIST,
        KIND_DM_RELAY_LIST,
    }
)

# Parameterized replaceable events (inclusive)
REPLACEABLE_KIND_MIN = 30000
REPLACEABLE_KIND_MAX = 39999

# ---------------------------------------------------------------------------
# Permission expiry
# ---------------------------------------------------------------------------

SENSITIVE_FOREVER_MAX_MS = DAY_MS  # "forever" on a sensitive kind is clamped to this
CLOCK_SKEW_TOLERANCE_MS = MINUTE_MS  # createdAt this far in the future → expired
MAX_CALLER_ID_LENGTH = 255

# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

RATE_LIMIT_WINDOW_MS = SECOND_MS
RATE_LIMIT_MAX_REQUESTS = 10
RATE_LIMIT_MAX_ENTRIES = 1000

VELOCITY_HOURLY_LIMIT = 100
VELOCITY_DAILY_LIMIT = 500
VELOCITY_WEEKLY_LIMIT = 2000

# ---------------------------------------------------------------------------
# Risk scoring (fixed policy, not configurable)
# ---------------------------------------------------------------------------

RISK_WEIGHT_SENSITIVE_EVENT_KIND = 40
RISK_WEIGHT_HIGH_FREQUENCY = 20
RISK_WEIGHT_NEW_APP = 15
RISK_WEIGHT_FIRST_KIND = 15
RISK_WEIGHT_UNUSUAL_TIME = 10

MAX_RISK_SCORE = 100
RISK_THRESHOLD_EXPLICIT = 60
RISK_THRESHOLD_BIOMETRIC = 40
RISK_THRESHOLD_PIN = 20

HIGH_FREQUENCY_THRESHOLD = 10  # more than this many requests ...
FREQUENCY_WINDOW_MS = MINUTE_MS  # ... within this window
NEW_APP_THRESHOLD_MS = DAY_MS
NORMAL_HOURS_START = 6  # local hours [6, 23] are "normal"
NORMAL_HOURS_END = 23

# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

AUDIT_RETENTION_DAYS = 30
AUDIT_PAGE_MAX = 100
AUDIT_GENESIS_HASH = ""
