"""Shared constants for paceflow."""

DEFAULT_MAX_RETRIES = 3
DEFAULT_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_POLL_CONCURRENCY = 10
DEFAULT_POLL_BATCH_SIZE = 100
DEFAULT_TRIGGER_LOOKBACK_SECONDS = 3600
DEFAULT_CLAIM_LEASE_SECONDS = 300

# Named delay presets accepted by ``{"delay": {"type": ...}}`` rule nodes.
DELAY_PRESETS: dict[str, int] = {
    "1_second": 1,
    "5_seconds": 5,
    "10_seconds": 10,
    "30_seconds": 30,
    "1_minute": 60,
    "2_minutes": 120,
    "5_minutes": 300,
    "10_minutes": 600,
    "30_minutes": 1800,
    "1_hour": 3600,
    "2_hours": 7200,
    "6_hours": 21600,
    "12_hours": 43200,
    "1_day": 86400,
    "2_days": 172800,
    "3_days": 259200,
    "5_days": 432000,
    "1_week": 604800,
    "2_weeks": 1209600,
    "1_month": 2592000,
}

END_REASONS = ("completed", "cancelled", "error", "timeout", "manual_stop")
RE_ENTRY_RULES = ("once_only", "once_per_user", "once_per_product", "always")
DEFAULT_RE_ENTRY_RULE = "always"

# Context keys consulted when a re-entry rule needs the purchased product.
PRODUCT_KEYS = ("product_package", "subscription_package", "product", "package")
