import os

DB_FILE = os.environ.get("CAMPAIGNWATCH_DB", "campaignwatch.db")

DEFAULT_CONFIG = {
    "backoff_base": "2",
    "max_retries_default": "3",
    "schedule_interval_minutes": "30",
    "alert_spacing_ratio": "0.8",
    "min_alert_spacing_minutes": "2",
    "stale_claim_minutes": "15",
    "soft_deadline_seconds": "240",
    "concurrency": "5",
    "max_jobs": "100",
    "alert_batch_limit": "50",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

# key -> smallest accepted whole number
INT_CONFIG_MINIMUMS = {
    "backoff_base": 1,
    "max_retries_default": 0,
    "schedule_interval_minutes": 1,
    "min_alert_spacing_minutes": 1,
    "stale_claim_minutes": 1,
    "concurrency": 1,
    "max_jobs": 1,
    "alert_batch_limit": 1,
}

# key -> (exclusive lower bound, inclusive upper bound or None)
FLOAT_CONFIG_RANGES = {
    "alert_spacing_ratio": (0.0, 1.0),
    "soft_deadline_seconds": (0.0, None),
}
