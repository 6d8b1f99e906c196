"""Shared defaults for the collaboration engine."""

POLL_INTERVAL_SECONDS = 2.0
MONITOR_MIN_DURATION = 60
MONITOR_MAX_DURATION = 1800
MONITOR_DEFAULT_DURATION = 300

DEFAULT_STAFF_WINDOW_SECONDS = 300
DEFAULT_DELAY_SECONDS = 5
DEFAULT_ROLE_CODE = "default"

INITIAL_FLOW_VERSION = "1.0"
MAX_FLOW_STEPS = 100
STAFF_TYPE_CACHE_TTL = 300
