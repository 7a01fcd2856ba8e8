"""Shared constants for agentloop."""

# Store key prefixes
WORKFLOW_PREFIX = "workflow:"
AGENT_PREFIX = "agent:"
USER_SETTINGS_PREFIX = "user:"

# Poller timing
MIN_POLL_INTERVAL_SECONDS = 10
DEFAULT_POLL_INTERVAL_SECONDS = 30
DEFAULT_STALE_JOB_MAX_AGE_HOURS = 24

# Remote client
DEFAULT_REMOTE_BASE_URL = "https://api.cursor.com"
DEFAULT_REMOTE_TIMEOUT_SECONDS = 15.0
REMOTE_MAX_RETRIES = 3

# Optimistic concurrency
DEFAULT_MAX_WRITE_ATTEMPTS = 5

# Launch-pending workflows older than this are failed by the poller
DEFAULT_LAUNCH_GRACE_SECONDS = 300.0

# HTTP API rate limiting
DEFAULT_RATE_LIMIT_PER_MINUTE = 100
RATE_LIMIT_WINDOW_SECONDS = 60.0
