"""Default values shared across wisely components."""

DEFAULT_BUCKET_CAPACITY = 100
DEFAULT_REFILL_RATE = 10.0

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_SECONDS = 1.5
DEFAULT_STEP_TIMEOUT_SECONDS = 15.0
DEFAULT_JOB_PRIORITY = 100

WORKER_BATCH_SIZE = 10
WORKER_LEASE_SECONDS = 30
WORKER_POLL_INTERVAL_SECONDS = 1.0
RATE_LIMIT_REQUEUE_DELAY_SECONDS = 5.0

SESSION_EVENT_LEASE_SECONDS = 120

# Status code recorded for attempts that never produced an HTTP response.
NETWORK_FAILURE_STATUS = 599
RATE_LIMITED_STATUS = 429
