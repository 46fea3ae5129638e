"""Project-wide named constants.

Constants defined here replace inline magic numbers across the bulk
pipeline. Values mirror the platform's documented bulk-job limits and the
polling cadence that has been stable in production.
"""

# Logical items per batch job. The platform accepts far more operations per
# job, but result listing and the fallback reconciliation query get slow
# beyond this point.
BATCH_SIZE: int = 10_000

# A single scheduling scan reads at most this many batches worth of pending
# items per account.
MAX_PARALLEL_JOBS: int = 4

# Maximum operations per add-operations upload call (platform limit).
OPERATION_CHUNK_SIZE: int = 1_000

# Pause between batch submissions for the same scan, in seconds.
API_DELAY_SECONDS: float = 2.0

# First poll happens this long after the job is persisted.
FIRST_POLL_DELAY_SECONDS: int = 30

# next_poll_at = now + min(BASE * 2**attempts, CAP)
POLL_BACKOFF_BASE_SECONDS: int = 15
POLL_BACKOFF_CAP_SECONDS: int = 3_600

# A job still Running after this many polls is given up on.
MAX_RUNNING_ATTEMPTS: int = 50

# After this many polls a still-running job is logged as stalled on every
# poll, and a job found outside PendingResult raises.
STALL_WARNING_ATTEMPTS: int = 7

# Page size for listing batch job results.
RESULTS_PAGE_SIZE: int = 1_000

# Classified categories containing this marker are transient platform
# failures: they are recorded but never alerted.
INTERNAL_ERROR_MARKER: str = "internal error"

# Classified categories containing this marker mean an Update changed
# nothing; the item is treated as already in sync.
REDUNDANT_UPDATE_MARKER: str = "identical and redundant"
