DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_MAX_POLL_FAILURES = 5
DEFAULT_MAX_RETRIES = 0
DEFAULT_EXECUTION_ROOT = "loomwork-executions"
DEFAULT_CONFIG_FILE = "loomwork.yaml"

# Index stored for singleton (non-scattered) calls in SQL tables.
NO_INDEX = -1

JOB_ID_KEY = "job_id"
