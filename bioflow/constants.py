"""Default tunables shared across bioflow components."""

DEFAULT_LEASE_SECONDS = 300.0
DEFAULT_JOB_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_BACKOFF_CAP = 300.0
DEFAULT_BACKOFF_JITTER = 1.0
DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_SWEEP_INTERVAL = 5.0
DEFAULT_WORKER_CONCURRENCY = 4

DEFAULT_LLM_MAX_ATTEMPTS = 3
DEFAULT_LLM_TIMEOUT = 120.0
DEFAULT_LLM_MAX_TOKENS = 4096
DEFAULT_PROVIDER_CONCURRENCY = 8

PAYLOAD_SUMMARY_CHARS = 200
