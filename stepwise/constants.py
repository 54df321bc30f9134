"""Shared constants for stepwise."""

WORKFLOW_QUEUE = "workflow-execution"
STEP_QUEUE = "step-execution"
RETRY_QUEUE = "step-retry"

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 2.0

DEFAULT_WORKFLOW_CONCURRENCY = 10
DEFAULT_STEP_CONCURRENCY = 20
DEFAULT_RETRY_CONCURRENCY = 5
