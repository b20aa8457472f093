"""Shared constants."""

DEFAULT_CONFIG_FILE = "contentflow.yaml"
CONFIG_ENV_VAR = "CONTENTFLOW_CONFIG"
DATABASE_URL_ENV_VAR = "CONTENTFLOW_DATABASE_URL"
SCHEDULER_ENV_VAR = "CONTENTFLOW_SCHEDULER"

DEFAULT_SYSTEM_ACTOR = "system"

DELAY_JOB = "workflow_delay"
TIMEOUT_JOB = "workflow_step_timeout"

DEFAULT_PAGE_SIZE = 20
