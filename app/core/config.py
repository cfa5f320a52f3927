"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    WEBHOOK_SECRET                — Shared secret for push signature (HMAC-SHA256)
    DEPLOY_BRANCH                 — Only pushes to this branch start a run (default: main)
    REPO_URL                      — Repository cloned by the checkout stage
    TARGETS_FILE                  — YAML file describing deployment targets
    RUN_STORE_DIR                 — Optional directory for JSON run records
    NOTIFY_WEBHOOK_URL            — Optional callback for terminal-state notifications
    ALLOW_OVERLAPPING_DEPLOYMENTS — Allow concurrent runs per target (default: false)
    TEST_NETWORK_MODE             — Network mode of test containers (default: none)

Retry Philosophy:
    Only transient failures (executor timeout, executor unavailable) are
    retried. MAX_TRANSIENT_RETRIES counts ADDITIONAL attempts, so the
    default of 2 means a stage runs at most 3 times. Backoff doubles from
    RETRY_BACKOFF_SECONDS and is capped at RETRY_BACKOFF_CAP_SECONDS.

Verify Timeout:
    The verify stage timeout is derived from VERIFY_DEADLINE_SECONDS plus
    two poll intervals so the Health Gate always reports its own TimedOut
    verdict before the executor's hard timeout fires.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Trigger
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
DEPLOY_BRANCH = os.getenv("DEPLOY_BRANCH", "main")
REPO_URL = os.getenv("REPO_URL", "")
DEDUP_TTL_SECONDS = float(os.getenv("DEDUP_TTL_SECONDS", 3600))
DEDUP_MAX_ENTRIES = int(os.getenv("DEDUP_MAX_ENTRIES", 1000))

# Retry policy
MAX_TRANSIENT_RETRIES = int(os.getenv("MAX_TRANSIENT_RETRIES", 2))
RETRY_BACKOFF_SECONDS = float(os.getenv("RETRY_BACKOFF_SECONDS", 1.0))
RETRY_BACKOFF_CAP_SECONDS = float(os.getenv("RETRY_BACKOFF_CAP_SECONDS", 30.0))

# Per-stage hard timeouts in seconds
CHECKOUT_TIMEOUT = float(os.getenv("CHECKOUT_TIMEOUT", 120))
BUILD_TIMEOUT = float(os.getenv("BUILD_TIMEOUT", 900))
TEST_TIMEOUT = float(os.getenv("TEST_TIMEOUT", 600))
SCAN_TIMEOUT = float(os.getenv("SCAN_TIMEOUT", 300))
DEPLOY_TIMEOUT = float(os.getenv("DEPLOY_TIMEOUT", 180))

# Scan gate
SCAN_SEVERITY_THRESHOLD = os.getenv("SCAN_SEVERITY_THRESHOLD", "HIGH").upper()

# Health gate
HEALTH_POLL_INTERVAL = float(os.getenv("HEALTH_POLL_INTERVAL", 2.0))
HEALTH_FAILURE_THRESHOLD = int(os.getenv("HEALTH_FAILURE_THRESHOLD", 3))
VERIFY_DEADLINE_SECONDS = float(os.getenv("VERIFY_DEADLINE_SECONDS", 120))
VERIFY_TIMEOUT = VERIFY_DEADLINE_SECONDS + 2 * HEALTH_POLL_INTERVAL

# Whole-run wall-clock budget
RUN_BUDGET_SECONDS = float(os.getenv("RUN_BUDGET_SECONDS", 1800))

# Scheduling
ALLOW_OVERLAPPING_DEPLOYMENTS = _env_bool("ALLOW_OVERLAPPING_DEPLOYMENTS")

# Images
IMAGE_REPOSITORY = os.getenv("IMAGE_REPOSITORY", "staging-app")
BACKEND_DOCKERFILE_TARGET = os.getenv("BACKEND_DOCKERFILE_TARGET", "backend")
FRONTEND_DOCKERFILE_TARGET = os.getenv("FRONTEND_DOCKERFILE_TARGET", "frontend")
TEST_DOCKERFILE_TARGET = os.getenv("TEST_DOCKERFILE_TARGET", "test")
TEST_COMMAND = os.getenv("TEST_COMMAND", "pytest -q")
# Test containers get no network unless overridden ("bridge", a named network, ...)
TEST_NETWORK_MODE = os.getenv("TEST_NETWORK_MODE", "none")

# Storage / outputs
WORKSPACE_ROOT = os.getenv(
    "WORKSPACE_ROOT",
    os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "workspace"),
)
TARGETS_FILE = os.getenv("TARGETS_FILE", "")
RUN_STORE_DIR = os.getenv("RUN_STORE_DIR", "")
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR", "logs")
