"""
Centralised constants for the pizza telemetry package.

All magic numbers, label defaults and wire-format constants live here
so they can be imported by any module without circular dependencies.
"""

# ── Version ──────────────────────────────────────────────────────
APP_VERSION = "0.4.0"
APP_USER_AGENT = f"pizza-telemetry/{APP_VERSION}"

# ── Default paths ────────────────────────────────────────────────
DEFAULT_CONFIG_PATH = "config.json"

# ── Labels ───────────────────────────────────────────────────────
DEFAULT_SOURCE = "jwt-pizza-service"

# ── Export ───────────────────────────────────────────────────────
DEFAULT_EXPORT_INTERVAL_SECONDS = 10.0
HTTP_TIMEOUT_SECONDS = 10
# Bytes of a rejected export body echoed to the operator log
EXPORT_BODY_SAMPLE_CHARS = 500
METRIC_FORMATS = frozenset({"otlp", "line"})

# ── Log shipping ─────────────────────────────────────────────────
LOG_SHIPPER_WORKERS = 2
# Events queued or in flight before new ones are dropped
LOG_SHIPPER_MAX_PENDING = 100

# ── Sanitizer ────────────────────────────────────────────────────
REDACTION_MARKER = "***REDACTED***"
# Matched case-insensitively as substrings of object keys
SENSITIVE_FIELDS = ("password", "token", "apikey", "jwtsecret", "authorization")

# ── Operator logging ─────────────────────────────────────────────
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB per log file
LOG_BACKUP_COUNT = 5

# ── HTTP ─────────────────────────────────────────────────────────
ERROR_STATUS_THRESHOLD = 400
