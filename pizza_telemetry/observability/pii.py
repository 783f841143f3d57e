"""
Redaction of sensitive fields.

Two entry points share one denylist:

* ``sanitize`` deep-copies an arbitrary nested structure (dicts, lists,
  tuples, scalars) and replaces the value of every key that contains a
  sensitive substring with ``***REDACTED***``.  Used on every payload
  before it leaves the process.
* ``PiiScrubber`` is a ``logging.Filter`` installed on the operator
  log handlers so credentials never reach the console or log files.
"""

import logging
import re
from typing import Any, FrozenSet, Pattern, Set

from ..constants import REDACTION_MARKER, SENSITIVE_FIELDS


class SanitizeCycleError(ValueError):
    """Raised when ``sanitize`` meets a container that contains itself."""


def is_sensitive_key(key: Any) -> bool:
    """Return ``True`` if *key* contains any denylisted substring (case-insensitive)."""
    lowered = str(key).lower()
    return any(field in lowered for field in SENSITIVE_FIELDS)


def sanitize(value: Any) -> Any:
    """Return a redacted deep copy of *value*.

    The input is never mutated and no container in the result is shared
    with the input.  ``None`` and scalars are returned as they are.

    Raises:
        SanitizeCycleError: If a dict, list or tuple is reachable from itself.
    """
    if value is None:
        return value
    return _sanitize(value, set())


def _sanitize(value: Any, path: Set[int]) -> Any:
    if not isinstance(value, (dict, list, tuple, set, frozenset)):
        return value

    marker = id(value)
    if marker in path:
        raise SanitizeCycleError(
            f"cannot sanitize self-referencing {type(value).__name__}"
        )
    path.add(marker)
    try:
        if isinstance(value, dict):
            return {
                k: REDACTION_MARKER if is_sensitive_key(k) else _sanitize(v, path)
                for k, v in value.items()
            }
        items = [_sanitize(v, path) for v in value]
        if isinstance(value, list):
            return items
        if hasattr(value, "_fields"):
            # namedtuple constructors take the fields positionally
            return type(value)(*items)
        return type(value)(items)
    finally:
        # Shared (non-cyclic) references may appear again on another branch
        path.discard(marker)


# ── Operator log filter ──────────────────────────────────────────

_KEY_ALTERNATION = "|".join(
    # "apikey" also has to match api_key / api-key in free text
    re.escape(f).replace("key", "[_-]?key") for f in SENSITIVE_FIELDS
)

# Patterns that match sensitive values in log messages.
_SENSITIVE_PATTERNS: list[tuple[Pattern, str]] = [
    # Bearer / Basic credentials, e.g. from an echoed Authorization header
    (
        re.compile(r"\b(Bearer|Basic)(\s+)[A-Za-z0-9\-._~+/:]{8,}=*"),
        r"\1\2[REDACTED]",
    ),
    # key=value or key: value pairs, including JSON-quoted keys
    (
        re.compile(
            r"(?i)(\w*(?:" + _KEY_ALTERNATION + r")\w*['\"]?)"
            r"(\s*[:=]\s*)"
            r"(['\"]?)([^\s'\",}]{4,})\3"
        ),
        r"\1\2\3[REDACTED]\3",
    ),
]


class PiiScrubber(logging.Filter):
    """Logging filter that scrubs secrets from log records.

    Attach to a handler or logger::

        handler.addFilter(PiiScrubber())
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.msg = scrub_text(record.getMessage())
        record.args = None  # prevent double-formatting

        for attr in list(vars(record)):
            if attr in _RECORD_BUILTINS:
                continue
            if is_sensitive_key(attr):
                setattr(record, attr, "[REDACTED]")

        return True


def scrub_text(text: str) -> str:
    """Apply all sensitive-data patterns to *text* and return the result."""
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


# Standard LogRecord attributes never treated as user-supplied extras.
_RECORD_BUILTINS: FrozenSet[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None))
) | {"message", "asctime"}
