"""
Redaction utilities for logs, stored payloads and user-facing error text.

Two concerns live here:
- ``redact_sensitive_data`` masks credential-like keys before a payload is
  logged or persisted (API keys travel inside node input maps).
- ``sanitize_error_message`` turns raw provider failure text into a short,
  user-presentable message.  The raw text is logged by the caller first.
"""
import re
from typing import Any


# Default sensitive field patterns (case-insensitive)
DEFAULT_SENSITIVE_PATTERNS = [
    re.compile(r"^.*password.*$", re.IGNORECASE),
    re.compile(r"^.*token.*$", re.IGNORECASE),
    re.compile(r"^.*api[_-]?key.*$", re.IGNORECASE),
    re.compile(r"^.*secret.*$", re.IGNORECASE),
    re.compile(r"^.*credential.*$", re.IGNORECASE),
    re.compile(r"^.*authorization.*$", re.IGNORECASE),
    re.compile(r"^.*private[_-]?key.*$", re.IGNORECASE),
    re.compile(r"^.*access[_-]?key.*$", re.IGNORECASE),
]

REDACTION_PLACEHOLDER = "***REDACTED***"

# Ordered: first match wins.
_ERROR_MESSAGE_PATTERNS: list[tuple[re.Pattern, str]] = [
    (
        re.compile(r"SSL|SSLError|HTTPS|ConnectionPool|Max retries", re.IGNORECASE),
        "Connection error. Please try again later.",
    ),
    (
        re.compile(r"rate limit|too many requests|throttl", re.IGNORECASE),
        "Service busy. Please try again in a few minutes.",
    ),
    (
        re.compile(r"Failed to fetch|load image|LoadImageFromUrl", re.IGNORECASE),
        "Failed to load input media. Please check your file and try again.",
    ),
    (
        re.compile(r"[\u4e00-\u9fff]"),
        "Generation service temporarily unavailable. Please try again later.",
    ),
    (
        re.compile(r"content policy|moderation|nsfw|inappropriate", re.IGNORECASE),
        "Content could not be processed. Please adjust your input.",
    ),
    (
        re.compile(r"GPU|out of memory|resource|CUDA", re.IGNORECASE),
        "Service is experiencing high demand. Please try again later.",
    ),
    (
        re.compile(r"timeout|timed out", re.IGNORECASE),
        "Request timed out. Please try again.",
    ),
    (
        re.compile(r"APIKEY|API.?KEY", re.IGNORECASE),
        "Service configuration error. Please contact support.",
    ),
]

GENERIC_FAILURE_MESSAGE = "Generation failed. Please try again later."


def _is_sensitive_key(key: str, patterns: list[re.Pattern] | None = None) -> bool:
    """Check if a key name matches any sensitive patterns."""
    check_patterns = patterns if patterns is not None else DEFAULT_SENSITIVE_PATTERNS
    return any(pattern.match(key) for pattern in check_patterns)


def redact_sensitive_data(
    data: Any,
    max_depth: int = 10,
    extra_patterns: list[re.Pattern] | None = None,
) -> Any:
    """
    Recursively redact sensitive fields from data structures.

    Args:
        data: Dict, list, or primitive value to redact
        max_depth: Maximum recursion depth to prevent infinite loops
        extra_patterns: Patterns to use instead of the defaults.

    Returns:
        Copy of data with sensitive fields redacted
    """
    if max_depth <= 0:
        return data

    patterns = extra_patterns if extra_patterns is not None else DEFAULT_SENSITIVE_PATTERNS

    if isinstance(data, dict):
        redacted = {}
        for key, value in data.items():
            if _is_sensitive_key(str(key), patterns):
                redacted[key] = REDACTION_PLACEHOLDER
            else:
                redacted[key] = redact_sensitive_data(value, max_depth - 1, patterns)
        return redacted

    elif isinstance(data, list):
        return [redact_sensitive_data(item, max_depth - 1, patterns) for item in data]

    elif isinstance(data, tuple):
        return tuple(redact_sensitive_data(item, max_depth - 1, patterns) for item in data)

    else:
        return data


def sanitize_error_message(raw_error: str | None) -> str:
    """Map raw provider error text to a user-facing message."""
    if not raw_error:
        return GENERIC_FAILURE_MESSAGE
    for pattern, message in _ERROR_MESSAGE_PATTERNS:
        if pattern.search(raw_error):
            return message
    return GENERIC_FAILURE_MESSAGE
