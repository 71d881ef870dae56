"""Redaction and truncation of event context before it is persisted."""

import re
from typing import Any, ClassVar


class SensitiveDataRedactor:
    """Redact sensitive information from security event context.

    Detects and redacts:
    - API keys and tokens
    - Passwords and secrets
    - Credit card numbers
    - Email addresses
    - Private keys
    """

    PATTERNS: ClassVar[dict[str, re.Pattern]] = {
        "api_key": re.compile(
            r"(api[_-]?key|apikey|access[_-]?token|secret[_-]?key|bearer)\s*[:=]\s*['\"]?([a-zA-Z0-9_\-]{20,})",
            re.IGNORECASE,
        ),
        "password": re.compile(r"(password|passwd|pwd)\s*[:=]\s*['\"]?([^'\"\s&]+)", re.IGNORECASE),
        "jwt": re.compile(r"eyJ[a-zA-Z0-9_-]+\.eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+"),
        "credit_card": re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"),
        "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "private_key": re.compile(
            r"-----BEGIN (RSA |EC )?PRIVATE KEY-----[\s\S]+?-----END (RSA |EC )?PRIVATE KEY-----"
        ),
    }

    # Key=value patterns keep the key and redact the value
    KEY_VALUE_PATTERNS: ClassVar[frozenset[str]] = frozenset({"api_key", "password"})

    SENSITIVE_KEYS: ClassVar[frozenset[str]] = frozenset(
        {
            "password",
            "passwd",
            "pwd",
            "secret",
            "token",
            "api_key",
            "apikey",
            "access_token",
            "auth_token",
            "bearer",
            "private_key",
            "secret_key",
            "client_secret",
            "authorization",
            "cookie",
        }
    )

    REDACTED_PLACEHOLDER = "[REDACTED]"

    @classmethod
    def redact(cls, text: str) -> str:
        """Redact sensitive data from text."""
        if not text:
            return text

        result = text
        for pattern_name, pattern in cls.PATTERNS.items():
            if pattern_name in cls.KEY_VALUE_PATTERNS:
                result = pattern.sub(lambda m: f"{m.group(1)}={cls.REDACTED_PLACEHOLDER}", result)
            else:
                result = pattern.sub(cls.REDACTED_PLACEHOLDER, result)
        return result

    @classmethod
    def is_sensitive_key(cls, key: str) -> bool:
        key_lower = key.lower().replace("-", "_")
        return key_lower in cls.SENSITIVE_KEYS or any(
            key_lower.endswith("_" + sens) for sens in cls.SENSITIVE_KEYS
        )

    @classmethod
    def redact_dict(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Redact sensitive data from a dictionary.

        Returns:
            Redacted dictionary (new copy)
        """
        result: dict[str, Any] = {}
        for key, value in data.items():
            if isinstance(value, str):
                if value and cls.is_sensitive_key(str(key)):
                    result[key] = cls.REDACTED_PLACEHOLDER
                else:
                    result[key] = cls.redact(value)
            elif isinstance(value, dict):
                result[key] = cls.redact_dict(value)
            elif isinstance(value, list):
                result[key] = [
                    cls.redact_dict(item)
                    if isinstance(item, dict)
                    else cls.redact(item)
                    if isinstance(item, str)
                    else item
                    for item in value
                ]
            else:
                result[key] = value
        return result


def truncate_strings(data: Any, max_chars: int, max_depth: int = 16) -> Any:
    """Copy of data with every string cut to max_chars.

    Containers nested deeper than max_depth are replaced by a marker.
    """
    if max_depth < 0:
        return "[TRUNCATED]"
    if isinstance(data, str):
        if len(data) > max_chars:
            return data[:max_chars] + f"...[{len(data) - max_chars} more]"
        return data
    if isinstance(data, dict):
        return {k: truncate_strings(v, max_chars, max_depth - 1) for k, v in data.items()}
    if isinstance(data, list | tuple):
        return [truncate_strings(v, max_chars, max_depth - 1) for v in data]
    return data
