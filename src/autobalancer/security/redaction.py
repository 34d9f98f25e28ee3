from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "***REDACTED***"

SENSITIVE_KEY_PARTS = (
    "api_key",
    "apikey",
    "secret",
    "authorization",
    "token",
    "password",
    "private_key",
    "privatekey",
    "mnemonic",
    "seed_phrase",
)

_PLAIN_SECRET_PATTERNS = (
    re.compile(r"(?im)(authorization\s*[:=]\s*)(bearer\s+)?([^\s,;]+)"),
    re.compile(r"(?im)(x-api-key\s*[:=]\s*)([^\s,;]+)"),
    re.compile(r"(?im)(analytics_api_key\s*[:=]\s*)([^\s,;]+)"),
    re.compile(r"(?im)(private_key\s*[:=]\s*)([^\s,;]+)"),
)
_QUERY_PARAM_PATTERN = re.compile(r"([?&]?)(apiKey|api_key|token)=([^&\s]+)", re.IGNORECASE)


def is_sensitive_key(key: object) -> bool:
    normalized = str(key).replace("-", "_").casefold()
    return any(part in normalized for part in SENSITIVE_KEY_PARTS)


def mask_secret(value: str) -> str:
    if not value:
        return REDACTED
    if len(value) > 8:
        return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
    return "*" * len(value)


def _redact_match(match: re.Match[str]) -> str:
    prefix = match.group(1)
    scheme = ""
    if match.lastindex and match.lastindex >= 3:
        scheme = match.group(2) or ""
    return f"{prefix}{scheme}[REDACTED]"


def sanitize_text(text: str, known_secrets: Iterable[str] = ()) -> str:
    try:
        redacted = str(text)
        for secret in known_secrets:
            if secret:
                redacted = redacted.replace(secret, mask_secret(str(secret)))
        for pattern in _PLAIN_SECRET_PATTERNS:
            redacted = pattern.sub(_redact_match, redacted)
        return _QUERY_PARAM_PATTERN.sub(
            lambda m: f"{m.group(1)}{m.group(2)}={mask_secret(m.group(3))}", redacted
        )
    except Exception:  # noqa: BLE001
        return REDACTED


def sanitize_mapping(data: Mapping[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in data.items():
        key_str = str(key)
        if is_sensitive_key(key_str):
            sanitized[key_str] = mask_secret(str(value)) if value is not None else REDACTED
            continue
        sanitized[key_str] = redact_data(value)
    return sanitized


def redact_data(value: Any) -> Any:
    try:
        if isinstance(value, Mapping):
            return sanitize_mapping(value)
        if isinstance(value, list):
            return [redact_data(item) for item in value]
        if isinstance(value, tuple):
            return tuple(redact_data(item) for item in value)
        if isinstance(value, str):
            return sanitize_text(value)
        return value
    except Exception:  # noqa: BLE001
        return REDACTED
