from __future__ import annotations

from autobalancer.security import (
    REDACTED,
    is_sensitive_key,
    mask_secret,
    redact_data,
    sanitize_text,
)


def test_mask_secret() -> None:
    assert mask_secret("") == REDACTED
    assert mask_secret("short") == "*****"
    assert mask_secret("0123456789") == "0123**6789"


def test_sensitive_keys() -> None:
    assert is_sensitive_key("ANALYTICS_API_KEY")
    assert is_sensitive_key("x-api-key")
    assert is_sensitive_key("private-key")
    assert not is_sensitive_key("permission_id")
    assert not is_sensitive_key("tx_ref")


def test_sanitize_text_masks_headers_and_query_params() -> None:
    text = "GET /executions?user=0xabc&apiKey=verysecretvalue Authorization: Bearer tok123"
    sanitized = sanitize_text(text)

    assert "verysecretvalue" not in sanitized
    assert "tok123" not in sanitized
    assert "user=0xabc" in sanitized


def test_sanitize_text_masks_known_secrets() -> None:
    sanitized = sanitize_text(
        "failed with key key-abcdef123456", known_secrets=["key-abcdef123456"]
    )
    assert "key-abcdef123456" not in sanitized


def test_redact_data_recurses() -> None:
    payload = {
        "outer": {"password": "hunter22", "items": [{"token": None}, "plain"]},
        "amounts": (1, 2),
    }
    redacted = redact_data(payload)

    assert redacted["outer"]["password"] == "********"
    assert redacted["outer"]["items"][0]["token"] == REDACTED
    assert redacted["outer"]["items"][1] == "plain"
    assert redacted["amounts"] == (1, 2)
