"""Settings normalization tests."""
from __future__ import annotations

from app.core.config import Settings


def test_log_format_normalizes_with_text_fallback():
    assert Settings(log_format=" JSON ").normalized_log_format() == "json"
    assert Settings(log_format="xml").normalized_log_format() == "text"
    assert Settings(log_format="").normalized_log_format() == "text"


def test_settings_only_carry_dispatch_options():
    settings = Settings()
    assert not hasattr(settings, "app_mode")
    assert not hasattr(settings, "is_demo_mode")
