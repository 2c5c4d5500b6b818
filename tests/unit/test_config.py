"""
Unit tests for settings and duration parsing.

Run with: pytest tests/unit/test_config.py -v
"""

import pytest
from pydantic import ValidationError

from sdm72.config import Settings, format_duration, parse_duration
from sdm72.exceptions import ConfigError


@pytest.mark.parametrize("text,seconds", [
    ("200ms", 0.2),
    ("2s", 2.0),
    ("1m 30s", 90.0),
    ("1m30s", 90.0),
    ("1h", 3600.0),
    ("1.5s", 1.5),
    ("500us", 0.0005),
    ("3", 3.0),
    (4, 4.0),
])
def test_parse_duration(text, seconds):
    assert parse_duration(text) == pytest.approx(seconds)


@pytest.mark.parametrize("text", ["", "soon", "5 parsecs", "-1", "2s later", -3])
def test_parse_duration_rejects(text):
    with pytest.raises(ConfigError):
        parse_duration(text)


def test_format_duration():
    assert format_duration(0.2) == "200ms"
    assert format_duration(2.0) == "2s"


def test_settings_defaults(monkeypatch):
    monkeypatch.delenv("SDM72_TIMEOUT_S", raising=False)
    settings = Settings(_env_file=None)
    assert settings.timeout_s == 0.2
    assert settings.delay_s == 0.05
    assert settings.poll_interval_s == 2.0
    assert settings.failure_threshold == 5


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("SDM72_LOG_LEVEL", "debug")
    monkeypatch.setenv("SDM72_FAILURE_THRESHOLD", "3")
    monkeypatch.setenv("SDM72_PARITY_AND_STOP_BIT", "ep1b")
    settings = Settings(_env_file=None)
    assert settings.log_level == "DEBUG"
    assert settings.failure_threshold == 3
    assert settings.parity_and_stop_bit == "ep1b"


def test_settings_reject_bad_values(monkeypatch):
    monkeypatch.setenv("SDM72_PARITY_AND_STOP_BIT", "zz")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)
