"""Tests for environment-driven settings."""

from pathlib import Path

import pytest

from stackmend.config import Settings
from stackmend.errors import ConfigurationError
from stackmend.registry import DEFAULT_CAPABILITIES


def test_defaults_when_environment_is_empty():
    settings = Settings.from_env({})

    assert settings == Settings()
    assert settings.capabilities == DEFAULT_CAPABILITIES
    assert settings.checkpoint_dir == Path(".")


def test_reads_all_variables():
    settings = Settings.from_env(
        {
            "STACKMEND_POLL_INTERVAL": "2.5",
            "STACKMEND_DETECTION_POLL_INTERVAL": "1",
            "STACKMEND_DETECTION_MAX_ATTEMPTS": "7",
            "STACKMEND_UPDATE_TIMEOUT": "600",
            "STACKMEND_CHANGE_SET_TIMEOUT": "60",
            "STACKMEND_CHECKPOINT_DIR": "/tmp/backups",
            "STACKMEND_CAPABILITIES": "CAPABILITY_IAM, CAPABILITY_AUTO_EXPAND",
        }
    )

    assert settings.poll_interval == 2.5
    assert settings.detection_poll_interval == 1.0
    assert settings.detection_max_attempts == 7
    assert settings.update_timeout == 600.0
    assert settings.change_set_timeout == 60.0
    assert settings.checkpoint_dir == Path("/tmp/backups")
    assert settings.capabilities == ("CAPABILITY_IAM", "CAPABILITY_AUTO_EXPAND")


def test_reads_process_environment(monkeypatch):
    monkeypatch.setenv("STACKMEND_DETECTION_MAX_ATTEMPTS", "3")

    assert Settings.from_env().detection_max_attempts == 3


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("STACKMEND_POLL_INTERVAL", "soon"),
        ("STACKMEND_POLL_INTERVAL", "-1"),
        ("STACKMEND_DETECTION_MAX_ATTEMPTS", "1.5"),
        ("STACKMEND_DETECTION_MAX_ATTEMPTS", "0"),
    ],
)
def test_malformed_values_raise(name, value):
    with pytest.raises(ConfigurationError, match=name):
        Settings.from_env({name: value})
