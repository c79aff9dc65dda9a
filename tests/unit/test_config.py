from __future__ import annotations

import logging

import pytest

from common.config import Settings
from common.log import configure_logging


_ALL_VARS = [
    "SATSPAY_BACKEND",
    "SATSPAY_STORAGE_PREFIX",
    "SATSPAY_STATE_FILE",
    "SATSPAY_S3_BUCKET",
    "SATSPAY_S3_PREFIX",
    "SATSPAY_FERNET_KEY",
    "SATSPAY_AWS_REGION",
    "SATSPAY_CAPACITY_BYTES",
    "SATSPAY_MAX_RETRIES",
    "SATSPAY_AUTOSAVE_INTERVAL",
    "SATSPAY_AUTOSAVE",
    "SATSPAY_AUTO_AUTHENTICATE",
    "SATSPAY_BRIDGE_TIMEOUT",
    "SATSPAY_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ALL_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = Settings.from_env()
    assert s.backend == "memory"
    assert s.storage_prefix == "satspay_"
    assert s.capacity_bytes == 5 * 1024 * 1024
    assert s.max_retries == 3
    assert s.autosave is True
    assert s.auto_authenticate is False
    assert s.bridge_timeout == 10.0


def test_values_from_env(monkeypatch):
    monkeypatch.setenv("SATSPAY_BACKEND", "file")
    monkeypatch.setenv("SATSPAY_STATE_FILE", "/tmp/state.json")
    monkeypatch.setenv("SATSPAY_MAX_RETRIES", "5")
    monkeypatch.setenv("SATSPAY_AUTOSAVE", "off")
    monkeypatch.setenv("SATSPAY_AUTO_AUTHENTICATE", "yes")
    monkeypatch.setenv("SATSPAY_BRIDGE_TIMEOUT", "2.5")
    monkeypatch.setenv("SATSPAY_STORAGE_PREFIX", "")  # empty means unset

    s = Settings.from_env()
    assert s.backend == "file"
    assert s.state_file == "/tmp/state.json"
    assert s.max_retries == 5
    assert s.autosave is False
    assert s.auto_authenticate is True
    assert s.bridge_timeout == 2.5
    assert s.storage_prefix == "satspay_"


@pytest.mark.parametrize(
    "name,value",
    [
        ("SATSPAY_BACKEND", "redis"),
        ("SATSPAY_MAX_RETRIES", "0"),
        ("SATSPAY_CAPACITY_BYTES", "lots"),
        ("SATSPAY_AUTOSAVE", "maybe"),
        ("SATSPAY_BRIDGE_TIMEOUT", "-1"),
    ],
)
def test_invalid_values_raise(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(RuntimeError):
        Settings.from_env()


def test_s3_backend_requires_bucket_and_key(monkeypatch):
    monkeypatch.setenv("SATSPAY_BACKEND", "s3")
    monkeypatch.setenv("SATSPAY_S3_BUCKET", "bucket")
    with pytest.raises(RuntimeError) as exc:
        Settings.from_env()
    assert "SATSPAY_FERNET_KEY" in str(exc.value)


def test_configure_logging_levels(monkeypatch):
    configure_logging("debug")
    assert logging.getLogger().level == logging.DEBUG

    monkeypatch.setenv("SATSPAY_LOG_LEVEL", "WARNING")
    configure_logging()
    assert logging.getLogger().level == logging.WARNING

    configure_logging("not-a-level")
    assert logging.getLogger().level == logging.INFO
