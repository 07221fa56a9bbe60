from __future__ import annotations

from pathlib import Path

import pytest

from common.config import Settings
from common.errors import ConfigError
from common.identities import normalize_jid, parse_identity_list, validate_jid


_ENV_NAMES = (
    "WINGMAN_DATA_DIR",
    "MAX_ACTIVE_MESSAGES",
    "ARCHIVE_THRESHOLD",
    "WINGMAN_RATE_LIMIT_MAX_REQUESTS",
    "WINGMAN_BANNED_IDS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = Settings()
    assert s.max_active_messages == 100
    assert s.archive_threshold == 200
    assert s.rate_limit_max_requests == 20
    assert s.rate_limit_window_seconds == 60.0
    assert s.max_failed_attempts == 5
    assert s.lockout_duration_seconds == 900.0
    assert s.flow_state_timeout_seconds == 300.0
    assert s.flow_state_sweep_seconds == 600.0
    assert s.security_sweep_seconds == 600.0
    assert s.conversations_dir == Path("data") / "conversations"
    assert s.archives_dir == Path("data") / "archives"
    assert s.contacts_file == Path("data") / "contacts.json"


def test_from_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("WINGMAN_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("MAX_ACTIVE_MESSAGES", "50")
    monkeypatch.setenv("ARCHIVE_THRESHOLD", "80")
    monkeypatch.setenv("WINGMAN_BANNED_IDS", "919876543210, 120363000000000001@g.us")

    s = Settings.from_env()
    assert s.data_dir == tmp_path
    assert s.max_active_messages == 50
    assert s.archive_threshold == 80
    assert s.banned_ids == {"919876543210@s.whatsapp.net", "120363000000000001@g.us"}


def test_from_env_rejects_garbage(monkeypatch):
    monkeypatch.setenv("WINGMAN_RATE_LIMIT_MAX_REQUESTS", "lots")
    with pytest.raises(ConfigError):
        Settings.from_env()


def test_threshold_below_active_limit_is_fatal(monkeypatch):
    monkeypatch.setenv("MAX_ACTIVE_MESSAGES", "300")
    with pytest.raises(ConfigError):
        Settings.from_env()


def test_parse_identity_list_json_and_csv():
    assert parse_identity_list('[919876543210, "911111111111@s.whatsapp.net", true]') == {
        "919876543210@s.whatsapp.net",
        "911111111111@s.whatsapp.net",
    }
    assert parse_identity_list("'919876543210'\n+911111111111") == {
        "919876543210@s.whatsapp.net",
        "911111111111@s.whatsapp.net",
    }
    assert parse_identity_list("") == set()
    assert parse_identity_list(None) == set()


def test_jid_helpers():
    assert normalize_jid(" 919876543210 ") == "919876543210@s.whatsapp.net"
    assert normalize_jid("120363000000000001@g.us") == "120363000000000001@g.us"
    assert validate_jid("919876543210@s.whatsapp.net")
    assert validate_jid("120363000000000001@g.us")
    assert validate_jid("12345@s.whatsapp.net") is False
    assert validate_jid(None) is False
