from __future__ import annotations

import pytest
from pydantic import ValidationError

from tgdigest.config import MODES, ConfigError, Settings

_ENV_NAMES = (
    "DATABASE_URL",
    "TG_API_ID",
    "TG_API_HASH",
    "BOT_TOKEN",
    "ADMIN_IDS",
    "DIGEST_TARGET_CHAT_ID",
    "DIGEST_WINDOW",
    "RELEVANCE_THRESHOLD",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def _settings(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)


def test_admin_ids_from_comma_string() -> None:
    settings = _settings(ADMIN_IDS="10, 20,")

    assert settings.admin_ids == [10, 20]


def test_digest_window_delta() -> None:
    assert _settings(DIGEST_WINDOW="1h30m").digest_window_delta.total_seconds() == 5400


@pytest.mark.parametrize(
    "field, value",
    [
        ("RELEVANCE_THRESHOLD", 1.5),
        ("DIGEST_WINDOW", "0m"),
        ("WORKER_BATCH_SIZE", 0),
    ],
)
def test_invalid_values_rejected(field, value) -> None:
    with pytest.raises(ValidationError):
        _settings(**{field: value})


def test_require_reports_missing_aliases() -> None:
    settings = _settings()

    with pytest.raises(ConfigError) as excinfo:
        settings.require("digest")

    assert "BOT_TOKEN" in str(excinfo.value)
    assert "DIGEST_TARGET_CHAT_ID" in str(excinfo.value)


def test_require_passes_when_configured() -> None:
    settings = _settings(
        TG_API_ID=1,
        TG_API_HASH="hash",
        BOT_TOKEN="123:abc",
        DIGEST_TARGET_CHAT_ID=-100,
    )

    for mode in MODES:
        settings.require(mode)


def test_require_unknown_mode() -> None:
    with pytest.raises(ConfigError, match="unknown mode"):
        _settings().require("cron")
