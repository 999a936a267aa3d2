from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import IntegrityError

from tgdigest.bot_commands import discover, feedback, handlers
from tgdigest.bot_commands.parsing import (
    UsageError,
    apply_schedule_command,
    describe_schedule,
    format_value,
    parse_positive_int,
    parse_rate_callback,
    parse_threshold,
    parse_toggle,
    parse_weight,
)
from tgdigest.llm import prompts
from tgdigest.schedule import HourlyRange


class FakeMessage:
    def __init__(self, user_id: int = 1) -> None:
        self.from_user = SimpleNamespace(id=user_id)
        self.answers: list[str] = []

    async def answer(self, text: str, **kwargs) -> None:
        self.answers.append(text)


class FakeCallback(FakeMessage):
    def __init__(self, data: str, user_id: int = 2) -> None:
        super().__init__(user_id)
        self.data = data
        self.alerts: list[bool] = []

    async def answer(self, text: str, show_alert: bool = False, **kwargs) -> None:
        self.answers.append(text)
        self.alerts.append(show_alert)


async def _allowed(event) -> bool:
    return True


def test_parse_toggle() -> None:
    assert parse_toggle("ON") is True
    assert parse_toggle("disabled") is False
    assert parse_toggle("  ") is None
    with pytest.raises(UsageError):
        parse_toggle("maybe")


def test_parse_threshold_and_weight() -> None:
    assert parse_threshold("0,75") == 0.75
    assert parse_weight("auto") is None
    assert parse_weight("1.5") == 1.5
    for bad in ("1.2", "x"):
        with pytest.raises(UsageError):
            parse_threshold(bad)
    with pytest.raises(UsageError):
        parse_weight("2.5")


def test_parse_positive_int() -> None:
    assert parse_positive_int(" 7 ", name="n") == 7
    with pytest.raises(UsageError, match="n must be a positive integer"):
        parse_positive_int("0", name="n")


def test_parse_rate_callback() -> None:
    up = parse_rate_callback("rate:12:up")

    assert (up.digest_id, up.value) == (12, 1)
    assert parse_rate_callback("rate:12:down").value == -1
    assert parse_rate_callback("rate:x:up") is None
    assert parse_rate_callback(None) is None


def test_apply_schedule_command_edits() -> None:
    schedule = apply_schedule_command(None, ["timezone", "Europe/Kiev"])
    schedule = apply_schedule_command(schedule, ["weekdays", "times", "13:00,9:00,13:00"])
    schedule = apply_schedule_command(schedule, ["weekends", "hourly", "10:00", "-", "18:00"])

    assert schedule.timezone == "Europe/Kyiv"
    assert schedule.weekdays.times == ["09:00", "13:00"]
    assert schedule.weekends.hourly == HourlyRange(start="10:00", end="18:00")

    cleared = apply_schedule_command(schedule, ["weekends", "clear"])
    assert cleared.weekends.is_empty()
    assert schedule.weekends.hourly is not None
    assert apply_schedule_command(schedule, ["clear"]) is None


@pytest.mark.parametrize(
    "args",
    [
        [],
        ["weekdays"],
        ["weekdays", "times", ""],
        ["weekends", "hourly", "18:00"],
        ["weekends", "hourly", "18:00-10:00"],
        ["timezone", "Mars/Base"],
        ["monthly"],
    ],
)
def test_apply_schedule_command_rejects(args) -> None:
    with pytest.raises(UsageError):
        apply_schedule_command(None, args)


def test_describe_schedule() -> None:
    schedule = apply_schedule_command(None, ["weekdays", "times", "09:00"])

    assert describe_schedule(None).startswith("No schedule")
    assert describe_schedule(schedule) == "Timezone: UTC\nWeekdays: times 09:00\nWeekends: off"


def test_format_value() -> None:
    assert format_value(None) == "—"
    assert format_value(True) == "on"
    assert format_value(datetime(2024, 1, 1, tzinfo=timezone.utc)) == "2024-01-01T00:00:00+00:00"
    assert format_value(0.5) == "0.5"


def test_load_prompt_versions() -> None:
    stored = {
        prompts.active_key(prompts.SUMMARIZE): "v2",
        prompts.version_key(prompts.SUMMARIZE, "v2"): "custom prompt",
        prompts.active_key(prompts.NARRATIVE): "v9",
    }

    def get_setting(key, default=None):
        return stored.get(key, default)

    custom = prompts.load_prompt(prompts.SUMMARIZE, get_setting)
    missing = prompts.load_prompt(prompts.NARRATIVE, get_setting)

    assert (custom.version, custom.text) == ("v2", "custom prompt")
    assert missing.text == prompts.default_prompt(prompts.NARRATIVE)
    assert prompts.load_prompt(prompts.CLUSTER).version == prompts.DEFAULT_VERSION


def test_apply_tokens_language() -> None:
    text = prompts.apply_tokens("Group {{MESSAGE_COUNT}} items.{{LANG_INSTRUCTION}}", language="German", count=3)

    assert text == "Group 3 items. IMPORTANT: write the output in German language."
    assert prompts.apply_tokens("Plain", count=1) == "Plain"


def _discovery(**kwargs):
    values = {
        "id": 3,
        "username": None,
        "tg_peer_id": None,
        "access_hash": None,
        "invite_hash": None,
        "title": "Found",
        "source_type": "forward",
        "discovery_count": 4,
        "max_views": 1000,
        "max_forwards": 20,
        "engagement_score": 0.42,
    }
    values.update(kwargs)
    return SimpleNamespace(**values)


def test_channel_kwargs_prefers_username() -> None:
    assert discover.channel_kwargs(_discovery(username="found_chan", invite_hash="abc")) == {
        "title": "Found",
        "username": "found_chan",
    }
    assert discover.channel_kwargs(_discovery(invite_hash="abc")) == {
        "title": "Found",
        "invite_link": "https://t.me/+abc",
    }
    assert discover.channel_kwargs(_discovery(tg_peer_id=-1005, access_hash=9)) == {
        "title": "Found",
        "tg_peer_id": -1005,
        "access_hash": 9,
    }


def test_describe_discovery() -> None:
    line = discover.describe_discovery(_discovery(invite_hash="abc"))

    assert line.startswith("#3 https://t.me/+abc Found [forward]")
    assert "score=0.42" in line


def test_cmd_add_routes_reference_kinds(monkeypatch) -> None:
    added = []

    def fake_add(**kwargs):
        added.append(kwargs)
        return SimpleNamespace(id=len(added), title=kwargs.get("title"))

    monkeypatch.setattr(handlers, "ensure_allowed", _allowed)
    monkeypatch.setattr(handlers, "add_channel", fake_add)

    for ref in ("https://t.me/+Inv1te", "-1001234", "https://t.me/market_news"):
        asyncio.run(handlers.cmd_add(FakeMessage(), SimpleNamespace(args=ref)))

    assert added == [
        {"invite_link": "https://t.me/+Inv1te", "title": "https://t.me/+Inv1te"},
        {"tg_peer_id": -1001234, "title": "-1001234"},
        {"username": "market_news"},
    ]


def test_cmd_schedule_saves_schedule_and_anchor(monkeypatch) -> None:
    saved = {}
    monkeypatch.setattr(handlers, "ensure_allowed", _allowed)
    monkeypatch.setattr(handlers, "get_setting", lambda key, default=None: None)
    monkeypatch.setattr(
        handlers,
        "save_setting_with_history",
        lambda key, value, changed_by=None: saved.__setitem__(key, value),
    )
    message = FakeMessage()

    asyncio.run(handlers.cmd_schedule(message, SimpleNamespace(args="weekdays times 09:00,18:00")))

    assert saved["digest_schedule"]["weekdays"] == {"times": ["09:00", "18:00"]}
    assert "digest_schedule_anchor" in saved
    assert message.answers[-1].startswith("Timezone: UTC")


def test_on_rate_reports_totals(monkeypatch) -> None:
    monkeypatch.setattr(
        feedback,
        "save_digest_rating",
        lambda digest_id, user_id, value: SimpleNamespace(rating_up=3, rating_down=1),
    )
    callback = FakeCallback("rate:5:up")

    asyncio.run(feedback.on_rate(callback))

    assert callback.answers == ["Thanks! 👍 3 · 👎 1"]


def test_on_rate_unknown_digest(monkeypatch) -> None:
    def missing(digest_id, user_id, value):
        raise IntegrityError("INSERT", {}, Exception("fk violation"))

    monkeypatch.setattr(feedback, "save_digest_rating", missing)
    callback = FakeCallback("rate:404:down")

    asyncio.run(feedback.on_rate(callback))

    assert callback.answers == ["Digest not found"]
    assert callback.alerts == [True]


def test_bot_commands_are_unique() -> None:
    names = [command.command for command in handlers.get_bot_commands()]

    assert len(names) == len(set(names))
    assert {"digest", "schedule", "ratings", "rate_item"} <= set(names)


def test_cmd_window_validates_and_saves(monkeypatch) -> None:
    saved = {}
    deleted = []
    monkeypatch.setattr(handlers, "ensure_allowed", _allowed)
    monkeypatch.setattr(handlers, "get_settings", lambda: SimpleNamespace(digest_window="60m"))
    monkeypatch.setattr(handlers, "get_setting", lambda key, default=None: saved.get(key, default))
    monkeypatch.setattr(
        handlers,
        "save_setting_with_history",
        lambda key, value, changed_by=None: saved.__setitem__(key, value),
    )
    monkeypatch.setattr(
        handlers,
        "delete_setting_with_history",
        lambda key, changed_by=None: deleted.append(key) or True,
    )
    message = FakeMessage()

    asyncio.run(handlers.cmd_window(message, SimpleNamespace(args=None)))
    asyncio.run(handlers.cmd_window(message, SimpleNamespace(args="90m")))
    asyncio.run(handlers.cmd_window(message, SimpleNamespace(args="0m")))
    asyncio.run(handlers.cmd_window(message, SimpleNamespace(args="soon")))
    asyncio.run(handlers.cmd_window(message, SimpleNamespace(args=None)))
    asyncio.run(handlers.cmd_window(message, SimpleNamespace(args="reset")))

    assert saved == {"digest_window": "1h30m"}
    assert deleted == ["digest_window"]
    assert message.answers[0] == "Digest window: 60m"
    assert message.answers[1] == "Digest window: 1h30m"
    assert "Usage: /window" in message.answers[2]
    assert "Usage: /window" in message.answers[3]
    assert message.answers[4] == "Digest window: 1h30m"
    assert message.answers[5] == "Digest window: 60m (DIGEST_WINDOW)"


def test_cmd_history_reports_replay_state(monkeypatch) -> None:
    rows = [
        SimpleNamespace(
            changed_at=datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc),
            key="digest_top_n",
            old_value=10,
            new_value=15,
            is_deleted=False,
            changed_by=7,
        )
    ]
    monkeypatch.setattr(handlers, "ensure_allowed", _allowed)
    monkeypatch.setattr(handlers, "list_setting_history", lambda limit, key=None: rows)
    monkeypatch.setattr(handlers, "audit_setting", lambda key: (15, True))
    message = FakeMessage()

    asyncio.run(handlers.cmd_history(message, SimpleNamespace(args="digest_top_n")))

    assert "digest_top_n: 10 → 15 by 7" in message.answers[0]
    assert message.answers[0].endswith("Current: 15 (matches history)")


def test_cmd_channel_weight_history(monkeypatch) -> None:
    channel = SimpleNamespace(id=3, title="Markets", importance_weight=1.0, weight_mode="manual")
    changes = []
    monkeypatch.setattr(handlers, "ensure_allowed", _allowed)
    monkeypatch.setattr(handlers, "find_channel", lambda ref: channel if ref == "@markets" else None)

    def set_weight(channel_id, weight, updated_by=None):
        changes.append((channel_id, weight, updated_by))
        channel.importance_weight = weight
        return channel

    monkeypatch.setattr(handlers, "set_channel_weight", set_weight)
    monkeypatch.setattr(
        handlers,
        "list_weight_history",
        lambda channel_id, limit=10: [
            SimpleNamespace(
                updated_at=datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc),
                importance_weight=1.5,
                weight_mode="manual",
                reason="manual",
                updated_by=5,
            )
        ],
    )
    message = FakeMessage(user_id=5)

    asyncio.run(handlers.cmd_channel(message, SimpleNamespace(args="weight @markets 1.5")))
    asyncio.run(handlers.cmd_channel(message, SimpleNamespace(args="history @markets")))
    asyncio.run(handlers.cmd_channel(message, SimpleNamespace(args="history @nobody")))

    assert changes == [(3, 1.5, 5)]
    assert message.answers[0] == "Markets: weight 1.50 (manual)"
    assert "<b>Markets weight history</b>" in message.answers[1]
    assert "2024-05-01 09:00 1.50 (manual) manual by 5" in message.answers[1]
    assert message.answers[2] == "Channel not found"
