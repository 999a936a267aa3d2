from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from tgdigest.llm.errors import BudgetExceededError, EmptyResponseError, ProviderError
from tgdigest.llm.tasks import SummaryResult
from tgdigest.pipeline import worker as worker_module
from tgdigest.pipeline.dedup import DedupEntry, group_by_hash, keep_best
from tgdigest.pipeline.settings import PipelineSettings
from tgdigest.pipeline.worker import Worker

BASE_DATE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _raw(raw_id: int, text: str | None, *, canonical_hash: str | None = None, minutes: int = 0, **kwargs):
    return SimpleNamespace(
        id=raw_id,
        channel_id=kwargs.get("channel_id", 1),
        tg_date=BASE_DATE + timedelta(minutes=minutes),
        canonical_hash=canonical_hash or f"hash-{raw_id}",
        text=text,
        is_forward=kwargs.get("is_forward", False),
        media=kwargs.get("media"),
    )


def _summary(text: str, *, relevance: float = 0.9, importance: float = 0.5) -> SummaryResult:
    return SummaryResult(
        summary=f"summary of {text[:20]}",
        relevance_score=relevance,
        importance_score=importance,
        topic="Finance",
        language="en",
    )


@pytest.fixture
def saved(monkeypatch):
    rows = []
    monkeypatch.setattr(worker_module, "save_item_result", lambda result: rows.append(result) or 1)
    monkeypatch.setattr(worker_module, "recent_channel_context", lambda channel_id, before: [])
    monkeypatch.setattr(worker_module, "find_ready_hashes", lambda hashes, since: set())
    monkeypatch.setattr(worker_module, "get_settings_map", lambda keys: {"filters_min_length": 10})
    monkeypatch.setattr(
        worker_module,
        "list_channels",
        lambda: [
            SimpleNamespace(
                id=1,
                title="News",
                relevance_threshold=None,
                auto_relevance_enabled=False,
                relevance_threshold_delta=0.0,
            )
        ],
    )
    return rows


def _worker() -> Worker:
    gateway = SimpleNamespace(refresh_overrides=lambda: None)
    return Worker(gateway, batch_size=10, concurrency=2, poll_interval=0.1)


def test_run_once_classifies_every_message(monkeypatch, saved) -> None:
    raws = [
        _raw(1, "Central bank raised the key rate by half a point."),
        _raw(2, "🔥🔥🔥"),
        _raw(3, "Celebrity gossip that nobody reads at all."),
        _raw(4, "Provider outage story with many details inside."),
    ]
    monkeypatch.setattr(worker_module, "list_unprocessed", lambda limit: raws)

    def fake_summarize(gateway, text, **kwargs):
        if text.startswith("Celebrity"):
            return _summary(text, relevance=0.1)
        if text.startswith("Provider"):
            raise ProviderError("down", provider="google", status_code=503)
        return _summary(text)

    monkeypatch.setattr(worker_module, "summarize_message", fake_summarize)

    stats = _worker().run_once()

    by_raw = {row.raw_id: row for row in saved}
    assert stats.claimed == 4
    assert (stats.ready, stats.rejected, stats.errors, stats.deferred) == (1, 2, 1, 0)
    assert by_raw[1].status == "ready_pending"
    assert by_raw[1].topic == "Finance"
    assert by_raw[2].drop_reason == "emoji_only"
    assert by_raw[3].drop_reason == "low_relevance"
    assert by_raw[4].status == "error"
    assert by_raw[4].error["kind"] == "provider_error"


def test_run_once_defers_on_budget(monkeypatch, saved) -> None:
    monkeypatch.setattr(
        worker_module, "list_unprocessed", lambda limit: [_raw(1, "Long enough message about markets.")]
    )

    def exhausted(gateway, text, **kwargs):
        raise BudgetExceededError("daily token budget exhausted")

    monkeypatch.setattr(worker_module, "summarize_message", exhausted)

    stats = _worker().run_once()

    assert stats.deferred == 1
    assert saved == []


def test_empty_summary_becomes_error(monkeypatch, saved) -> None:
    monkeypatch.setattr(
        worker_module, "list_unprocessed", lambda limit: [_raw(1, "Long enough message about markets.")]
    )

    def empty(gateway, text, **kwargs):
        raise EmptyResponseError("empty summary")

    monkeypatch.setattr(worker_module, "summarize_message", empty)

    _worker().run_once()

    assert saved[0].status == "error"
    assert saved[0].error["kind"] == "empty summary"


def test_strict_dedup_keeps_most_important(monkeypatch, saved) -> None:
    raws = [
        _raw(1, "Same story from channel one, full text.", canonical_hash="same", minutes=0),
        _raw(2, "Same story from channel two, full text.", canonical_hash="same", minutes=5),
        _raw(3, "Old story already posted in an earlier batch.", canonical_hash="old"),
    ]
    monkeypatch.setattr(worker_module, "list_unprocessed", lambda limit: raws)
    monkeypatch.setattr(worker_module, "find_ready_hashes", lambda hashes, since: {"old"})
    importance = {"Same story from channel one": 0.9, "Same story from channel two": 0.4}

    def fake_summarize(gateway, text, **kwargs):
        return _summary(text, importance=importance.get(text[:27], 0.5))

    monkeypatch.setattr(worker_module, "summarize_message", fake_summarize)

    _worker().run_once()

    by_raw = {row.raw_id: row for row in saved}
    assert by_raw[1].status == "ready_pending"
    assert by_raw[2].drop_reason == "dedup_strict"
    assert by_raw[3].drop_reason == "dedup_strict"


def test_semantic_dedup_uses_grouping(monkeypatch, saved) -> None:
    raws = [
        _raw(1, "Rocket launch happened this morning at dawn."),
        _raw(2, "Launch of the rocket went fine this morning."),
        _raw(3, "Unrelated sports result from yesterday's game."),
    ]
    monkeypatch.setattr(worker_module, "list_unprocessed", lambda limit: raws)
    monkeypatch.setattr(
        worker_module, "get_settings_map", lambda keys: {"dedup_mode": "semantic", "filters_min_length": 10}
    )
    monkeypatch.setattr(worker_module, "summarize_message", lambda gateway, text, **kwargs: _summary(text))
    def fake_group(gateway, summaries, **kwargs):
        rockets = [index for index, text in enumerate(summaries) if "rocket" in text.lower()]
        others = [index for index in range(len(summaries)) if index not in rockets]
        return [rockets, others]

    monkeypatch.setattr(worker_module, "group_summaries", fake_group)

    _worker().run_once()

    statuses = sorted((row.raw_id, row.status, row.drop_reason) for row in saved)
    rejected = [entry for entry in statuses if entry[1] == "rejected"]
    assert len(rejected) == 1
    assert rejected[0][2] == "dedup_semantic"
    assert rejected[0][0] in (1, 2)
    assert (3, "ready_pending", None) in statuses


def test_keep_best_prefers_importance_then_newest() -> None:
    entries = [
        DedupEntry(ref="a", canonical_hash="h", summary="", importance=0.5, tg_date=BASE_DATE),
        DedupEntry(ref="b", canonical_hash="h", summary="", importance=0.5, tg_date=BASE_DATE + timedelta(minutes=1)),
        DedupEntry(ref="c", canonical_hash="x", summary="", importance=0.1, tg_date=BASE_DATE),
    ]

    groups = group_by_hash(entries)
    kept, dropped = keep_best(groups[0])

    assert [len(group) for group in groups] == [2, 1]
    assert kept.ref == "b"
    assert [entry.ref for entry in dropped] == ["a"]


def test_process_unit_skips_topic_when_disabled(monkeypatch) -> None:
    monkeypatch.setattr(worker_module, "recent_channel_context", lambda channel_id, before: [])
    result_summary = _summary("text")
    result_summary.topic = None
    monkeypatch.setattr(worker_module, "summarize_message", lambda gateway, text, **kwargs: result_summary)
    calls = []
    monkeypatch.setattr(worker_module, "assign_topic", lambda gateway, summary: calls.append(summary))

    settings = PipelineSettings(topics_enabled=False, min_length=0)
    result = _worker().process_unit(
        _raw(1, "Any text that passes filters."), None, settings, worker_module.Filterer(settings)
    )

    assert result.status == "ready_pending"
    assert result.topic is None
    assert calls == []
