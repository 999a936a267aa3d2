from __future__ import annotations

from contextlib import nullcontext
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from tgdigest.db.repo_items import DigestCandidate
from tgdigest.digest import build as build_module
from tgdigest.digest.build import (
    OUTCOME_EMPTY,
    OUTCOME_ERROR,
    OUTCOME_EXISTS,
    OUTCOME_POSTED,
    DigestBuilder,
    DigestSettings,
    gate_candidates,
    load_digest_settings,
    plan_clusters,
)
from tgdigest.digest.expanded import (
    ExpandedTokenError,
    expanded_url,
    sign_item_token,
    verify_item_token,
)
from tgdigest.digest.format import ClusterView, DigestView, consolidate, render_digest, source_url
from tgdigest.digest.balance import balance_topics, topic_key
from tgdigest.digest import scheduler as scheduler_module
from tgdigest.digest.scheduler import DigestScheduler, ScheduleTrigger, load_plan, window_end
from tgdigest.htmlutils import ITEM_START
from tgdigest.schedule import DaySchedule, Schedule
from tgdigest.telegram.bot_client import TelegramAPIError, rating_keyboard

WINDOW_START = datetime(2024, 5, 1, 0, 0, tzinfo=timezone.utc)
WINDOW_END = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def candidate(item_id: int, **kwargs) -> DigestCandidate:
    values = {
        "item_id": item_id,
        "raw_id": item_id * 10,
        "channel_id": 1,
        "channel_title": "Markets",
        "channel_username": "markets",
        "channel_weight": 1.0,
        "tg_message_id": 100 + item_id,
        "tg_date": WINDOW_START + timedelta(hours=item_id),
        "canonical_hash": f"hash-{item_id}",
        "summary": f"Summary {item_id}",
        "topic": "Finance",
        "importance_score": 0.5,
        "relevance_score": 0.8,
        "has_media": False,
    }
    values.update(kwargs)
    return DigestCandidate(**values)


def test_gate_candidates_applies_channel_weight() -> None:
    items = [
        candidate(1, importance_score=0.8, channel_weight=0.5),
        candidate(2, importance_score=0.5, channel_weight=1.5),
        candidate(3, importance_score=0.2),
    ]

    selected, weighted = gate_candidates(items, 0.5)

    assert [item.item_id for item in selected] == [2]
    assert weighted[1] == pytest.approx(0.4)
    assert weighted[2] == pytest.approx(0.75)


def test_plan_clusters_drops_hash_duplicates() -> None:
    items = [
        candidate(1, canonical_hash="same", importance_score=0.4),
        candidate(2, canonical_hash="same", importance_score=0.9),
        candidate(3, importance_score=0.6),
    ]
    weighted = {item.item_id: item.importance_score for item in items}

    clusters, duplicates = plan_clusters(items, weighted)

    assert duplicates == [1]
    assert [[item.item_id for item in cluster.items] for cluster in clusters] == [[2], [3]]


def test_plan_clusters_orders_by_importance_then_size() -> None:
    items = [
        candidate(1, importance_score=0.7),
        candidate(2, importance_score=0.7),
        candidate(3, importance_score=0.7),
        candidate(4, importance_score=0.9),
    ]
    weighted = {item.item_id: item.importance_score for item in items}

    def grouper(summaries):
        return [[0], [1, 2], [3]]

    clusters, _ = plan_clusters(items, weighted, grouper=grouper)

    assert [[item.item_id for item in cluster.items] for cluster in clusters] == [[4], [3, 2], [1]]
    assert clusters[1].representative.item_id == 3


def test_load_digest_settings_reads_schedule_timezone() -> None:
    raw = {
        "digest_top_n": "5",
        "editor_enabled": "yes",
        "dedup_mode": "bogus",
        "digest_schedule": {"timezone": "Europe/Kyiv", "weekdays": {"times": ["09:00"]}},
    }

    settings = load_digest_settings(lambda keys: raw)

    assert settings.top_n == 5
    assert settings.editor_enabled is True
    assert settings.dedup_mode == "strict"
    assert settings.timezone == "Europe/Kyiv"


def test_source_url_needs_username() -> None:
    assert source_url(candidate(1, channel_username="@markets")) == "https://t.me/markets/101"
    assert source_url(candidate(1, channel_username=None)) is None


def test_render_digest_sections() -> None:
    view = DigestView(
        window_start=WINDOW_START,
        window_end=WINDOW_END,
        timezone="Europe/Kyiv",
        narrative="Quiet morning",
        clusters=[
            ClusterView(topic=None, items=[candidate(1, summary="Rates <b>up</b>")]),
            ClusterView(
                topic="Tech",
                items=[candidate(2), candidate(3, channel_username=None, channel_title="Private")],
                summary="Chip makers rally",
            ),
        ],
        others=[candidate(4, summary="Minor note")],
    )

    text = render_digest(view, lambda item_id: f"https://digest.example/i/{item_id}")

    assert text.startswith("<b>📰 Digest</b> — 01.05 03:00–15:00 <i>(Europe/Kyiv)</i>")
    assert "<blockquote>Quiet morning</blockquote>" in text
    assert "Rates <b>up</b>" in text
    assert "<b>Tech</b>" in text
    assert "Chip makers rally" in text
    assert '<a href="https://t.me/markets/102">Markets</a>, <i>Private</i>' in text
    assert '<a href="https://digest.example/i/2">↗</a>' in text
    assert "<b>Also</b>" in text
    assert text.count(ITEM_START) == 3


def test_consolidate_merges_same_topic_in_order() -> None:
    clusters = [
        ClusterView(topic="Tech", items=[candidate(1)]),
        ClusterView(topic=None, items=[candidate(2)]),
        ClusterView(topic="tech ", items=[candidate(3)]),
    ]

    merged = consolidate(clusters)

    assert [cluster.topic for cluster in merged] == ["Tech", None]
    assert [item.item_id for item in merged[0].items] == [1, 3]


def test_item_token_roundtrip_and_rejections() -> None:
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    token = sign_item_token(42, "secret", expires_at=now + timedelta(days=1))

    assert verify_item_token(token, "secret", now=now) == 42
    with pytest.raises(ExpandedTokenError, match="bad signature"):
        verify_item_token(token, "other", now=now)
    with pytest.raises(ExpandedTokenError, match="expired"):
        verify_item_token(token, "secret", now=now + timedelta(days=2))
    with pytest.raises(ExpandedTokenError, match="malformed"):
        verify_item_token("not-a-token", "secret", now=now)
    with pytest.raises(ExpandedTokenError):
        sign_item_token(1, "", expires_at=now)


def test_expanded_url_shape() -> None:
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)

    url = expanded_url("https://digest.example/", 7, "secret", now=now)

    prefix = "https://digest.example/i/"
    assert url.startswith(prefix)
    assert verify_item_token(url[len(prefix):], "secret", now=now) == 7


def test_window_end_uses_latest_slot() -> None:
    schedule = Schedule(timezone="UTC", weekdays=DaySchedule(times=["09:00", "18:00"]))
    now = datetime(2024, 5, 1, 17, 59, 42, tzinfo=timezone.utc)

    assert window_end(now, schedule) == datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    assert window_end(now, None) == datetime(2024, 5, 1, 17, 59, tzinfo=timezone.utc)


def test_schedule_trigger_respects_anchor() -> None:
    schedule = Schedule(timezone="UTC", weekdays=DaySchedule(times=["09:00", "18:00"]))
    anchor = datetime(2024, 5, 2, 18, 0, tzinfo=timezone.utc)
    trigger = ScheduleTrigger(schedule, anchor)
    now = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

    assert trigger.get_next_fire_time(None, now) == anchor
    assert ScheduleTrigger(schedule).get_next_fire_time(None, now).hour == 9


class FakePublisher:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return None

    def send_html_messages(self, chat_id, parts, *, last_reply_markup=None):
        if self.fail:
            raise TelegramAPIError(status_code=400, description="chat not found")
        self.sent.append((chat_id, parts, last_reply_markup))
        return list(range(500, 500 + len(parts)))

    def send_photo(self, chat_id, photo, *, caption=None):
        raise AssertionError("no image expected")


@pytest.fixture
def digest_repo(monkeypatch):
    calls = {"created": [], "posted": [], "errors": [], "rejected": []}
    monkeypatch.setattr(build_module, "load_digest_settings", lambda: DigestSettings(top_n=1))
    monkeypatch.setattr(build_module, "low_reliability_channels", lambda: set())

    def create(start, end, chat_id):
        calls["created"].append((start, end, chat_id))
        return SimpleNamespace(id=42)

    monkeypatch.setattr(build_module, "create_pending_digest", create)
    monkeypatch.setattr(build_module, "reopen_failed_digest", lambda start, end: None)
    monkeypatch.setattr(
        build_module, "reject_items", lambda ids, reason: calls["rejected"].append((list(ids), reason))
    )
    monkeypatch.setattr(
        build_module, "mark_digest_posted", lambda digest_id, **kwargs: calls["posted"].append((digest_id, kwargs))
    )
    monkeypatch.setattr(
        build_module,
        "mark_digest_error",
        lambda digest_id, message, details=None: calls["errors"].append((digest_id, message)),
    )
    return calls


def _builder(publisher: FakePublisher) -> DigestBuilder:
    gateway = SimpleNamespace(refresh_overrides=lambda: None)
    return DigestBuilder(
        gateway,
        bot_token="token",
        target_chat_id=-100500,
        publisher_factory=lambda: publisher,
    )


def test_build_posts_top_items_and_others(monkeypatch, digest_repo) -> None:
    monkeypatch.setattr(
        build_module,
        "list_digest_candidates",
        lambda start, end: [
            candidate(1, canonical_hash="dup", importance_score=0.9, summary="Rate hike"),
            candidate(2, canonical_hash="dup", importance_score=0.5),
            candidate(3, importance_score=0.6, summary="Bond yields"),
            candidate(4, importance_score=0.1),
        ],
    )
    publisher = FakePublisher()

    outcome = _builder(publisher).build(WINDOW_START, WINDOW_END, 0.3)

    assert outcome.status == OUTCOME_POSTED
    assert outcome.digest_id == 42
    assert outcome.item_ids == [1, 3]
    assert digest_repo["rejected"] == [([2], "dedup_strict")]
    chat_id, parts, markup = publisher.sent[0]
    assert chat_id == -100500
    assert markup == rating_keyboard(42)
    body = "\n".join(parts)
    assert "Rate hike" in body
    assert "<b>Also</b>" in body
    assert "Bond yields" in body
    assert ITEM_START not in body
    digest_id, posted = digest_repo["posted"][0]
    assert digest_id == 42
    assert posted["item_ids"] == [1, 3]
    assert posted["message_ids"] == outcome.message_ids
    assert [cluster.representative_item_id for cluster in posted["clusters"]] == [1, 3]


def test_build_empty_window_creates_nothing(monkeypatch, digest_repo) -> None:
    monkeypatch.setattr(
        build_module, "list_digest_candidates", lambda start, end: [candidate(1, importance_score=0.1)]
    )

    outcome = _builder(FakePublisher()).build(WINDOW_START, WINDOW_END, 0.3)

    assert outcome.status == OUTCOME_EMPTY
    assert digest_repo["created"] == []


def test_build_existing_window_is_skipped(monkeypatch, digest_repo) -> None:
    monkeypatch.setattr(build_module, "list_digest_candidates", lambda start, end: [candidate(1)])
    monkeypatch.setattr(build_module, "create_pending_digest", lambda start, end, chat_id: None)
    publisher = FakePublisher()

    outcome = _builder(publisher).build(WINDOW_START, WINDOW_END, 0.3)

    assert outcome.status == OUTCOME_EXISTS
    assert publisher.sent == []


def test_build_records_publish_failure(monkeypatch, digest_repo) -> None:
    monkeypatch.setattr(build_module, "list_digest_candidates", lambda start, end: [candidate(1)])

    outcome = _builder(FakePublisher(fail=True)).build(WINDOW_START, WINDOW_END, 0.3)

    assert outcome.status == OUTCOME_ERROR
    assert digest_repo["errors"] == [(42, "[400] chat not found")]
    assert digest_repo["posted"] == []


def test_build_failure_after_claim_marks_digest_error(monkeypatch, digest_repo) -> None:
    monkeypatch.setattr(
        build_module,
        "list_digest_candidates",
        lambda start, end: [
            candidate(1, canonical_hash="dup", importance_score=0.9),
            candidate(2, canonical_hash="dup", importance_score=0.5),
        ],
    )

    def broken_reject(ids, reason):
        raise OperationalError("UPDATE items", {}, Exception("connection lost"))

    monkeypatch.setattr(build_module, "reject_items", broken_reject)
    publisher = FakePublisher()

    outcome = _builder(publisher).build(WINDOW_START, WINDOW_END, 0.3)

    assert outcome.status == OUTCOME_ERROR
    assert outcome.digest_id == 42
    assert [digest_id for digest_id, _ in digest_repo["errors"]] == [42]
    assert "connection lost" in digest_repo["errors"][0][1]
    assert publisher.sent == []


def test_build_marks_error_when_recording_delivery_fails(monkeypatch, digest_repo) -> None:
    monkeypatch.setattr(build_module, "list_digest_candidates", lambda start, end: [candidate(1)])

    def broken_posted(digest_id, **kwargs):
        raise RuntimeError("digest 42 not found")

    monkeypatch.setattr(build_module, "mark_digest_posted", broken_posted)

    outcome = _builder(FakePublisher()).build(WINDOW_START, WINDOW_END, 0.3)

    assert outcome.status == OUTCOME_ERROR
    assert digest_repo["errors"] == [(42, "digest 42 not found")]


def test_load_plan_prefers_stored_window(monkeypatch) -> None:
    stored = {"digest_window": "6h"}
    monkeypatch.setattr(scheduler_module, "get_settings_map", lambda keys: dict(stored))

    plan = load_plan("60m")
    assert plan.schedule is None
    assert plan.window == timedelta(hours=6)
    assert plan.window_text == "6h"

    stored["digest_window"] = "12h"
    assert load_plan("60m").fingerprint != plan.fingerprint

    stored["digest_window"] = "-5m"
    assert load_plan("60m").window == timedelta(minutes=60)
    stored.clear()
    assert load_plan("90m").window == timedelta(minutes=90)


def test_run_once_uses_stored_window(monkeypatch) -> None:
    monkeypatch.setattr(
        scheduler_module,
        "get_settings_map",
        lambda keys: {"digest_window": "2h", "importance_threshold": 0.4},
    )
    windows = []

    def fake_build(start, end, threshold, *, retry_failed=False):
        windows.append((end - start, threshold, retry_failed))
        return SimpleNamespace(status=OUTCOME_EMPTY)

    runner = DigestScheduler(
        SimpleNamespace(digest_window="60m", importance_threshold=0.3),
        SimpleNamespace(build=fake_build),
    )

    runner.run_once(retry_failed=True)

    assert windows == [(timedelta(hours=2), 0.4, True)]


def _topic(entry: tuple[int, str | None]) -> str | None:
    return entry[1]


def test_topic_key_treats_blank_as_unknown() -> None:
    assert topic_key("  Finance ") == ("finance", True)
    assert topic_key(None) == ("__unknown__", False)
    assert topic_key("   ") == ("__unknown__", False)


def test_balance_topics_caps_dominant_topic() -> None:
    entries = [(1, "Finance"), (2, "finance"), (3, "Finance"), (4, "Tech"), (5, "Sport"), (6, "Tech")]

    result = balance_topics(entries, 4, 0.5, 2, _topic)

    assert [entry[0] for entry in result.selected] == [1, 2, 4, 5]
    assert [entry[0] for entry in result.rest] == [3, 6]
    assert result.max_per_topic == 2
    assert result.topics_selected == 3
    assert result.topics_available == 3
    assert result.relaxed is False


def test_balance_topics_seeds_minimum_topics() -> None:
    entries = [(1, "Finance"), (2, "Finance"), (3, None), (4, "Tech"), (5, "Sport")]

    result = balance_topics(entries, 3, 0.9, 3, _topic)

    assert [entry[0] for entry in result.selected] == [1, 4, 5]
    assert result.topics_available == 3


def test_balance_topics_relaxes_when_candidates_are_short() -> None:
    entries = [(1, "Finance"), (2, "Finance"), (3, "Finance")]

    result = balance_topics(entries, 3, 0.3, 3, _topic)

    assert [entry[0] for entry in result.selected] == [1, 2, 3]
    assert result.max_per_topic == 1
    assert result.relaxed is True


def test_balance_topics_without_cap_takes_prefix() -> None:
    entries = [(1, "Finance"), (2, "Finance"), (3, "Tech")]

    result = balance_topics(entries, 2, 0.0, 3, _topic)

    assert [entry[0] for entry in result.selected] == [1, 2]
    assert result.rest == [(3, "Tech")]
    assert balance_topics([], 5, 0.3, 3, _topic).selected == []
    assert balance_topics(entries, 0, 0.3, 3, _topic).rest == entries


def test_build_spreads_top_section_across_topics(monkeypatch, digest_repo) -> None:
    monkeypatch.setattr(
        build_module,
        "load_digest_settings",
        lambda: DigestSettings(top_n=2, topic_diversity_cap=0.5, min_topic_count=0),
    )
    monkeypatch.setattr(
        build_module,
        "list_digest_candidates",
        lambda start, end: [
            candidate(1, importance_score=0.9, summary="Rate hike"),
            candidate(2, importance_score=0.8, summary="Bond yields"),
            candidate(3, importance_score=0.7, topic="Tech", summary="Chip rally"),
        ],
    )
    publisher = FakePublisher()

    outcome = _builder(publisher).build(WINDOW_START, WINDOW_END, 0.3)

    assert outcome.status == OUTCOME_POSTED
    assert outcome.item_ids == [1, 3, 2]
    body = "\n".join(publisher.sent[0][1])
    assert body.index("Chip rally") < body.index("<b>Also</b>") < body.index("Bond yields")


def test_render_marks_low_reliability_channels() -> None:
    view = DigestView(
        window_start=WINDOW_START,
        window_end=WINDOW_END,
        clusters=[
            ClusterView(topic=None, items=[candidate(1, channel_id=7, summary="Rumour")]),
            ClusterView(topic=None, items=[candidate(2, summary="Confirmed")]),
        ],
        low_reliability={7},
    )

    text = render_digest(view)

    assert "• ⚠️ Rumour" in text
    assert "• Confirmed" in text


def test_build_skips_badges_when_ratings_are_unavailable(monkeypatch, digest_repo) -> None:
    def broken():
        raise OperationalError("SELECT", {}, Exception("down"))

    monkeypatch.setattr(build_module, "low_reliability_channels", broken)
    monkeypatch.setattr(
        build_module, "list_digest_candidates", lambda start, end: [candidate(1, summary="Rate hike")]
    )
    publisher = FakePublisher()

    outcome = _builder(publisher).build(WINDOW_START, WINDOW_END, 0.3)

    assert outcome.status == OUTCOME_POSTED
    assert "⚠️" not in "\n".join(publisher.sent[0][1])


class _Lock:
    def __init__(self, acquired: bool) -> None:
        self.acquired = acquired
        self.names: list[str] = []

    def __call__(self, name, holder_id, ttl):
        self.names.append(name)
        return nullcontext(self.acquired)


def _runner(builds: list) -> DigestScheduler:
    def fake_build(start, end, threshold, *, retry_failed=False):
        builds.append(end - start)
        return SimpleNamespace(status=OUTCOME_EMPTY)

    return DigestScheduler(
        SimpleNamespace(
            digest_window="60m",
            importance_threshold=0.3,
            relevance_threshold=0.5,
        ),
        SimpleNamespace(build=fake_build),
    )


def test_fire_skips_when_another_instance_holds_the_lock(monkeypatch) -> None:
    monkeypatch.setattr(scheduler_module, "get_settings_map", lambda keys: {})
    builds: list = []
    lock = _Lock(acquired=False)
    monkeypatch.setattr(scheduler_module, "scheduler_lock", lock)

    _runner(builds).fire()
    assert builds == []
    assert lock.names == ["digest_build"]

    lock.acquired = True
    _runner(builds).fire()
    assert builds == [timedelta(minutes=60)]


def test_quality_jobs_run_under_lock(monkeypatch) -> None:
    calls = []
    lock = _Lock(acquired=True)
    monkeypatch.setattr(scheduler_module, "scheduler_lock", lock)
    monkeypatch.setattr(scheduler_module, "update_auto_weights", lambda: calls.append("weights"))
    monkeypatch.setattr(scheduler_module, "update_auto_relevance", lambda: calls.append("relevance"))
    monkeypatch.setattr(
        scheduler_module,
        "tune_global_thresholds",
        lambda relevance, importance: calls.append(("tune", relevance, importance)),
    )

    _runner([]).run_quality_jobs()
    assert calls == ["weights", "relevance", ("tune", 0.5, 0.3)]
    assert lock.names == ["channel_quality"]

    lock.acquired = False
    calls.clear()
    _runner([]).run_quality_jobs()
    assert calls == []
