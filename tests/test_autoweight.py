from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from tgdigest.db.repo_ratings import ChannelRatingRow
from tgdigest.db.repo_stats import RollingStats
from tgdigest.digest import autoweight
from tgdigest.digest.autoweight import (
    AutoWeightConfig,
    ThresholdTuningConfig,
    aggregate_reliability,
    calculate_auto_weight,
    decay_weight,
    net_rating_score,
    relevance_delta,
    threshold_delta,
)

NOW = datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)


def _stats(channel_id: int = 1, **kwargs) -> RollingStats:
    values = {
        "channel_id": channel_id,
        "total_messages": 300,
        "total_items_created": 100,
        "total_items_digested": 50,
        "avg_importance": 0.8,
        "avg_relevance": 0.7,
        "stddev_importance": 0.1,
        "stddev_relevance": 0.1,
    }
    values.update(kwargs)
    return RollingStats(**values)


def _ratings(channel_id: int, good: int, bad: int) -> list[ChannelRatingRow]:
    rows = [ChannelRatingRow(channel_id, "good", NOW) for _ in range(good)]
    rows.extend(ChannelRatingRow(channel_id, "bad", NOW) for _ in range(bad))
    return rows


def test_calculate_auto_weight_formula() -> None:
    weight = calculate_auto_weight(_stats(), AutoWeightConfig())

    assert weight == pytest.approx(0.5 + 0.5 * 0.4 + 0.8 * 0.3 + 1.0 * 0.2 + (100 / 300) * 0.1)


def test_calculate_auto_weight_thin_history_is_neutral() -> None:
    assert calculate_auto_weight(_stats(total_messages=3), AutoWeightConfig()) == 1.0


def test_calculate_auto_weight_clamped() -> None:
    config = AutoWeightConfig(auto_min=0.5, auto_max=0.9)

    assert calculate_auto_weight(_stats(), config) == 0.9


def test_decay_halves_after_half_life() -> None:
    assert decay_weight(NOW, NOW) == pytest.approx(1.0)
    assert decay_weight(NOW, NOW - timedelta(days=30)) == pytest.approx(0.5)
    assert decay_weight(NOW, NOW + timedelta(days=1)) == pytest.approx(1.0)


def test_aggregate_reliability_weights_recent_ratings() -> None:
    rows = [
        ChannelRatingRow(1, "good", NOW),
        ChannelRatingRow(1, "bad", NOW - timedelta(days=30)),
        ChannelRatingRow(2, "irrelevant", NOW),
    ]

    stats = aggregate_reliability(rows, NOW)

    assert stats[1].count == 2
    assert stats[1].value == pytest.approx(1.0 / 1.5)
    assert stats[2].value == 0.0


def test_relevance_delta_bounds() -> None:
    assert relevance_delta(1.0) == 0.0
    assert relevance_delta(0.5) == pytest.approx(0.1)
    assert relevance_delta(0.0) == pytest.approx(0.2)


def test_update_auto_weights_only_touches_auto_channels(monkeypatch) -> None:
    applied = []
    channels = [
        SimpleNamespace(
            id=1,
            title="settled",
            weight_mode="auto",
            importance_weight=calculate_auto_weight(_stats(), AutoWeightConfig()),
        ),
        SimpleNamespace(id=2, title="rated", weight_mode="auto", importance_weight=1.0),
        SimpleNamespace(id=3, title="manual", weight_mode="manual", importance_weight=1.0),
        SimpleNamespace(id=4, title="new", weight_mode="auto", importance_weight=1.0),
    ]
    monkeypatch.setattr(autoweight, "load_auto_weight_config", AutoWeightConfig)
    monkeypatch.setattr(
        autoweight, "rolling_channel_stats", lambda since: {1: _stats(1), 2: _stats(2), 3: _stats(3)}
    )
    monkeypatch.setattr(autoweight, "list_channel_ratings", lambda since: _ratings(2, 20, 0))
    monkeypatch.setattr(autoweight, "list_channels", lambda active_only=False: channels)
    monkeypatch.setattr(
        autoweight,
        "apply_auto_weight",
        lambda cid, weight, reason: applied.append((cid, weight, reason)),
    )

    updated = autoweight.update_auto_weights(now=NOW)

    assert updated == 1
    assert applied[0][0] == 2
    assert applied[0][1] == pytest.approx(calculate_auto_weight(_stats(), AutoWeightConfig()) + 0.1)
    assert applied[0][2] == "auto reliability=1.00"


def test_update_auto_relevance_sets_and_resets(monkeypatch) -> None:
    stored = []
    channels = [
        SimpleNamespace(id=1, auto_relevance_enabled=True, relevance_threshold_delta=0.0),
        SimpleNamespace(id=2, auto_relevance_enabled=True, relevance_threshold_delta=0.15),
        SimpleNamespace(id=3, auto_relevance_enabled=False, relevance_threshold_delta=0.0),
    ]
    rows = _ratings(1, 10, 10) + _ratings(2, 2, 3) + _ratings(3, 0, 30)
    monkeypatch.setattr(autoweight, "list_channel_ratings", lambda since: rows)
    monkeypatch.setattr(autoweight, "list_channels", lambda active_only=False: channels)
    monkeypatch.setattr(autoweight, "set_relevance_delta", lambda cid, delta: stored.append((cid, delta)))

    updated = autoweight.update_auto_relevance(now=NOW)

    assert updated == 2
    assert stored[0] == (1, pytest.approx(0.1))
    assert stored[1] == (2, 0.0)


def test_net_rating_score_counts_unknown_labels_as_bad() -> None:
    rows = [
        ChannelRatingRow(1, "good", NOW),
        ChannelRatingRow(2, "good", NOW),
        ChannelRatingRow(1, "irrelevant", NOW),
        ChannelRatingRow(3, "meh", NOW),
    ]

    count, net = net_rating_score(rows, NOW)

    assert count == 4
    assert net == pytest.approx(0.0)
    assert net_rating_score([], NOW) == (0, None)


def test_threshold_delta_band() -> None:
    config = ThresholdTuningConfig(step=0.05)

    assert threshold_delta(0.5, config) == -0.05
    assert threshold_delta(-0.5, config) == 0.05
    assert threshold_delta(0.1, config) == 0.0


def _tuning(monkeypatch, config: ThresholdTuningConfig, rows, current=None) -> list:
    saved = []
    monkeypatch.setattr(autoweight, "load_threshold_tuning_config", lambda: config)
    monkeypatch.setattr(autoweight, "list_channel_ratings", lambda since: rows)
    monkeypatch.setattr(autoweight, "get_settings_map", lambda keys: dict(current or {}))
    monkeypatch.setattr(
        autoweight, "save_setting_with_history", lambda key, value: saved.append((key, value))
    )
    return saved


def test_tune_global_thresholds_raises_bars_on_bad_feedback(monkeypatch) -> None:
    config = ThresholdTuningConfig(enabled=True, min_sample=10, ceiling=0.6)
    saved = _tuning(monkeypatch, config, _ratings(1, 2, 10), {"relevance_threshold": 0.58})

    delta = autoweight.tune_global_thresholds(0.5, 0.3, now=NOW)

    assert delta == 0.05
    assert saved == [("relevance_threshold", 0.6), ("importance_threshold", 0.35)]


def test_tune_global_thresholds_lowers_bars_on_good_feedback(monkeypatch) -> None:
    config = ThresholdTuningConfig(enabled=True, min_sample=10)
    saved = _tuning(monkeypatch, config, _ratings(1, 12, 0))

    assert autoweight.tune_global_thresholds(0.5, 0.3, now=NOW) == -0.05
    assert saved == [("relevance_threshold", 0.45), ("importance_threshold", 0.25)]


def test_tune_global_thresholds_leaves_settings_alone(monkeypatch) -> None:
    saved = _tuning(monkeypatch, ThresholdTuningConfig(enabled=False), _ratings(1, 0, 200))
    assert autoweight.tune_global_thresholds(0.5, 0.3, now=NOW) == 0.0

    saved = _tuning(monkeypatch, ThresholdTuningConfig(enabled=True), _ratings(1, 0, 20))
    assert autoweight.tune_global_thresholds(0.5, 0.3, now=NOW) == 0.0

    saved = _tuning(
        monkeypatch, ThresholdTuningConfig(enabled=True, min_sample=10), _ratings(1, 6, 5)
    )
    assert autoweight.tune_global_thresholds(0.5, 0.3, now=NOW) == 0.0
    assert saved == []


def test_tune_global_thresholds_skips_unchanged_values(monkeypatch) -> None:
    config = ThresholdTuningConfig(enabled=True, min_sample=10, floor=0.3)
    saved = _tuning(
        monkeypatch,
        config,
        _ratings(1, 12, 0),
        {"relevance_threshold": 0.6, "importance_threshold": 0.3},
    )

    autoweight.tune_global_thresholds(0.5, 0.3, now=NOW)

    assert saved == [("relevance_threshold", 0.55)]


def test_low_reliability_channels(monkeypatch) -> None:
    rows = _ratings(1, 2, 10) + _ratings(2, 8, 4) + _ratings(3, 0, 5)
    monkeypatch.setattr(autoweight, "list_channel_ratings", lambda since: rows)

    assert autoweight.low_reliability_channels(now=NOW) == {1}
