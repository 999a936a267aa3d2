from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from tgdigest.db.models import WEIGHT_MODE_AUTO
from tgdigest.db.repo_channels import apply_auto_weight, list_channels, set_relevance_delta
from tgdigest.db.repo_ratings import ChannelRatingRow, list_channel_ratings
from tgdigest.db.repo_settings import get_settings_map, save_setting_with_history
from tgdigest.db.repo_stats import RollingStats, rolling_channel_stats
from tgdigest.pipeline.settings import as_bool, as_float, as_int

RATING_WINDOW_DAYS = 30
RATING_HALF_LIFE_DAYS = 30.0
RATING_MIN_SAMPLE = 15

SETTING_THRESHOLD_TUNING = "auto_threshold_tuning_enabled"
LOW_RELIABILITY_MIN_RATINGS = 10
LOW_RELIABILITY_NET = -0.2

RELEVANCE_PENALTY = 0.2
RELEVANCE_EPSILON = 0.01
RELIABILITY_WEIGHT_FACTOR = 0.2
WEIGHT_EPSILON = 0.05

INCLUSION_FACTOR = 0.4
IMPORTANCE_FACTOR = 0.3
CONSISTENCY_FACTOR = 0.2
SIGNAL_FACTOR = 0.1
BASE_OFFSET = 0.5


@dataclass(slots=True)
class AutoWeightConfig:
    min_messages: int = 10
    expected_frequency: float = 5.0
    auto_min: float = 0.5
    auto_max: float = 1.5
    rolling_days: int = 30


@dataclass(slots=True)
class Reliability:
    count: int = 0
    weighted_total: float = 0.0
    weighted_good: float = 0.0

    @property
    def value(self) -> float | None:
        if self.weighted_total <= 0:
            return None
        return max(0.0, min(1.0, self.weighted_good / self.weighted_total))

    @property
    def net(self) -> float | None:
        """(good - not good) / total, in [-1, 1]."""
        if self.weighted_total <= 0:
            return None
        return (2 * self.weighted_good - self.weighted_total) / self.weighted_total


@dataclass(slots=True)
class ChannelStats:
    channel_id: int
    title: str
    messages: int
    items_created: int
    items_digested: int
    conversion_rate: float
    avg_relevance: float
    stddev_relevance: float
    avg_importance: float
    stddev_importance: float
    reliability: float | None
    ratings: int


def load_auto_weight_config() -> AutoWeightConfig:
    raw = get_settings_map(
        [
            "auto_weight_min_messages",
            "auto_weight_expected_freq",
            "auto_weight_min",
            "auto_weight_max",
            "auto_weight_rolling_days",
        ]
    )
    defaults = AutoWeightConfig()
    return AutoWeightConfig(
        min_messages=as_int(raw.get("auto_weight_min_messages"), defaults.min_messages),
        expected_frequency=as_float(raw.get("auto_weight_expected_freq"), defaults.expected_frequency),
        auto_min=as_float(raw.get("auto_weight_min"), defaults.auto_min),
        auto_max=as_float(raw.get("auto_weight_max"), defaults.auto_max),
        rolling_days=max(1, as_int(raw.get("auto_weight_rolling_days"), defaults.rolling_days)),
    )


def decay_weight(now: datetime, created_at: datetime) -> float:
    age_days = max(0.0, (now - created_at).total_seconds() / 86400.0)
    return math.exp(-age_days * math.log(2) / RATING_HALF_LIFE_DAYS)


def aggregate_reliability(
    rows: Iterable[ChannelRatingRow], now: datetime
) -> dict[int, Reliability]:
    """Decayed good/total per channel; older ratings count for less."""
    stats: dict[int, Reliability] = {}
    for row in rows:
        weight = decay_weight(now, row.created_at)
        if weight <= 0:
            continue
        entry = stats.setdefault(row.channel_id, Reliability())
        entry.count += 1
        entry.weighted_total += weight
        if row.rating == "good":
            entry.weighted_good += weight
    return stats


def calculate_auto_weight(stats: RollingStats, config: AutoWeightConfig) -> float:
    """Map rolling activity onto a weight in [auto_min, auto_max]; thin history stays neutral."""
    if stats.total_messages < config.min_messages:
        return 1.0

    inclusion = 0.0
    if stats.total_items_created > 0:
        inclusion = stats.total_items_digested / stats.total_items_created
    importance = stats.avg_importance if stats.total_items_digested else 0.5

    per_day = stats.total_messages / max(1, config.rolling_days)
    consistency = min(1.0, per_day / config.expected_frequency) if config.expected_frequency > 0 else 0.0
    signal = stats.total_items_created / stats.total_messages if stats.total_messages else 0.0

    raw = (
        inclusion * INCLUSION_FACTOR
        + importance * IMPORTANCE_FACTOR
        + consistency * CONSISTENCY_FACTOR
        + signal * SIGNAL_FACTOR
    )
    return max(config.auto_min, min(config.auto_max, BASE_OFFSET + raw))


def relevance_delta(reliability: float) -> float:
    return max(0.0, min(RELEVANCE_PENALTY, (1.0 - reliability) * RELEVANCE_PENALTY))


def _reliability_map(now: datetime) -> dict[int, Reliability]:
    since = now - timedelta(days=RATING_WINDOW_DAYS)
    return aggregate_reliability(list_channel_ratings(since), now)


def low_reliability_channels(*, now: datetime | None = None) -> set[int]:
    """Channels whose rated items are mostly marked bad or irrelevant."""
    now = now or datetime.now(timezone.utc)
    flagged: set[int] = set()
    for channel_id, rel in _reliability_map(now).items():
        if rel.count < LOW_RELIABILITY_MIN_RATINGS or rel.net is None:
            continue
        if rel.net <= LOW_RELIABILITY_NET:
            flagged.add(channel_id)
    return flagged


def compute_channel_stats(days: int = 7, *, now: datetime | None = None) -> list[ChannelStats]:
    now = now or datetime.now(timezone.utc)
    rolling = rolling_channel_stats(now - timedelta(days=days))
    reliability = _reliability_map(now)

    result: list[ChannelStats] = []
    for channel in list_channels():
        stats = rolling.get(channel.id)
        rel = reliability.get(channel.id, Reliability())
        if stats is None:
            stats = RollingStats(channel.id, 0, 0, 0, 0.0, 0.0, 0.0, 0.0)
        conversion = stats.total_items_digested / stats.total_messages if stats.total_messages else 0.0
        result.append(
            ChannelStats(
                channel_id=channel.id,
                title=channel.title or channel.username or str(channel.id),
                messages=stats.total_messages,
                items_created=stats.total_items_created,
                items_digested=stats.total_items_digested,
                conversion_rate=conversion,
                avg_relevance=stats.avg_relevance,
                stddev_relevance=stats.stddev_relevance,
                avg_importance=stats.avg_importance,
                stddev_importance=stats.stddev_importance,
                reliability=rel.value,
                ratings=rel.count,
            )
        )
    return result


def update_auto_weights(*, now: datetime | None = None) -> int:
    """Recompute importance weights of auto-mode channels; returns how many changed."""
    now = now or datetime.now(timezone.utc)
    config = load_auto_weight_config()
    rolling = rolling_channel_stats(now - timedelta(days=config.rolling_days))
    reliability = _reliability_map(now)

    updated = 0
    skipped = 0
    for channel in list_channels(active_only=True):
        if channel.weight_mode != WEIGHT_MODE_AUTO:
            continue
        stats = rolling.get(channel.id)
        if stats is None:
            skipped += 1
            continue

        weight = calculate_auto_weight(stats, config)
        reason = "auto"
        rel = reliability.get(channel.id)
        if rel is not None and rel.count >= RATING_MIN_SAMPLE and rel.value is not None:
            weight += (rel.value - 0.5) * RELIABILITY_WEIGHT_FACTOR
            reason = f"auto reliability={rel.value:.2f}"
        weight = max(config.auto_min, min(config.auto_max, weight))

        if abs(weight - float(channel.importance_weight)) < WEIGHT_EPSILON:
            skipped += 1
            continue
        try:
            apply_auto_weight(channel.id, weight, reason=reason)
        except SQLAlchemyError as exc:
            logger.error("autoweight update failed channel_id={} error={}", channel.id, exc)
            continue
        updated += 1
        logger.info(
            "autoweight channel updated channel_id={} title='{}' old={:.2f} new={:.2f}",
            channel.id,
            channel.title,
            float(channel.importance_weight),
            weight,
        )

    logger.info("autoweight done updated={} skipped={}", updated, skipped)
    return updated


def update_auto_relevance(*, now: datetime | None = None) -> int:
    """Raise the relevance bar of channels whose items get rated badly."""
    now = now or datetime.now(timezone.utc)
    reliability = _reliability_map(now)

    updated = 0
    for channel in list_channels(active_only=True):
        if not channel.auto_relevance_enabled:
            continue
        current = float(channel.relevance_threshold_delta or 0.0)
        rel = reliability.get(channel.id)
        if rel is None or rel.count < RATING_MIN_SAMPLE or rel.value is None:
            delta = 0.0
        else:
            delta = relevance_delta(rel.value)
        if abs(delta - current) < RELEVANCE_EPSILON:
            continue
        try:
            set_relevance_delta(channel.id, delta)
        except SQLAlchemyError as exc:
            logger.error("autorelevance update failed channel_id={} error={}", channel.id, exc)
            continue
        updated += 1
        logger.info(
            "autorelevance channel updated channel_id={} delta={:.2f} reliability={}",
            channel.id,
            delta,
            "n/a" if rel is None or rel.value is None else f"{rel.value:.2f}",
        )
    return updated


@dataclass(slots=True)
class ThresholdTuningConfig:
    enabled: bool = False
    step: float = 0.05
    floor: float = 0.1
    ceiling: float = 0.9
    net_positive: float = 0.2
    net_negative: float = -0.2
    min_sample: int = 100


def load_threshold_tuning_config() -> ThresholdTuningConfig:
    raw = get_settings_map(
        [
            SETTING_THRESHOLD_TUNING,
            "threshold_tuning_step",
            "threshold_tuning_min",
            "threshold_tuning_max",
            "rating_min_sample_global",
        ]
    )
    defaults = ThresholdTuningConfig()
    step = as_float(raw.get("threshold_tuning_step"), defaults.step)
    floor = max(0.0, as_float(raw.get("threshold_tuning_min"), defaults.floor))
    ceiling = min(1.0, as_float(raw.get("threshold_tuning_max"), defaults.ceiling))
    return ThresholdTuningConfig(
        enabled=as_bool(raw.get(SETTING_THRESHOLD_TUNING), defaults.enabled),
        step=step if step > 0 else defaults.step,
        floor=floor,
        ceiling=max(floor, ceiling),
        min_sample=max(1, as_int(raw.get("rating_min_sample_global"), defaults.min_sample)),
    )


def net_rating_score(rows: Iterable[ChannelRatingRow], now: datetime) -> tuple[int, float | None]:
    """Decayed (good - bad - irrelevant) / total over all ratings; unknown labels count as bad."""
    count = 0
    total = 0.0
    good = 0.0
    for row in rows:
        weight = decay_weight(now, row.created_at)
        if weight <= 0:
            continue
        count += 1
        total += weight
        if row.rating == "good":
            good += weight
    if total <= 0:
        return count, None
    return count, (good - (total - good)) / total


def threshold_delta(net: float, config: ThresholdTuningConfig) -> float:
    if net > config.net_positive:
        return -config.step
    if net < config.net_negative:
        return config.step
    return 0.0


def tune_global_thresholds(
    default_relevance: float,
    default_importance: float,
    *,
    now: datetime | None = None,
) -> float:
    """Nudge the global relevance and importance thresholds from item ratings.

    Good feedback lowers both bars by one step, bad feedback raises them.
    Returns the applied delta, 0.0 when tuning is off or the ratings are inconclusive.
    """
    config = load_threshold_tuning_config()
    if not config.enabled:
        return 0.0

    now = now or datetime.now(timezone.utc)
    count, net = net_rating_score(
        list_channel_ratings(now - timedelta(days=RATING_WINDOW_DAYS)), now
    )
    if net is None or count < config.min_sample:
        logger.info("threshold tuning skipped ratings={} min={}", count, config.min_sample)
        return 0.0

    delta = threshold_delta(net, config)
    if delta == 0.0:
        logger.info("threshold tuning skipped net={:.2f} band=neutral", net)
        return 0.0

    current = get_settings_map(["relevance_threshold", "importance_threshold"])
    for key, default in (
        ("relevance_threshold", default_relevance),
        ("importance_threshold", default_importance),
    ):
        old = as_float(current.get(key), default)
        new = round(max(config.floor, min(config.ceiling, old + delta)), 4)
        if new != old:
            save_setting_with_history(key, new)
        logger.info("threshold tuning key={} old={:.2f} new={:.2f} net={:.2f}", key, old, new, net)
    return delta
