from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from tgdigest.config import Settings
from tgdigest.db.repo_errors import record_error
from tgdigest.db.repo_locks import default_holder_id, scheduler_lock
from tgdigest.db.repo_settings import get_settings_map
from tgdigest.digest.autoweight import (
    tune_global_thresholds,
    update_auto_relevance,
    update_auto_weights,
)
from tgdigest.digest.build import DigestBuilder, DigestOutcome
from tgdigest.pipeline.settings import as_float
from tgdigest.schedule import (
    SETTING_DIGEST_SCHEDULE,
    SETTING_DIGEST_SCHEDULE_ANCHOR,
    SETTING_DIGEST_WINDOW,
    Schedule,
    ScheduleError,
    format_duration,
    parse_schedule,
    parse_window,
)

DIGEST_JOB_ID = "tgdigest-digest"
WATCH_JOB_ID = "tgdigest-schedule-watch"
QUALITY_JOB_ID = "tgdigest-channel-quality"
WATCH_INTERVAL_SECONDS = 60
QUALITY_HOUR_UTC = 3
DIGEST_LOCK = "digest_build"
QUALITY_LOCK = "channel_quality"
DIGEST_LOCK_TTL = timedelta(minutes=30)
QUALITY_LOCK_TTL = timedelta(minutes=10)


class ScheduleTrigger(BaseTrigger):
    """Fires at the slots of a digest ``Schedule``, never before its anchor."""

    def __init__(self, schedule: Schedule, anchor: datetime | None = None) -> None:
        self.schedule = schedule
        self.anchor = anchor

    def get_next_fire_time(
        self, previous_fire_time: datetime | None, now: datetime
    ) -> datetime | None:
        start = now
        if previous_fire_time is not None and previous_fire_time > start:
            start = previous_fire_time
        if self.anchor is not None and self.anchor - timedelta(microseconds=1) > start:
            start = self.anchor - timedelta(microseconds=1)
        upcoming = self.schedule.next_times(start, 1)
        return upcoming[0] if upcoming else None

    def __str__(self) -> str:
        return f"schedule[{self.schedule.timezone}]"

    def __repr__(self) -> str:
        return f"<ScheduleTrigger (timezone='{self.schedule.timezone}', anchor={self.anchor})>"


@dataclass(slots=True)
class DigestPlan:
    schedule: Schedule | None
    anchor: datetime | None
    window: timedelta
    fingerprint: tuple[Any, ...]

    @property
    def window_text(self) -> str:
        return format_duration(self.window)


def _parse_anchor(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        anchor = datetime.fromisoformat(str(value))
    except ValueError:
        logger.warning("scheduler invalid anchor value={}", value)
        return None
    if anchor.tzinfo is None:
        anchor = anchor.replace(tzinfo=timezone.utc)
    return anchor


def _window(value: Any, default: str) -> timedelta:
    if value:
        try:
            return parse_window(str(value))
        except ValueError as exc:
            logger.warning("scheduler invalid digest_window value={} error={}", value, exc)
    return parse_window(default)


def load_plan(default_window: str = "60m") -> DigestPlan:
    """Schedule, anchor and window; the stored digest_window overrides ``default_window``."""
    raw = get_settings_map(
        [SETTING_DIGEST_SCHEDULE, SETTING_DIGEST_SCHEDULE_ANCHOR, SETTING_DIGEST_WINDOW]
    )
    payload = raw.get(SETTING_DIGEST_SCHEDULE)
    anchor_value = raw.get(SETTING_DIGEST_SCHEDULE_ANCHOR)
    window_value = raw.get(SETTING_DIGEST_WINDOW)
    fingerprint = (repr(payload), repr(anchor_value), repr(window_value))

    schedule: Schedule | None = None
    if payload:
        try:
            schedule = parse_schedule(payload)
        except ScheduleError as exc:
            logger.warning("scheduler invalid schedule error={}", exc)
            schedule = None
        if schedule is not None and schedule.is_empty():
            schedule = None
    return DigestPlan(
        schedule=schedule,
        anchor=_parse_anchor(anchor_value),
        window=_window(window_value, default_window),
        fingerprint=fingerprint,
    )


def window_end(now: datetime, schedule: Schedule | None) -> datetime:
    """Slot the current fire belongs to; without a schedule, ``now`` on the minute."""
    floored = now.astimezone(timezone.utc).replace(second=0, microsecond=0)
    if schedule is None:
        return floored
    slot = schedule.previous_time(now)
    if slot is None:
        return floored
    return slot.astimezone(timezone.utc)


class DigestScheduler:
    def __init__(self, settings: Settings, builder: DigestBuilder) -> None:
        self._settings = settings
        self._builder = builder
        self._plan: DigestPlan | None = None
        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._lock = threading.Lock()
        self._holder_id = default_holder_id()

    def _importance_threshold(self) -> float:
        raw = get_settings_map(["importance_threshold"])
        value = as_float(raw.get("importance_threshold"), self._settings.importance_threshold)
        return max(0.0, min(1.0, value))

    def _trigger(self, plan: DigestPlan) -> BaseTrigger:
        if plan.schedule is not None:
            return ScheduleTrigger(plan.schedule, plan.anchor)
        return IntervalTrigger(seconds=int(plan.window.total_seconds()), timezone="UTC")

    def build_window(
        self, end: datetime, window: timedelta, *, retry_failed: bool = False
    ) -> DigestOutcome:
        start = end - window
        with self._lock:
            return self._builder.build(
                start, end, self._importance_threshold(), retry_failed=retry_failed
            )

    def fire(self) -> None:
        plan = self._plan or load_plan(self._settings.digest_window)
        end = window_end(datetime.now(timezone.utc), plan.schedule)
        try:
            with scheduler_lock(DIGEST_LOCK, self._holder_id, DIGEST_LOCK_TTL) as acquired:
                if not acquired:
                    logger.info("scheduler digest skipped window_end={} reason=locked", end.isoformat())
                    return
                self.build_window(end, plan.window)
        except Exception as exc:
            logger.exception("scheduler digest run failed window_end={} error={}", end.isoformat(), exc)
            try:
                record_error("digest", str(exc), details={"window_end": end.isoformat()})
            except SQLAlchemyError as store_exc:
                logger.error("scheduler failed to record error: {}", store_exc)

    def replan(self, *, force: bool = False) -> bool:
        plan = load_plan(self._settings.digest_window)
        if not force and self._plan is not None and plan.fingerprint == self._plan.fingerprint:
            return False
        self._plan = plan
        self._scheduler.add_job(
            func=self.fire,
            trigger=self._trigger(plan),
            id=DIGEST_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=600,
        )
        if plan.schedule is not None:
            upcoming = plan.schedule.next_times(
                max(datetime.now(timezone.utc), plan.anchor or datetime.now(timezone.utc)), 3
            )
            logger.info(
                "scheduler planned timezone={} next={}",
                plan.schedule.timezone,
                ", ".join(slot.isoformat() for slot in upcoming) or "none",
            )
        else:
            logger.info("scheduler planned fallback every={}", plan.window_text)
        return True

    def run_quality_jobs(self) -> None:
        try:
            with scheduler_lock(QUALITY_LOCK, self._holder_id, QUALITY_LOCK_TTL) as acquired:
                if not acquired:
                    return
                update_auto_weights()
                update_auto_relevance()
                tune_global_thresholds(
                    self._settings.relevance_threshold, self._settings.importance_threshold
                )
        except SQLAlchemyError as exc:
            logger.error("scheduler channel quality job failed error={}", exc)

    def start(self) -> None:
        self.replan(force=True)
        self._scheduler.add_job(
            func=self.replan,
            trigger=IntervalTrigger(seconds=WATCH_INTERVAL_SECONDS, timezone="UTC"),
            id=WATCH_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            func=self.run_quality_jobs,
            trigger=CronTrigger(hour=QUALITY_HOUR_UTC, minute=0, timezone="UTC"),
            id=QUALITY_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )
        self._scheduler.start()
        logger.info(
            "scheduler started window={}",
            self._plan.window_text if self._plan else self._settings.digest_window,
        )

    def run(self, stop: threading.Event) -> str:
        self.start()
        try:
            while not stop.is_set():
                stop.wait(0.5)
        finally:
            logger.info("scheduler shutting down")
            self._scheduler.shutdown(wait=False)
            logger.info("scheduler stopped status=canceled")
        return "canceled"

    def run_once(self, *, retry_failed: bool = False) -> DigestOutcome:
        """Build the window that ends at the latest slot, or at ``now`` without a schedule."""
        plan = load_plan(self._settings.digest_window)
        end = window_end(datetime.now(timezone.utc), plan.schedule)
        return self.build_window(end, plan.window, retry_failed=retry_failed)


def build_digest_scheduler(settings: Settings, gateway: Any) -> DigestScheduler:
    settings.require("digest")
    builder = DigestBuilder(
        gateway,
        bot_token=settings.bot_token,
        target_chat_id=settings.digest_target_chat_id,
        expanded_base_url=settings.expanded_view_base_url,
        signing_secret=settings.expanded_view_signing_secret,
    )
    return DigestScheduler(settings, builder)
