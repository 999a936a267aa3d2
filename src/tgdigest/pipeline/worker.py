from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from tgdigest import metrics
from tgdigest.db.models import (
    ITEM_ERROR,
    ITEM_PENDING,
    ITEM_READY_PENDING,
    ITEM_REJECTED,
    Channel,
    RawMessage,
)
from tgdigest.db.repo_channels import list_channels
from tgdigest.db.repo_items import ItemResult, find_ready_hashes, save_item_result
from tgdigest.db.repo_messages import list_unprocessed, recent_channel_context
from tgdigest.db.repo_settings import get_setting, get_settings_map
from tgdigest.llm.errors import BudgetExceededError, EmptyResponseError, LLMError
from tgdigest.llm.gateway import LLMGateway
from tgdigest.llm.tasks import assign_topic, group_summaries, summarize_message
from tgdigest.pipeline.dedup import DedupEntry, group_by_hash, group_by_indexes, keep_best
from tgdigest.pipeline.filters import Filterer
from tgdigest.pipeline.scoring import effective_relevance_threshold
from tgdigest.pipeline.settings import DEDUP_SEMANTIC, PipelineSettings, load_pipeline_settings

REASON_LOW_RELEVANCE = "low_relevance"
REASON_DEDUP_STRICT = "dedup_strict"
REASON_DEDUP_SEMANTIC = "dedup_semantic"
ERROR_EMPTY_SUMMARY = "empty summary"


@dataclass(slots=True)
class BatchStats:
    claimed: int = 0
    ready: int = 0
    rejected: int = 0
    errors: int = 0
    deferred: int = 0
    duration_seconds: float = 0.0


class Worker:
    """Turns unprocessed raw messages into ready, rejected or failed Items."""

    def __init__(
        self,
        gateway: LLMGateway,
        *,
        batch_size: int,
        concurrency: int,
        poll_interval: float,
        default_relevance: float = 0.5,
    ) -> None:
        self._gateway = gateway
        self._batch_size = batch_size
        self._concurrency = max(1, concurrency)
        self._poll_interval = poll_interval
        self._default_relevance = default_relevance

    def run(self, stop: threading.Event) -> str:
        logger.info(
            "pipeline worker started batch_size={} concurrency={} poll={}s",
            self._batch_size,
            self._concurrency,
            self._poll_interval,
        )
        while not stop.is_set():
            try:
                stats = self.run_once()
            except SQLAlchemyError as exc:
                logger.error("pipeline batch failed error={}", exc)
                stats = BatchStats()
            if stats.claimed == 0 or stats.deferred:
                stop.wait(self._poll_interval)
        logger.info("pipeline worker stopped status=canceled")
        return "canceled"

    def run_once(self) -> BatchStats:
        started = time.monotonic()
        raws = list_unprocessed(self._batch_size)
        stats = BatchStats(claimed=len(raws))
        if not raws:
            return stats

        settings = load_pipeline_settings(
            get_settings_map, default_relevance=self._default_relevance
        )
        self._gateway.refresh_overrides()
        filterer = Filterer(settings)
        channels = {channel.id: channel for channel in list_channels()}

        results: list[ItemResult] = []
        with ThreadPoolExecutor(max_workers=self._concurrency) as pool:
            futures = {
                pool.submit(
                    self.process_unit, raw, channels.get(raw.channel_id), settings, filterer
                ): raw
                for raw in raws
            }
            for future in as_completed(futures):
                raw = futures[future]
                try:
                    result = future.result()
                except Exception as exc:
                    logger.exception("pipeline unit failed raw_id={} error={}", raw.id, exc)
                    result = self._base_result(raw)
                    result.status = ITEM_ERROR
                    result.error = {"kind": "internal", "message": str(exc)[:500]}
                if result is None:
                    stats.deferred += 1
                    continue
                results.append(result)

        self.dedup(results, settings)

        for result in sorted(results, key=lambda value: value.raw_id):
            try:
                save_item_result(result)
            except SQLAlchemyError:
                logger.exception("pipeline persist failed raw_id={}", result.raw_id)
                continue
            metrics.pipeline_items_total.labels(result.status).inc()
            if result.status == ITEM_READY_PENDING:
                stats.ready += 1
            elif result.status == ITEM_REJECTED:
                stats.rejected += 1
                metrics.pipeline_drops_total.labels(result.drop_reason or "unknown").inc()
            elif result.status == ITEM_ERROR:
                stats.errors += 1

        stats.duration_seconds = time.monotonic() - started
        metrics.pipeline_batch_seconds.observe(stats.duration_seconds)
        logger.info(
            "pipeline batch done claimed={} ready={} rejected={} errors={} deferred={} "
            "duration={:.2f}s",
            stats.claimed,
            stats.ready,
            stats.rejected,
            stats.errors,
            stats.deferred,
            stats.duration_seconds,
        )
        return stats

    @staticmethod
    def _base_result(raw: RawMessage) -> ItemResult:
        return ItemResult(
            raw_id=raw.id,
            channel_id=raw.channel_id,
            tg_date=raw.tg_date,
            canonical_hash=raw.canonical_hash,
            status=ITEM_PENDING,
        )

    def process_unit(
        self,
        raw: RawMessage,
        channel: Channel | None,
        settings: PipelineSettings,
        filterer: Filterer,
    ) -> ItemResult | None:
        """Filter, summarize, score and tag one message; None defers it to a later batch."""
        result = self._base_result(raw)

        decision = filterer.check(
            raw.text, is_forward=raw.is_forward, has_media=raw.media is not None
        )
        if decision is not None:
            result.status = ITEM_REJECTED
            result.drop_reason = decision.reason
            result.drop_detail = decision.detail
            return result

        stage_started = time.monotonic()
        context = recent_channel_context(raw.channel_id, raw.tg_date)
        try:
            summary = summarize_message(
                self._gateway,
                raw.text or "",
                channel_title=channel.title if channel is not None else f"channel:{raw.channel_id}",
                context=context,
                language=settings.language,
                get_setting=get_setting,
            )
        except BudgetExceededError as exc:
            logger.warning("pipeline unit deferred raw_id={} reason={}", raw.id, exc)
            return None
        except EmptyResponseError as exc:
            result.status = ITEM_ERROR
            result.error = {"kind": ERROR_EMPTY_SUMMARY, "message": str(exc)}
            return result
        except LLMError as exc:
            result.status = ITEM_ERROR
            result.error = exc.as_dict()
            return result
        logger.debug(
            "pipeline stage=summarize done raw_id={} duration={:.2f}s",
            raw.id,
            time.monotonic() - stage_started,
        )

        result.summary = summary.summary
        result.topic = summary.topic
        result.language = summary.language
        result.relevance_score = summary.relevance_score
        result.importance_score = summary.importance_score

        threshold = effective_relevance_threshold(settings.relevance_threshold, channel)
        if summary.relevance_score < threshold:
            result.status = ITEM_REJECTED
            result.drop_reason = REASON_LOW_RELEVANCE
            result.drop_detail = f"score={summary.relevance_score:.2f} threshold={threshold:.2f}"
            return result

        if settings.topics_enabled and not result.topic:
            try:
                result.topic = assign_topic(self._gateway, summary.summary)
            except LLMError as exc:
                logger.warning("pipeline stage=topic failed raw_id={} kind={}", raw.id, exc.kind)

        result.status = ITEM_READY_PENDING
        return result

    def dedup(self, results: list[ItemResult], settings: PipelineSettings) -> None:
        """Reject duplicates among the batch's ready results, keeping the most important."""
        ready = [result for result in results if result.status == ITEM_READY_PENDING]
        if not ready:
            return

        since = datetime.now(timezone.utc) - timedelta(hours=settings.dedup_window_hours)
        existing = find_ready_hashes((result.canonical_hash for result in ready), since)
        fresh: list[ItemResult] = []
        for result in ready:
            if result.canonical_hash in existing:
                _reject(result, REASON_DEDUP_STRICT, "already ready")
            else:
                fresh.append(result)

        entries = [
            DedupEntry(
                ref=result,
                canonical_hash=result.canonical_hash,
                summary=result.summary or "",
                importance=result.importance_score or 0.0,
                tg_date=result.tg_date,
            )
            for result in fresh
        ]

        for group in group_by_hash(entries):
            _, dropped = keep_best(group)
            for entry in dropped:
                _reject(entry.ref, REASON_DEDUP_STRICT, f"hash={entry.canonical_hash[:12]}")

        if settings.dedup_mode != DEDUP_SEMANTIC:
            return
        survivors = [entry for entry in entries if entry.ref.status == ITEM_READY_PENDING]
        if len(survivors) < 2:
            return
        try:
            groups = group_by_indexes(
                survivors,
                lambda summaries: group_summaries(
                    self._gateway, summaries, get_setting=get_setting
                ),
            )
        except LLMError as exc:
            logger.warning("pipeline stage=dedup semantic grouping skipped kind={}", exc.kind)
            return
        for group in groups:
            kept, dropped = keep_best(group)
            for entry in dropped:
                _reject(entry.ref, REASON_DEDUP_SEMANTIC, f"kept_raw_id={kept.ref.raw_id}")


def _reject(result: ItemResult, reason: str, detail: str | None = None) -> None:
    result.status = ITEM_REJECTED
    result.drop_reason = reason
    result.drop_detail = detail
