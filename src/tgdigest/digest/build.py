from __future__ import annotations

import time
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import httpx
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from tgdigest import metrics
from tgdigest.db.repo_digests import (
    ClusterRecord,
    create_pending_digest,
    mark_digest_error,
    mark_digest_posted,
    reopen_failed_digest,
)
from tgdigest.db.repo_items import DigestCandidate, list_digest_candidates, reject_items
from tgdigest.db.repo_messages import get_media_data
from tgdigest.db.repo_settings import get_setting, get_settings_map
from tgdigest.digest.autoweight import low_reliability_channels
from tgdigest.digest.balance import balance_topics
from tgdigest.digest.expanded import expanded_url
from tgdigest.digest.format import ClusterView, DigestView, render_digest
from tgdigest.htmlutils import escape, split_html, strip_item_markers
from tgdigest.llm.errors import LLMError
from tgdigest.llm.gateway import LLMGateway
from tgdigest.llm.tasks import (
    cluster_summary,
    cluster_topic,
    compress_summaries_for_cover,
    generate_digest_cover,
    group_summaries,
    relevance_gate,
    write_narrative,
)
from tgdigest.pipeline.dedup import DedupEntry, group_by_hash, group_by_indexes, keep_best
from tgdigest.pipeline.scoring import weighted_importance
from tgdigest.pipeline.settings import DEDUP_SEMANTIC, DEDUP_STRICT, as_bool, as_float, as_int
from tgdigest.schedule import SETTING_DIGEST_SCHEDULE, ScheduleError, parse_schedule
from tgdigest.telegram.bot_client import DigestPublisher, TelegramAPIError, rating_keyboard

OUTCOME_POSTED = "posted"
OUTCOME_EMPTY = "empty"
OUTCOME_EXISTS = "exists"
OUTCOME_ERROR = "error"

DIGEST_SETTING_KEYS = (
    "digest_top_n",
    "editor_enabled",
    "others_as_narrative",
    "consolidated_clusters_enabled",
    "digest_ai_cover",
    "digest_inline_images",
    "digest_relevance_gate",
    "dedup_mode",
    "digest_language",
    "topics_enabled",
    "topic_diversity_cap",
    "min_topic_count",
    SETTING_DIGEST_SCHEDULE,
)


@dataclass(slots=True)
class DigestSettings:
    top_n: int = 20
    editor_enabled: bool = False
    others_as_narrative: bool = False
    consolidated_clusters: bool = False
    ai_cover: bool = False
    inline_images: bool = False
    relevance_gate: bool = False
    dedup_mode: str = DEDUP_STRICT
    language: str | None = None
    timezone: str = "UTC"
    topics_enabled: bool = True
    topic_diversity_cap: float = 0.3
    min_topic_count: int = 3


@dataclass(slots=True)
class ClusterPlan:
    items: list[DigestCandidate]
    weighted: dict[int, float]
    topic: str | None = None
    summary: str | None = None

    @property
    def representative(self) -> DigestCandidate:
        return self.items[0]


@dataclass(slots=True)
class DigestOutcome:
    status: str
    digest_id: int | None = None
    item_ids: list[int] = field(default_factory=list)
    message_ids: list[int] = field(default_factory=list)
    parts: int = 0
    error: str | None = None


def load_digest_settings(
    get_map: Callable[[list[str]], dict[str, Any]] = get_settings_map,
) -> DigestSettings:
    raw = get_map(list(DIGEST_SETTING_KEYS))
    defaults = DigestSettings()

    timezone = defaults.timezone
    if raw.get(SETTING_DIGEST_SCHEDULE):
        try:
            timezone = parse_schedule(raw[SETTING_DIGEST_SCHEDULE]).timezone
        except ScheduleError as exc:
            logger.warning("digest settings invalid schedule error={}", exc)

    dedup_mode = str(raw.get("dedup_mode") or defaults.dedup_mode).strip().lower()
    language = raw.get("digest_language")
    return DigestSettings(
        top_n=max(1, as_int(raw.get("digest_top_n"), defaults.top_n)),
        editor_enabled=as_bool(raw.get("editor_enabled"), defaults.editor_enabled),
        others_as_narrative=as_bool(raw.get("others_as_narrative"), defaults.others_as_narrative),
        consolidated_clusters=as_bool(
            raw.get("consolidated_clusters_enabled"), defaults.consolidated_clusters
        ),
        ai_cover=as_bool(raw.get("digest_ai_cover"), defaults.ai_cover),
        inline_images=as_bool(raw.get("digest_inline_images"), defaults.inline_images),
        relevance_gate=as_bool(raw.get("digest_relevance_gate"), defaults.relevance_gate),
        dedup_mode=dedup_mode if dedup_mode in (DEDUP_STRICT, DEDUP_SEMANTIC) else DEDUP_STRICT,
        language=language.strip() if isinstance(language, str) and language.strip() else None,
        timezone=timezone,
        topics_enabled=as_bool(raw.get("topics_enabled"), defaults.topics_enabled),
        topic_diversity_cap=as_float(raw.get("topic_diversity_cap"), defaults.topic_diversity_cap),
        min_topic_count=max(0, as_int(raw.get("min_topic_count"), defaults.min_topic_count)),
    )


def gate_candidates(
    candidates: list[DigestCandidate], importance_threshold: float
) -> tuple[list[DigestCandidate], dict[int, float]]:
    """Candidates whose weighted importance reaches the threshold, plus the weighted scores."""
    weighted = {
        candidate.item_id: weighted_importance(candidate.importance_score, candidate.channel_weight)
        for candidate in candidates
    }
    selected = [
        candidate for candidate in candidates if weighted[candidate.item_id] >= importance_threshold
    ]
    return selected, weighted


def _entry(candidate: DigestCandidate, weighted: dict[int, float]) -> DedupEntry[DigestCandidate]:
    return DedupEntry(
        ref=candidate,
        canonical_hash=candidate.canonical_hash,
        summary=candidate.summary,
        importance=weighted[candidate.item_id],
        tg_date=candidate.tg_date,
    )


def _item_key(candidate: DigestCandidate, weighted: dict[int, float]) -> tuple[float, float, int]:
    return (-weighted[candidate.item_id], -candidate.tg_date.timestamp(), candidate.item_id)


def plan_clusters(
    candidates: list[DigestCandidate],
    weighted: dict[int, float],
    *,
    grouper: Callable[[list[str]], list[list[int]]] | None = None,
) -> tuple[list[ClusterPlan], list[int]]:
    """Group candidates; returns the ordered clusters and the strict-duplicate item ids.

    Only one Item per canonical hash survives. With a ``grouper`` the survivors are
    grouped again by meaning, otherwise each survivor is its own cluster.
    """
    entries = [_entry(candidate, weighted) for candidate in candidates]
    survivors: list[DedupEntry[DigestCandidate]] = []
    duplicates: list[int] = []
    for group in group_by_hash(entries):
        kept, dropped = keep_best(group)
        survivors.append(kept)
        duplicates.extend(entry.ref.item_id for entry in dropped)

    if grouper is not None and len(survivors) > 1:
        groups = group_by_indexes(survivors, grouper)
    else:
        groups = [[entry] for entry in survivors]

    clusters = [
        ClusterPlan(
            items=sorted((entry.ref for entry in group), key=lambda item: _item_key(item, weighted)),
            weighted=weighted,
        )
        for group in groups
    ]
    return order_clusters(clusters), duplicates


def order_clusters(clusters: list[ClusterPlan]) -> list[ClusterPlan]:
    """Representative weighted importance, then size, then recency, then id."""

    def key(cluster: ClusterPlan) -> tuple[float, int, float, int]:
        head = cluster.representative
        return (
            -cluster.weighted[head.item_id],
            -len(cluster.items),
            -head.tg_date.timestamp(),
            head.item_id,
        )

    return sorted(clusters, key=key)


class DigestBuilder:
    """Selects, renders and delivers the digest of one window."""

    def __init__(
        self,
        gateway: LLMGateway,
        *,
        bot_token: str,
        target_chat_id: int,
        expanded_base_url: str | None = None,
        signing_secret: str | None = None,
        publisher_factory: Callable[[], AbstractContextManager[DigestPublisher]] | None = None,
    ) -> None:
        self._gateway = gateway
        self._target_chat_id = target_chat_id
        self._expanded_base_url = expanded_base_url
        self._signing_secret = signing_secret
        self._publisher_factory = publisher_factory or (lambda: DigestPublisher(bot_token))

    def _expanded(self, item_id: int) -> str | None:
        if not self._expanded_base_url or not self._signing_secret:
            return None
        return expanded_url(self._expanded_base_url, item_id, self._signing_secret)

    def build(
        self,
        window_start: datetime,
        window_end: datetime,
        importance_threshold: float,
        *,
        retry_failed: bool = False,
    ) -> DigestOutcome:
        started = time.monotonic()
        outcome = self._build(window_start, window_end, importance_threshold, retry_failed)
        metrics.digest_posts_total.labels(outcome.status).inc()
        metrics.digest_build_seconds.observe(time.monotonic() - started)
        logger.info(
            "digest build done status={} window={}..{} digest_id={} items={} parts={} duration={:.2f}s",
            outcome.status,
            window_start.isoformat(),
            window_end.isoformat(),
            outcome.digest_id,
            len(outcome.item_ids),
            outcome.parts,
            time.monotonic() - started,
        )
        return outcome

    def _build(
        self,
        window_start: datetime,
        window_end: datetime,
        importance_threshold: float,
        retry_failed: bool,
    ) -> DigestOutcome:
        settings = load_digest_settings()
        self._gateway.refresh_overrides()

        candidates = list_digest_candidates(window_start, window_end)
        selected, weighted = gate_candidates(candidates, importance_threshold)
        if selected and settings.relevance_gate:
            selected = self._relevance_gate(selected)
        if not selected:
            logger.info(
                "digest window empty window={}..{} candidates={}",
                window_start.isoformat(),
                window_end.isoformat(),
                len(candidates),
            )
            return DigestOutcome(status=OUTCOME_EMPTY)

        digest = create_pending_digest(window_start, window_end, self._target_chat_id)
        if digest is None and retry_failed:
            digest = reopen_failed_digest(window_start, window_end)
        if digest is None:
            logger.info("digest window already claimed window={}..{}", window_start, window_end)
            return DigestOutcome(status=OUTCOME_EXISTS)

        try:
            return self._deliver(digest.id, selected, weighted, settings, window_start, window_end)
        except (TelegramAPIError, httpx.HTTPError) as exc:
            logger.error("digest post failed digest_id={} error={}", digest.id, exc)
            error = exc
        except Exception as exc:
            logger.exception("digest build failed digest_id={} error={}", digest.id, exc)
            error = exc
        mark_digest_error(
            digest.id,
            str(error) or type(error).__name__,
            {
                "window_start": window_start.isoformat(),
                "window_end": window_end.isoformat(),
                "kind": type(error).__name__,
            },
        )
        return DigestOutcome(status=OUTCOME_ERROR, digest_id=digest.id, error=str(error))

    def _deliver(
        self,
        digest_id: int,
        selected: list[DigestCandidate],
        weighted: dict[int, float],
        settings: DigestSettings,
        window_start: datetime,
        window_end: datetime,
    ) -> DigestOutcome:
        grouper = None
        if settings.dedup_mode == DEDUP_SEMANTIC:
            grouper = self._semantic_grouper()
        clusters, duplicates = plan_clusters(selected, weighted, grouper=grouper)
        if duplicates:
            reject_items(duplicates, "dedup_strict")

        self._annotate_clusters(clusters, settings)
        view, included = self._compose(clusters, settings, window_start, window_end)
        text = render_digest(view, self._expanded)
        parts = [strip_item_markers(part) for part in split_html(text)]
        image = self._image(clusters, view.narrative, settings)

        message_ids = self._publish(digest_id, parts, image, view)
        mark_digest_posted(
            digest_id,
            item_ids=included,
            message_ids=message_ids,
            clusters=[
                ClusterRecord(
                    item_ids=[item.item_id for item in cluster.items],
                    representative_item_id=cluster.representative.item_id,
                    topic=cluster.topic,
                    summary=cluster.summary,
                )
                for cluster in clusters
            ],
        )
        return DigestOutcome(
            status=OUTCOME_POSTED,
            digest_id=digest_id,
            item_ids=included,
            message_ids=message_ids,
            parts=len(parts),
        )

    def _relevance_gate(self, selected: list[DigestCandidate]) -> list[DigestCandidate]:
        try:
            keep = relevance_gate(
                self._gateway, [item.summary for item in selected], get_setting=get_setting
            )
        except LLMError as exc:
            logger.warning("digest relevance gate skipped kind={}", exc.kind)
            return selected
        return [selected[index] for index in keep]

    def _semantic_grouper(self) -> Callable[[list[str]], list[list[int]]]:
        def grouper(summaries: list[str]) -> list[list[int]]:
            try:
                return group_summaries(self._gateway, summaries, get_setting=get_setting)
            except LLMError as exc:
                logger.warning("digest semantic grouping skipped kind={}", exc.kind)
                return [[index] for index in range(len(summaries))]

        return grouper

    def _annotate_clusters(self, clusters: list[ClusterPlan], settings: DigestSettings) -> None:
        for cluster in clusters:
            if len(cluster.items) == 1:
                cluster.topic = cluster.representative.topic
                continue
            summaries = [item.summary for item in cluster.items]
            try:
                cluster.summary = cluster_summary(
                    self._gateway, summaries, language=settings.language, get_setting=get_setting
                )
                cluster.topic = cluster_topic(
                    self._gateway, summaries, language=settings.language, get_setting=get_setting
                ) or cluster.representative.topic
            except LLMError as exc:
                logger.warning("digest cluster merge skipped kind={}", exc.kind)
                cluster.topic = cluster.topic or cluster.representative.topic

    def _compose(
        self,
        clusters: list[ClusterPlan],
        settings: DigestSettings,
        window_start: datetime,
        window_end: datetime,
    ) -> tuple[DigestView, list[int]]:
        target = 0
        shown = 0
        for cluster in clusters:
            if shown >= settings.top_n:
                break
            target += 1
            shown += len(cluster.items)

        if settings.topics_enabled:
            balance = balance_topics(
                clusters,
                target,
                settings.topic_diversity_cap,
                settings.min_topic_count,
                topic_of=lambda cluster: cluster.topic or cluster.representative.topic,
            )
            if balance.relaxed:
                logger.warning(
                    "digest topic cap relaxed topics_available={} topics_selected={} max_per_topic={} cap={}",
                    balance.topics_available,
                    balance.topics_selected,
                    balance.max_per_topic,
                    settings.topic_diversity_cap,
                )
            top, skipped = balance.selected, balance.rest
        else:
            top, skipped = clusters[:target], clusters[target:]
        rest: list[DigestCandidate] = [item for cluster in skipped for item in cluster.items]

        view = DigestView(
            window_start=window_start,
            window_end=window_end,
            timezone=settings.timezone,
            clusters=[
                ClusterView(
                    topic=cluster.topic if settings.consolidated_clusters or len(cluster.items) > 1 else None,
                    items=list(cluster.items),
                    summary=cluster.summary,
                )
                for cluster in top
            ],
            consolidated=settings.consolidated_clusters,
            low_reliability=self._low_reliability(),
        )

        if settings.editor_enabled:
            headlines = [cluster.summary or cluster.representative.summary for cluster in top]
            try:
                view.narrative = write_narrative(
                    self._gateway, headlines, language=settings.language, get_setting=get_setting
                )
            except LLMError as exc:
                logger.warning("digest narrative skipped kind={}", exc.kind)

        if rest and settings.others_as_narrative:
            try:
                view.others_narrative = write_narrative(
                    self._gateway,
                    [item.summary for item in rest],
                    language=settings.language,
                    get_setting=get_setting,
                )
            except LLMError as exc:
                logger.warning("digest others narrative skipped kind={}", exc.kind)
        if view.others_narrative is None:
            view.others = rest

        included = [item.item_id for cluster in top for item in cluster.items]
        included.extend(item.item_id for item in rest)
        return view, included

    def _low_reliability(self) -> set[int]:
        try:
            return low_reliability_channels()
        except SQLAlchemyError as exc:
            logger.warning("digest low reliability lookup failed error={}", exc)
            return set()

    def _image(
        self, clusters: list[ClusterPlan], narrative: str | None, settings: DigestSettings
    ) -> bytes | None:
        if settings.ai_cover:
            summaries = [cluster.summary or cluster.representative.summary for cluster in clusters[:10]]
            try:
                themes = compress_summaries_for_cover(self._gateway, summaries)
            except LLMError as exc:
                logger.warning("digest cover themes failed kind={}", exc.kind)
                return None
            return generate_digest_cover(self._gateway, themes, narrative)

        if settings.inline_images:
            for cluster in clusters:
                head = cluster.representative
                if not head.has_media:
                    continue
                try:
                    data = get_media_data(head.raw_id)
                except SQLAlchemyError as exc:
                    logger.warning("digest inline image read failed item_id={} error={}", head.item_id, exc)
                    return None
                if data:
                    return data
        return None

    def _publish(
        self,
        digest_id: int,
        parts: list[str],
        image: bytes | None,
        view: DigestView,
    ) -> list[int]:
        with self._publisher_factory() as publisher:
            if image:
                caption = f"<b>📰 Digest</b> <i>{escape(view.timezone)}</i>"
                try:
                    publisher.send_photo(self._target_chat_id, image, caption=caption)
                except TelegramAPIError as exc:
                    logger.warning("digest image send failed digest_id={} error={}", digest_id, exc)
            return publisher.send_html_messages(
                self._target_chat_id, parts, last_reply_markup=rating_keyboard(digest_id)
            )
