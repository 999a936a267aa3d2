from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable
from zoneinfo import ZoneInfo

from tgdigest.db.repo_items import DigestCandidate
from tgdigest.htmlutils import ITEM_END, ITEM_START, escape

MAX_TITLE_LEN = 40
LOW_RELIABILITY_BADGE = "⚠️ "


@dataclass(slots=True)
class ClusterView:
    topic: str | None
    items: list[DigestCandidate]
    summary: str | None = None


@dataclass(slots=True)
class DigestView:
    window_start: datetime
    window_end: datetime
    timezone: str = "UTC"
    narrative: str | None = None
    clusters: list[ClusterView] = field(default_factory=list)
    others: list[DigestCandidate] = field(default_factory=list)
    others_narrative: str | None = None
    consolidated: bool = False
    low_reliability: set[int] = field(default_factory=set)


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 1)].rstrip() + "…"


def source_url(candidate: DigestCandidate) -> str | None:
    if candidate.channel_username:
        return f"https://t.me/{candidate.channel_username.lstrip('@')}/{candidate.tg_message_id}"
    return None


def _source_link(candidate: DigestCandidate) -> str:
    title = escape(_truncate(candidate.channel_title or "source", MAX_TITLE_LEN))
    url = source_url(candidate)
    if url is None:
        return f"<i>{title}</i>"
    return f'<a href="{escape(url)}">{title}</a>'


ExpandedLink = Callable[[int], str | None]


def render_item(
    candidate: DigestCandidate,
    expanded: ExpandedLink | None = None,
    flagged: set[int] | None = None,
) -> str:
    """One bullet wrapped in item markers so the splitter can cut between items."""
    badge = LOW_RELIABILITY_BADGE if flagged and candidate.channel_id in flagged else ""
    line = f"• {badge}{candidate.summary} — {_source_link(candidate)}"
    url = expanded(candidate.item_id) if expanded is not None else None
    if url:
        line += f' <a href="{escape(url)}">↗</a>'
    return f"{ITEM_START}{line}{ITEM_END}"


def _render_cluster(
    cluster: ClusterView, expanded: ExpandedLink | None, flagged: set[int]
) -> list[str]:
    if len(cluster.items) == 1 and not cluster.topic:
        return [render_item(cluster.items[0], expanded, flagged)]

    lines: list[str] = []
    if cluster.topic:
        lines.append(f"<b>{escape(cluster.topic)}</b>")
    if cluster.summary and len(cluster.items) > 1:
        representative = cluster.items[0]
        sources = ", ".join(_source_link(item) for item in cluster.items)
        badge = LOW_RELIABILITY_BADGE if any(item.channel_id in flagged for item in cluster.items) else ""
        line = f"• {badge}{cluster.summary} — {sources}"
        url = expanded(representative.item_id) if expanded is not None else None
        if url:
            line += f' <a href="{escape(url)}">↗</a>'
        lines.append(f"{ITEM_START}{line}{ITEM_END}")
    else:
        lines.extend(render_item(item, expanded, flagged) for item in cluster.items)
    return lines


def consolidate(clusters: list[ClusterView]) -> list[ClusterView]:
    """Merge clusters that share a topic under the first one's heading, keeping order."""
    merged: dict[str, ClusterView] = {}
    result: list[ClusterView] = []
    for cluster in clusters:
        key = (cluster.topic or "").strip().lower()
        if not key:
            result.append(cluster)
            continue
        existing = merged.get(key)
        if existing is None:
            existing = ClusterView(topic=cluster.topic, items=[], summary=None)
            merged[key] = existing
            result.append(existing)
        existing.items.extend(cluster.items)
    return result


def render_digest(view: DigestView, expanded: ExpandedLink | None = None) -> str:
    tz = ZoneInfo(view.timezone)
    start = view.window_start.astimezone(tz)
    end = view.window_end.astimezone(tz)
    blocks: list[str] = [
        f"<b>📰 Digest</b> — {escape(start.strftime('%d.%m %H:%M'))}–"
        f"{escape(end.strftime('%H:%M'))} <i>({escape(view.timezone)})</i>"
    ]

    if view.narrative:
        blocks.append(f"<blockquote>{view.narrative}</blockquote>")

    clusters = consolidate(view.clusters) if view.consolidated else view.clusters
    for cluster in clusters:
        blocks.append("\n".join(_render_cluster(cluster, expanded, view.low_reliability)))

    if view.others_narrative:
        blocks.append(f"<b>Also</b>\n{view.others_narrative}")
    elif view.others:
        lines = ["<b>Also</b>"]
        lines.extend(render_item(item, expanded, view.low_reliability) for item in view.others)
        blocks.append("\n".join(lines))

    return "\n\n".join(blocks)
