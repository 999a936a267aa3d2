from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")
_ZERO_WIDTH_RE = re.compile(r"[\u200B-\u200D\uFEFF]")


def canonical_hash(text: str | None) -> str:
    """sha256 of the lowercased text with URLs removed and whitespace collapsed."""
    lowered = (text or "").lower()
    without_urls = _URL_RE.sub("", lowered)
    collapsed = _WHITESPACE_RE.sub(" ", without_urls).strip()
    return hashlib.sha256(collapsed.encode("utf-8")).hexdigest()


def clean_text(text: str | None) -> str:
    cleaned = _ZERO_WIDTH_RE.sub("", text or "")
    return cleaned.replace("\r\n", "\n").replace("\r", "\n").strip()


@dataclass(slots=True)
class NormalizedMessage:
    tg_message_id: int
    tg_date: datetime
    text: str | None
    entities: list[dict[str, Any]] | None
    media: dict[str, Any] | None
    canonical_hash: str
    is_forward: bool
    views: int | None
    forwards: int | None


def _to_dict(obj: Any) -> dict[str, Any] | None:
    if obj is None:
        return None
    if hasattr(obj, "to_dict"):
        return _jsonable(obj.to_dict())
    return {"_": type(obj).__name__}


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return None
    return value


def media_metadata(media: Any) -> dict[str, Any] | None:
    if media is None:
        return None
    meta: dict[str, Any] = {"type": type(media).__name__}
    document = getattr(media, "document", None)
    if document is not None:
        meta["mime_type"] = getattr(document, "mime_type", None)
        meta["size"] = getattr(document, "size", None)
    if getattr(media, "photo", None) is not None:
        meta["photo"] = True
    webpage = getattr(media, "webpage", None)
    if webpage is not None:
        meta["url"] = getattr(webpage, "url", None)
        meta["site_name"] = getattr(webpage, "site_name", None)
        meta["title"] = getattr(webpage, "title", None)
    return meta


def normalize_message(message: Any) -> NormalizedMessage | None:
    """Map a Telethon message to the stored shape; None when it has neither text nor media."""
    text = clean_text(getattr(message, "message", None)) or None
    media = getattr(message, "media", None)
    if text is None and media is None:
        return None

    tg_date = message.date
    if tg_date.tzinfo is None:
        tg_date = tg_date.replace(tzinfo=timezone.utc)

    entities = getattr(message, "entities", None) or []
    return NormalizedMessage(
        tg_message_id=int(message.id),
        tg_date=tg_date.astimezone(timezone.utc),
        text=text,
        entities=[item for item in (_to_dict(entity) for entity in entities) if item] or None,
        media=media_metadata(media),
        canonical_hash=canonical_hash(text),
        is_forward=getattr(message, "fwd_from", None) is not None,
        views=getattr(message, "views", None),
        forwards=getattr(message, "forwards", None),
    )
