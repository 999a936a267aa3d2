from __future__ import annotations

import html
import re
from typing import Any

import httpx
from loguru import logger

MAX_LINKS = 3
FETCH_TIMEOUT = 10.0
MAX_BODY_BYTES = 256 * 1024

_URL_RE = re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+", re.IGNORECASE)
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_TRAILING_PUNCT = ".,;:!?)»"


def extract_urls(text: str | None, entities: list[dict[str, Any]] | None = None) -> list[str]:
    """External URLs from the text and hidden text-url entities, t.me links excluded."""
    urls: list[str] = []
    candidates = [match.group(0).rstrip(_TRAILING_PUNCT) for match in _URL_RE.finditer(text or "")]
    for entity in entities or []:
        url = entity.get("url") if isinstance(entity, dict) else None
        if isinstance(url, str):
            candidates.append(url)
    for url in candidates:
        if not url.startswith(("http://", "https://")):
            continue
        try:
            host = httpx.URL(url).host.lower()
        except httpx.InvalidURL:
            continue
        if not host or host in {"t.me", "telegram.me"}:
            continue
        if url not in urls:
            urls.append(url)
    return urls


def _title_from(body: str) -> str | None:
    match = _TITLE_RE.search(body)
    if not match:
        return None
    title = re.sub(r"\s+", " ", html.unescape(match.group(1))).strip()
    return title[:300] or None


async def resolve_links(
    urls: list[str],
    *,
    client: httpx.AsyncClient | None = None,
) -> list[dict[str, Any]]:
    """Fetch title and final URL of up to three links; unreachable links are skipped."""
    owns_client = client is None
    http = client or httpx.AsyncClient(
        timeout=FETCH_TIMEOUT,
        follow_redirects=True,
        headers={"User-Agent": "Mozilla/5.0 (compatible; tgdigest/0.1)"},
    )
    resolved: list[dict[str, Any]] = []
    try:
        for url in urls[:MAX_LINKS]:
            try:
                response = await http.get(url)
            except httpx.HTTPError as exc:
                logger.debug("links fetch failed url={} error={}", url, exc)
                continue
            title = None
            if "html" in response.headers.get("content-type", ""):
                title = _title_from(response.text[:MAX_BODY_BYTES])
            resolved.append(
                {
                    "url": url,
                    "final_url": str(response.url),
                    "status": response.status_code,
                    "title": title,
                }
            )
    finally:
        if owns_client:
            await http.aclose()
    return resolved
