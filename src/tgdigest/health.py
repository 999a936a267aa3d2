"""Liveness, readiness, metrics and the expanded item view."""

from __future__ import annotations

from typing import Callable

from fastapi import FastAPI, HTTPException, Response
from fastapi.responses import HTMLResponse, JSONResponse
from loguru import logger
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError

from tgdigest import __version__
from tgdigest.config import Settings
from tgdigest.db.engine import ping
from tgdigest.db.repo_items import ExpandedItem, get_expanded_item
from tgdigest.digest.expanded import ExpandedTokenError, verify_item_token
from tgdigest.htmlutils import escape

_PAGE = """<!doctype html>
<html><head><meta charset="utf-8"><meta name="viewport" content="width=device-width">
<title>{title}</title></head>
<body style="max-width:720px;margin:2em auto;font-family:sans-serif;line-height:1.5">
{body}
</body></html>"""


def render_expanded_page(item: ExpandedItem) -> str:
    title = escape(item.channel_title or "tgdigest")
    parts = [f"<h2>{title}</h2>", f"<p><small>{item.tg_date.isoformat()}</small></p>"]
    if item.topic:
        parts.append(f"<p><b>{escape(item.topic)}</b></p>")
    if item.summary:
        parts.append(f"<p>{escape(item.summary)}</p>")
    if item.text:
        parts.append("<hr>")
        parts.append(f"<p style=\"white-space:pre-wrap\">{escape(item.text)}</p>")
    links = [link for link in item.links or [] if link.get("url")]
    if links:
        parts.append("<ul>")
        for link in links:
            href = escape(str(link.get("final_url") or link["url"]))
            label = escape(str(link.get("title") or link["url"]))
            parts.append(f'<li><a href="{href}">{label}</a></li>')
        parts.append("</ul>")
    if item.channel_username:
        url = f"https://t.me/{item.channel_username.lstrip('@')}/{item.tg_message_id}"
        parts.append(f'<p><a href="{escape(url)}">Open in Telegram</a></p>')
    return _PAGE.format(title=title, body="\n".join(parts))


def create_app(
    settings: Settings,
    *,
    ping_db: Callable[[], bool] = ping,
    load_item: Callable[[int], ExpandedItem | None] = get_expanded_item,
) -> FastAPI:
    app = FastAPI(title="tgdigest", version=__version__, docs_url=None, redoc_url=None)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/readyz")
    def readyz() -> JSONResponse:
        try:
            ping_db()
        except SQLAlchemyError as exc:
            logger.warning("health readiness check failed error={}", exc)
            return JSONResponse({"status": "unavailable"}, status_code=503)
        return JSONResponse({"status": "ready"})

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/i/{token}", response_class=HTMLResponse)
    def expanded(token: str) -> HTMLResponse:
        secret = settings.expanded_view_signing_secret
        if not secret:
            raise HTTPException(status_code=404)
        try:
            item_id = verify_item_token(token, secret)
        except ExpandedTokenError as exc:
            logger.info("health expanded view rejected token error={}", exc)
            raise HTTPException(status_code=404) from exc
        item = load_item(item_id)
        if item is None:
            raise HTTPException(status_code=404)
        return HTMLResponse(render_expanded_page(item))

    return app


def run_http(settings: Settings) -> None:
    import uvicorn

    app = create_app(settings)
    logger.info("health server started port={}", settings.health_port)
    uvicorn.run(app, host="0.0.0.0", port=settings.health_port, log_config=None)
    logger.info("health server stopped status=canceled")
