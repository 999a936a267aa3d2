from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Awaitable

from loguru import logger
from telethon.errors import FloodWaitError, RPCError
from telethon.tl.types import ChatInvite, MessageMediaPhoto

from tgdigest import metrics
from tgdigest.db.models import Channel
from tgdigest.db.repo_channels import (
    advance_last_message_id,
    list_channels,
    touch_channel_fetched,
    update_channel_peer,
)
from tgdigest.db.repo_discoveries import (
    list_unresolved_discoveries,
    record_discoveries,
    update_discovery_resolution,
)
from tgdigest.db.repo_messages import insert_raw_message, set_links, set_media_data
from tgdigest.ingest.discovery import extract_discoveries
from tgdigest.ingest.links import extract_urls, resolve_links
from tgdigest.ingest.normalize import normalize_message
from tgdigest.runtime import sleep_or_stop
from tgdigest.telegram.user_client import (
    TelegramReadError,
    UserTelegramClient,
    extract_invite_hash,
)

ACTIVE_SLEEP_SECONDS = 15.0
IDLE_SLEEP_SECONDS = 30.0
MEDIA_CONCURRENCY = 5
MAX_WORKERS = 10
RESOLVE_BATCH = 10


def worker_count(rate_limit_rps: float) -> int:
    return min(max(int(rate_limit_rps), 1), MAX_WORKERS)


class Reader:
    """Pulls new messages from every active channel into ``raw_messages``."""

    def __init__(
        self,
        client: UserTelegramClient,
        *,
        rate_limit_rps: float,
        fetch_limit: int,
    ) -> None:
        self._client = client
        self._rps = max(float(rate_limit_rps), 0.1)
        self._workers = worker_count(rate_limit_rps)
        self._fetch_limit = fetch_limit
        self._media_semaphore = asyncio.Semaphore(MEDIA_CONCURRENCY)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._resolving = False

    async def run(self, stop: asyncio.Event) -> str:
        logger.info(
            "reader started workers={} rps={} fetch_limit={}",
            self._workers,
            self._rps,
            self._fetch_limit,
        )
        while not stop.is_set():
            received = await self.run_cycle()
            if not self._resolving:
                self._spawn(self.resolve_discoveries(), "resolve")
            delay = ACTIVE_SLEEP_SECONDS if received else IDLE_SLEEP_SECONDS
            if await sleep_or_stop(stop, delay):
                break

        await self.drain()
        logger.info("reader stopped status=canceled")
        return "canceled"

    async def run_cycle(self) -> int:
        started = time.monotonic()
        channels = await asyncio.to_thread(list_channels, active_only=True)
        semaphore = asyncio.Semaphore(self._workers)

        async def _guarded(channel: Channel) -> int:
            async with semaphore:
                return await self._fetch_safely(channel)

        results = await asyncio.gather(*(_guarded(channel) for channel in channels))
        received = sum(results)
        logger.info(
            "reader cycle done channels={} messages={} duration={:.2f}s",
            len(channels),
            received,
            time.monotonic() - started,
        )
        return received

    async def _fetch_safely(self, channel: Channel) -> int:
        try:
            return await self.fetch_channel(channel)
        except FloodWaitError as exc:
            metrics.reader_channel_errors_total.inc()
            logger.warning(
                "reader channel flood wait channel_id={} seconds={}", channel.id, exc.seconds
            )
        except Exception as exc:
            metrics.reader_channel_errors_total.inc()
            logger.exception("reader channel failed channel_id={} error={}", channel.id, exc)
        return 0

    def _jitter(self) -> float:
        base = 1.0 / self._rps
        return base + random.uniform(0.0, base * 0.5)

    async def fetch_channel(self, channel: Channel) -> int:
        await asyncio.sleep(self._jitter())
        peer = await self._resolve_peer(channel)
        messages = await self._client.fetch_history(
            peer,
            min_id=int(channel.last_tg_message_id or 0),
            limit=self._fetch_limit,
        )

        inserted = 0
        high_water = 0
        for message in messages:
            high_water = max(high_water, int(message.id))
            if getattr(message, "action", None) is not None:
                self._spawn(self._extract(None, channel.id, message), "discovery")
                continue

            normalized = normalize_message(message)
            if normalized is None:
                continue
            raw_id = await asyncio.to_thread(
                insert_raw_message,
                channel_id=channel.id,
                tg_message_id=normalized.tg_message_id,
                tg_date=normalized.tg_date,
                text=normalized.text,
                entities=normalized.entities,
                media=normalized.media,
                canonical_hash=normalized.canonical_hash,
                is_forward=normalized.is_forward,
                views=normalized.views,
                forwards=normalized.forwards,
            )
            if raw_id is None:
                continue
            inserted += 1

            if isinstance(message.media, MessageMediaPhoto):
                self._spawn(self._download_media(raw_id, message), "media")
            urls = extract_urls(normalized.text, normalized.entities)
            if urls:
                self._spawn(self._resolve_links(raw_id, urls), "links")
            self._spawn(self._extract(raw_id, channel.id, message), "discovery")

        if high_water:
            await asyncio.to_thread(advance_last_message_id, channel.id, high_water)
        else:
            await asyncio.to_thread(touch_channel_fetched, channel.id)

        metrics.reader_messages_total.inc(inserted)
        if inserted:
            logger.info(
                "reader channel fetched channel_id={} title='{}' inserted={} last_id={}",
                channel.id,
                channel.title,
                inserted,
                high_water,
            )
        return inserted

    async def _resolve_peer(self, channel: Channel) -> Any:
        if channel.tg_peer_id and channel.access_hash:
            return self._client.input_peer(channel.tg_peer_id, channel.access_hash)

        if channel.invite_link and not channel.tg_peer_id:
            invite_hash = extract_invite_hash(channel.invite_link)
            if not invite_hash:
                raise TelegramReadError(f"invalid invite link: {channel.invite_link}")
            entity = await self._client.import_invite(invite_hash)
            await self._cache_peer(channel, entity, clear_invite_link=True)
            return entity

        if channel.username:
            entity = await self._client.resolve_username(channel.username)
            await self._cache_peer(channel, entity)
            return entity

        if channel.tg_peer_id:
            entity = await self._client.resolve_peer_id(channel.tg_peer_id)
            await self._cache_peer(channel, entity)
            return entity

        raise TelegramReadError(f"channel {channel.id} has no username, peer id or invite link")

    async def _cache_peer(
        self, channel: Channel, entity: Any, *, clear_invite_link: bool = False
    ) -> None:
        info = self._client.entity_info(entity)
        await asyncio.to_thread(
            update_channel_peer,
            channel.id,
            tg_peer_id=info["tg_peer_id"],
            access_hash=info["access_hash"],
            title=info["title"],
            username=info["username"],
            clear_invite_link=clear_invite_link,
        )
        channel.tg_peer_id = info["tg_peer_id"]
        channel.access_hash = info["access_hash"]
        logger.info(
            "reader channel resolved channel_id={} peer_id={} title='{}'",
            channel.id,
            info["tg_peer_id"],
            info["title"],
        )

    async def _download_media(self, raw_id: int, message: Any) -> None:
        async with self._media_semaphore:
            data = await self._client.download_media(message)
        if data:
            await asyncio.to_thread(set_media_data, raw_id, data)

    async def _resolve_links(self, raw_id: int, urls: list[str]) -> None:
        resolved = await resolve_links(urls)
        if resolved:
            await asyncio.to_thread(set_links, raw_id, resolved)

    async def _extract(self, raw_id: int | None, channel_id: int, message: Any) -> None:
        candidates = extract_discoveries(message)
        if not candidates:
            return
        stored = await asyncio.to_thread(record_discoveries, raw_id, channel_id, candidates)
        if stored:
            logger.debug(
                "reader discoveries recorded channel_id={} raw_id={} count={}",
                channel_id,
                raw_id,
                stored,
            )

    async def resolve_discoveries(self) -> int:
        """Fill in titles and usernames of discoveries known only by peer id or invite hash."""
        self._resolving = True
        resolved = 0
        try:
            pending = await asyncio.to_thread(list_unresolved_discoveries, limit=RESOLVE_BATCH)
            for discovery in pending:
                try:
                    if discovery.invite_hash:
                        entity = await self._client.check_invite(discovery.invite_hash)
                    elif discovery.tg_peer_id:
                        entity = await self._client.resolve_peer_id(discovery.tg_peer_id)
                    else:
                        continue
                except FloodWaitError as exc:
                    logger.warning("reader discovery resolve flood wait seconds={}", exc.seconds)
                    break
                except (TelegramReadError, RPCError) as exc:
                    logger.debug(
                        "reader discovery unresolved id={} error={}", discovery.id, exc
                    )
                    continue

                if isinstance(entity, ChatInvite):
                    await asyncio.to_thread(
                        update_discovery_resolution,
                        discovery.id,
                        username=None,
                        title=entity.title,
                        tg_peer_id=None,
                        access_hash=None,
                    )
                else:
                    info = self._client.entity_info(entity)
                    await asyncio.to_thread(
                        update_discovery_resolution,
                        discovery.id,
                        username=info["username"],
                        title=info["title"],
                        tg_peer_id=info["tg_peer_id"],
                        access_hash=info["access_hash"],
                    )
                resolved += 1
                await asyncio.sleep(self._jitter())
        finally:
            self._resolving = False
        if resolved:
            logger.info("reader discoveries resolved count={}", resolved)
        return resolved

    def _spawn(self, coro: Awaitable[Any], kind: str) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.opt(exception=exc).warning("reader background task failed kind={}", kind)

        task.add_done_callback(_done)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
