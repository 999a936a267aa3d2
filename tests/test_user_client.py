from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from telethon.errors import FloodWaitError

from tgdigest.ingest import reader as reader_module
from tgdigest.ingest.reader import Reader
from tgdigest.telegram.user_client import UserTelegramClient


class TelethonLikeClient:
    """Newest first unless ``reverse``, like ``TelegramClient.get_messages``."""

    def __init__(self, ids, *, floods=0):
        self.ids = list(ids)
        self.floods = floods
        self.calls = []

    async def get_messages(self, peer, *, limit, min_id=0, reverse=False):
        self.calls.append({"limit": limit, "min_id": min_id, "reverse": reverse})
        if self.floods:
            self.floods -= 1
            raise FloodWaitError(request=None, capture=0)
        newer = sorted(message_id for message_id in self.ids if message_id > min_id)
        picked = newer[:limit] if reverse else list(reversed(newer))[:limit]
        return [
            SimpleNamespace(
                id=message_id,
                date=datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc),
                message=f"Post number {message_id} about markets",
                media=None,
                entities=None,
                fwd_from=None,
                views=1,
                forwards=0,
                action=None,
            )
            for message_id in picked
        ]


def _user_client(telethon_client) -> UserTelegramClient:
    client = UserTelegramClient.__new__(UserTelegramClient)
    client._client = telethon_client
    return client


def test_fetch_history_returns_oldest_messages_first() -> None:
    telethon_client = TelethonLikeClient(range(1, 251))
    client = _user_client(telethon_client)

    messages = asyncio.run(client.fetch_history("peer", min_id=0, limit=100))

    assert [message.id for message in messages] == list(range(1, 101))
    assert telethon_client.calls == [{"limit": 100, "min_id": 0, "reverse": True}]


def test_fetch_history_retries_once_after_flood_wait() -> None:
    telethon_client = TelethonLikeClient(range(1, 6), floods=1)
    client = _user_client(telethon_client)

    messages = asyncio.run(client.fetch_history("peer", min_id=2, limit=10))

    assert [message.id for message in messages] == [3, 4, 5]
    assert len(telethon_client.calls) == 2


def test_fetch_history_gives_up_after_second_flood_wait() -> None:
    telethon_client = TelethonLikeClient(range(1, 6), floods=2)
    client = _user_client(telethon_client)

    with pytest.raises(FloodWaitError):
        asyncio.run(client.fetch_history("peer", min_id=0, limit=10))
    assert len(telethon_client.calls) == 2


def test_reader_backlog_is_read_across_cycles(monkeypatch) -> None:
    inserted = []
    cursor = {"last": 0}

    def fake_insert(**kwargs):
        inserted.append(kwargs["tg_message_id"])
        return len(inserted)

    def fake_advance(channel_id, message_id):
        cursor["last"] = message_id

    monkeypatch.setattr(reader_module, "insert_raw_message", fake_insert)
    monkeypatch.setattr(reader_module, "advance_last_message_id", fake_advance)
    monkeypatch.setattr(reader_module, "record_discoveries", lambda *args: 0)

    reader = Reader(_user_client(TelethonLikeClient(range(1, 251))), rate_limit_rps=1000, fetch_limit=100)

    async def _cycle():
        channel = SimpleNamespace(
            id=3,
            title="Markets",
            username="markets",
            tg_peer_id=-1001234567890,
            access_hash=5,
            invite_link=None,
            last_tg_message_id=cursor["last"],
        )
        count = await reader.fetch_channel(channel)
        await reader.drain()
        return count

    counts = [asyncio.run(_cycle()) for _ in range(3)]

    assert counts == [100, 100, 50]
    assert inserted == list(range(1, 251))
    assert cursor["last"] == 250
