from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
from telethon.tl.types import (
    MessageActionChatMigrateTo,
    MessageEntityTextUrl,
    PeerChannel,
)

from tgdigest.ingest import reader as reader_module
from tgdigest.ingest.discovery import extract_discoveries, extract_mentions, parse_telegram_links
from tgdigest.ingest.links import extract_urls, resolve_links
from tgdigest.ingest.normalize import canonical_hash, clean_text, normalize_message
from tgdigest.ingest.reader import Reader, worker_count


def _message(message_id: int, text: str | None, **kwargs):
    values = {
        "id": message_id,
        "date": datetime(2024, 5, 1, 9, 30),
        "message": text,
        "media": None,
        "entities": None,
        "fwd_from": None,
        "views": 120,
        "forwards": 3,
        "action": None,
    }
    values.update(kwargs)
    return SimpleNamespace(**values)


def test_canonical_hash_ignores_case_urls_and_whitespace() -> None:
    first = canonical_hash("Rate  HIKE announced https://example.com/a\n\n")
    second = canonical_hash("rate hike announced http://other.org/b")

    assert first == second
    assert canonical_hash(None) == canonical_hash("")
    assert canonical_hash("rate cut") != first


def test_clean_text_strips_zero_width_and_newlines() -> None:
    assert clean_text("\u200bHello\r\nworld\ufeff ") == "Hello\nworld"


def test_normalize_message_utc_and_forward_flag() -> None:
    normalized = normalize_message(
        _message(5, " Breaking news ", fwd_from=SimpleNamespace(from_id=None))
    )

    assert normalized is not None
    assert normalized.tg_date == datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)
    assert normalized.text == "Breaking news"
    assert normalized.is_forward is True
    assert normalized.media is None
    assert normalized.views == 120
    assert normalized.canonical_hash == canonical_hash("Breaking news")


def test_normalize_message_skips_empty() -> None:
    assert normalize_message(_message(1, "   ")) is None


def test_normalize_message_keeps_media_only() -> None:
    photo = SimpleNamespace(photo=object())

    normalized = normalize_message(_message(2, None, media=photo))

    assert normalized is not None
    assert normalized.text is None
    assert normalized.media == {"type": "SimpleNamespace", "photo": True}


def test_extract_urls_skips_telegram_and_dedupes() -> None:
    text = "Read https://example.com/post, also https://t.me/channel/5 and https://example.com/post."
    entities = [{"_": "MessageEntityTextUrl", "url": "https://docs.example.org/x"}, {"_": "Bold"}]

    assert extract_urls(text, entities) == [
        "https://example.com/post",
        "https://docs.example.org/x",
    ]


def test_resolve_links_skips_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "down.example":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(
            200,
            headers={"content-type": "text/html; charset=utf-8"},
            text="<html><head><title> Rate &amp; Markets </title></head></html>",
        )

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await resolve_links(
                ["https://down.example/a", "https://news.example/b"], client=client
            )

    resolved = asyncio.run(_run())

    assert resolved == [
        {
            "url": "https://news.example/b",
            "final_url": "https://news.example/b",
            "status": 200,
            "title": "Rate & Markets",
        }
    ]


def test_parse_telegram_links_kinds() -> None:
    text = (
        "see t.me/+AbCdEf123 and https://t.me/joinchat/XyZ987 "
        "plus t.me/c/1234567/10 and t.me/market_news/42 or t.me/share/url"
    )

    found = parse_telegram_links(text)

    assert ("invite", "AbCdEf123") in found
    assert ("invite", "XyZ987") in found
    assert ("channel_id", "1234567") in found
    assert ("username", "market_news") in found
    assert all(value not in {"joinchat", "share"} for _, value in found)


def test_extract_mentions_ignores_emails() -> None:
    assert extract_mentions("ping @news_room and mail me@example.com, @abc too short") == [
        "news_room"
    ]


def test_extract_discoveries_from_forward_links_and_mentions() -> None:
    message = _message(
        9,
        "via @market_news, details t.me/+InviteHash1 and @market_news again",
        fwd_from=SimpleNamespace(from_id=PeerChannel(555), from_name="Source", saved_from_peer=None),
        entities=[MessageEntityTextUrl(offset=0, length=3, url="https://t.me/hidden_chan")],
        views=900,
        forwards=12,
    )

    found = extract_discoveries(message)
    by_type = {candidate.source_type: candidate for candidate in found}

    assert by_type["forward"].tg_peer_id == -1000000000555
    assert by_type["forward"].title == "Source"
    assert by_type["link"].invite_hash == "InviteHash1"
    assert by_type["entity_text_url"].username == "hidden_chan"
    assert [c.username for c in found if c.source_type == "mention"] == ["market_news"]
    assert all(candidate.views == 900 and candidate.forwards == 12 for candidate in found)


def test_extract_discoveries_service_message_only_uses_action() -> None:
    message = _message(
        3,
        "@ignored_name",
        action=MessageActionChatMigrateTo(channel_id=42),
    )

    found = extract_discoveries(message)

    assert len(found) == 1
    assert found[0].source_type == "migration"
    assert found[0].tg_peer_id == -1000000000042


def test_worker_count_bounds() -> None:
    assert worker_count(0.2) == 1
    assert worker_count(3) == 3
    assert worker_count(50) == 10


class FakeUserClient:
    def __init__(self, messages):
        self.messages = messages
        self.history_calls = []

    def input_peer(self, peer_id, access_hash):
        return ("peer", peer_id, access_hash)

    async def fetch_history(self, peer, *, min_id, limit):
        self.history_calls.append((peer, min_id, limit))
        return self.messages


def _channel(**kwargs):
    values = {
        "id": 7,
        "title": "Markets",
        "username": "markets",
        "tg_peer_id": -1001,
        "access_hash": 99,
        "invite_link": None,
        "last_tg_message_id": 10,
    }
    values.update(kwargs)
    return SimpleNamespace(**values)


def test_fetch_channel_stores_new_messages(monkeypatch) -> None:
    inserted = []
    advanced = []
    links = []
    discoveries = []

    def fake_insert(**kwargs):
        inserted.append(kwargs)
        return None if kwargs["tg_message_id"] == 12 else len(inserted)

    async def fake_resolve(urls):
        return [{"url": url, "final_url": url, "status": 200, "title": None} for url in urls]

    monkeypatch.setattr(reader_module, "insert_raw_message", fake_insert)
    monkeypatch.setattr(reader_module, "advance_last_message_id", lambda cid, mid: advanced.append((cid, mid)))
    monkeypatch.setattr(reader_module, "resolve_links", fake_resolve)
    monkeypatch.setattr(reader_module, "set_links", lambda raw_id, data: links.append((raw_id, data)))
    monkeypatch.setattr(
        reader_module,
        "record_discoveries",
        lambda raw_id, channel_id, candidates: discoveries.append((raw_id, candidates)) or len(candidates),
    )

    client = FakeUserClient(
        [
            _message(11, "Rates are up, see https://example.com/rates"),
            _message(12, "Duplicate that already exists"),
            _message(13, "   "),
            _message(14, None, action=MessageActionChatMigrateTo(channel_id=77)),
            _message(15, "Thanks to @partner_chan for the tip"),
        ]
    )
    reader = Reader(client, rate_limit_rps=1000, fetch_limit=50)

    async def _run():
        count = await reader.fetch_channel(_channel())
        await reader.drain()
        return count

    count = asyncio.run(_run())

    assert count == 2
    assert client.history_calls == [(("peer", -1001, 99), 10, 50)]
    assert advanced == [(7, 15)]
    assert [row["tg_message_id"] for row in inserted] == [11, 12, 15]
    assert links == [(1, [{"url": "https://example.com/rates", "final_url": "https://example.com/rates", "status": 200, "title": None}])]
    service = [entry for entry in discoveries if entry[0] is None]
    assert service and service[0][1][0].source_type == "migration"
    assert any(c.username == "partner_chan" for raw_id, found in discoveries for c in found)


def test_fetch_channel_without_messages_touches_channel(monkeypatch) -> None:
    touched = []
    monkeypatch.setattr(reader_module, "touch_channel_fetched", touched.append)

    reader = Reader(FakeUserClient([]), rate_limit_rps=1000, fetch_limit=50)
    count = asyncio.run(reader.fetch_channel(_channel()))

    assert count == 0
    assert touched == [7]
