from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable

from telethon.tl.types import (
    KeyboardButtonSwitchInline,
    KeyboardButtonUrl,
    KeyboardButtonUserProfile,
    KeyboardButtonWebView,
    MessageActionChannelCreate,
    MessageActionChannelMigrateFrom,
    MessageActionChatAddUser,
    MessageActionChatCreate,
    MessageActionChatJoinedByLink,
    MessageActionChatMigrateTo,
    MessageActionGiftCode,
    MessageActionInviteToGroupCall,
    MessageActionRequestedPeer,
    MessageActionTopicCreate,
    MessageActionTopicEdit,
    MessageEntityCustomEmoji,
    MessageEntityMentionName,
    MessageEntityTextUrl,
    MessageMediaContact,
    MessageMediaGame,
    MessageMediaGiveaway,
    MessageMediaInvoice,
    MessageMediaPoll,
    MessageMediaStory,
    MessageMediaWebPage,
    PeerChannel,
    PeerChat,
    PeerUser,
    ReplyInlineMarkup,
    WebPage,
)
from telethon.utils import get_peer_id

_TG_POST_RE = re.compile(r"t\.me/(?:c/(\d+)|([a-zA-Z][a-zA-Z0-9_]{3,}))(?:/(\d+))?", re.IGNORECASE)
_TG_INVITE_RE = re.compile(r"t\.me/(?:\+|joinchat/)([a-zA-Z0-9_-]+)", re.IGNORECASE)
_MENTION_RE = re.compile(r"(?<![\w@])@([a-zA-Z][a-zA-Z0-9_]{3,31})")
_RESERVED_PATHS = {"joinchat", "addstickers", "addemoji", "share", "proxy", "socks", "iv", "s"}


@dataclass(slots=True)
class DiscoveryCandidate:
    source_type: str
    username: str | None = None
    tg_peer_id: int | None = None
    access_hash: int | None = None
    invite_hash: str | None = None
    title: str | None = None
    views: int = 0
    forwards: int = 0


def _marked_channel_id(channel_id: int) -> int:
    return int(get_peer_id(PeerChannel(channel_id)))


def _peer_id(peer: Any) -> int | None:
    if isinstance(peer, (PeerChannel, PeerChat, PeerUser)):
        return int(get_peer_id(peer))
    if isinstance(peer, int):
        return peer
    return None


def extract_mentions(text: str | None) -> list[str]:
    return _MENTION_RE.findall(text or "")


def parse_telegram_links(text: str | None) -> list[tuple[str, str]]:
    """Return ``(kind, value)`` pairs for t.me references: username, channel id or invite hash."""
    found: list[tuple[str, str]] = []
    body = text or ""
    for match in _TG_INVITE_RE.finditer(body):
        found.append(("invite", match.group(1)))
    for match in _TG_POST_RE.finditer(body):
        channel_id, username, _ = match.groups()
        if channel_id:
            found.append(("channel_id", channel_id))
        elif username and username.lower() not in _RESERVED_PATHS:
            found.append(("username", username))
    return found


class _Collector:
    def __init__(self, views: int, forwards: int, chats: dict[int, Any]) -> None:
        self.views = views
        self.forwards = forwards
        self.chats = chats
        self.items: list[DiscoveryCandidate] = []
        self._seen: set[tuple[str, str]] = set()

    def add(
        self,
        source_type: str,
        *,
        username: str | None = None,
        tg_peer_id: int | None = None,
        invite_hash: str | None = None,
        title: str | None = None,
    ) -> None:
        if username:
            key = ("u", username.lower())
        elif tg_peer_id:
            key = ("p", str(tg_peer_id))
        elif invite_hash:
            key = ("i", invite_hash)
        else:
            return
        if key in self._seen:
            return
        self._seen.add(key)

        access_hash = None
        known = self.chats.get(tg_peer_id) if tg_peer_id else None
        if known is not None:
            access_hash = getattr(known, "access_hash", None)
            title = title or getattr(known, "title", None)
            username = username or getattr(known, "username", None)
        self.items.append(
            DiscoveryCandidate(
                source_type=source_type,
                username=username,
                tg_peer_id=tg_peer_id,
                access_hash=access_hash,
                invite_hash=invite_hash,
                title=title,
                views=self.views,
                forwards=self.forwards,
            )
        )

    def add_peer(self, source_type: str, peer: Any) -> None:
        peer_id = _peer_id(peer)
        if peer_id:
            self.add(source_type, tg_peer_id=peer_id)

    def add_links(self, source_type: str, text: str | None) -> None:
        for kind, value in parse_telegram_links(text):
            if kind == "invite":
                self.add(source_type, invite_hash=value)
            elif kind == "channel_id":
                self.add(source_type, tg_peer_id=_marked_channel_id(int(value)))
            else:
                self.add(source_type, username=value)

    def add_mentions(self, source_type: str, text: str | None) -> None:
        for username in extract_mentions(text):
            self.add(source_type, username=username)


def _collect_forward(collector: _Collector, message: Any) -> None:
    fwd = getattr(message, "fwd_from", None)
    if fwd is None:
        return
    if isinstance(fwd.from_id, PeerChannel):
        collector.add("forward", tg_peer_id=_peer_id(fwd.from_id), title=fwd.from_name)
    if isinstance(getattr(fwd, "saved_from_peer", None), PeerChannel):
        collector.add_peer("saved_from_peer", fwd.saved_from_peer)


def _collect_reply(collector: _Collector, message: Any) -> None:
    reply_to = getattr(message, "reply_to", None)
    peer = getattr(reply_to, "reply_to_peer_id", None)
    if isinstance(peer, PeerChannel):
        collector.add_peer("reply", peer)


def _collect_entities(collector: _Collector, message: Any) -> None:
    for entity in getattr(message, "entities", None) or []:
        if isinstance(entity, MessageEntityTextUrl):
            collector.add_links("entity_text_url", entity.url)
        elif isinstance(entity, MessageEntityMentionName):
            collector.add("entity_mention_name", tg_peer_id=int(entity.user_id))
        elif isinstance(entity, MessageEntityCustomEmoji):
            collector.add("custom_emoji", tg_peer_id=int(entity.document_id))


def _collect_buttons(collector: _Collector, message: Any) -> None:
    markup = getattr(message, "reply_markup", None)
    if not isinstance(markup, ReplyInlineMarkup):
        return
    for row in markup.rows:
        for button in row.buttons:
            if isinstance(button, (KeyboardButtonUrl, KeyboardButtonWebView)):
                collector.add_links("keyboard_url", button.url)
            elif isinstance(button, KeyboardButtonUserProfile):
                collector.add("user_profile_btn", tg_peer_id=int(button.user_id))
            elif isinstance(button, KeyboardButtonSwitchInline):
                collector.add_mentions("switch_inline", button.query)


def _collect_media(collector: _Collector, media: Any) -> None:
    if isinstance(media, MessageMediaWebPage) and isinstance(media.webpage, WebPage):
        page = media.webpage
        collector.add_links("webpage_url", page.url)
        if page.embed_url:
            collector.add_links("embed_url", page.embed_url)
        if page.author:
            collector.add_mentions("webpage_author", page.author)
        if page.site_name and page.site_name.lower() == "telegram":
            collector.add_links("webpage_site", page.display_url)
    elif isinstance(media, MessageMediaGiveaway):
        for channel_id in media.channels or []:
            collector.add("giveaway", tg_peer_id=_marked_channel_id(int(channel_id)))
    elif isinstance(media, MessageMediaStory):
        if isinstance(media.peer, PeerChannel):
            collector.add_peer("story", media.peer)
    elif isinstance(media, MessageMediaPoll):
        results = getattr(media, "results", None)
        for voter in getattr(results, "recent_voters", None) or []:
            if isinstance(voter, PeerChannel):
                collector.add_peer("poll_voter", voter)
    elif isinstance(media, MessageMediaContact):
        if media.user_id:
            collector.add("contact", tg_peer_id=int(media.user_id))
    elif isinstance(media, MessageMediaGame):
        game = media.game
        collector.add_mentions("game", getattr(game, "title", None))
        collector.add_mentions("game", getattr(game, "description", None))
        collector.add_links("game", getattr(game, "description", None))
    elif isinstance(media, MessageMediaInvoice):
        collector.add_mentions("invoice", media.title)
        collector.add_mentions("invoice", media.description)
        collector.add_links("invoice", media.description)


def _collect_reactions(collector: _Collector, message: Any) -> None:
    reactions = getattr(message, "reactions", None)
    for reaction in getattr(reactions, "recent_reactions", None) or []:
        peer = getattr(reaction, "peer_id", None)
        if isinstance(peer, PeerChannel):
            collector.add_peer("reaction", peer)


def _collect_action(collector: _Collector, action: Any) -> None:
    if isinstance(action, MessageActionChatMigrateTo):
        collector.add("migration", tg_peer_id=_marked_channel_id(int(action.channel_id)))
    elif isinstance(action, MessageActionChannelMigrateFrom):
        collector.add_peer("migration", PeerChat(int(action.chat_id)))
    elif isinstance(action, MessageActionChatAddUser):
        for user_id in action.users:
            collector.add("chat_add_user", tg_peer_id=int(user_id))
    elif isinstance(action, MessageActionGiftCode):
        if isinstance(action.boost_peer, PeerChannel):
            collector.add_peer("gift_code", action.boost_peer)
    elif isinstance(action, MessageActionRequestedPeer):
        for peer in action.peers:
            collector.add_peer("requested_peer", peer)
    elif isinstance(action, (MessageActionTopicCreate, MessageActionTopicEdit)):
        collector.add_mentions("topic_title", getattr(action, "title", None))
    elif isinstance(action, MessageActionInviteToGroupCall):
        for user_id in action.users:
            collector.add("group_call_invite", tg_peer_id=int(user_id))
    elif isinstance(action, MessageActionChatJoinedByLink):
        collector.add("invite_joiner", tg_peer_id=int(action.inviter_id))
    elif isinstance(action, MessageActionChatCreate):
        collector.add_mentions("chat_title", action.title)
    elif isinstance(action, MessageActionChannelCreate):
        collector.add_mentions("channel_title", action.title)


def extract_discoveries(
    message: Any,
    *,
    chats: Iterable[Any] = (),
) -> list[DiscoveryCandidate]:
    """Collect channel references from a message, its media, markup and service action.

    ``chats`` are entities returned with the history call; they fill in titles and
    access hashes for peers referenced by id.
    """
    known = {int(get_peer_id(chat)): chat for chat in chats}
    collector = _Collector(
        views=int(getattr(message, "views", None) or 0),
        forwards=int(getattr(message, "forwards", None) or 0),
        chats=known,
    )

    action = getattr(message, "action", None)
    if action is not None:
        _collect_action(collector, action)
        return collector.items

    _collect_forward(collector, message)
    _collect_reply(collector, message)
    collector.add_links("link", getattr(message, "message", None))
    _collect_entities(collector, message)
    collector.add_mentions("mention", getattr(message, "message", None))
    _collect_buttons(collector, message)
    _collect_media(collector, getattr(message, "media", None))
    _collect_reactions(collector, message)

    via_bot_id = getattr(message, "via_bot_id", None)
    if via_bot_id:
        collector.add("via_bot", tg_peer_id=int(via_bot_id))
    return collector.items
