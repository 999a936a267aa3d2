from __future__ import annotations

import re
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from loguru import logger
from tenacity import RetryCallState, retry, retry_if_exception_type, stop_after_attempt
from telethon import TelegramClient
from telethon.errors import (
    ChannelPrivateError,
    FloodWaitError,
    InviteHashExpiredError,
    InviteHashInvalidError,
    UserAlreadyParticipantError,
    UsernameInvalidError,
    UsernameNotOccupiedError,
)
from telethon.tl.functions.messages import CheckChatInviteRequest, ImportChatInviteRequest
from telethon.tl.types import (
    ChatInvite,
    ChatInviteAlready,
    ChatInvitePeek,
    InputPeerChannel,
    User,
)
from telethon.utils import get_peer_id, resolve_id

from tgdigest import metrics

_INVITE_RE = re.compile(r"(?:^|/)joinchat/(?P<hash>[\w-]+)$", re.IGNORECASE)
REQUEST_TIMEOUT = 30


class TelegramReadError(RuntimeError):
    pass


def extract_invite_hash(ref: str) -> str | None:
    cleaned = ref.strip()
    if cleaned.startswith("https://") or cleaned.startswith("http://"):
        path = urlparse(cleaned).path.strip("/")
    elif cleaned.startswith("t.me/"):
        path = urlparse(f"https://{cleaned}").path.strip("/")
    else:
        path = cleaned.strip("/")

    if path.startswith("+"):
        return path[1:] or None

    match = _INVITE_RE.search(path)
    if match:
        return match.group("hash")
    return None


def extract_username(ref: str) -> str:
    cleaned = ref.strip()
    if cleaned.startswith("@"):
        cleaned = cleaned[1:]
    elif cleaned.startswith("https://") or cleaned.startswith("http://"):
        cleaned = urlparse(cleaned).path.strip("/").split("/")[0]
    elif cleaned.startswith("t.me/"):
        cleaned = urlparse(f"https://{cleaned}").path.strip("/").split("/")[0]

    if not cleaned:
        raise ValueError("cannot resolve: empty reference")
    return cleaned


def _flood_wait(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, FloodWaitError):
        return float(exc.seconds)
    return 1.0


def _before_flood_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    metrics.reader_flood_waits_total.inc()
    logger.warning(
        "reader flood wait seconds={} attempt={}",
        getattr(exc, "seconds", "?"),
        retry_state.attempt_number,
    )


class UserTelegramClient:
    """MTProto user session used by the reader."""

    def __init__(
        self,
        api_id: int,
        api_hash: str,
        session_path: str,
        *,
        phone: str | None = None,
        password: str | None = None,
    ) -> None:
        self.api_id = api_id
        self.api_hash = api_hash
        self.session_path = Path(session_path)
        self._phone = phone
        self._password = password
        self._client = TelegramClient(
            str(self.session_path), api_id, api_hash, timeout=REQUEST_TIMEOUT
        )

    @property
    def client(self) -> TelegramClient:
        return self._client

    async def connect(self, allow_interactive_login: bool = True) -> None:
        self.session_path.parent.mkdir(parents=True, exist_ok=True)
        await self._client.connect()
        if await self._client.is_user_authorized():
            return
        if not allow_interactive_login:
            await self._client.disconnect()
            raise TelegramReadError(
                "Telethon session is not authorized. Run `tgdigest tg:whoami` first."
            )
        logger.info("telegram session not authorized, starting interactive login")
        start_kwargs: dict[str, Any] = {}
        if self._phone:
            start_kwargs["phone"] = self._phone
        if self._password:
            start_kwargs["password"] = self._password
        await self._client.start(**start_kwargs)

    async def disconnect(self) -> None:
        await self._client.disconnect()

    async def whoami(self) -> str:
        me: User = await self._client.get_me()
        if me.username:
            return f"@{me.username}"
        if me.phone:
            return me.phone
        return str(me.id)

    async def resolve_username(self, username: str) -> Any:
        ref = extract_username(username)
        try:
            return await self._client.get_entity(ref)
        except UsernameInvalidError as exc:
            raise TelegramReadError("cannot resolve: invalid username") from exc
        except UsernameNotOccupiedError as exc:
            raise TelegramReadError("cannot resolve: username not found") from exc
        except (ValueError, ChannelPrivateError) as exc:
            raise TelegramReadError(f"cannot resolve: {exc}") from exc

    async def resolve_peer_id(self, tg_peer_id: int) -> Any:
        try:
            peer_id, peer_type = resolve_id(tg_peer_id)
            return await self._client.get_entity(peer_type(peer_id))
        except (ValueError, ChannelPrivateError) as exc:
            raise TelegramReadError(f"cannot resolve peer id {tg_peer_id}: {exc}") from exc

    def input_peer(self, tg_peer_id: int, access_hash: int) -> InputPeerChannel:
        channel_id, _ = resolve_id(tg_peer_id)
        return InputPeerChannel(channel_id=channel_id, access_hash=access_hash)

    async def import_invite(self, invite_hash: str) -> Any:
        """Join by invite hash; an existing membership is re-checked via CheckChatInvite."""
        try:
            updates = await self._client(ImportChatInviteRequest(invite_hash))
        except UserAlreadyParticipantError:
            entity = await self.check_invite(invite_hash)
            if isinstance(entity, ChatInvite):
                raise TelegramReadError("invite does not grant access")
            return entity
        except InviteHashInvalidError as exc:
            raise TelegramReadError("invite invalid") from exc
        except InviteHashExpiredError as exc:
            raise TelegramReadError("invite expired") from exc
        except ChannelPrivateError as exc:
            raise TelegramReadError("private channel requires access") from exc

        chats = getattr(updates, "chats", None) or []
        if chats:
            return chats[0]
        raise TelegramReadError("invite invalid")

    async def check_invite(self, invite_hash: str) -> Any:
        """Chat entity for joined or peekable invites, otherwise the bare ChatInvite preview."""
        try:
            invite = await self._client(CheckChatInviteRequest(invite_hash))
        except (InviteHashInvalidError, InviteHashExpiredError) as exc:
            raise TelegramReadError("invite invalid") from exc
        if isinstance(invite, (ChatInviteAlready, ChatInvitePeek)):
            return invite.chat
        return invite

    @retry(
        retry=retry_if_exception_type(FloodWaitError),
        wait=_flood_wait,
        stop=stop_after_attempt(2),
        reraise=True,
        before_sleep=_before_flood_sleep,
    )
    async def fetch_history(self, peer: Any, *, min_id: int, limit: int) -> list[Any]:
        """Messages with id above ``min_id``, oldest first."""
        messages = await self._client.get_messages(
            peer, limit=limit, min_id=min_id, reverse=True
        )
        return sorted(messages, key=lambda message: message.id)

    async def download_media(self, message: Any) -> bytes | None:
        data = await self._client.download_media(message, file=bytes)
        return data if isinstance(data, (bytes, bytearray)) else None

    @staticmethod
    def entity_info(entity: Any) -> dict[str, Any]:
        title = getattr(entity, "title", None) or getattr(entity, "username", None)
        return {
            "tg_peer_id": int(get_peer_id(entity)),
            "access_hash": getattr(entity, "access_hash", None),
            "username": getattr(entity, "username", None),
            "title": title,
        }
