from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import struct
from datetime import datetime, timedelta, timezone

TOKEN_TTL = timedelta(days=30)
_SIGNATURE_BYTES = 16
_PAYLOAD = struct.Struct(">qq")


class ExpandedTokenError(ValueError):
    pass


def _sign(payload: bytes, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()[:_SIGNATURE_BYTES]


def sign_item_token(item_id: int, secret: str, *, expires_at: datetime) -> str:
    """URL-safe token carrying the item id and expiry, signed with HMAC-SHA256."""
    if not secret:
        raise ExpandedTokenError("signing secret is empty")
    payload = _PAYLOAD.pack(int(item_id), int(expires_at.timestamp()))
    token = base64.urlsafe_b64encode(payload + _sign(payload, secret))
    return token.decode("ascii").rstrip("=")


def verify_item_token(token: str, secret: str, *, now: datetime | None = None) -> int:
    """Return the item id of a valid token; raises ExpandedTokenError otherwise."""
    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ExpandedTokenError("malformed token") from exc
    if len(raw) != _PAYLOAD.size + _SIGNATURE_BYTES:
        raise ExpandedTokenError("malformed token")

    payload, signature = raw[: _PAYLOAD.size], raw[_PAYLOAD.size :]
    if not hmac.compare_digest(signature, _sign(payload, secret)):
        raise ExpandedTokenError("bad signature")

    item_id, expires = _PAYLOAD.unpack(payload)
    current = now or datetime.now(timezone.utc)
    if current.timestamp() > expires:
        raise ExpandedTokenError("token expired")
    return item_id


def expanded_url(
    base_url: str, item_id: int, secret: str, *, now: datetime | None = None
) -> str:
    current = now or datetime.now(timezone.utc)
    token = sign_item_token(item_id, secret, expires_at=current + TOKEN_TTL)
    return f"{base_url.rstrip('/')}/i/{token}"
