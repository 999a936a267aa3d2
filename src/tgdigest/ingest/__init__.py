from __future__ import annotations

from tgdigest.ingest.normalize import NormalizedMessage, canonical_hash, normalize_message
from tgdigest.ingest.reader import Reader

__all__ = ["NormalizedMessage", "Reader", "canonical_hash", "normalize_message"]
