from __future__ import annotations

from tgdigest.digest.build import DigestBuilder, DigestOutcome, load_digest_settings
from tgdigest.digest.format import render_digest

__all__ = ["DigestBuilder", "DigestOutcome", "load_digest_settings", "render_digest"]
