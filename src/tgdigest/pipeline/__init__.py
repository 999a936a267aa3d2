from __future__ import annotations

from tgdigest.pipeline.worker import BatchStats, Worker

__all__ = ["BatchStats", "Worker"]
