"""Prometheus instruments shared by every role."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Reader
reader_messages_total = Counter(
    "tgdigest_reader_messages_total", "Raw messages persisted by the reader"
)
reader_flood_waits_total = Counter(
    "tgdigest_reader_flood_waits_total", "FloodWait errors received from Telegram"
)
reader_channel_errors_total = Counter(
    "tgdigest_reader_channel_errors_total", "Per-channel fetch failures"
)

# Pipeline
pipeline_items_total = Counter(
    "tgdigest_pipeline_items_total", "Items written by the pipeline", ["status"]
)
pipeline_drops_total = Counter(
    "tgdigest_pipeline_drops_total", "Items rejected by the pipeline", ["reason"]
)
pipeline_batch_seconds = Histogram(
    "tgdigest_pipeline_batch_seconds",
    "Pipeline batch duration",
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)

# LLM
llm_requests_total = Counter(
    "tgdigest_llm_requests_total", "LLM calls by outcome", ["provider", "task", "outcome"]
)
llm_fallbacks_total = Counter(
    "tgdigest_llm_fallbacks_total", "Calls served by a non-primary provider", ["task"]
)
llm_tokens_total = Counter("tgdigest_llm_tokens_total", "Tokens consumed", ["provider"])
llm_cost_usd_total = Counter("tgdigest_llm_cost_usd_total", "Estimated LLM spend", ["provider"])
llm_circuit_open = Gauge(
    "tgdigest_llm_circuit_open", "1 while the provider circuit is open", ["provider"]
)
llm_budget_tokens = Gauge("tgdigest_llm_budget_tokens_used", "Tokens used today")

# Digest
digest_posts_total = Counter("tgdigest_digest_posts_total", "Digest builds by outcome", ["outcome"])
digest_build_seconds = Histogram(
    "tgdigest_digest_build_seconds",
    "Digest build and delivery duration",
    buckets=(1, 2, 5, 10, 30, 60, 120, 300),
)
