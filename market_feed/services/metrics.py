"""Prometheus instruments shared by the market data services."""

from __future__ import annotations

from prometheus_client import Counter, Histogram


MARKET_DATA_READS = Counter(
    "market_data_reads_total",
    "Market data reads by the source that served them",
    ["source"],
)

SIMULATED_TICKS = Counter(
    "market_data_simulated_ticks_total",
    "Simulated ticks applied to the market dataset",
    ["trends_updated"],
)

INSTRUMENT_TICK_ERRORS = Counter(
    "market_data_instrument_tick_errors_total",
    "Instruments passed through unchanged because their tick failed",
)

UPSTREAM_CALLS = Counter(
    "market_data_upstream_calls_total",
    "Calls made to the upstream quote provider",
    ["endpoint", "status"],
)

FALLBACK_INSTRUMENTS = Counter(
    "market_data_fallback_instruments_total",
    "Instruments synthesised during an authoritative refresh",
    ["reason"],
)

STORE_ERRORS = Counter(
    "market_data_store_errors_total",
    "Cache store operations that failed and were degraded",
    ["operation"],
)

SCHEDULED_TASK_RUNS = Counter(
    "scheduler_task_runs_total",
    "Scheduled task executions by outcome",
    ["task_id", "status"],
)

SCHEDULED_TASK_DURATION = Histogram(
    "scheduler_task_duration_seconds",
    "Time taken by a scheduled task body",
    ["task_id"],
)

RATE_LIMIT_DECISIONS = Counter(
    "rate_limit_decisions_total",
    "Rate limiter outcomes",
    ["scope", "outcome"],
)
