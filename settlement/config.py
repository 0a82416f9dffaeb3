"""Core settlement configuration & tunable governance rules.

Every rule that may evolve (poll cadence, retry/backoff bounds, revenue split,
on-chain retry policy, log throttling tiers, defense hard caps) is centralized
here so it can be adjusted without diving into worker logic. Values come from
environment variables where a deployment is expected to override them; tests
monkeypatch the dicts directly.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in {"1", "true", "yes", "on"}


# --------------------------- Settlement Worker ---------------------------- #
WORKER_SETTINGS: dict[str, int | float] = {
	"poll_interval_seconds": float(os.getenv("POST_TRADE_POLL_SECONDS", "5")),
	"batch_size": int(os.getenv("POST_TRADE_BATCH", "10")),
	"default_max_attempts": int(os.getenv("POST_TRADE_MAX_ATTEMPTS", "3")),
	# A job still 'processing' after this long is assumed orphaned by a crash.
	"stale_after_seconds": int(os.getenv("POST_TRADE_STALE_SECONDS", "300")),
	"stale_sweep_interval_seconds": int(os.getenv("POST_TRADE_STALE_SWEEP_SECONDS", "60")),
	# Bound on joining the worker and periodic threads at shutdown.
	"shutdown_timeout_seconds": float(os.getenv("SETTLEMENT_SHUTDOWN_TIMEOUT_SECONDS", "10")),
}

# ------------------------------- Job Backoff ------------------------------ #
JOB_BACKOFF_POLICY: dict[str, int] = {
	"base_ms": 1000,
	"factor": 2,        # Exponential factor
	"max_ms": 60000,
}

# ------------------------------ Revenue Split ----------------------------- #
REVENUE_SPLIT: dict[str, float | str] = {
	"holder_pct": 0.15,   # Token holders (delivered on-chain)
	"reserve_pct": 0.85,  # Platform reserve
	"default_currency": os.getenv("SETTLEMENT_CURRENCY", "USD"),
}

# ---------------------------- Ledger Aggregator --------------------------- #
AGGREGATOR_SETTINGS: dict[str, int] = {
	# Turn off in processes that should not fold (e.g. extra API replicas).
	"enabled": _env_bool("LEDGER_AGGREGATOR_ENABLED", True),
	"interval_seconds": int(os.getenv("LEDGER_AGGREGATOR_INTERVAL_SECONDS", "300")),
	"batch_limit": int(os.getenv("LEDGER_AGGREGATOR_BATCH_LIMIT", "10000")),
	# Events younger than this are left for the next run (in-flight inserts).
	"settle_lag_seconds": int(os.getenv("LEDGER_AGGREGATOR_SETTLE_LAG_SECONDS", "5")),
	"healthy_within_seconds": 600,
}

# ----------------------------- On-Chain Retry ----------------------------- #
ONCHAIN_SETTINGS: dict[str, int | float | bool] = {
	"enabled": _env_bool("ONCHAIN_DELIVERY_ENABLED", False),
	"poll_interval_seconds": float(os.getenv("ONCHAIN_RETRY_POLL_SECONDS", "60")),
	"batch_size": int(os.getenv("ONCHAIN_RETRY_BATCH", "20")),
	"max_retry_attempts": int(os.getenv("ONCHAIN_MAX_RETRIES", "5")),
	"max_backoff_minutes": int(os.getenv("ONCHAIN_MAX_BACKOFF_MINUTES", "60")),
	# Never-attempted events become eligible once older than this.
	"unattempted_grace_minutes": int(os.getenv("ONCHAIN_UNATTEMPTED_GRACE_MINUTES", "5")),
	"report_grace_minutes": int(os.getenv("ONCHAIN_REPORT_GRACE_MINUTES", "10")),
	"inflight_timeout_minutes": int(os.getenv("ONCHAIN_INFLIGHT_TIMEOUT_MINUTES", "15")),
	# Static settlement-currency -> native conversion used when no price feed is wired.
	"native_per_settlement_unit": float(os.getenv("ONCHAIN_NATIVE_PER_SETTLEMENT_UNIT", "0")),
}

# ------------------------------ Log Throttling ---------------------------- #
LOG_THROTTLE_SETTINGS: dict[str, int | bool | str] = {
	"log_every_first_n": 10,
	"tier_two_limit": 100,
	"tier_two_every": 10,
	"tier_three_every": 100,
	"max_keys": 1024,
	"use_redis": _env_bool("LOG_THROTTLE_USE_REDIS", False),
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"redis_key_prefix": "settlement:logcap:",
	"redis_ttl_seconds": 86400,
	"redis_health_check_timeout": 2,
}

# ------------------------------ Revenue Defense --------------------------- #
DEFENSE_SETTINGS: dict[str, int | float | str] = {
	# Hard caps (ceilings no parameter change may exceed)
	"max_maker_rebate_bps": int(os.getenv("MAX_MAKER_REBATE_BPS", "50")),      # 0.5%
	"max_taker_fee_bps": int(os.getenv("MAX_TAKER_FEE_BPS", "100")),           # 1%
	"max_commission_bps": int(os.getenv("MAX_COMMISSION_BPS", "2000")),        # 20%
	"max_withdrawal_fee_pct": float(os.getenv("MAX_WITHDRAWAL_FEE_PCT", "2.0")),
	# Concentration limits (percent of revenue in the window)
	"max_single_user_pct": float(os.getenv("MAX_SINGLE_USER_DAILY_PCT", "20.0")),
	"max_top5_users_pct": float(os.getenv("MAX_TOP5_USERS_DAILY_PCT", "50.0")),
	"gini_warning": float(os.getenv("GINI_COEFFICIENT_WARNING", "0.7")),
	"negative_net_threshold": float(os.getenv("NEGATIVE_NET_THRESHOLD_USD", "1000")),
	# Timelock
	"parameter_change_delay_seconds": int(os.getenv("PARAMETER_CHANGE_DELAY_SECONDS", "86400")),
	"interval_seconds": 3600,
	"missing_event_lookback_hours": 24,
	"negative_flow_days": 7,
	"approved_recipients": os.getenv("APPROVED_RECIPIENTS", ""),
}

# Active fee parameters; only ever changed through the timelock.
FEE_PARAMETERS: dict[str, float] = {
	"maker_rebate_bps": float(os.getenv("TRADING_FEE_MAKER_REBATE_BPS", "2")),
	"taker_fee_bps": float(os.getenv("TRADING_FEE_TAKER_BPS", "12")),
	"commission_bps": float(os.getenv("COPY_TRADING_COMMISSION_BPS", "1000")),
	"withdrawal_fee_pct": float(os.getenv("WITHDRAWAL_FEE_PERCENT", "0.5")),
}

# ----------------------------- Circuit Breaker ---------------------------- #
CIRCUIT_BREAKER: dict[str, int | float] = {
	"failure_threshold": 5,          # Consecutive failures before OPEN
	"open_cooldown_seconds": 300,    # Stay OPEN for 5 minutes
	"half_open_probe_count": 3,      # Probes allowed in HALF_OPEN
}

# -------------------------------- Alerting -------------------------------- #
ALERTING_SETTINGS: dict[str, int] = {
	"recent_alerts_kept": 500,
	"dead_letter_critical_count": 10,
	"failed_warning_count": 50,
}

__all__ = [
	"WORKER_SETTINGS",
	"JOB_BACKOFF_POLICY",
	"REVENUE_SPLIT",
	"AGGREGATOR_SETTINGS",
	"ONCHAIN_SETTINGS",
	"LOG_THROTTLE_SETTINGS",
	"DEFENSE_SETTINGS",
	"FEE_PARAMETERS",
	"CIRCUIT_BREAKER",
	"ALERTING_SETTINGS",
]
