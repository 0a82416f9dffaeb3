"""Observability helpers (correlation IDs, request IDs)."""
from __future__ import annotations
import uuid
from typing import Mapping

REQUEST_ID_HEADER = "X-Request-ID"

def ensure_request_id(headers: Mapping[str, str]) -> str:
    return headers.get(REQUEST_ID_HEADER, None) or str(uuid.uuid4())

def trade_correlation_id(trade_id: str, correlation_id: str | None = None) -> str:
    """Jobs spawned by one trade share this id so their logs can be joined."""
    return correlation_id or f"trade-{trade_id}"

__all__ = ["ensure_request_id", "trade_correlation_id", "REQUEST_ID_HEADER"]
