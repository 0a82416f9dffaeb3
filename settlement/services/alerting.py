"""Operator alert channel.

Only exhausted retries and integrity anomalies reach operators:

1. Job dead-lettered -> SYSTEM_HEALTH / HIGH.
2. On-chain delivery out of retries -> SYSTEM_HEALTH / CRITICAL.
3. Concentration over threshold -> FRAUD / MEDIUM.
4. Negative net flows (wash-trading signal) -> FRAUD / HIGH.
5. Missing revenue events -> DATA_QUALITY / HIGH.
6. Rejected fee-parameter change -> GOVERNANCE / HIGH.

Each alert is written as a business event (audit log) and kept in a bounded
in-process ring for the operator API. Losing the ring on restart is fine; the
audit log is the durable record.
"""
from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from settlement.config import ALERTING_SETTINGS
from settlement.models.db.enums import AlertCategory, AlertSeverity
from settlement.utils import get_logger, log_business_event
from settlement.utils.time import utc_now

logger = get_logger(__name__)

_SEVERITY_LEVELS = {
    AlertSeverity.LOW: logging.INFO,
    AlertSeverity.MEDIUM: logging.WARNING,
    AlertSeverity.HIGH: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


@dataclass
class OperatorAlert:
    id: int
    category: AlertCategory
    severity: AlertSeverity
    title: str
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "severity": self.severity.value,
            "title": self.title,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
        }


_lock = threading.Lock()
_ids = itertools.count(1)
_recent: deque[OperatorAlert] = deque(maxlen=int(ALERTING_SETTINGS["recent_alerts_kept"]))


def raise_operator_alert(
    category: AlertCategory,
    severity: AlertSeverity,
    title: str,
    details: Optional[dict[str, Any]] = None,
    *,
    correlation_id: Optional[str] = None,
) -> OperatorAlert:
    details = dict(details or {})
    with _lock:
        alert = OperatorAlert(id=next(_ids), category=category, severity=severity, title=title, details=details)
        _recent.append(alert)
    logger.log(
        _SEVERITY_LEVELS[severity],
        f"Operator alert: {title}",
        alert_id=alert.id,
        category=category.value,
        severity=severity.value,
        correlation_id=correlation_id,
    )
    log_business_event(
        "operator_alert",
        {"alert_id": alert.id, "category": category.value, "severity": severity.value, "title": title, "details": details},
        correlation_id=correlation_id,
    )
    return alert


def recent_alerts(
    limit: int = 50,
    *,
    category: Optional[AlertCategory] = None,
    severity: Optional[AlertSeverity] = None,
) -> list[OperatorAlert]:
    """Newest first."""
    with _lock:
        items = list(_recent)
    items.reverse()
    if category is not None:
        items = [a for a in items if a.category == category]
    if severity is not None:
        items = [a for a in items if a.severity == severity]
    return items[:limit]


def clear_alerts() -> None:
    with _lock:
        _recent.clear()


__all__ = ["OperatorAlert", "raise_operator_alert", "recent_alerts", "clear_alerts"]
