"""Revenue defense: concentration, wash-trading and completeness checks plus
timelocked fee-parameter governance.

Anomalies are reported and alerted, never auto-corrected. Fee parameters are
validated against hard caps when a change is requested and again when it
becomes due; a change that fails either check is never applied.
"""
from __future__ import annotations

import threading
import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from settlement.config import DEFENSE_SETTINGS, FEE_PARAMETERS
from settlement.database import SessionLocal
from settlement.exceptions import FeeParameterViolation, UnauthorizedRecipient, UnknownParameterChange
from settlement.models.db.enums import AlertCategory, AlertSeverity, FeeRole, ParameterChangeStatus, RevenueStreamId
from settlement.models.db.ledger_entries import LedgerEntry
from settlement.models.db.revenue_events import RevenueEvent
from settlement.models.db.sources import TradeRecord, TransactionRecord
from settlement.services.alerting import raise_operator_alert
from settlement.utils import get_logger, log_business_event
from settlement.utils.metrics import gini_coefficient, safe_div, top_n_share_pct
from settlement.utils.time import ensure_utc, utc_now

logger = get_logger(__name__)

# parameter key -> hard cap key
FEE_PARAMETER_CAPS: dict[str, str] = {
    "maker_rebate_bps": "max_maker_rebate_bps",
    "taker_fee_bps": "max_taker_fee_bps",
    "commission_bps": "max_commission_bps",
    "withdrawal_fee_pct": "max_withdrawal_fee_pct",
}

_MISSING_SAMPLE_SIZE = 5
_NEGATIVE_FLOW_LIMIT = 50


def validate_fee_parameters(params: Mapping[str, Any]) -> None:
    """Raise FeeParameterViolation listing every parameter outside its cap."""
    violations: list[dict[str, Any]] = []
    for key, raw in params.items():
        cap_key = FEE_PARAMETER_CAPS.get(key)
        if cap_key is None:
            violations.append({"param": key, "value": raw, "max": None, "message": f"Unknown fee parameter {key}"})
            continue
        try:
            value = float(raw)
        except (TypeError, ValueError):
            violations.append({"param": key, "value": raw, "max": None, "message": f"{key} must be numeric"})
            continue
        cap = float(DEFENSE_SETTINGS[cap_key])
        if value < 0:
            violations.append({"param": key, "value": value, "max": cap, "message": f"{key} must not be negative"})
        elif value > cap:
            violations.append({"param": key, "value": value, "max": cap, "message": f"{key} exceeds hard cap of {cap:g}"})
    if violations:
        logger.error("Fee parameter validation failed", violations=violations)
        raise FeeParameterViolation(violations)


# ---------------------------------------------------------------------- #
# Source records
# ---------------------------------------------------------------------- #
@dataclass(frozen=True)
class SourceRecord:
    stream: str
    ref_id: str
    occurred_at: datetime


class SourceRecordProvider(Protocol):
    def records_since(self, since: datetime) -> Iterable[SourceRecord]: ...


class SqlSourceRecordProvider:
    """Reads upstream-owned ``trades`` and completed withdrawal ``transactions``."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal

    def records_since(self, since: datetime) -> list[SourceRecord]:
        session: Session = self._session_factory()
        try:
            trades = session.execute(
                select(TradeRecord.id, TradeRecord.created_at).where(TradeRecord.created_at >= since)
            ).all()
            withdrawals = session.execute(
                select(TransactionRecord.id, TransactionRecord.created_at).where(
                    TransactionRecord.type == "withdrawal",
                    TransactionRecord.status == "completed",
                    TransactionRecord.created_at >= since,
                )
            ).all()
        finally:
            session.close()
        records = [SourceRecord(RevenueStreamId.TRADING_FEES.name, str(i), ensure_utc(ts)) for i, ts in trades]
        records += [SourceRecord(RevenueStreamId.WITHDRAWAL_FEES.name, str(i), ensure_utc(ts)) for i, ts in withdrawals]
        return records


# ---------------------------------------------------------------------- #
# Timelock
# ---------------------------------------------------------------------- #
@dataclass
class ParameterChange:
    id: str
    key: str
    old_value: Optional[float]
    new_value: float
    requested_by: str
    requested_at: datetime
    execute_at: datetime
    status: ParameterChangeStatus = ParameterChangeStatus.PENDING
    executed_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class ParameterTimelock:
    """Request/execute split for fee parameters (process memory only).

    A restart drops pending changes, which means they are simply never applied.
    """

    def __init__(self, parameters: Optional[dict[str, float]] = None, *, delay_seconds: Optional[int] = None):
        self.parameters = parameters if parameters is not None else FEE_PARAMETERS
        self.delay_seconds = delay_seconds
        self._changes: dict[str, ParameterChange] = {}
        self._lock = threading.Lock()

    def _delay(self) -> timedelta:
        seconds = self.delay_seconds if self.delay_seconds is not None else DEFENSE_SETTINGS["parameter_change_delay_seconds"]
        return timedelta(seconds=int(seconds))

    def request(self, key: str, new_value: float, requested_by: str, *, now: Optional[datetime] = None) -> ParameterChange:
        now = now or utc_now()
        validate_fee_parameters({**self.parameters, key: new_value})
        change = ParameterChange(
            id=f"{key}_{uuid.uuid4().hex[:12]}",
            key=key,
            old_value=self.parameters.get(key),
            new_value=float(new_value),
            requested_by=requested_by,
            requested_at=now,
            execute_at=now + self._delay(),
        )
        with self._lock:
            self._changes[change.id] = change
        logger.warning(
            "Parameter change requested (timelock active)",
            change_id=change.id,
            key=key,
            new_value=change.new_value,
            execute_at=change.execute_at.isoformat(),
            requested_by=requested_by,
        )
        return change

    def execute_due(self, *, now: Optional[datetime] = None) -> list[ParameterChange]:
        """Apply every pending change whose delay has elapsed; returns those processed."""
        now = now or utc_now()
        with self._lock:
            due = [c for c in self._changes.values() if c.status == ParameterChangeStatus.PENDING and now >= c.execute_at]
        processed: list[ParameterChange] = []
        for change in sorted(due, key=lambda c: c.execute_at):
            try:
                validate_fee_parameters({**self.parameters, change.key: change.new_value})
            except FeeParameterViolation as e:
                change.status = ParameterChangeStatus.FAILED
                change.error = str(e)
                logger.error("Parameter change execution failed", change_id=change.id, error=str(e))
                processed.append(change)
                continue
            change.old_value = self.parameters.get(change.key)
            self.parameters[change.key] = change.new_value
            change.status = ParameterChangeStatus.EXECUTED
            change.executed_at = now
            log_business_event(
                "parameter_change_executed",
                {"change_id": change.id, "key": change.key, "old_value": change.old_value, "new_value": change.new_value},
            )
            processed.append(change)
        return processed

    def cancel(self, change_id: str) -> ParameterChange:
        with self._lock:
            change = self._changes.get(change_id)
            if change is None:
                raise UnknownParameterChange(change_id)
            if change.status != ParameterChangeStatus.PENDING:
                raise UnknownParameterChange(f"{change_id} is {change.status.value}, not pending")
            change.status = ParameterChangeStatus.CANCELLED
        logger.info("Parameter change cancelled", change_id=change_id)
        return change

    def recent(self, hours: int = 24, *, now: Optional[datetime] = None) -> list[ParameterChange]:
        now = now or utc_now()
        since = now - timedelta(hours=hours)
        with self._lock:
            items = [c for c in self._changes.values() if c.requested_at >= since]
        return sorted(items, key=lambda c: c.requested_at, reverse=True)


# ---------------------------------------------------------------------- #
# Service
# ---------------------------------------------------------------------- #
class RevenueDefenseService:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        *,
        source_provider: Optional[SourceRecordProvider] = None,
        timelock: Optional[ParameterTimelock] = None,
        approved_recipients: Optional[Iterable[str]] = None,
    ):
        self._session_factory = session_factory or SessionLocal
        self.source_provider = source_provider or SqlSourceRecordProvider(self._session_factory)
        self.timelock = timelock or ParameterTimelock()
        if approved_recipients is None:
            approved_recipients = str(DEFENSE_SETTINGS["approved_recipients"]).split(",")
        self.recipient_registry = frozenset(r.strip() for r in approved_recipients if r and r.strip())
        self.last_report: dict[str, Any] | None = None

    # -- policy ----------------------------------------------------------
    def validate_fee_parameters(self, params: Mapping[str, Any]) -> bool:
        validate_fee_parameters(params)
        return True

    def validate_recipient(self, recipient: str) -> bool:
        if recipient not in self.recipient_registry:
            logger.error("Unauthorized recipient", recipient=recipient)
            raise UnauthorizedRecipient(f"Recipient not in approved registry: {recipient}")
        return True

    def request_parameter_change(self, key: str, new_value: float, requested_by: str, *, now: Optional[datetime] = None) -> ParameterChange:
        try:
            return self.timelock.request(key, new_value, requested_by, now=now)
        except FeeParameterViolation as e:
            raise_operator_alert(
                AlertCategory.GOVERNANCE,
                AlertSeverity.HIGH,
                "Fee parameter change rejected",
                {"key": key, "new_value": new_value, "requested_by": requested_by, "violations": e.violations},
            )
            raise

    def execute_pending_changes(self, *, now: Optional[datetime] = None) -> list[ParameterChange]:
        processed = self.timelock.execute_due(now=now)
        for change in processed:
            if change.status == ParameterChangeStatus.FAILED:
                raise_operator_alert(
                    AlertCategory.GOVERNANCE,
                    AlertSeverity.HIGH,
                    "Timelocked fee parameter change rejected at execution",
                    {"change_id": change.id, "key": change.key, "new_value": change.new_value, "error": change.error},
                )
        return processed

    def cancel_parameter_change(self, change_id: str) -> ParameterChange:
        return self.timelock.cancel(change_id)

    def recent_parameter_changes(self, hours: int = 24, *, now: Optional[datetime] = None) -> list[ParameterChange]:
        return self.timelock.recent(hours, now=now)

    def current_parameters(self) -> dict[str, Any]:
        return {
            "parameters": dict(self.timelock.parameters),
            "hard_caps": {key: DEFENSE_SETTINGS[cap] for key, cap in FEE_PARAMETER_CAPS.items()},
        }

    # -- checks ----------------------------------------------------------
    def calculate_concentration(self, start: date | datetime, end: date | datetime) -> dict[str, Any]:
        """Inequality of per-user ledger revenue for periods in [start, end)."""
        start_day = start.date() if isinstance(start, datetime) else start
        end_day = end.date() if isinstance(end, datetime) else end
        session: Session = self._session_factory()
        try:
            rows = session.execute(
                select(LedgerEntry.user_id, func.sum(LedgerEntry.gross_total))
                .where(LedgerEntry.period >= start_day, LedgerEntry.period < end_day)
                .group_by(LedgerEntry.user_id)
            ).all()
        finally:
            session.close()

        totals = {user_id: float(total or 0) for user_id, total in rows}
        total_revenue = sum(v for v in totals.values() if v > 0)
        result: dict[str, Any] = {
            "start": start_day.isoformat(),
            "end": end_day.isoformat(),
            "user_count": len(totals),
            "total_revenue": round(total_revenue, 8),
            "gini_coefficient": 0.0,
            "top1_pct": 0.0,
            "top5_pct": 0.0,
            "top_users": [],
            "warning": False,
            "reasons": [],
        }
        if not totals or total_revenue == 0:
            return result

        values = list(totals.values())
        gini = gini_coefficient(values)
        top1 = top_n_share_pct(values, 1)
        top5 = top_n_share_pct(values, 5)
        reasons = []
        if gini > float(DEFENSE_SETTINGS["gini_warning"]):
            reasons.append("gini_coefficient")
        if top1 > float(DEFENSE_SETTINGS["max_single_user_pct"]):
            reasons.append("top1_pct")
        if top5 > float(DEFENSE_SETTINGS["max_top5_users_pct"]):
            reasons.append("top5_pct")
        ranked = sorted(totals.items(), key=lambda kv: kv[1], reverse=True)[:5]
        result.update(
            gini_coefficient=round(gini, 6),
            top1_pct=round(top1, 4),
            top5_pct=round(top5, 4),
            top_users=[
                {"user_id": uid, "revenue": round(v, 8), "share_pct": round(safe_div(max(v, 0.0), total_revenue) * 100, 4)}
                for uid, v in ranked
            ],
            warning=bool(reasons),
            reasons=reasons,
        )
        if reasons:
            logger.warning(
                "Revenue concentration alert",
                gini=result["gini_coefficient"],
                top1_pct=result["top1_pct"],
                top5_pct=result["top5_pct"],
                reasons=reasons,
            )
        return result

    def detect_negative_net_flows(self, days: Optional[int] = None, *, now: Optional[datetime] = None) -> list[dict[str, Any]]:
        """Users whose maker-rebate income exceeds their taker-fee expense by more than the threshold."""
        now = now or utc_now()
        days = int(days if days is not None else DEFENSE_SETTINGS["negative_flow_days"])
        since = now - timedelta(days=days)
        session: Session = self._session_factory()
        try:
            rows = session.execute(
                select(RevenueEvent.user_id, RevenueEvent.gross_amount, RevenueEvent.event_metadata).where(
                    RevenueEvent.source_type == RevenueStreamId.TRADING_FEES.name,
                    RevenueEvent.user_id.is_not(None),
                    RevenueEvent.created_at >= since,
                )
            ).all()
        finally:
            session.close()

        flows: dict[str, dict[str, float]] = defaultdict(lambda: {"maker_rebates": 0.0, "taker_fees": 0.0, "total_fees": 0.0})
        for user_id, gross, metadata in rows:
            role = str((metadata or {}).get("role", "")).upper()
            bucket = flows[user_id]
            amount = float(gross or 0)
            bucket["total_fees"] += amount
            if role == FeeRole.MAKER.value:
                bucket["maker_rebates"] += amount
            elif role == FeeRole.TAKER.value:
                bucket["taker_fees"] += amount

        threshold = float(DEFENSE_SETTINGS["negative_net_threshold"])
        flagged = []
        for user_id, f in flows.items():
            net_flow = f["maker_rebates"] - f["taker_fees"]
            if net_flow > threshold:
                flagged.append({"user_id": user_id, **{k: round(v, 8) for k, v in f.items()}, "net_flow": round(net_flow, 8)})
        flagged.sort(key=lambda r: r["net_flow"], reverse=True)
        flagged = flagged[:_NEGATIVE_FLOW_LIMIT]
        if flagged:
            logger.warning("Negative net flow detected (potential wash trading)", count=len(flagged), top_offender=flagged[0])
        return flagged

    def detect_missing_revenue_events(self, hours: Optional[int] = None, *, now: Optional[datetime] = None) -> list[dict[str, Any]]:
        """Source records with no matching revenue event, grouped by stream."""
        now = now or utc_now()
        hours = int(hours if hours is not None else DEFENSE_SETTINGS["missing_event_lookback_hours"])
        records = list(self.source_provider.records_since(now - timedelta(hours=hours)))
        if not records:
            return []
        streams = sorted({r.stream for r in records})
        ref_ids = sorted({r.ref_id for r in records})
        recorded: set[tuple[str, str]] = set()
        session: Session = self._session_factory()
        try:
            for start in range(0, len(ref_ids), 500):
                chunk = ref_ids[start:start + 500]
                recorded.update(
                    session.execute(
                        select(RevenueEvent.source_type, RevenueEvent.source_id).where(
                            RevenueEvent.source_type.in_(streams),
                            RevenueEvent.source_id.in_(chunk),
                        )
                    ).tuples()
                )
        finally:
            session.close()

        missing: dict[str, list[SourceRecord]] = defaultdict(list)
        for record in records:
            if (record.stream, record.ref_id) not in recorded:
                missing[record.stream].append(record)
        results = []
        for stream, items in missing.items():
            items.sort(key=lambda r: r.occurred_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
            results.append(
                {
                    "stream": stream,
                    "missing_count": len(items),
                    "sample_missing_ids": [r.ref_id for r in items[:_MISSING_SAMPLE_SIZE]],
                }
            )
        results.sort(key=lambda r: r["missing_count"], reverse=True)
        if results:
            logger.error("Missing revenue events detected", streams=results)
        return results

    def run_defense_checks(self, *, now: Optional[datetime] = None) -> dict[str, Any]:
        """Execute due parameter changes, then every anomaly check; alert on findings."""
        now = now or utc_now()
        report: dict[str, Any] = {"timestamp": now.isoformat(), "checks": {}, "errors": {}}

        try:
            processed = self.execute_pending_changes(now=now)
            report["checks"]["parameter_changes"] = {"processed": [c.to_dict() for c in processed]}
        except Exception as e:
            logger.error("Parameter change execution check failed", error=str(e), exc_info=True)
            report["errors"]["parameter_changes"] = str(e)

        today = now.date()
        try:
            concentration = self.calculate_concentration(today, today + timedelta(days=1))
            report["checks"]["concentration"] = concentration
            if concentration["warning"]:
                raise_operator_alert(
                    AlertCategory.FRAUD,
                    AlertSeverity.MEDIUM,
                    "Revenue concentration above threshold",
                    {k: concentration[k] for k in ("gini_coefficient", "top1_pct", "top5_pct", "reasons")},
                )
        except Exception as e:
            logger.error("Concentration check failed", error=str(e), exc_info=True)
            report["errors"]["concentration"] = str(e)

        try:
            flagged = self.detect_negative_net_flows(now=now)
            report["checks"]["negative_flows"] = {"count": len(flagged), "flagged": flagged[:10]}
            if flagged:
                raise_operator_alert(
                    AlertCategory.FRAUD,
                    AlertSeverity.HIGH,
                    "Negative net fee flows detected",
                    {"count": len(flagged), "top_offender": flagged[0]},
                )
        except Exception as e:
            logger.error("Negative net flow check failed", error=str(e), exc_info=True)
            report["errors"]["negative_flows"] = str(e)

        try:
            missing = self.detect_missing_revenue_events(now=now)
            missing_total = sum(m["missing_count"] for m in missing)
            report["checks"]["missing_events"] = {"streams": len(missing), "total_missing": missing_total, "details": missing}
            if missing:
                raise_operator_alert(
                    AlertCategory.DATA_QUALITY,
                    AlertSeverity.HIGH,
                    "Source records without revenue events",
                    {"total_missing": missing_total, "streams": missing},
                )
        except Exception as e:
            logger.error("Missing revenue event check failed", error=str(e), exc_info=True)
            report["errors"]["missing_events"] = str(e)

        checks = report["checks"]
        logger.info(
            "Revenue defense checks complete",
            concentration="WARNING" if checks.get("concentration", {}).get("warning") else "OK",
            negative_flows=checks.get("negative_flows", {}).get("count"),
            missing_events=checks.get("missing_events", {}).get("total_missing"),
            errors=list(report["errors"]) or None,
        )
        self.last_report = report
        return report


__all__ = [
    "RevenueDefenseService",
    "ParameterTimelock",
    "ParameterChange",
    "SourceRecord",
    "SourceRecordProvider",
    "SqlSourceRecordProvider",
    "validate_fee_parameters",
    "FEE_PARAMETER_CAPS",
]
