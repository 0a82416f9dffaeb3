"""Settlement error taxonomy.

Transient side-effect failures are plain exceptions raised by collaborators and
are contained inside the worker loops. The classes below mark the cases that
need different handling: caller bugs, poison jobs, policy violations.
"""
from __future__ import annotations

from typing import Any


class SettlementError(Exception):
    """Base class for settlement domain errors."""


class InvalidRevenueStream(SettlementError, ValueError):
    pass


class InvalidRevenueAmount(SettlementError, ValueError):
    pass


class PayloadDecodeError(SettlementError):
    """Stored job payload does not match its job type; retrying cannot help."""


class NonRetryableJobError(SettlementError):
    """A retry would repeat the same failure (inconsistent fee split, closed account)."""


class DeliveryError(SettlementError):
    """On-chain delivery attempt failed (transient)."""


class FeeParameterViolation(SettlementError):
    def __init__(self, violations: list[dict[str, Any]]):
        self.violations = violations
        super().__init__(
            "Fee parameters violate hard caps: " + "; ".join(v["message"] for v in violations)
        )


class UnknownParameterChange(SettlementError, KeyError):
    pass


class UnauthorizedRecipient(SettlementError):
    pass


__all__ = [
    "SettlementError",
    "InvalidRevenueStream",
    "InvalidRevenueAmount",
    "PayloadDecodeError",
    "NonRetryableJobError",
    "DeliveryError",
    "FeeParameterViolation",
    "UnknownParameterChange",
    "UnauthorizedRecipient",
]
