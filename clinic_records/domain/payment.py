from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum


class PaymentState(str, Enum):
    pending = "pending"
    paid = "paid"
    overdue = "overdue"


@dataclass(slots=True)
class PaymentObligation:
    """One monthly payment owed by a patient."""

    payment_id: str
    patient_id: str
    month: int
    year: int
    amount: Decimal
    state: PaymentState
    created_at: datetime
    updated_at: datetime
    method: str | None = None
    reference: str | None = None
    paid_at: datetime | None = None


@dataclass(slots=True)
class SettlementResult:
    """Outcome of the settlement transaction."""

    obligation: PaymentObligation
    reactivated_account_id: str | None = None


@dataclass(slots=True)
class PaymentStatistics:
    total_pending: Decimal
    total_paid: Decimal
    pending_count: int
    paid_count: int
