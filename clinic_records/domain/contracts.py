"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from .account import Role


@dataclass(slots=True)
class RegisterAccountInput:
    """Validated inputs required to register an account."""

    email: str
    password: str
    national_id: str
    first_name: str
    last_name: str
    role: Role = Role.patient
    phone: str | None = None
    address: str | None = None
    birth_date: date | None = None
    professional_registration: str | None = None
    specialty: str | None = None


@dataclass(slots=True)
class NewAccount:
    """Row values handed to the repository when persisting a registration."""

    email: str
    national_id: str
    first_name: str
    last_name: str
    role: Role
    password_hash: str
    phone: str | None = None
    address: str | None = None
    birth_date: date | None = None
    professional_registration: str | None = None
    specialty: str | None = None


@dataclass(slots=True)
class CreateObligationInput:
    patient_id: str
    month: int
    year: int
    amount: Decimal


@dataclass(slots=True)
class CreateRecordInput:
    """Consultation details entered by the attending clinician."""

    patient_id: str
    reason: str
    symptoms: str | None = None
    diagnosis: str | None = None
    treatment: str | None = None
    observations: str | None = None
    consulted_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class ClientContext:
    """Where a request came from, as recorded in the audit trail."""

    ip_address: str | None = None
    location: str | None = None


PROFILE_FIELDS = frozenset({"first_name", "last_name", "phone", "address", "birth_date", "specialty"})

REQUIRED_PROFILE_FIELDS = frozenset({"first_name", "last_name"})

RECORD_FIELDS = frozenset({"reason", "symptoms", "diagnosis", "treatment", "observations"})
