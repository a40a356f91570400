from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum


class Role(str, Enum):
    patient = "patient"
    doctor = "doctor"
    admin = "admin"


class AccountStatus(str, Enum):
    active = "active"
    blocked = "blocked"
    suspended = "suspended"


@dataclass(slots=True)
class Account:
    """Aggregate root for a user identity and its cached access status."""

    account_id: str
    email: str
    national_id: str
    first_name: str
    last_name: str
    role: Role
    status: AccountStatus
    password_hash: str
    created_at: datetime
    updated_at: datetime
    phone: str | None = None
    address: str | None = None
    birth_date: date | None = None
    professional_registration: str | None = None
    specialty: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(slots=True)
class Patient:
    """Clinical profile attached one-to-one to a patient-role account."""

    patient_id: str
    account_id: str
    qr_access_token: str
    created_at: datetime
    qr_code_url: str | None = None
