from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True)
class MedicalRecord:
    """One consultation entry in a patient's clinical history."""

    record_id: str
    patient_id: str
    doctor_id: str
    consulted_at: datetime
    reason: str
    created_at: datetime
    updated_at: datetime
    symptoms: str | None = None
    diagnosis: str | None = None
    treatment: str | None = None
    observations: str | None = None
    signature: str | None = None
    signed_by: str | None = None
    signed_at: datetime | None = None

    @property
    def signed(self) -> bool:
        return self.signed_at is not None
