"""Patient profiles and QR-token access to their clinical history."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from io import BytesIO
import logging

import qrcode

from .account import Account, Patient
from .contracts import ClientContext
from .errors import NotFound
from .record import MedicalRecord
from ..notifications import Notifier
from ..repository import ClinicRepository
from ..security.tokens import generate_qr_access_token

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class QRCode:
    qr_code_url: str
    access_url: str
    token: str


@dataclass(slots=True)
class PatientRecordView:
    """A patient profile together with the account that owns it."""

    patient: Patient
    account: Account
    records: list[MedicalRecord] = field(default_factory=list)


def render_qr_data_url(data: str) -> str:
    """Render ``data`` as a PNG QR code and return it as a base64 data URL."""
    qr = qrcode.QRCode(version=1, box_size=10, border=2)
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


class PatientService:
    def __init__(self, repository: ClinicRepository, notifier: Notifier, frontend_url: str) -> None:
        self._repository = repository
        self._notifier = notifier
        self._frontend_url = frontend_url.rstrip("/")

    def get_patient_for_account(self, account_id: str) -> Patient:
        patient = self._repository.get_patient_by_account(account_id)
        if patient is None:
            raise NotFound("patient not found")
        return patient

    def list_patients(self) -> list[PatientRecordView]:
        return [
            PatientRecordView(patient=patient, account=account)
            for patient, account in self._repository.list_patients()
        ]

    def access_url(self, patient: Patient) -> str:
        return f"{self._frontend_url}/patient/{patient.qr_access_token}"

    def generate_qr(self, patient: Patient) -> QRCode:
        access_url = self.access_url(patient)
        data_url = render_qr_data_url(access_url)
        self._repository.set_patient_qr_code(patient.patient_id, data_url)
        return QRCode(qr_code_url=data_url, access_url=access_url, token=patient.qr_access_token)

    def regenerate_qr(self, patient: Patient) -> QRCode:
        """Rotate the access token, invalidating links printed from the previous code."""
        rotated = self._repository.rotate_patient_qr_token(patient.patient_id, generate_qr_access_token())
        if rotated is None:
            raise NotFound("patient not found")
        logger.info("rotated QR access token for patient %s", patient.patient_id)
        return self.generate_qr(rotated)

    def access_by_token(self, token: str, viewer: Account, context: ClientContext | None = None) -> PatientRecordView:
        """Resolve a QR token to the patient's clinical history, auditing and notifying the owner."""
        context = context or ClientContext()
        patient = self._repository.get_patient_by_qr_token(token)
        if patient is None:
            raise NotFound("invalid QR token")
        owner = self._repository.get_account(patient.account_id)
        if owner is None:
            raise NotFound("patient account not found")

        self._repository.write_audit_event(
            account_id=viewer.account_id,
            patient_id=patient.patient_id,
            event_type="record.accessed",
            actor=viewer.account_id,
            description=f"{viewer.role.value} accessed record via QR token",
            ip_address=context.ip_address,
            location=context.location,
        )
        self._notifier.notify_access(owner.account_id, owner.full_name, context.ip_address, context.location)
        return PatientRecordView(
            patient=patient,
            account=owner,
            records=self._repository.list_records(patient.patient_id),
        )
