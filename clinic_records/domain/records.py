"""Clinical history: consultation records authored and signed by doctors."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from .account import Account, Role
from .contracts import RECORD_FIELDS, ClientContext, CreateRecordInput
from .errors import Conflict, Forbidden, NotFound, ValidationFailed
from .record import MedicalRecord
from ..repository import ClinicRepository

logger = logging.getLogger(__name__)


class MedicalRecordService:
    """Consultation records for patients.

    Doctors and administrators write records. A doctor may only edit the
    records they authored; administrators may edit any record and are the
    only ones allowed to delete. Signing is reserved to doctors and happens
    at most once per record.
    """

    def __init__(self, repository: ClinicRepository) -> None:
        self._repository = repository

    def create(self, payload: CreateRecordInput, author: Account, context: ClientContext | None = None) -> MedicalRecord:
        if author.role not in (Role.doctor, Role.admin):
            raise Forbidden("only doctors and administrators can write medical records")
        if not payload.reason.strip():
            raise ValidationFailed("a consultation reason is required")
        if self._repository.get_patient(payload.patient_id) is None:
            raise NotFound("patient not found")

        record = self._repository.create_record(payload, doctor_id=author.account_id)
        context = context or ClientContext()
        self._repository.write_audit_event(
            account_id=author.account_id,
            patient_id=record.patient_id,
            event_type="record.created",
            actor=author.account_id,
            description="medical record created",
            ip_address=context.ip_address,
            location=context.location,
            metadata={"record_id": record.record_id},
        )
        return record

    def get(self, record_id: str) -> MedicalRecord:
        record = self._repository.get_record(record_id)
        if record is None:
            raise NotFound("medical record not found")
        return record

    def list_for_patient(self, patient_id: str) -> list[MedicalRecord]:
        return self._repository.list_records(patient_id)

    def update(self, record_id: str, changes: dict[str, Any], editor: Account) -> MedicalRecord:
        if editor.role not in (Role.doctor, Role.admin):
            raise Forbidden("only doctors and administrators can edit medical records")
        record = self.get(record_id)
        if editor.role is Role.doctor and record.doctor_id != editor.account_id:
            raise Forbidden("doctors can only edit their own records")

        allowed = {key: value for key, value in changes.items() if key in RECORD_FIELDS}
        if "reason" in allowed and not (allowed["reason"] or "").strip():
            raise ValidationFailed("a consultation reason is required")
        updated = self._repository.update_record(record_id, allowed)
        if updated is None:
            raise NotFound("medical record not found")
        self._repository.write_audit_event(
            account_id=editor.account_id,
            patient_id=updated.patient_id,
            event_type="record.updated",
            actor=editor.account_id,
            metadata={"record_id": record_id, "fields": sorted(allowed)},
        )
        return updated

    def sign(self, record_id: str, signer: Account, signature: str) -> MedicalRecord:
        if signer.role is not Role.doctor:
            raise Forbidden("only doctors can sign medical records")
        record = self.get(record_id)
        if record.signed:
            raise Conflict("medical record is already signed")

        signed = self._repository.sign_record(record_id, signer.account_id, signature, datetime.now(timezone.utc))
        if signed is None:
            raise Conflict("medical record is already signed")
        logger.info("medical record %s signed by %s", record_id, signer.account_id)
        self._repository.write_audit_event(
            account_id=signer.account_id,
            patient_id=signed.patient_id,
            event_type="record.signed",
            actor=signer.account_id,
            metadata={"record_id": record_id},
        )
        return signed

    def delete(self, record_id: str, actor: Account) -> None:
        if actor.role is not Role.admin:
            raise Forbidden("only administrators can delete medical records")
        record = self.get(record_id)
        if not self._repository.delete_record(record_id):
            raise NotFound("medical record not found")
        self._repository.write_audit_event(
            account_id=actor.account_id,
            patient_id=record.patient_id,
            event_type="record.deleted",
            actor=actor.account_id,
            metadata={"record_id": record_id},
        )
