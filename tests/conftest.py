from __future__ import annotations

import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")

import uuid
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from clinic_records.api import routes
from clinic_records.domain.account import Account, AccountStatus, Patient, Role
from clinic_records.domain.contracts import CreateObligationInput, CreateRecordInput, NewAccount, RegisterAccountInput
from clinic_records.domain.errors import Conflict, StoreError
from clinic_records.domain.patients import PatientService
from clinic_records.domain.payment import PaymentObligation, PaymentState, PaymentStatistics, SettlementResult
from clinic_records.domain.payments import PaymentService
from clinic_records.domain.record import MedicalRecord
from clinic_records.domain.records import MedicalRecordService
from clinic_records.domain.service import AccountService
from clinic_records.notifications import Notifier
from clinic_records.repository import AuditLogRecord, NotificationRecord


class FakeRepository:
    """In-memory repository mimicking the Postgres-backed behaviours."""

    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}
        self.patients: dict[str, Patient] = {}
        self.payments: dict[str, PaymentObligation] = {}
        self.notifications: dict[str, NotificationRecord] = {}
        self.audit_log: list[AuditLogRecord] = []
        self._audit_seq = 0
        self.records: dict[str, MedicalRecord] = {}
        self.fail_audit_events: set[str] = set()
        # repository method names that raise StoreError, as when Postgres is unreachable
        self.unavailable: set[str] = set()
        # makes settle_obligation behave as if a concurrent request paid first
        self.lose_settlement_race = False

    # accounts

    def _check(self, name: str) -> None:
        if name in self.unavailable:
            raise StoreError("database error: OperationalError")

    def find_account_by_email(self, email: str):
        self._check("find_account_by_email")
        return next((a for a in self.accounts.values() if a.email == email), None)

    def find_account_by_email_or_national_id(self, email: str, national_id: str):
        return next(
            (a for a in self.accounts.values() if a.email == email or a.national_id == national_id),
            None,
        )

    def get_account(self, account_id: str):
        self._check("get_account")
        return self.accounts.get(account_id)

    def create_account(self, payload: NewAccount, qr_access_token: str | None = None):
        if self.find_account_by_email_or_national_id(payload.email, payload.national_id):
            raise Conflict("an account with that email or national id already exists")
        now = datetime.now(timezone.utc)
        account = Account(
            account_id=str(uuid.uuid4()),
            email=payload.email,
            national_id=payload.national_id,
            first_name=payload.first_name,
            last_name=payload.last_name,
            role=payload.role,
            status=AccountStatus.active,
            password_hash=payload.password_hash,
            created_at=now,
            updated_at=now,
            phone=payload.phone,
            address=payload.address,
            birth_date=payload.birth_date,
            professional_registration=payload.professional_registration,
            specialty=payload.specialty,
        )
        self.accounts[account.account_id] = account
        patient = None
        if payload.role is Role.patient:
            patient = Patient(
                patient_id=str(uuid.uuid4()),
                account_id=account.account_id,
                qr_access_token=qr_access_token,
                created_at=now,
            )
            self.patients[patient.patient_id] = patient
        return account, patient

    def update_account_profile(self, account_id: str, changes: dict[str, Any]):
        account = self.accounts.get(account_id)
        if account is None:
            return None
        updated = replace(account, **changes, updated_at=datetime.now(timezone.utc))
        self.accounts[account_id] = updated
        return updated

    def set_account_status(self, account_id: str, status: AccountStatus):
        account = self.accounts.get(account_id)
        if account is None:
            return None
        account.status = status
        return account

    def block_if_pending(self, account_id: str, patient_id: str) -> bool:
        account = self.accounts.get(account_id)
        if account is None or account.status is not AccountStatus.active:
            return False
        if not self._has_pending(patient_id):
            return False
        account.status = AccountStatus.blocked
        return True

    def list_accounts(self, role=None):
        items = [a for a in self.accounts.values() if role is None or a.role is role]
        items.sort(key=lambda a: a.created_at, reverse=True)
        return items

    def search_accounts(self, text: str, limit: int = 50):
        needle = text.lower()
        items = [
            a
            for a in self.accounts.values()
            if needle in a.first_name.lower() or needle in a.last_name.lower() or needle in a.national_id.lower()
        ]
        items.sort(key=lambda a: (a.last_name, a.first_name))
        return items[:limit]

    def delete_account(self, account_id: str) -> bool:
        if account_id not in self.accounts:
            return False
        if any(r.doctor_id == account_id for r in self.records.values()):
            raise Conflict("account still authors medical records")
        del self.accounts[account_id]
        for patient in [p for p in self.patients.values() if p.account_id == account_id]:
            del self.patients[patient.patient_id]
            for payment_id in [k for k, p in self.payments.items() if p.patient_id == patient.patient_id]:
                del self.payments[payment_id]
            for record_id in [k for k, r in self.records.items() if r.patient_id == patient.patient_id]:
                del self.records[record_id]
        for notification_id in [k for k, n in self.notifications.items() if n.account_id == account_id]:
            del self.notifications[notification_id]
        return True

    def _has_pending(self, patient_id: str) -> bool:
        return any(
            p.patient_id == patient_id and p.state is PaymentState.pending for p in self.payments.values()
        )

    # patients

    def get_patient(self, patient_id: str):
        return self.patients.get(patient_id)

    def get_patient_by_account(self, account_id: str):
        return next((p for p in self.patients.values() if p.account_id == account_id), None)

    def get_patient_by_qr_token(self, token: str):
        return next((p for p in self.patients.values() if p.qr_access_token == token), None)

    def list_patients(self):
        items = sorted(self.patients.values(), key=lambda p: p.created_at, reverse=True)
        return [(p, self.accounts[p.account_id]) for p in items]

    def set_patient_qr_code(self, patient_id: str, qr_code_url: str | None):
        patient = self.patients.get(patient_id)
        if patient is not None:
            patient.qr_code_url = qr_code_url
        return patient

    def rotate_patient_qr_token(self, patient_id: str, token: str):
        patient = self.patients.get(patient_id)
        if patient is not None:
            patient.qr_access_token = token
            patient.qr_code_url = None
        return patient

    # payments

    def create_obligation(self, payload: CreateObligationInput):
        for existing in self.payments.values():
            if (existing.patient_id, existing.month, existing.year) == (
                payload.patient_id,
                payload.month,
                payload.year,
            ):
                raise Conflict("an obligation for that billing period already exists")
        now = datetime.now(timezone.utc)
        obligation = PaymentObligation(
            payment_id=str(uuid.uuid4()),
            patient_id=payload.patient_id,
            month=payload.month,
            year=payload.year,
            amount=payload.amount,
            state=PaymentState.pending,
            created_at=now,
            updated_at=now,
        )
        self.payments[obligation.payment_id] = obligation
        return obligation

    def get_obligation(self, payment_id: str):
        self._check("get_obligation")
        return self.payments.get(payment_id)

    def list_obligations(self, *, patient_id=None, state=None, oldest_first=False):
        self._check("list_obligations")
        items = [
            p
            for p in self.payments.values()
            if (patient_id is None or p.patient_id == patient_id) and (state is None or p.state is state)
        ]
        items.sort(key=lambda p: (p.year, p.month, p.created_at), reverse=not oldest_first)
        return items

    def settle_obligation(self, payment_id: str, *, method: str, reference, paid_at: datetime):
        self._check("settle_obligation")
        if self.lose_settlement_race:
            return None
        obligation = self.payments.get(payment_id)
        if obligation is None or obligation.state is PaymentState.paid:
            return None
        obligation.state = PaymentState.paid
        obligation.method = method
        obligation.reference = reference
        obligation.paid_at = paid_at
        obligation.updated_at = paid_at

        reactivated = None
        patient = self.patients.get(obligation.patient_id)
        if patient is not None and not self._has_pending(patient.patient_id):
            account = self.accounts.get(patient.account_id)
            if account is not None and account.status is AccountStatus.blocked:
                account.status = AccountStatus.active
                reactivated = account.account_id
        return SettlementResult(obligation=obligation, reactivated_account_id=reactivated)

    def payment_statistics(self):
        pending = [p for p in self.payments.values() if p.state is PaymentState.pending]
        paid = [p for p in self.payments.values() if p.state is PaymentState.paid]
        return PaymentStatistics(
            total_pending=sum((p.amount for p in pending), Decimal("0")),
            total_paid=sum((p.amount for p in paid), Decimal("0")),
            pending_count=len(pending),
            paid_count=len(paid),
        )

    # medical records

    def create_record(self, payload: CreateRecordInput, doctor_id: str):
        now = datetime.now(timezone.utc)
        record = MedicalRecord(
            record_id=str(uuid.uuid4()),
            patient_id=payload.patient_id,
            doctor_id=doctor_id,
            consulted_at=payload.consulted_at or now,
            reason=payload.reason,
            symptoms=payload.symptoms,
            diagnosis=payload.diagnosis,
            treatment=payload.treatment,
            observations=payload.observations,
            created_at=now,
            updated_at=now,
        )
        self.records[record.record_id] = record
        return record

    def get_record(self, record_id: str):
        return self.records.get(record_id)

    def list_records(self, patient_id: str):
        items = [r for r in self.records.values() if r.patient_id == patient_id]
        items.sort(key=lambda r: (r.consulted_at, r.created_at), reverse=True)
        return items

    def update_record(self, record_id: str, changes: dict[str, Any]):
        record = self.records.get(record_id)
        if record is None:
            return None
        updated = replace(record, **changes, updated_at=datetime.now(timezone.utc))
        self.records[record_id] = updated
        return updated

    def sign_record(self, record_id: str, signer_id: str, signature: str, signed_at: datetime):
        record = self.records.get(record_id)
        if record is None or record.signed_at is not None:
            return None
        record.signature = signature
        record.signed_by = signer_id
        record.signed_at = signed_at
        record.updated_at = signed_at
        return record

    def delete_record(self, record_id: str) -> bool:
        return self.records.pop(record_id, None) is not None

    # audit

    def audit_statistics(self, since: datetime):
        return len(self.audit_log), sum(1 for r in self.audit_log if r.created_at >= since)

    def write_audit_event(
        self,
        *,
        account_id,
        event_type,
        actor,
        patient_id=None,
        description=None,
        ip_address=None,
        location=None,
        metadata=None,
    ) -> None:
        if event_type in self.fail_audit_events:
            raise RuntimeError("audit store unavailable")
        self._audit_seq += 1
        self.audit_log.append(
            AuditLogRecord(
                audit_id=self._audit_seq,
                account_id=account_id,
                patient_id=patient_id,
                event_type=event_type,
                actor=actor,
                description=description,
                ip_address=ip_address,
                location=location,
                metadata=metadata or {},
                created_at=datetime.now(timezone.utc),
            )
        )

    def list_audit_events(
        self,
        *,
        account_id=None,
        patient_id=None,
        event_type=None,
        created_after=None,
        created_before=None,
        limit=50,
        cursor=None,
    ):
        results = list(self.audit_log)
        if account_id:
            results = [r for r in results if r.account_id == account_id]
        if patient_id:
            results = [r for r in results if r.patient_id == patient_id]
        if event_type:
            results = [r for r in results if r.event_type == event_type]
        if created_after:
            results = [r for r in results if r.created_at >= created_after]
        if created_before:
            results = [r for r in results if r.created_at <= created_before]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [r for r in results if (r.created_at, r.audit_id) < cursor]
        slice_ = results[:limit]
        next_cursor = None
        if len(results) > limit:
            last = slice_[-1]
            next_cursor = (last.created_at, last.audit_id)
        return slice_, next_cursor

    # notifications

    def create_notification(self, *, account_id, kind, title, message):
        record = NotificationRecord(
            notification_id=str(uuid.uuid4()),
            account_id=account_id,
            kind=kind,
            title=title,
            message=message,
            read=False,
            created_at=datetime.now(timezone.utc),
        )
        self.notifications[record.notification_id] = record
        return record

    def list_notifications(self, account_id):
        items = [n for n in self.notifications.values() if n.account_id == account_id]
        items.sort(key=lambda n: n.created_at, reverse=True)
        return items

    def mark_notification_read(self, notification_id, account_id):
        record = self.notifications.get(notification_id)
        if record is None or record.account_id != account_id:
            return None
        record.read = True
        return record

    def mark_all_notifications_read(self, account_id):
        updated = 0
        for record in self.notifications.values():
            if record.account_id == account_id and not record.read:
                record.read = True
                updated += 1
        return updated


class FakeEmailSender:
    enabled = True

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, to: str, subject: str, body_html: str) -> bool:
        self.sent.append((to, subject, body_html))
        return True


PASSWORD = "s3cret-pass"


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def account_service(repository) -> AccountService:
    return AccountService(repository)


@pytest.fixture
def payment_service(repository) -> PaymentService:
    return PaymentService(repository)


@pytest.fixture
def record_service(repository) -> MedicalRecordService:
    return MedicalRecordService(repository)


@pytest.fixture
def notifier(repository, email_sender) -> Notifier:
    return Notifier(repository, email_sender)


@pytest.fixture
def patient_service(repository, notifier) -> PatientService:
    return PatientService(repository, notifier, "https://clinic.example")


@pytest.fixture
def register(account_service):
    """Register an account with sensible defaults, overridable per test."""
    counter = {"n": 0}

    def _register(role: Role = Role.patient, **overrides):
        counter["n"] += 1
        n = counter["n"]
        fields = {
            "email": f"user{n}@example.com",
            "password": PASSWORD,
            "national_id": f"17000000{n:02d}",
            "first_name": "Ana",
            "last_name": f"Torres{n}",
            "role": role,
        }
        if role is Role.doctor:
            fields["professional_registration"] = f"REG-{n}"
        fields.update(overrides)
        payload = RegisterAccountInput(**fields)
        if role is Role.admin:
            return account_service.provision_account(payload, actor="system")
        return account_service.register(payload).account

    return _register


@pytest.fixture
def api_client(repository, account_service, payment_service, record_service, patient_service, notifier):
    """Provide a FastAPI test client with isolated state."""
    app = FastAPI()
    app.include_router(routes.router)
    app.state.account_service = account_service
    app.state.payment_service = payment_service
    app.state.record_service = record_service
    app.state.patient_service = patient_service
    app.state.notifier = notifier

    original_limiter = routes.rate_limiter
    routes.rate_limiter = routes.SlidingWindowRateLimiter(max_requests=3, window_seconds=60)

    with TestClient(app) as client:
        yield client

    routes.rate_limiter = original_limiter
