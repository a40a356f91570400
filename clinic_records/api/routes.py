"""HTTP route definitions for the clinic records service."""

from __future__ import annotations

import logging

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from prometheus_client import Counter
from pydantic import BaseModel, EmailStr, Field

from .deps import (
    Principal,
    get_account_service,
    get_client_context,
    get_notifier,
    get_patient_service,
    get_payment_service,
    get_principal,
    get_record_service,
    require_roles,
)
from ..config import get_settings
from ..domain.account import Account, AccountStatus, Patient, Role
from ..domain.contracts import ClientContext, CreateObligationInput, CreateRecordInput, RegisterAccountInput
from ..domain.errors import (
    AccountBlocked,
    AccountSuspended,
    AlreadySettled,
    ClinicError,
    Conflict,
    Forbidden,
    InvalidCredentials,
    NotFound,
    StoreError,
    ValidationFailed,
)
from ..domain.patients import PatientService
from ..domain.payment import PaymentObligation, PaymentState
from ..domain.payments import PaymentService
from ..domain.record import MedicalRecord
from ..domain.records import MedicalRecordService
from ..domain.service import AccountService, AuditStatistics, AuthResult
from ..notifications import Notifier
from ..repository import NotificationRecord
from ..security.rate_limiter import SlidingWindowRateLimiter
from ..security.redis_rate_limiter import RedisSlidingWindowRateLimiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")

LOGIN_ATTEMPTS = Counter("clinic_login_attempts_total", "Login gate decisions", ["outcome"])


class AccountResponse(BaseModel):
    """Serialised `Account` without its credential hash."""

    account_id: str
    email: EmailStr
    national_id: str
    first_name: str
    last_name: str
    role: Role
    status: AccountStatus
    phone: str | None = None
    address: str | None = None
    birth_date: date | None = None
    professional_registration: str | None = None
    specialty: str | None = None
    created_at: datetime

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        return cls(
            account_id=account.account_id,
            email=account.email,
            national_id=account.national_id,
            first_name=account.first_name,
            last_name=account.last_name,
            role=account.role,
            status=account.status,
            phone=account.phone,
            address=account.address,
            birth_date=account.birth_date,
            professional_registration=account.professional_registration,
            specialty=account.specialty,
            created_at=account.created_at,
        )


class AuthResponse(BaseModel):
    """Session issued by registration or login."""

    account: AccountResponse
    access_token: str
    token_type: str = "bearer"
    expires_in: int

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthResponse":
        return cls(
            account=AccountResponse.from_domain(result.account),
            access_token=result.access_token,
            expires_in=result.expires_in,
        )


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    national_id: str = Field(..., min_length=1)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    role: Role = Role.patient
    phone: str | None = None
    address: str | None = None
    birth_date: date | None = None
    professional_registration: str | None = None
    specialty: str | None = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdateRequest(BaseModel):
    """Editable profile fields; anything else in the body is ignored."""

    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    phone: str | None = None
    address: str | None = None
    birth_date: date | None = None
    specialty: str | None = None


class PaymentResponse(BaseModel):
    payment_id: str
    patient_id: str
    month: int
    year: int
    amount: Decimal
    state: PaymentState
    method: str | None = None
    reference: str | None = None
    paid_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_domain(cls, obligation: PaymentObligation) -> "PaymentResponse":
        return cls(
            payment_id=obligation.payment_id,
            patient_id=obligation.patient_id,
            month=obligation.month,
            year=obligation.year,
            amount=obligation.amount,
            state=obligation.state,
            method=obligation.method,
            reference=obligation.reference,
            paid_at=obligation.paid_at,
            created_at=obligation.created_at,
        )


class CreatePaymentRequest(BaseModel):
    patient_id: str
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=2100)
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)


class SettlePaymentRequest(BaseModel):
    method: str = Field(..., min_length=1)
    reference: str | None = None


class PaymentStatisticsResponse(BaseModel):
    total_pending: Decimal
    total_paid: Decimal
    pending_count: int
    paid_count: int


class PatientResponse(BaseModel):
    patient_id: str
    account_id: str
    qr_code_url: str | None = None
    access_url: str
    created_at: datetime


class QRCodeResponse(BaseModel):
    qr_code_url: str
    access_url: str
    token: str


class MedicalRecordResponse(BaseModel):
    record_id: str
    patient_id: str
    doctor_id: str
    consulted_at: datetime
    reason: str
    symptoms: str | None = None
    diagnosis: str | None = None
    treatment: str | None = None
    observations: str | None = None
    signature: str | None = None
    signed_by: str | None = None
    signed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, record: MedicalRecord) -> "MedicalRecordResponse":
        return cls(
            record_id=record.record_id,
            patient_id=record.patient_id,
            doctor_id=record.doctor_id,
            consulted_at=record.consulted_at,
            reason=record.reason,
            symptoms=record.symptoms,
            diagnosis=record.diagnosis,
            treatment=record.treatment,
            observations=record.observations,
            signature=record.signature,
            signed_by=record.signed_by,
            signed_at=record.signed_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class CreateRecordRequest(BaseModel):
    patient_id: str
    reason: str = Field(..., min_length=1)
    symptoms: str | None = None
    diagnosis: str | None = None
    treatment: str | None = None
    observations: str | None = None
    consulted_at: datetime | None = None


class UpdateRecordRequest(BaseModel):
    """Editable clinical fields; omitted fields are left untouched."""

    reason: str | None = Field(default=None, min_length=1)
    symptoms: str | None = None
    diagnosis: str | None = None
    treatment: str | None = None
    observations: str | None = None


class SignRecordRequest(BaseModel):
    signature: str = Field(..., min_length=1)


class PatientRecordResponse(BaseModel):
    """Clinical history returned to clinicians scanning a patient's QR code."""

    patient_id: str
    account: AccountResponse
    medical_records: list[MedicalRecordResponse]


class PatientSummaryResponse(BaseModel):
    patient_id: str
    created_at: datetime
    account: AccountResponse


class AuditStatisticsResponse(BaseModel):
    total_events: int
    events_today: int

    @classmethod
    def from_domain(cls, stats: AuditStatistics) -> "AuditStatisticsResponse":
        return cls(total_events=stats.total_events, events_today=stats.events_today)


class NotificationResponse(BaseModel):
    notification_id: str
    kind: str
    title: str
    message: str
    read: bool
    created_at: datetime

    @classmethod
    def from_record(cls, record: NotificationRecord) -> "NotificationResponse":
        return cls(
            notification_id=record.notification_id,
            kind=record.kind,
            title=record.title,
            message=record.message,
            read=record.read,
            created_at=record.created_at,
        )


class MarkAllReadResponse(BaseModel):
    updated: int


class AuditLogEntry(BaseModel):
    """Audit log response entry."""

    audit_id: int
    account_id: str | None
    patient_id: str | None
    event_type: str
    actor: str | None
    description: str | None
    ip_address: str | None
    location: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    items: list[AuditLogEntry]
    next_cursor: str | None = None


settings = get_settings()


def _build_rate_limiter() -> SlidingWindowRateLimiter | RedisSlidingWindowRateLimiter:
    """Instantiate the configured login limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            client = redis.from_url(settings.redis_url)
            # ensure connectivity early to fail fast and fall back
            client.ping()
            logger.info("login rate limiter configured for redis backend at %s", settings.redis_url)
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except Exception as exc:  # pragma: no cover - depends on a live redis
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)

    logger.info("login rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


rate_limiter = _build_rate_limiter()

_STATUS_BY_ERROR: list[tuple[type[ClinicError], int]] = [
    (InvalidCredentials, status.HTTP_401_UNAUTHORIZED),
    (AccountBlocked, status.HTTP_401_UNAUTHORIZED),
    (AccountSuspended, status.HTTP_401_UNAUTHORIZED),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (AlreadySettled, status.HTTP_409_CONFLICT),
    (Conflict, status.HTTP_409_CONFLICT),
    (ValidationFailed, status.HTTP_400_BAD_REQUEST),
    (StoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def _http_error(exc: ClinicError) -> HTTPException:
    status_code = status.HTTP_400_BAD_REQUEST
    for kind, code in _STATUS_BY_ERROR:
        if isinstance(exc, kind):
            status_code = code
            break
    return HTTPException(status_code=status_code, detail={"code": exc.code, "message": exc.message})


# auth


@router.post("/auth/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    service: AccountService = Depends(get_account_service),
    context: ClientContext = Depends(get_client_context),
) -> AuthResponse:
    """Register an account and return a session for it."""
    try:
        result = service.register(RegisterAccountInput(**payload.model_dump()), context)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return AuthResponse.from_result(result)


@router.post("/auth/login", response_model=AuthResponse)
def login(
    payload: LoginRequest,
    service: AccountService = Depends(get_account_service),
    context: ClientContext = Depends(get_client_context),
) -> AuthResponse:
    """Issue a session token when the credentials and account status allow it."""
    rate_key = f"login:{context.ip_address}:{payload.email.lower()}"
    if not rate_limiter.allow(rate_key):
        LOGIN_ATTEMPTS.labels(outcome="rate_limited").inc()
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limited")
    try:
        result = service.authenticate(payload.email, payload.password, context)
    except InvalidCredentials as exc:
        LOGIN_ATTEMPTS.labels(outcome="invalid_credentials").inc()
        raise _http_error(exc) from exc
    except AccountBlocked as exc:
        LOGIN_ATTEMPTS.labels(outcome="blocked").inc()
        raise _http_error(exc) from exc
    except AccountSuspended as exc:
        LOGIN_ATTEMPTS.labels(outcome="suspended").inc()
        raise _http_error(exc) from exc
    except ClinicError as exc:
        raise _http_error(exc) from exc
    LOGIN_ATTEMPTS.labels(outcome="success").inc()
    rate_limiter.reset(rate_key)
    return AuthResponse.from_result(result)


# accounts


@router.get("/accounts/me", response_model=AccountResponse)
def get_my_account(
    principal: Principal = Depends(get_principal),
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    try:
        account = service.get_account(principal.account_id)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.patch("/accounts/me", response_model=AccountResponse)
def update_my_account(
    payload: ProfileUpdateRequest,
    principal: Principal = Depends(get_principal),
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    try:
        account = service.update_profile(principal.account_id, payload.model_dump(exclude_unset=True))
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def provision_account(
    payload: RegisterRequest,
    principal: Principal = Depends(require_roles(Role.admin)),
    service: AccountService = Depends(get_account_service),
    context: ClientContext = Depends(get_client_context),
) -> AccountResponse:
    """Create an account of any role, including further administrators."""
    try:
        account = service.provision_account(
            RegisterAccountInput(**payload.model_dump()), actor=principal.account_id, context=context
        )
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/accounts", response_model=list[AccountResponse])
def list_accounts(
    role: Role | None = Query(default=None),
    _: Principal = Depends(require_roles(Role.admin)),
    service: AccountService = Depends(get_account_service),
) -> list[AccountResponse]:
    try:
        accounts = service.list_accounts(role)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return [AccountResponse.from_domain(account) for account in accounts]


@router.get("/accounts/search", response_model=list[AccountResponse])
def search_accounts(
    q: str = Query(..., min_length=1),
    _: Principal = Depends(require_roles(Role.admin)),
    service: AccountService = Depends(get_account_service),
) -> list[AccountResponse]:
    """Match accounts by first name, last name or national id."""
    try:
        accounts = service.search_accounts(q)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return [AccountResponse.from_domain(account) for account in accounts]


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str,
    _: Principal = Depends(require_roles(Role.admin)),
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    try:
        account = service.get_account(account_id)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.delete("/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_account(
    account_id: str,
    principal: Principal = Depends(require_roles(Role.admin)),
    service: AccountService = Depends(get_account_service),
) -> None:
    try:
        service.delete_account(account_id, actor=principal.account_id)
    except ClinicError as exc:
        raise _http_error(exc) from exc


@router.post("/accounts/{account_id}/suspend", response_model=AccountResponse)
def suspend_account(
    account_id: str,
    principal: Principal = Depends(require_roles(Role.admin)),
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    try:
        account = service.suspend_account(account_id, actor=principal.account_id)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


# payments


@router.post("/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
def create_payment(
    payload: CreatePaymentRequest,
    principal: Principal = Depends(require_roles(Role.admin)),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentResponse:
    """Create the monthly obligation for one patient and billing period."""
    try:
        obligation = service.create_obligation(
            CreateObligationInput(
                patient_id=payload.patient_id,
                month=payload.month,
                year=payload.year,
                amount=payload.amount,
            ),
            actor=principal.account_id,
        )
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return PaymentResponse.from_domain(obligation)


@router.get("/payments", response_model=list[PaymentResponse])
def list_payments(
    _: Principal = Depends(require_roles(Role.admin)),
    service: PaymentService = Depends(get_payment_service),
) -> list[PaymentResponse]:
    try:
        obligations = service.list_all()
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return [PaymentResponse.from_domain(item) for item in obligations]


@router.get("/payments/statistics", response_model=PaymentStatisticsResponse)
def payment_statistics(
    _: Principal = Depends(require_roles(Role.admin)),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentStatisticsResponse:
    try:
        stats = service.statistics()
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return PaymentStatisticsResponse(
        total_pending=stats.total_pending,
        total_paid=stats.total_paid,
        pending_count=stats.pending_count,
        paid_count=stats.paid_count,
    )


def _ensure_patient_scope(principal: Principal, patient_id: str, patients: PatientService) -> None:
    """Patients may only read their own ledger, records and activity; clinicians and admins read any."""
    if principal.role is not Role.patient:
        return
    own = patients.get_patient_for_account(principal.account_id)
    if own.patient_id != patient_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="cannot access another patient's data")


@router.get("/payments/patient/{patient_id}", response_model=list[PaymentResponse])
def list_patient_payments(
    patient_id: str,
    principal: Principal = Depends(get_principal),
    service: PaymentService = Depends(get_payment_service),
    patients: PatientService = Depends(get_patient_service),
) -> list[PaymentResponse]:
    try:
        _ensure_patient_scope(principal, patient_id, patients)
        obligations = service.list_for_patient(patient_id)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return [PaymentResponse.from_domain(item) for item in obligations]


@router.get("/payments/patient/{patient_id}/pending", response_model=list[PaymentResponse])
def list_patient_pending_payments(
    patient_id: str,
    principal: Principal = Depends(get_principal),
    service: PaymentService = Depends(get_payment_service),
    patients: PatientService = Depends(get_patient_service),
) -> list[PaymentResponse]:
    try:
        _ensure_patient_scope(principal, patient_id, patients)
        obligations = service.list_pending(patient_id)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return [PaymentResponse.from_domain(item) for item in obligations]


@router.patch("/payments/{payment_id}/pay", response_model=PaymentResponse)
def settle_payment(
    payment_id: str,
    payload: SettlePaymentRequest,
    principal: Principal = Depends(require_roles(Role.admin)),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentResponse:
    """Mark an obligation paid; the owning account is unblocked once nothing is pending."""
    try:
        obligation = service.settle(
            payment_id, payload.method, payload.reference, actor=principal.account_id
        )
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return PaymentResponse.from_domain(obligation)


# patients


def _patient_response(patient: Patient, service: PatientService) -> PatientResponse:
    return PatientResponse(
        patient_id=patient.patient_id,
        account_id=patient.account_id,
        qr_code_url=patient.qr_code_url,
        access_url=service.access_url(patient),
        created_at=patient.created_at,
    )


@router.get("/patients/me", response_model=PatientResponse)
def get_my_patient(
    principal: Principal = Depends(require_roles(Role.patient)),
    service: PatientService = Depends(get_patient_service),
) -> PatientResponse:
    try:
        patient = service.get_patient_for_account(principal.account_id)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return _patient_response(patient, service)


@router.post("/patients/me/qr", response_model=QRCodeResponse)
def generate_my_qr(
    principal: Principal = Depends(require_roles(Role.patient)),
    service: PatientService = Depends(get_patient_service),
) -> QRCodeResponse:
    try:
        qr = service.generate_qr(service.get_patient_for_account(principal.account_id))
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return QRCodeResponse(qr_code_url=qr.qr_code_url, access_url=qr.access_url, token=qr.token)


@router.post("/patients/me/qr/regenerate", response_model=QRCodeResponse)
def regenerate_my_qr(
    principal: Principal = Depends(require_roles(Role.patient)),
    service: PatientService = Depends(get_patient_service),
) -> QRCodeResponse:
    try:
        qr = service.regenerate_qr(service.get_patient_for_account(principal.account_id))
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return QRCodeResponse(qr_code_url=qr.qr_code_url, access_url=qr.access_url, token=qr.token)


@router.get("/patients/qr/{token}", response_model=PatientRecordResponse)
def access_patient_by_qr(
    token: str,
    principal: Principal = Depends(require_roles(Role.doctor, Role.admin)),
    accounts: AccountService = Depends(get_account_service),
    service: PatientService = Depends(get_patient_service),
    context: ClientContext = Depends(get_client_context),
) -> PatientRecordResponse:
    """Open a patient's record from a scanned QR token and alert the patient."""
    try:
        viewer = accounts.get_account(principal.account_id)
        view = service.access_by_token(token, viewer, context)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return PatientRecordResponse(
        patient_id=view.patient.patient_id,
        account=AccountResponse.from_domain(view.account),
        medical_records=[MedicalRecordResponse.from_domain(record) for record in view.records],
    )


@router.get("/patients", response_model=list[PatientSummaryResponse])
def list_patients(
    _: Principal = Depends(require_roles(Role.admin)),
    service: PatientService = Depends(get_patient_service),
) -> list[PatientSummaryResponse]:
    try:
        views = service.list_patients()
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return [
        PatientSummaryResponse(
            patient_id=view.patient.patient_id,
            created_at=view.patient.created_at,
            account=AccountResponse.from_domain(view.account),
        )
        for view in views
    ]


# medical records


@router.post("/medical-records", response_model=MedicalRecordResponse, status_code=status.HTTP_201_CREATED)
def create_medical_record(
    payload: CreateRecordRequest,
    principal: Principal = Depends(require_roles(Role.doctor, Role.admin)),
    accounts: AccountService = Depends(get_account_service),
    service: MedicalRecordService = Depends(get_record_service),
    context: ClientContext = Depends(get_client_context),
) -> MedicalRecordResponse:
    try:
        author = accounts.get_account(principal.account_id)
        record = service.create(CreateRecordInput(**payload.model_dump()), author, context)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return MedicalRecordResponse.from_domain(record)


@router.get("/medical-records/patient/{patient_id}", response_model=list[MedicalRecordResponse])
def list_patient_records(
    patient_id: str,
    principal: Principal = Depends(get_principal),
    service: MedicalRecordService = Depends(get_record_service),
    patients: PatientService = Depends(get_patient_service),
) -> list[MedicalRecordResponse]:
    try:
        _ensure_patient_scope(principal, patient_id, patients)
        records = service.list_for_patient(patient_id)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return [MedicalRecordResponse.from_domain(record) for record in records]


@router.get("/medical-records/{record_id}", response_model=MedicalRecordResponse)
def get_medical_record(
    record_id: str,
    principal: Principal = Depends(get_principal),
    service: MedicalRecordService = Depends(get_record_service),
    patients: PatientService = Depends(get_patient_service),
) -> MedicalRecordResponse:
    try:
        record = service.get(record_id)
        _ensure_patient_scope(principal, record.patient_id, patients)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return MedicalRecordResponse.from_domain(record)


@router.patch("/medical-records/{record_id}", response_model=MedicalRecordResponse)
def update_medical_record(
    record_id: str,
    payload: UpdateRecordRequest,
    principal: Principal = Depends(require_roles(Role.doctor, Role.admin)),
    accounts: AccountService = Depends(get_account_service),
    service: MedicalRecordService = Depends(get_record_service),
) -> MedicalRecordResponse:
    """Doctors may edit only the records they wrote; administrators may edit any."""
    try:
        editor = accounts.get_account(principal.account_id)
        record = service.update(record_id, payload.model_dump(exclude_unset=True), editor)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return MedicalRecordResponse.from_domain(record)


@router.post("/medical-records/{record_id}/sign", response_model=MedicalRecordResponse)
def sign_medical_record(
    record_id: str,
    payload: SignRecordRequest,
    principal: Principal = Depends(require_roles(Role.doctor)),
    accounts: AccountService = Depends(get_account_service),
    service: MedicalRecordService = Depends(get_record_service),
) -> MedicalRecordResponse:
    try:
        signer = accounts.get_account(principal.account_id)
        record = service.sign(record_id, signer, payload.signature)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return MedicalRecordResponse.from_domain(record)


@router.delete("/medical-records/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_medical_record(
    record_id: str,
    principal: Principal = Depends(require_roles(Role.admin)),
    accounts: AccountService = Depends(get_account_service),
    service: MedicalRecordService = Depends(get_record_service),
) -> None:
    try:
        service.delete(record_id, accounts.get_account(principal.account_id))
    except ClinicError as exc:
        raise _http_error(exc) from exc


# notifications


@router.get("/notifications/me", response_model=list[NotificationResponse])
def list_my_notifications(
    principal: Principal = Depends(get_principal),
    notifier: Notifier = Depends(get_notifier),
) -> list[NotificationResponse]:
    try:
        records = notifier.list_for_account(principal.account_id)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return [NotificationResponse.from_record(record) for record in records]


@router.patch("/notifications/{notification_id}/read", response_model=NotificationResponse)
def mark_notification_read(
    notification_id: str,
    principal: Principal = Depends(get_principal),
    notifier: Notifier = Depends(get_notifier),
) -> NotificationResponse:
    try:
        record = notifier.mark_read(notification_id, principal.account_id)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return NotificationResponse.from_record(record)


@router.post("/notifications/me/read-all", response_model=MarkAllReadResponse)
def mark_all_notifications_read(
    principal: Principal = Depends(get_principal),
    notifier: Notifier = Depends(get_notifier),
) -> MarkAllReadResponse:
    try:
        updated = notifier.mark_all_read(principal.account_id)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return MarkAllReadResponse(updated=updated)


# audit


def _audit_response(
    service: AccountService,
    *,
    account_id: str | None,
    patient_id: str | None = None,
    event_type: str | None,
    created_after: datetime | None,
    created_before: datetime | None,
    limit: int,
    cursor: str | None,
) -> AuditLogResponse:
    try:
        records, next_cursor = service.list_audit_events(
            account_id=account_id,
            patient_id=patient_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=cursor,
        )
    except ClinicError as exc:
        raise _http_error(exc) from exc

    items = [
        AuditLogEntry(
            audit_id=record.audit_id,
            account_id=record.account_id,
            patient_id=record.patient_id,
            event_type=record.event_type,
            actor=record.actor,
            description=record.description,
            ip_address=record.ip_address,
            location=record.location,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record in records
    ]
    return AuditLogResponse(items=items, next_cursor=next_cursor)


@router.get("/audit/logs", response_model=AuditLogResponse)
def list_audit_logs(
    account_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    _: Principal = Depends(require_roles(Role.admin)),
    service: AccountService = Depends(get_account_service),
) -> AuditLogResponse:
    """Return paginated audit events with optional filtering."""
    return _audit_response(
        service,
        account_id=account_id,
        event_type=event_type,
        created_after=created_after,
        created_before=created_before,
        limit=limit,
        cursor=cursor,
    )


@router.get("/audit/logs/me", response_model=AuditLogResponse)
def list_my_audit_logs(
    event_type: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    principal: Principal = Depends(get_principal),
    service: AccountService = Depends(get_account_service),
) -> AuditLogResponse:
    return _audit_response(
        service,
        account_id=principal.account_id,
        event_type=event_type,
        created_after=None,
        created_before=None,
        limit=limit,
        cursor=cursor,
    )


@router.get("/audit/logs/patient/{patient_id}", response_model=AuditLogResponse)
def list_patient_audit_logs(
    patient_id: str,
    event_type: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    principal: Principal = Depends(get_principal),
    service: AccountService = Depends(get_account_service),
    patients: PatientService = Depends(get_patient_service),
) -> AuditLogResponse:
    """Activity touching one patient's record, e.g. who opened it via QR code."""
    try:
        _ensure_patient_scope(principal, patient_id, patients)
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return _audit_response(
        service,
        account_id=None,
        patient_id=patient_id,
        event_type=event_type,
        created_after=None,
        created_before=None,
        limit=limit,
        cursor=cursor,
    )


@router.get("/audit/statistics", response_model=AuditStatisticsResponse)
def audit_statistics(
    _: Principal = Depends(require_roles(Role.admin)),
    service: AccountService = Depends(get_account_service),
) -> AuditStatisticsResponse:
    try:
        stats = service.audit_statistics()
    except ClinicError as exc:
        raise _http_error(exc) from exc
    return AuditStatisticsResponse.from_domain(stats)
