"""Account service orchestrating registration, the login gate, administration and auditing."""

from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Any, Tuple, Optional

from .account import Account, AccountStatus, Role
from .contracts import PROFILE_FIELDS, REQUIRED_PROFILE_FIELDS, ClientContext, NewAccount, RegisterAccountInput
from .errors import (
    AccountBlocked,
    AccountSuspended,
    Conflict,
    Forbidden,
    InvalidCredentials,
    NotFound,
    ValidationFailed,
)
from .payment import PaymentState
from ..repository import AuditLogRecord, ClinicRepository
from ..security.passwords import hash_password, verify_password
from ..security.tokens import generate_qr_access_token, issue_access_token

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AuthResult:
    """Account plus the session token issued for it."""

    account: Account
    access_token: str
    expires_in: int


@dataclass(slots=True)
class AuditStatistics:
    total_events: int
    events_today: int


class AccountService:
    """Account workflows backed by Postgres storage."""

    def __init__(self, repository: ClinicRepository) -> None:
        self._repository = repository

    def register(self, payload: RegisterAccountInput, context: ClientContext | None = None) -> AuthResult:
        """Self-service sign-up for patients and doctors, signed in straight away.

        Administrator accounts are never created this way; see :meth:`provision_account`.
        """
        if payload.role is Role.admin:
            raise Forbidden("administrator accounts can only be created by an administrator")
        account = self._create_account(payload, actor=None, context=context)
        return self._issue(account)

    def provision_account(
        self, payload: RegisterAccountInput, actor: str, context: ClientContext | None = None
    ) -> Account:
        """Create an account of any role on behalf of an administrator."""
        return self._create_account(payload, actor=actor, context=context)

    def ensure_admin(self, email: str, password: str) -> Account | None:
        """Create the first administrator from configuration unless the email is already taken."""
        if self._repository.find_account_by_email(email) is not None:
            return None
        account = self._create_account(
            RegisterAccountInput(
                email=email,
                password=password,
                national_id=f"admin:{email}",
                first_name="Clinic",
                last_name="Administrator",
                role=Role.admin,
            ),
            actor="system",
            context=None,
        )
        logger.info("bootstrapped administrator account %s", account.account_id)
        return account

    def _create_account(
        self, payload: RegisterAccountInput, actor: str | None, context: ClientContext | None
    ) -> Account:
        if payload.role is Role.doctor and not payload.professional_registration:
            raise ValidationFailed("doctors must provide their professional registration number")

        existing = self._repository.find_account_by_email_or_national_id(payload.email, payload.national_id)
        if existing is not None:
            raise Conflict("an account with that email or national id already exists")

        new_account = NewAccount(
            email=payload.email,
            national_id=payload.national_id,
            first_name=payload.first_name,
            last_name=payload.last_name,
            role=payload.role,
            password_hash=hash_password(payload.password),
            phone=payload.phone,
            address=payload.address,
            birth_date=payload.birth_date,
            professional_registration=payload.professional_registration,
            specialty=payload.specialty,
        )
        qr_token = generate_qr_access_token() if payload.role is Role.patient else None
        account, _ = self._repository.create_account(new_account, qr_token)

        context = context or ClientContext()
        self._repository.write_audit_event(
            account_id=account.account_id,
            event_type="account.created",
            actor=actor or account.account_id,
            description="account registered" if actor is None else "account provisioned",
            ip_address=context.ip_address,
            location=context.location,
            metadata={"role": account.role.value},
        )
        return account

    def authenticate(self, email: str, password: str, context: ClientContext | None = None) -> AuthResult:
        """Decide whether a session may be issued for the credential pair.

        Unknown emails and wrong passwords both raise :class:`InvalidCredentials`.
        For patients, pending payment obligations are checked on every login and
        an active account is switched to ``blocked`` when any are found.
        """
        context = context or ClientContext()
        account = self._repository.find_account_by_email(email)
        valid = verify_password(password, account.password_hash if account else None)
        if account is None or not valid:
            raise InvalidCredentials()

        if account.status is AccountStatus.blocked:
            raise AccountBlocked()
        if account.status is AccountStatus.suspended:
            raise AccountSuspended()

        if account.role is Role.patient:
            self._gate_on_payments(account, context)

        try:
            self._repository.write_audit_event(
                account_id=account.account_id,
                event_type="login",
                actor=account.account_id,
                description="successful login",
                ip_address=context.ip_address,
                location=context.location,
            )
        except Exception as exc:
            logger.warning("login audit write failed for account %s: %s", account.account_id, exc)

        return self._issue(account)

    def _gate_on_payments(self, account: Account, context: ClientContext) -> None:
        patient = self._repository.get_patient_by_account(account.account_id)
        if patient is None:
            return
        pending = self._repository.list_obligations(patient_id=patient.patient_id, state=PaymentState.pending)
        if not pending:
            return

        if self._repository.block_if_pending(account.account_id, patient.patient_id):
            logger.info(
                "blocked account %s at login: %d pending obligation(s)", account.account_id, len(pending)
            )
            self._repository.write_audit_event(
                account_id=account.account_id,
                patient_id=patient.patient_id,
                event_type="account.blocked",
                actor="system",
                description="pending payments found at login",
                ip_address=context.ip_address,
                location=context.location,
                metadata={"pending_payment_ids": [item.payment_id for item in pending]},
            )
        raise AccountBlocked()

    def _issue(self, account: Account) -> AuthResult:
        token, expires_in = issue_access_token(
            subject=account.account_id,
            email=account.email,
            role=account.role.value,
        )
        return AuthResult(account=account, access_token=token, expires_in=expires_in)

    def get_account(self, account_id: str) -> Account:
        account = self._repository.get_account(account_id)
        if account is None:
            raise NotFound("account not found")
        return account

    def update_profile(self, account_id: str, changes: dict[str, Any]) -> Account:
        """Apply profile edits; identity, credential and status columns are ignored."""
        allowed = {key: value for key, value in changes.items() if key in PROFILE_FIELDS}
        cleared = sorted(key for key in REQUIRED_PROFILE_FIELDS if key in allowed and not allowed[key])
        if cleared:
            raise ValidationFailed(f"{', '.join(cleared)} cannot be empty")
        account = self._repository.update_account_profile(account_id, allowed)
        if account is None:
            raise NotFound("account not found")
        return account

    def suspend_account(self, account_id: str, actor: str) -> Account:
        """Administratively suspend an account. There is no transition out of this state."""
        account = self._repository.set_account_status(account_id, AccountStatus.suspended)
        if account is None:
            raise NotFound("account not found")
        self._repository.write_audit_event(
            account_id=account_id,
            event_type="account.suspended",
            actor=actor,
            description="account suspended by administrator",
        )
        return account

    def list_accounts(self, role: Role | None = None) -> list[Account]:
        return self._repository.list_accounts(role)

    def search_accounts(self, text: str) -> list[Account]:
        text = text.strip()
        if not text:
            raise ValidationFailed("search text is required")
        return self._repository.search_accounts(text)

    def delete_account(self, account_id: str, actor: str) -> None:
        """Remove an account along with its patient profile, ledger and notifications."""
        if account_id == actor:
            raise Forbidden("administrators cannot delete their own account")
        if not self._repository.delete_account(account_id):
            raise NotFound("account not found")
        logger.info("account %s deleted by %s", account_id, actor)
        self._repository.write_audit_event(
            account_id=account_id,
            event_type="account.deleted",
            actor=actor,
            description="account deleted by administrator",
        )

    def audit_statistics(self, now: datetime | None = None) -> AuditStatistics:
        """Count all audit events and those written since midnight UTC."""
        now = now or datetime.now(timezone.utc)
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        total, today = self._repository.audit_statistics(midnight)
        return AuditStatistics(total_events=total, events_today=today)

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        patient_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogRecord], str | None]:
        """Return audit log records with optional filters and cursor pagination."""
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        records, next_cursor_tuple = self._repository.list_audit_events(
            account_id=account_id,
            patient_id=patient_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=decoded_cursor,
        )
        next_cursor = self._encode_cursor(next_cursor_tuple) if next_cursor_tuple else None
        return records, next_cursor

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            created_at = datetime.fromisoformat(data["created_at"])
            audit_id = int(data["audit_id"])
            return created_at, audit_id
        except Exception as exc:
            raise ValidationFailed("invalid cursor") from exc
