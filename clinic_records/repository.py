"""Database repository for accounts, patients, payments, medical records, audit and notifications."""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, AccountStatus, Patient, Role
from .domain.contracts import CreateObligationInput, CreateRecordInput, NewAccount
from .domain.errors import Conflict, StoreError
from .domain.payment import PaymentObligation, PaymentState, PaymentStatistics, SettlementResult
from .domain.record import MedicalRecord

_ACCOUNT_COLUMNS = (
    "account_id, email, national_id, first_name, last_name, role, status, password_hash, "
    "created_at, updated_at, phone, address, birth_date, professional_registration, specialty"
)
_PATIENT_COLUMNS = "patient_id, account_id, qr_access_token, created_at, qr_code_url"
_PAYMENT_COLUMNS = (
    "payment_id, patient_id, month, year, amount, state, created_at, updated_at, "
    "method, reference, paid_at"
)
_AUDIT_COLUMNS = (
    "audit_id, account_id, patient_id, event_type, actor, description, "
    "ip_address, location, metadata, created_at"
)
_NOTIFICATION_COLUMNS = "notification_id, account_id, kind, title, message, read, created_at"
_RECORD_COLUMNS = (
    "record_id, patient_id, doctor_id, consulted_at, reason, symptoms, diagnosis, treatment, "
    "observations, signature, signed_by, signed_at, created_at, updated_at"
)


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in audit_log."""

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


@dataclass(slots=True)
class NotificationRecord:
    """Row projection for the notifications table."""

    notification_id: str
    account_id: str
    kind: str
    title: str
    message: str
    read: bool
    created_at: datetime


class ClinicRepository:
    """Postgres-backed persistence for the clinic records service."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    @contextmanager
    def _connection(self) -> Iterator[psycopg.Connection]:
        try:
            with self._pool.connection() as conn:
                yield conn
        except psycopg.Error as exc:
            raise StoreError(f"database error: {exc.__class__.__name__}") from exc

    # accounts

    def find_account_by_email(self, email: str) -> Account | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE email = %s", (email,))
                row = cur.fetchone()
        return self._map_account(row) if row else None

    def find_account_by_email_or_national_id(self, email: str, national_id: str) -> Account | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE email = %s OR national_id = %s LIMIT 1",
                    (email, national_id),
                )
                row = cur.fetchone()
        return self._map_account(row) if row else None

    def get_account(self, account_id: str) -> Account | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = %s", (account_id,))
                row = cur.fetchone()
        return self._map_account(row) if row else None

    def create_account(
        self, payload: NewAccount, qr_access_token: str | None = None
    ) -> Tuple[Account, Patient | None]:
        """Insert an account and, for patients, its clinical profile in one transaction."""
        account_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        patient: Patient | None = None
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                try:
                    cur.execute(
                        f"""
                        INSERT INTO accounts (
                            account_id, email, national_id, first_name, last_name, role, status,
                            password_hash, created_at, updated_at, phone, address, birth_date,
                            professional_registration, specialty
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING {_ACCOUNT_COLUMNS}
                        """,
                        (
                            account_id,
                            payload.email,
                            payload.national_id,
                            payload.first_name,
                            payload.last_name,
                            payload.role.value,
                            AccountStatus.active.value,
                            payload.password_hash,
                            now,
                            now,
                            payload.phone,
                            payload.address,
                            payload.birth_date,
                            payload.professional_registration,
                            payload.specialty,
                        ),
                    )
                except errors.UniqueViolation as exc:
                    raise Conflict("an account with that email or national id already exists") from exc
                account = self._map_account(cur.fetchone())

                if payload.role is Role.patient:
                    cur.execute(
                        f"""
                        INSERT INTO patients (patient_id, account_id, qr_access_token, created_at)
                        VALUES (%s, %s, %s, %s)
                        RETURNING {_PATIENT_COLUMNS}
                        """,
                        (str(uuid.uuid4()), account_id, qr_access_token, now),
                    )
                    patient = self._map_patient(cur.fetchone())

                conn.commit()
        return account, patient

    def update_account_profile(self, account_id: str, changes: dict[str, Any]) -> Account | None:
        """Apply whitelisted profile column changes; callers filter the keys."""
        if not changes:
            return self.get_account(account_id)
        assignments = ", ".join(f"{column} = %s" for column in changes)
        params = [*changes.values(), datetime.now(timezone.utc), account_id]
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE accounts SET {assignments}, updated_at = %s
                    WHERE account_id = %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    params,
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_account(row) if row else None

    def set_account_status(self, account_id: str, status: AccountStatus) -> Account | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE accounts SET status = %s, updated_at = %s
                    WHERE account_id = %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (status.value, datetime.now(timezone.utc), account_id),
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_account(row) if row else None

    def block_if_pending(self, account_id: str, patient_id: str) -> bool:
        """Move an active account to blocked while the patient still has a pending obligation.

        Takes the same patient row lock as :meth:`settle_obligation`, so a login
        racing the last settlement either blocks first (and is then reactivated)
        or sees the obligation already paid.
        """
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM patients WHERE patient_id = %s FOR UPDATE", (patient_id,))
                cur.execute(
                    """
                    UPDATE accounts SET status = 'blocked', updated_at = %s
                    WHERE account_id = %s
                      AND status = 'active'
                      AND EXISTS (
                          SELECT 1 FROM payments WHERE patient_id = %s AND state = 'pending'
                      )
                    """,
                    (datetime.now(timezone.utc), account_id, patient_id),
                )
                changed = cur.rowcount == 1
                conn.commit()
        return changed

    def list_accounts(self, role: Role | None = None) -> list[Account]:
        query = f"SELECT {_ACCOUNT_COLUMNS} FROM accounts"
        params: list[Any] = []
        if role:
            query += " WHERE role = %s"
            params.append(role.value)
        query += " ORDER BY created_at DESC"
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [self._map_account(row) for row in rows]

    def search_accounts(self, text: str, limit: int = 50) -> list[Account]:
        """Case-insensitive substring match on first name, last name or national id."""
        pattern = f"%{text}%"
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_ACCOUNT_COLUMNS} FROM accounts
                    WHERE first_name ILIKE %s OR last_name ILIKE %s OR national_id ILIKE %s
                    ORDER BY last_name, first_name
                    LIMIT %s
                    """,
                    (pattern, pattern, pattern, limit),
                )
                rows = cur.fetchall()
        return [self._map_account(row) for row in rows]

    def delete_account(self, account_id: str) -> bool:
        """Delete an account; its patient profile, ledger and notifications cascade."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                try:
                    cur.execute("DELETE FROM accounts WHERE account_id = %s", (account_id,))
                except errors.ForeignKeyViolation as exc:
                    raise Conflict("account still authors medical records") from exc
                deleted = cur.rowcount == 1
                conn.commit()
        return deleted

    def _map_account(self, row: tuple) -> Account:
        return Account(
            account_id=str(row[0]),
            email=row[1],
            national_id=row[2],
            first_name=row[3],
            last_name=row[4],
            role=Role(row[5]),
            status=AccountStatus(row[6]),
            password_hash=row[7],
            created_at=row[8],
            updated_at=row[9],
            phone=row[10],
            address=row[11],
            birth_date=row[12],
            professional_registration=row[13],
            specialty=row[14],
        )

    # patients

    def get_patient(self, patient_id: str) -> Patient | None:
        return self._fetch_patient("patient_id", patient_id)

    def get_patient_by_account(self, account_id: str) -> Patient | None:
        return self._fetch_patient("account_id", account_id)

    def get_patient_by_qr_token(self, token: str) -> Patient | None:
        return self._fetch_patient("qr_access_token", token)

    def _fetch_patient(self, column: str, value: str) -> Patient | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_PATIENT_COLUMNS} FROM patients WHERE {column} = %s", (value,))
                row = cur.fetchone()
        return self._map_patient(row) if row else None

    def set_patient_qr_code(self, patient_id: str, qr_code_url: str | None) -> Patient | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"UPDATE patients SET qr_code_url = %s WHERE patient_id = %s RETURNING {_PATIENT_COLUMNS}",
                    (qr_code_url, patient_id),
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_patient(row) if row else None

    def rotate_patient_qr_token(self, patient_id: str, token: str) -> Patient | None:
        """Replace the access token and drop the image rendered for the old one."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE patients SET qr_access_token = %s, qr_code_url = NULL
                    WHERE patient_id = %s
                    RETURNING {_PATIENT_COLUMNS}
                    """,
                    (token, patient_id),
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_patient(row) if row else None

    def list_patients(self) -> list[Tuple[Patient, Account]]:
        """Return every patient profile paired with its owning account, newest first."""
        patient_cols = ", ".join(f"p.{name.strip()}" for name in _PATIENT_COLUMNS.split(","))
        account_cols = ", ".join(f"a.{name.strip()}" for name in _ACCOUNT_COLUMNS.split(","))
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {patient_cols}, {account_cols}
                    FROM patients AS p JOIN accounts AS a ON a.account_id = p.account_id
                    ORDER BY p.created_at DESC
                    """
                )
                rows = cur.fetchall()
        width = len(_PATIENT_COLUMNS.split(","))
        return [(self._map_patient(row[:width]), self._map_account(row[width:])) for row in rows]

    def _map_patient(self, row: tuple) -> Patient:
        return Patient(
            patient_id=str(row[0]),
            account_id=str(row[1]),
            qr_access_token=row[2],
            created_at=row[3],
            qr_code_url=row[4],
        )

    # payments

    def create_obligation(self, payload: CreateObligationInput) -> PaymentObligation:
        now = datetime.now(timezone.utc)
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                try:
                    cur.execute(
                        f"""
                        INSERT INTO payments (payment_id, patient_id, month, year, amount, state, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING {_PAYMENT_COLUMNS}
                        """,
                        (
                            str(uuid.uuid4()),
                            payload.patient_id,
                            payload.month,
                            payload.year,
                            payload.amount,
                            PaymentState.pending.value,
                            now,
                            now,
                        ),
                    )
                except errors.UniqueViolation as exc:
                    raise Conflict("an obligation for that billing period already exists") from exc
                row = cur.fetchone()
                conn.commit()
        return self._map_payment(row)

    def get_obligation(self, payment_id: str) -> PaymentObligation | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE payment_id = %s", (payment_id,))
                row = cur.fetchone()
        return self._map_payment(row) if row else None

    def list_obligations(
        self,
        *,
        patient_id: str | None = None,
        state: PaymentState | None = None,
        oldest_first: bool = False,
    ) -> list[PaymentObligation]:
        """Return obligations ordered by billing period, newest first unless ``oldest_first``."""
        clauses = ["TRUE"]
        params: list[Any] = []
        if patient_id:
            clauses.append("patient_id = %s")
            params.append(patient_id)
        if state:
            clauses.append("state = %s")
            params.append(state.value)
        direction = "ASC" if oldest_first else "DESC"
        query = f"""
            SELECT {_PAYMENT_COLUMNS} FROM payments
            WHERE {" AND ".join(clauses)}
            ORDER BY year {direction}, month {direction}, created_at {direction}
        """
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [self._map_payment(row) for row in rows]

    def settle_obligation(
        self,
        payment_id: str,
        *,
        method: str,
        reference: str | None,
        paid_at: datetime,
    ) -> SettlementResult | None:
        """Mark an obligation paid and reactivate its blocked owner in a single transaction.

        Returns ``None`` when the obligation is missing or was already paid. The
        patient row is locked first so concurrent settlements for the same patient
        serialise and the last one observes no remaining pending obligations.
        """
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute("SELECT patient_id FROM payments WHERE payment_id = %s", (payment_id,))
                owner = cur.fetchone()
                if owner is None:
                    conn.rollback()
                    return None
                patient_id = owner[0]
                cur.execute("SELECT 1 FROM patients WHERE patient_id = %s FOR UPDATE", (patient_id,))

                cur.execute(
                    f"""
                    UPDATE payments
                    SET state = 'paid', paid_at = %s, method = %s, reference = %s, updated_at = %s
                    WHERE payment_id = %s AND state <> 'paid'
                    RETURNING {_PAYMENT_COLUMNS}
                    """,
                    (paid_at, method, reference, paid_at, payment_id),
                )
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    return None
                obligation = self._map_payment(row)

                cur.execute(
                    """
                    UPDATE accounts AS a SET status = 'active', updated_at = %s
                    FROM patients AS p
                    WHERE p.patient_id = %s
                      AND a.account_id = p.account_id
                      AND a.status = 'blocked'
                      AND NOT EXISTS (
                          SELECT 1 FROM payments WHERE patient_id = %s AND state = 'pending'
                      )
                    RETURNING a.account_id
                    """,
                    (paid_at, patient_id, patient_id),
                )
                reactivated = cur.fetchone()
                conn.commit()
        return SettlementResult(
            obligation=obligation,
            reactivated_account_id=str(reactivated[0]) if reactivated else None,
        )

    def payment_statistics(self) -> PaymentStatistics:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT
                        COALESCE(SUM(amount) FILTER (WHERE state = 'pending'), 0),
                        COALESCE(SUM(amount) FILTER (WHERE state = 'paid'), 0),
                        COUNT(*) FILTER (WHERE state = 'pending'),
                        COUNT(*) FILTER (WHERE state = 'paid')
                    FROM payments
                    """
                )
                row = cur.fetchone()
        return PaymentStatistics(
            total_pending=Decimal(row[0]),
            total_paid=Decimal(row[1]),
            pending_count=int(row[2]),
            paid_count=int(row[3]),
        )

    def _map_payment(self, row: tuple) -> PaymentObligation:
        return PaymentObligation(
            payment_id=str(row[0]),
            patient_id=str(row[1]),
            month=row[2],
            year=row[3],
            amount=Decimal(row[4]),
            state=PaymentState(row[5]),
            created_at=row[6],
            updated_at=row[7],
            method=row[8],
            reference=row[9],
            paid_at=row[10],
        )

    # medical records

    def create_record(self, payload: CreateRecordInput, doctor_id: str) -> MedicalRecord:
        now = datetime.now(timezone.utc)
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    INSERT INTO medical_records (
                        record_id, patient_id, doctor_id, consulted_at, reason, symptoms,
                        diagnosis, treatment, observations, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_RECORD_COLUMNS}
                    """,
                    (
                        str(uuid.uuid4()),
                        payload.patient_id,
                        doctor_id,
                        payload.consulted_at or now,
                        payload.reason,
                        payload.symptoms,
                        payload.diagnosis,
                        payload.treatment,
                        payload.observations,
                        now,
                        now,
                    ),
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_record(row)

    def get_record(self, record_id: str) -> MedicalRecord | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_RECORD_COLUMNS} FROM medical_records WHERE record_id = %s", (record_id,))
                row = cur.fetchone()
        return self._map_record(row) if row else None

    def list_records(self, patient_id: str) -> list[MedicalRecord]:
        """Return a patient's consultations, most recent consultation first."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_RECORD_COLUMNS} FROM medical_records
                    WHERE patient_id = %s
                    ORDER BY consulted_at DESC, created_at DESC
                    """,
                    (patient_id,),
                )
                rows = cur.fetchall()
        return [self._map_record(row) for row in rows]

    def update_record(self, record_id: str, changes: dict[str, Any]) -> MedicalRecord | None:
        """Apply whitelisted clinical field changes; callers filter the keys."""
        if not changes:
            return self.get_record(record_id)
        assignments = ", ".join(f"{column} = %s" for column in changes)
        params = [*changes.values(), datetime.now(timezone.utc), record_id]
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE medical_records SET {assignments}, updated_at = %s
                    WHERE record_id = %s
                    RETURNING {_RECORD_COLUMNS}
                    """,
                    params,
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_record(row) if row else None

    def sign_record(self, record_id: str, signer_id: str, signature: str, signed_at: datetime) -> MedicalRecord | None:
        """Stamp a signature on an unsigned record; returns ``None`` if missing or already signed."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE medical_records
                    SET signature = %s, signed_by = %s, signed_at = %s, updated_at = %s
                    WHERE record_id = %s AND signed_at IS NULL
                    RETURNING {_RECORD_COLUMNS}
                    """,
                    (signature, signer_id, signed_at, signed_at, record_id),
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_record(row) if row else None

    def delete_record(self, record_id: str) -> bool:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM medical_records WHERE record_id = %s", (record_id,))
                deleted = cur.rowcount == 1
                conn.commit()
        return deleted

    def _map_record(self, row: tuple) -> MedicalRecord:
        return MedicalRecord(
            record_id=str(row[0]),
            patient_id=str(row[1]),
            doctor_id=str(row[2]),
            consulted_at=row[3],
            reason=row[4],
            symptoms=row[5],
            diagnosis=row[6],
            treatment=row[7],
            observations=row[8],
            signature=row[9],
            signed_by=str(row[10]) if row[10] else None,
            signed_at=row[11],
            created_at=row[12],
            updated_at=row[13],
        )

    # audit log

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        patient_id: str | None = None,
        description: str | None = None,
        ip_address: str | None = None,
        location: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing account and record activity."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO audit_log (
                        account_id, patient_id, event_type, actor, description, ip_address, location, metadata
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account_id,
                        patient_id,
                        event_type,
                        actor,
                        description,
                        ip_address,
                        location,
                        Json(metadata or {}),
                    ),
                )
                conn.commit()

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        patient_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]:
        """Return audit log entries with optional filters and cursor pagination."""
        limit = max(1, min(limit, 100))
        clauses = ["TRUE"]
        params: list[Any] = []

        if account_id:
            clauses.append("account_id = %s")
            params.append(account_id)
        if patient_id:
            clauses.append("patient_id = %s")
            params.append(patient_id)
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if created_after:
            clauses.append("created_at >= %s")
            params.append(created_after)
        if created_before:
            clauses.append("created_at <= %s")
            params.append(created_before)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT {_AUDIT_COLUMNS}
            FROM audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit)

        records: list[AuditLogRecord] = []
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                for row in cur.fetchall():
                    records.append(
                        AuditLogRecord(
                            audit_id=row[0],
                            account_id=str(row[1]) if row[1] else None,
                            patient_id=str(row[2]) if row[2] else None,
                            event_type=row[3],
                            actor=row[4],
                            description=row[5],
                            ip_address=row[6],
                            location=row[7],
                            metadata=row[8] or {},
                            created_at=row[9],
                        )
                    )

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor

    def audit_statistics(self, since: datetime) -> Tuple[int, int]:
        """Return the total number of audit events and how many were written at or after ``since``."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    "SELECT COUNT(*), COUNT(*) FILTER (WHERE created_at >= %s) FROM audit_log",
                    (since,),
                )
                row = cur.fetchone()
        return int(row[0]), int(row[1])

    # notifications

    def create_notification(self, *, account_id: str, kind: str, title: str, message: str) -> NotificationRecord:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    INSERT INTO notifications (notification_id, account_id, kind, title, message, read, created_at)
                    VALUES (%s, %s, %s, %s, %s, FALSE, %s)
                    RETURNING {_NOTIFICATION_COLUMNS}
                    """,
                    (str(uuid.uuid4()), account_id, kind, title, message, datetime.now(timezone.utc)),
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_notification(row)

    def list_notifications(self, account_id: str) -> list[NotificationRecord]:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_NOTIFICATION_COLUMNS} FROM notifications
                    WHERE account_id = %s
                    ORDER BY created_at DESC
                    """,
                    (account_id,),
                )
                rows = cur.fetchall()
        return [self._map_notification(row) for row in rows]

    def mark_notification_read(self, notification_id: str, account_id: str) -> NotificationRecord | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE notifications SET read = TRUE
                    WHERE notification_id = %s AND account_id = %s
                    RETURNING {_NOTIFICATION_COLUMNS}
                    """,
                    (notification_id, account_id),
                )
                row = cur.fetchone()
                conn.commit()
        return self._map_notification(row) if row else None

    def mark_all_notifications_read(self, account_id: str) -> int:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE notifications SET read = TRUE WHERE account_id = %s AND read = FALSE",
                    (account_id,),
                )
                updated = cur.rowcount
                conn.commit()
        return updated

    def _map_notification(self, row: tuple) -> NotificationRecord:
        return NotificationRecord(
            notification_id=str(row[0]),
            account_id=str(row[1]),
            kind=row[2],
            title=row[3],
            message=row[4],
            read=row[5],
            created_at=row[6],
        )
