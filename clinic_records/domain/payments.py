"""Payment ledger workflows, including settlement and account reactivation."""

from __future__ import annotations

from datetime import datetime, timezone
import logging

from .contracts import CreateObligationInput
from .errors import AlreadySettled, NotFound
from .payment import PaymentObligation, PaymentState, PaymentStatistics
from ..repository import ClinicRepository

logger = logging.getLogger(__name__)


class PaymentService:
    """Monthly payment obligations owed by patients."""

    def __init__(self, repository: ClinicRepository) -> None:
        self._repository = repository

    def create_obligation(self, payload: CreateObligationInput, actor: str | None = None) -> PaymentObligation:
        if self._repository.get_patient(payload.patient_id) is None:
            raise NotFound("patient not found")
        obligation = self._repository.create_obligation(payload)
        self._repository.write_audit_event(
            account_id=actor,
            patient_id=payload.patient_id,
            event_type="payment.created",
            actor=actor,
            description=f"obligation for {payload.month:02d}/{payload.year}",
            metadata={"payment_id": obligation.payment_id, "amount": str(payload.amount)},
        )
        return obligation

    def list_for_patient(self, patient_id: str) -> list[PaymentObligation]:
        return self._repository.list_obligations(patient_id=patient_id)

    def list_pending(self, patient_id: str) -> list[PaymentObligation]:
        return self._repository.list_obligations(
            patient_id=patient_id, state=PaymentState.pending, oldest_first=True
        )

    def list_all(self) -> list[PaymentObligation]:
        return self._repository.list_obligations()

    def statistics(self) -> PaymentStatistics:
        return self._repository.payment_statistics()

    def settle(
        self,
        payment_id: str,
        method: str,
        reference: str | None = None,
        actor: str | None = None,
    ) -> PaymentObligation:
        """Record an obligation as paid and unblock its owner once nothing is pending.

        Settling an obligation that is already paid raises :class:`AlreadySettled`
        and changes nothing. Only ``blocked`` accounts are reactivated; a
        ``suspended`` account stays suspended.
        """
        obligation = self._repository.get_obligation(payment_id)
        if obligation is None:
            raise NotFound("payment obligation not found")
        if obligation.state is PaymentState.paid:
            raise AlreadySettled()

        result = self._repository.settle_obligation(
            payment_id,
            method=method,
            reference=reference,
            paid_at=datetime.now(timezone.utc),
        )
        if result is None:
            # settled concurrently between the read above and the update
            raise AlreadySettled()

        settled = result.obligation
        if result.reactivated_account_id:
            logger.info(
                "reactivated account %s after settling payment %s",
                result.reactivated_account_id,
                settled.payment_id,
            )
        # already committed; audit failures are only logged
        try:
            self._repository.write_audit_event(
                account_id=actor,
                patient_id=settled.patient_id,
                event_type="payment.settled",
                actor=actor,
                description=f"obligation for {settled.month:02d}/{settled.year} paid",
                metadata={"payment_id": settled.payment_id, "method": method, "reference": reference},
            )
            if result.reactivated_account_id:
                self._repository.write_audit_event(
                    account_id=result.reactivated_account_id,
                    patient_id=settled.patient_id,
                    event_type="account.reactivated",
                    actor=actor,
                    description="all pending payments settled",
                )
        except Exception as exc:
            logger.warning("settlement audit write failed for payment %s: %s", settled.payment_id, exc)
        return settled
