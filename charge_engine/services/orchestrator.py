"""Charge orchestrator: free short-circuit or one off-session gateway charge"""

import logging
import uuid
from typing import Dict, List, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from charge_engine.config import settings
from charge_engine.domain.exceptions import (
    ChargeValidationError,
    GatewayError,
    GatewayTimeoutError,
    InvalidPaymentMethod,
    ReconciliationLinkError,
    StagingConflictError,
)
from charge_engine.domain.models import ChargeResult, GatewayCharge, PaymentProfile, PaymentStatus
from charge_engine.infrastructure.clients.gateway import PaymentGatewayClient
from charge_engine.infrastructure.database.models import Payment, StagingRecord
from charge_engine.infrastructure.database.repositories import PaymentRepository, StagingRepository
from charge_engine.infrastructure.observability.logging import log_event
from charge_engine.infrastructure.observability.metrics import record_charge, reconciliation_link_failure_counter
from charge_engine.services.notifications import Notifier
from charge_engine.utils.date_utils import utcnow

SETUP_SUCCEEDED = "succeeded"


def map_gateway_status(status: str) -> PaymentStatus:
    """Gateway intent status → payment status; anything unrecognised is a failure"""
    if status == "succeeded":
        return PaymentStatus.COMPLETED
    if status in ("processing", "requires_capture"):
        return PaymentStatus.PENDING
    return PaymentStatus.FAILED


def check_payment_profile(profile: PaymentProfile) -> None:
    """
    Raises:
        InvalidPaymentMethod: with reason no_payment_method, setup_not_verified or no_customer
    """
    if not profile.payment_instrument_id:
        raise InvalidPaymentMethod("no_payment_method", "No saved payment method")
    if profile.setup_intent_status != SETUP_SUCCEEDED:
        raise InvalidPaymentMethod("setup_not_verified", "Saved payment method was never verified")
    if not profile.gateway_customer_id:
        raise InvalidPaymentMethod("no_customer", "No gateway customer for user")


class ChargeOrchestrator:
    """
    Drives one staged charge to a Payment.

    At most one gateway call per invocation; retries belong to the scheduler.
    Calling again with a staging record that already has a payment returns
    that payment without touching the gateway.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGatewayClient,
        notifier: Notifier,
        currency: str | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier
        self.currency = currency or settings.currency
        self.payments = PaymentRepository(db)
        self.staging = StagingRepository(db)
        # Staging records whose payment completed during this orchestrator's lifetime
        self.finalized_records: List[uuid.UUID] = []

    async def charge(
        self,
        profile: PaymentProfile,
        amount_cents: int,
        record: StagingRecord,
        description: str,
        metadata: Optional[Dict[str, str]] = None,
        notify: bool = True,
    ) -> ChargeResult:
        """
        Charge the final amount of a staging record.

        Raises:
            ChargeValidationError: amount does not match the staging record
            InvalidPaymentMethod: paid charge without a usable stored instrument
            GatewayError / GatewayTimeoutError: gateway call failed; staging record left orphaned
            ReconciliationLinkError: payment created but not linked to the staging record
        """
        if amount_cents != record.final_cents:
            raise ChargeValidationError(
                f"Charge amount {amount_cents} does not match staging record final {record.final_cents}"
            )
        if profile.user_id != record.user_id:
            raise ChargeValidationError("Staging record belongs to a different user")

        if record.payment_id is not None:
            return self._already_processed(record)

        if amount_cents == 0:
            return self._charge_free(profile, record, description, notify)

        return await self._charge_paid(profile, amount_cents, record, description, metadata or {}, notify)

    async def settle(self, record: StagingRecord) -> ChargeResult:
        """
        Bring a pending payment up to date with the gateway, without charging.

        A payment that is already final is returned as is.

        Raises:
            ChargeValidationError: staging record has no payment to settle
            GatewayError / GatewayTimeoutError: status lookup failed; payment stays pending
        """
        payment = self.payments.get(record.payment_id) if record.payment_id else None
        if payment is None:
            raise ChargeValidationError(f"Staging record {record.id} has no payment to settle")
        if payment.status != PaymentStatus.PENDING.value:
            return self._result(payment, record, already_processed=True)

        charge = await self.gateway.retrieve_charge(payment.gateway_transaction_id)
        status = map_gateway_status(charge.status)
        if status == PaymentStatus.PENDING:
            log_event(
                "charge-still-pending",
                "Gateway has not settled the charge yet",
                payment_id=payment.id,
                staging_record_id=record.id,
                gateway_status=charge.status,
            )
            return self._result(payment, record)

        completed = status == PaymentStatus.COMPLETED
        settled = self.payments.settle(
            payment.id,
            status,
            failure_reason=None if completed else (charge.failure_reason or f"Payment status: {charge.status}"),
            completed_at=utcnow() if completed else None,
        )
        self.db.commit()
        self.db.refresh(payment)
        if not settled:
            return self._result(payment, record, already_processed=True)

        record_charge(status.value)
        log_event(
            "charge-settled",
            "Pending charge settled by the gateway",
            logging.INFO if completed else logging.WARNING,
            user_id=payment.user_id,
            payment_id=payment.id,
            staging_record_id=record.id,
            gateway_status=charge.status,
        )
        if completed:
            self._on_completed(payment, record, description="", notify=False)
        return self._result(payment, record)

    def _already_processed(self, record: StagingRecord) -> ChargeResult:
        payment = self.payments.get(record.payment_id)
        record_charge("already_processed")
        log_event(
            "charge-already-processed",
            "Staging record already linked to a payment; no new charge",
            staging_record_id=record.id,
            payment_id=record.payment_id,
        )
        return self._result(payment, record, already_processed=True)

    def _charge_free(self, profile: PaymentProfile, record: StagingRecord, description: str, notify: bool) -> ChargeResult:
        now = utcnow()
        payment = self.payments.create(
            user_id=profile.user_id,
            total_cents=record.total_cents,
            final_cents=0,
            status=PaymentStatus.COMPLETED,
            completed_at=now,
        )
        self.db.commit()
        self._link(payment, record, transaction_id=None)

        record_charge("free")
        log_event(
            "charge-free-completed",
            "Zero-amount charge completed without gateway call",
            user_id=profile.user_id,
            staging_record_id=record.id,
            payment_id=payment.id,
        )
        self._on_completed(payment, record, description, notify)
        return self._result(payment, record)

    async def _charge_paid(
        self,
        profile: PaymentProfile,
        amount_cents: int,
        record: StagingRecord,
        description: str,
        metadata: Dict[str, str],
        notify: bool,
    ) -> ChargeResult:
        try:
            check_payment_profile(profile)
        except InvalidPaymentMethod as e:
            record_charge("invalid_payment_method")
            log_event(
                "charge-invalid-payment-method",
                str(e),
                logging.WARNING,
                user_id=profile.user_id,
                staging_record_id=record.id,
                reason=e.reason,
            )
            raise

        try:
            charge = await self.gateway.create_charge(
                amount_cents=amount_cents,
                currency=self.currency,
                payment_method=profile.payment_instrument_id,
                customer=profile.gateway_customer_id,
                metadata={
                    **metadata,
                    "staging_record_id": str(record.id),
                    "user_id": str(profile.user_id),
                },
                idempotency_key=f"staging-{record.id}",
                description=description,
                receipt_email=profile.email,
            )
        except GatewayError as e:
            record_charge("gateway_error")
            log_event(
                "charge-gateway-error",
                "Gateway call failed; staging record left for reconciliation",
                logging.WARNING,
                user_id=profile.user_id,
                staging_record_id=record.id,
                timeout=isinstance(e, GatewayTimeoutError),
                error=str(e),
            )
            raise

        payment = self._record_payment(profile, record, charge)
        self._link(payment, record, transaction_id=charge.id)

        status = PaymentStatus(payment.status)
        record_charge(status.value)
        log_event(
            "charge-gateway-result",
            "Gateway charge recorded",
            logging.INFO if status == PaymentStatus.COMPLETED else logging.WARNING,
            user_id=profile.user_id,
            staging_record_id=record.id,
            payment_id=payment.id,
            gateway_transaction_id=charge.id,
            gateway_status=charge.status,
            amount_cents=amount_cents,
        )

        if status == PaymentStatus.COMPLETED:
            self._on_completed(payment, record, description, notify)
        return self._result(payment, record)

    def _record_payment(self, profile: PaymentProfile, record: StagingRecord, charge: GatewayCharge) -> Payment:
        # The gateway replays the same intent for a repeated idempotency key
        existing = self.payments.get_by_transaction_id(charge.id)
        if existing is not None:
            return existing

        status = map_gateway_status(charge.status)
        payment = self.payments.create(
            user_id=profile.user_id,
            total_cents=record.total_cents,
            final_cents=record.final_cents,
            status=status,
            gateway_transaction_id=charge.id,
            failure_reason=None if status == PaymentStatus.COMPLETED else (charge.failure_reason or f"Payment status: {charge.status}"),
            completed_at=utcnow() if status == PaymentStatus.COMPLETED else None,
        )
        self.db.commit()
        return payment

    def _link(self, payment: Payment, record: StagingRecord, transaction_id: Optional[str]) -> None:
        try:
            if transaction_id:
                self.staging.attach_transaction_id(record, transaction_id)
            self.staging.attach_payment(record, payment.id)
            self.db.commit()
        except (SQLAlchemyError, StagingConflictError) as e:
            self.db.rollback()
            reconciliation_link_failure_counter.inc()
            log_event(
                "staging-payment-link-failed",
                "Payment recorded but staging record link failed; ledger and payments out of sync",
                logging.CRITICAL,
                payment_id=payment.id,
                staging_record_id=record.id,
                gateway_transaction_id=transaction_id,
                error=str(e),
            )
            raise ReconciliationLinkError(payment.id, record.id, str(e)) from e

    def _on_completed(self, payment: Payment, record: StagingRecord, description: str, notify: bool) -> None:
        self.finalized_records.append(record.id)
        if notify:
            self.notifier.charge_completed(payment.user_id, payment.id, payment.final_cents, description)

    @staticmethod
    def _result(payment: Payment, record: StagingRecord, already_processed: bool = False) -> ChargeResult:
        return ChargeResult(
            payment_id=payment.id,
            staging_record_id=record.id,
            status=PaymentStatus(payment.status),
            amount_cents=payment.final_cents,
            gateway_transaction_id=payment.gateway_transaction_id,
            is_free=record.is_free,
            already_processed=already_processed,
            failure_reason=payment.failure_reason,
        )
