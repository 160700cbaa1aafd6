"""Notification staging into the outbox (delivery and templates live elsewhere)"""

import enum
import logging
import uuid
from datetime import date
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from charge_engine.domain.models import DueInstallment, PlanSummary
from charge_engine.infrastructure.database.repositories import NotificationRepository
from charge_engine.infrastructure.observability.logging import log_event


class NotificationEvent(str, enum.Enum):
    CHARGE_COMPLETED = "charge_completed"
    PAYMENT_PROCESSED = "payment_plan_payment_processed"
    PAYMENT_FAILED = "payment_plan_payment_failed"
    PLAN_COMPLETED = "payment_plan_completed"
    PRE_NOTIFICATION = "payment_plan_pre_notification"


class Notifier:
    """
    Stages notifications, each at most once per dedupe key.

    Callers commit their own state first; a failed notification write is
    rolled back on its own and never undoes a charge outcome.
    """

    def __init__(self, db: Session):
        self.db = db
        self.outbox = NotificationRepository(db)

    def charge_completed(self, user_id: uuid.UUID, payment_id: uuid.UUID, amount_cents: int, description: str) -> bool:
        return self._stage(
            user_id,
            NotificationEvent.CHARGE_COMPLETED,
            {"payment_id": str(payment_id), "amount_cents": amount_cents, "description": description},
            f"{NotificationEvent.CHARGE_COMPLETED.value}:{payment_id}",
        )

    def payment_processed(self, installment: DueInstallment, summary: PlanSummary, payment_id: uuid.UUID) -> bool:
        return self._stage(
            installment.user_id,
            NotificationEvent.PAYMENT_PROCESSED,
            {
                **_installment_payload(installment, summary),
                "payment_id": str(payment_id),
                "is_final_payment": summary.installments_paid >= summary.installments_count,
            },
            f"{NotificationEvent.PAYMENT_PROCESSED.value}:{installment.id}",
        )

    def payment_failed(
        self,
        installment: DueInstallment,
        summary: Optional[PlanSummary],
        attempt_number: int,
        remaining_retries: int,
        reason: str,
    ) -> bool:
        payload = _installment_payload(installment, summary)
        payload.update(failure_reason=reason, remaining_retries=remaining_retries)
        return self._stage(
            installment.user_id,
            NotificationEvent.PAYMENT_FAILED,
            payload,
            f"{NotificationEvent.PAYMENT_FAILED.value}:{installment.id}:{attempt_number}",
        )

    def plan_completed(self, summary: PlanSummary) -> bool:
        return self._stage(
            summary.user_id,
            NotificationEvent.PLAN_COMPLETED,
            {
                "plan_id": str(summary.id),
                "registration_name": summary.registration_name,
                "total_cents": summary.total_cents,
                "installments_count": summary.installments_count,
            },
            f"{NotificationEvent.PLAN_COMPLETED.value}:{summary.id}",
        )

    def pre_notification(self, installment: DueInstallment, summary: Optional[PlanSummary]) -> bool:
        return self._stage(
            installment.user_id,
            NotificationEvent.PRE_NOTIFICATION,
            _installment_payload(installment, summary),
            f"{NotificationEvent.PRE_NOTIFICATION.value}:{installment.id}:{installment.scheduled_date.isoformat()}",
        )

    def _stage(self, user_id: uuid.UUID, event: NotificationEvent, payload: dict, dedupe_key: str) -> bool:
        try:
            staged = self.outbox.stage(user_id, event.value, payload, dedupe_key)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            log_event(
                "notification-stage-failed",
                "Failed to stage notification",
                logging.WARNING,
                user_id=user_id,
                notification_event=event.value,
                dedupe_key=dedupe_key,
                error=str(e),
            )
            return False

        if staged:
            log_event("notification-staged", "Staged notification", user_id=user_id, notification_event=event.value)
        return staged


def _installment_payload(installment: DueInstallment, summary: Optional[PlanSummary]) -> dict:
    payload = {
        "plan_id": str(installment.plan_id),
        "installment_id": str(installment.id),
        "registration_name": installment.category_name,
        "installment_number": installment.installment_number,
        "installments_count": installment.installments_count,
        "installment_cents": installment.amount_cents,
        "scheduled_date": _iso(installment.scheduled_date),
    }
    if summary is not None:
        payload.update(
            paid_cents=summary.paid_cents,
            remaining_cents=summary.remaining_cents,
            next_payment_date=_iso(summary.next_payment_date),
        )
    return payload


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None
