"""Data access layer for charge engine entities

Repositories flush but never commit; services own transaction boundaries.
Joined rows are normalized into domain dataclasses here so business logic
never branches on ORM relationship shapes.
"""

import uuid
from datetime import date, datetime
from typing import List, Optional
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from charge_engine.infrastructure.database.models import (
    DiscountCategory as DiscountCategoryRow,
    DiscountCode as DiscountCodeRow,
    NotificationOutbox,
    Payment,
    PaymentInstallment,
    PaymentPlan,
    RegistrationCategory as RegistrationCategoryRow,
    StagingLineItem,
    StagingRecord,
    User,
    UserRegistration,
)
from charge_engine.domain.models import (
    DiscountCategory,
    DiscountCode,
    DueInstallment,
    Installment,
    InstallmentStatus,
    LineItem,
    LineItemKind,
    PaymentProfile,
    PaymentStatus,
    PlanStatus,
    PlanSummary,
    RegistrationCategory,
)
from charge_engine.domain.exceptions import StagingConflictError

_OPEN_INSTALLMENT_STATUSES = (InstallmentStatus.PLANNED.value, InstallmentStatus.FAILED.value)
_LIVE_PLAN_STATUSES = (PlanStatus.ACTIVE.value, PlanStatus.COMPLETED.value)


def parse_uuid(value) -> Optional[uuid.UUID]:
    """Coerce a user-supplied id; malformed ids become None"""
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class UserRepository:
    """Repository for members and their payment instruments"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: uuid.UUID) -> Optional[User]:
        return self.db.get(User, user_id)

    def get_by_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        return self.db.query(User).filter(User.api_token == token).first()

    def get_payment_profile(self, user_id: uuid.UUID) -> Optional[PaymentProfile]:
        user = self.get(user_id)
        if user is None:
            return None
        return PaymentProfile(
            user_id=user.id,
            email=user.email,
            full_name=f"{user.first_name} {user.last_name}".strip(),
            payment_instrument_id=user.payment_instrument_id,
            setup_intent_status=user.setup_intent_status,
            gateway_customer_id=user.gateway_customer_id,
        )


class CatalogRepository:
    """Read-only access to registration categories and discount codes"""

    def __init__(self, db: Session):
        self.db = db

    def get_category(self, category_id: uuid.UUID) -> Optional[RegistrationCategory]:
        row = self.db.get(RegistrationCategoryRow, category_id)
        if row is None:
            return None
        return RegistrationCategory(
            id=row.id,
            name=row.name,
            season_id=row.season_id,
            price=row.price,
            accounting_code=row.accounting_code,
        )

    def get_discount_code(self, code_id: uuid.UUID, as_of: date) -> Optional[DiscountCode]:
        """Active, in-window discount code or None"""
        row = self.db.get(DiscountCodeRow, code_id)
        return self._usable_code(row, as_of)

    def get_discount_code_by_code(self, code: str, as_of: date) -> Optional[DiscountCode]:
        row = (
            self.db.query(DiscountCodeRow)
            .filter(func.upper(DiscountCodeRow.code) == code.strip().upper())
            .first()
        )
        return self._usable_code(row, as_of)

    def get_discount_category(self, category_id: uuid.UUID) -> Optional[DiscountCategory]:
        row = self.db.get(DiscountCategoryRow, category_id)
        return _to_discount_category(row) if row else None

    def _usable_code(self, row: Optional[DiscountCodeRow], as_of: date) -> Optional[DiscountCode]:
        if row is None or not row.is_active or row.category is None or not row.category.is_active:
            return None
        if row.valid_from and as_of < row.valid_from:
            return None
        if row.valid_until and as_of > row.valid_until:
            return None
        return DiscountCode(
            id=row.id,
            code=row.code,
            percentage=row.percentage,
            per_user_usage_limit=row.per_user_usage_limit,
            category=_to_discount_category(row.category),
        )


def _to_discount_category(row: DiscountCategoryRow) -> DiscountCategory:
    return DiscountCategory(
        id=row.id,
        name=row.name,
        accounting_code=row.accounting_code,
        max_discount_per_user_per_season=row.max_discount_per_user_per_season,
    )


class DiscountUsageRepository:
    """Derived discount usage projected from completed charges and live plans"""

    def __init__(self, db: Session):
        self.db = db

    def seasonal_usage(self, user_id: uuid.UUID, discount_category_id: uuid.UUID, season_id: uuid.UUID) -> int:
        """Total discount (cents) a user received this season from one discount category"""
        charged = (
            self.db.query(func.coalesce(func.sum(-StagingLineItem.amount_cents), 0))
            .join(StagingRecord, StagingLineItem.staging_record_id == StagingRecord.id)
            .join(Payment, StagingRecord.payment_id == Payment.id)
            .join(DiscountCodeRow, StagingLineItem.discount_code_id == DiscountCodeRow.id)
            .filter(
                StagingRecord.user_id == user_id,
                StagingRecord.season_id == season_id,
                StagingLineItem.kind == LineItemKind.DISCOUNT.value,
                Payment.status == PaymentStatus.COMPLETED.value,
                DiscountCodeRow.discount_category_id == discount_category_id,
            )
            .scalar()
        )
        planned = (
            self.db.query(func.coalesce(func.sum(PaymentPlan.discount_cents), 0))
            .join(DiscountCodeRow, PaymentPlan.discount_code_id == DiscountCodeRow.id)
            .filter(
                PaymentPlan.user_id == user_id,
                PaymentPlan.season_id == season_id,
                PaymentPlan.status.in_(_LIVE_PLAN_STATUSES),
                PaymentPlan.installments_paid > 0,
                DiscountCodeRow.discount_category_id == discount_category_id,
            )
            .scalar()
        )
        return int(charged or 0) + int(planned or 0)

    def code_usage_count(self, user_id: uuid.UUID, discount_code_id: uuid.UUID) -> int:
        """Number of completed purchases in which a user applied this code"""
        charged = (
            self.db.query(func.count(func.distinct(StagingRecord.id)))
            .join(StagingLineItem, StagingLineItem.staging_record_id == StagingRecord.id)
            .join(Payment, StagingRecord.payment_id == Payment.id)
            .filter(
                StagingRecord.user_id == user_id,
                StagingLineItem.discount_code_id == discount_code_id,
                Payment.status == PaymentStatus.COMPLETED.value,
            )
            .scalar()
        )
        planned = (
            self.db.query(func.count(PaymentPlan.id))
            .filter(
                PaymentPlan.user_id == user_id,
                PaymentPlan.discount_code_id == discount_code_id,
                PaymentPlan.status.in_(_LIVE_PLAN_STATUSES),
                PaymentPlan.installments_paid > 0,
            )
            .scalar()
        )
        return int(charged or 0) + int(planned or 0)


class StagingRepository:
    """Repository for pre-charge staging records"""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        user_id: uuid.UUID,
        season_id: Optional[uuid.UUID],
        total_cents: int,
        discount_cents: int,
        final_cents: int,
        line_items: List[LineItem],
        is_free: bool = False,
    ) -> StagingRecord:
        """Persist one staging record with its line items"""
        record = StagingRecord(
            user_id=user_id,
            season_id=season_id,
            total_cents=total_cents,
            discount_cents=discount_cents,
            final_cents=final_cents,
            is_free=is_free,
        )
        for position, item in enumerate(line_items):
            record.line_items.append(
                StagingLineItem(
                    position=position,
                    kind=item.kind.value,
                    amount_cents=item.amount_cents,
                    description=item.description,
                    accounting_code=item.accounting_code,
                    discount_code_id=item.discount_code_id,
                )
            )
        self.db.add(record)
        self.db.flush()  # Get ID without committing
        return record

    def get(self, record_id: uuid.UUID) -> Optional[StagingRecord]:
        return self.db.get(StagingRecord, record_id)

    def attach_transaction_id(self, record: StagingRecord, transaction_id: str) -> bool:
        """Set the gateway transaction id once; same id again is a no-op"""
        return self._attach(record, "gateway_transaction_id", transaction_id)

    def attach_payment(self, record: StagingRecord, payment_id: uuid.UUID) -> bool:
        """Link the completed payment once; same id again is a no-op"""
        return self._attach(record, "payment_id", payment_id)

    def _attach(self, record: StagingRecord, column: str, value) -> bool:
        current = getattr(record, column)
        if current == value:
            return False
        if current is not None:
            raise StagingConflictError(f"Staging record {record.id}: {column} already set to {current}")
        setattr(record, column, value)
        self.db.flush()
        return True

    def list_orphaned(self, created_before: Optional[datetime] = None) -> List[StagingRecord]:
        """
        Staging intents never linked to a payment (gateway failure or timeout).

        Payment plan invoices are settled installment by installment and are
        never orphans.
        """
        invoices = select(PaymentPlan.staging_record_id).where(PaymentPlan.staging_record_id.is_not(None))
        query = self.db.query(StagingRecord).filter(
            StagingRecord.payment_id.is_(None),
            StagingRecord.id.not_in(invoices),
        )
        if created_before is not None:
            query = query.filter(StagingRecord.created_at < created_before)
        return query.order_by(StagingRecord.created_at).all()


class PaymentRepository:
    """Repository for payments"""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        user_id: uuid.UUID,
        total_cents: int,
        final_cents: int,
        status: PaymentStatus,
        gateway_transaction_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> Payment:
        payment = Payment(
            user_id=user_id,
            total_cents=total_cents,
            final_cents=final_cents,
            status=status.value,
            gateway_transaction_id=gateway_transaction_id,
            failure_reason=failure_reason,
            completed_at=completed_at,
        )
        self.db.add(payment)
        self.db.flush()
        return payment

    def get(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return self.db.get(Payment, payment_id)

    def get_by_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.gateway_transaction_id == transaction_id).first()

    def settle(
        self,
        payment_id: uuid.UUID,
        status: PaymentStatus,
        failure_reason: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        """Move a pending payment to its final status; False if it was no longer pending"""
        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
            .values(status=status.value, failure_reason=failure_reason, completed_at=completed_at)
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
        return result.rowcount == 1


class RegistrationRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(self, user_id: uuid.UUID, category_id: uuid.UUID, payment_id: Optional[uuid.UUID] = None) -> UserRegistration:
        registration = UserRegistration(user_id=user_id, category_id=category_id, payment_id=payment_id)
        self.db.add(registration)
        self.db.flush()
        return registration


class PaymentPlanRepository:
    """Repository for payment plans and their installments"""

    def __init__(self, db: Session):
        self.db = db

    def create_plan(
        self,
        user_id: uuid.UUID,
        category_id: uuid.UUID,
        season_id: uuid.UUID,
        total_cents: int,
        installments: List[Installment],
        user_registration_id: Optional[uuid.UUID] = None,
        discount_code_id: Optional[uuid.UUID] = None,
        discount_cents: int = 0,
        staging_record_id: Optional[uuid.UUID] = None,
    ) -> PaymentPlan:
        """Create payment plan with installments"""
        db_plan = PaymentPlan(
            user_id=user_id,
            user_registration_id=user_registration_id,
            category_id=category_id,
            season_id=season_id,
            total_cents=total_cents,
            installment_cents=installments[0].amount_cents,
            installments_count=len(installments),
            installments_paid=0,
            next_payment_date=installments[0].due_date,
            status=PlanStatus.ACTIVE.value,
            discount_code_id=discount_code_id,
            discount_cents=discount_cents,
            staging_record_id=staging_record_id,
        )
        self.db.add(db_plan)
        self.db.flush()

        for number, inst in enumerate(installments, start=1):
            self.db.add(
                PaymentInstallment(
                    plan_id=db_plan.id,
                    installment_number=number,
                    amount_cents=inst.amount_cents,
                    scheduled_date=inst.due_date,
                    attempt_count=0,
                    status=InstallmentStatus.PLANNED.value,
                )
            )
        self.db.flush()
        return db_plan

    def get_plan(self, plan_id: uuid.UUID) -> Optional[PaymentPlan]:
        return self.db.get(PaymentPlan, plan_id)

    def get_installment(self, installment_id: uuid.UUID) -> Optional[PaymentInstallment]:
        return self.db.get(PaymentInstallment, installment_id)

    def get_summary(self, plan_id: uuid.UUID, max_attempts: int) -> Optional[PlanSummary]:
        plan = self.get_plan(plan_id)
        return self._summarize(plan, max_attempts) if plan else None

    def list_user_summaries(self, user_id: uuid.UUID, max_attempts: int) -> List[PlanSummary]:
        plans = (
            self.db.query(PaymentPlan)
            .filter(PaymentPlan.user_id == user_id, PaymentPlan.status.in_(_LIVE_PLAN_STATUSES))
            .order_by(PaymentPlan.created_at)
            .all()
        )
        return [self._summarize(plan, max_attempts) for plan in plans]

    def list_requiring_attention(self, max_attempts: int) -> List[PlanSummary]:
        """Active plans holding an installment that exhausted its attempts"""
        plans = (
            self.db.query(PaymentPlan)
            .join(PaymentInstallment, PaymentInstallment.plan_id == PaymentPlan.id)
            .filter(
                PaymentPlan.status == PlanStatus.ACTIVE.value,
                PaymentInstallment.status == InstallmentStatus.FAILED.value,
                PaymentInstallment.attempt_count >= max_attempts,
            )
            .distinct()
            .all()
        )
        return [self._summarize(plan, max_attempts) for plan in plans]

    def _summarize(self, plan: PaymentPlan, max_attempts: int) -> PlanSummary:
        paid = sum(i.amount_cents for i in plan.installments if i.status == InstallmentStatus.SUCCEEDED.value)
        stuck = [
            i.installment_number
            for i in plan.installments
            if i.status == InstallmentStatus.FAILED.value and i.attempt_count >= max_attempts
        ]
        return PlanSummary(
            id=plan.id,
            user_id=plan.user_id,
            user_registration_id=plan.user_registration_id,
            registration_name=plan.category.name if plan.category else "Registration",
            total_cents=plan.total_cents,
            paid_cents=paid,
            installment_cents=plan.installment_cents,
            installments_count=plan.installments_count,
            installments_paid=plan.installments_paid,
            next_payment_date=plan.next_payment_date,
            status=PlanStatus(plan.status),
            created_at=plan.created_at,
            stuck_installments=stuck,
        )

    def find_due_installments(self, today: date) -> List[DueInstallment]:
        """Open installments of active plans scheduled on or before today, plus unsettled ones"""
        return self._find_installments(
            or_(
                and_(
                    PaymentInstallment.status.in_(_OPEN_INSTALLMENT_STATUSES),
                    PaymentInstallment.scheduled_date <= today,
                ),
                PaymentInstallment.status == InstallmentStatus.PENDING.value,
            )
        )

    def find_upcoming_installments(self, on_date: date) -> List[DueInstallment]:
        """Never-attempted installments scheduled exactly on a date"""
        return self._find_installments(
            PaymentInstallment.status == InstallmentStatus.PLANNED.value,
            PaymentInstallment.attempt_count == 0,
            PaymentInstallment.scheduled_date == on_date,
        )

    def _find_installments(self, *criteria) -> List[DueInstallment]:
        rows = self.db.execute(
            select(PaymentInstallment, PaymentPlan, RegistrationCategoryRow)
            .join(PaymentPlan, PaymentInstallment.plan_id == PaymentPlan.id)
            .join(RegistrationCategoryRow, PaymentPlan.category_id == RegistrationCategoryRow.id)
            .where(PaymentPlan.status == PlanStatus.ACTIVE.value, *criteria)
            .order_by(PaymentInstallment.scheduled_date, PaymentInstallment.installment_number)
        ).all()
        return [self._to_due(inst, plan, category) for inst, plan, category in rows]

    def to_due_installment(self, installment: PaymentInstallment) -> DueInstallment:
        plan = installment.plan
        return self._to_due(installment, plan, plan.category)

    @staticmethod
    def _to_due(inst: PaymentInstallment, plan: PaymentPlan, category: RegistrationCategoryRow) -> DueInstallment:
        return DueInstallment(
            id=inst.id,
            plan_id=plan.id,
            user_id=plan.user_id,
            installment_number=inst.installment_number,
            installments_count=plan.installments_count,
            amount_cents=inst.amount_cents,
            scheduled_date=inst.scheduled_date,
            attempt_count=inst.attempt_count,
            last_attempt_at=inst.last_attempt_at,
            status=InstallmentStatus(inst.status),
            staging_record_id=inst.staging_record_id,
            category_name=category.name,
            accounting_code=category.accounting_code or "",
            season_id=plan.season_id,
        )

    def claim_installment(self, installment_id: uuid.UUID, expected_attempts: int, now: datetime) -> bool:
        """
        Conditionally move an open installment to processing and count the attempt.

        Returns False when another worker already claimed or changed the row.
        """
        result = self.db.execute(
            update(PaymentInstallment)
            .where(
                and_(
                    PaymentInstallment.id == installment_id,
                    PaymentInstallment.status.in_(_OPEN_INSTALLMENT_STATUSES),
                    PaymentInstallment.attempt_count == expected_attempts,
                )
            )
            .values(
                status=InstallmentStatus.PROCESSING.value,
                attempt_count=PaymentInstallment.attempt_count + 1,
                last_attempt_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        if claimed:
            self.db.refresh(self.db.get(PaymentInstallment, installment_id))
        return claimed

    def claim_pending_installment(self, installment_id: uuid.UUID, now: datetime) -> bool:
        """Claim an unsettled installment for a status check; the attempt was already counted"""
        result = self.db.execute(
            update(PaymentInstallment)
            .where(
                PaymentInstallment.id == installment_id,
                PaymentInstallment.status == InstallmentStatus.PENDING.value,
            )
            .values(status=InstallmentStatus.PROCESSING.value, last_attempt_at=now)
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        if claimed:
            self.db.refresh(self.db.get(PaymentInstallment, installment_id))
        return claimed

    def release_stale_claims(self, stale_before: datetime, max_attempts: int) -> List[PaymentInstallment]:
        """
        Return installments claimed before stale_before to the retry path.

        The abandoned attempt stays counted: under max_attempts the row goes
        back to planned, at max_attempts it is failed and needs an operator.
        """
        stale = and_(
            PaymentInstallment.status == InstallmentStatus.PROCESSING.value,
            PaymentInstallment.last_attempt_at < stale_before,
        )
        ids = [row.id for row in self.db.query(PaymentInstallment.id).filter(stale).all()]
        if not ids:
            return []

        reason = "Claim expired before the attempt finished"
        for exhausted, status in ((False, InstallmentStatus.PLANNED), (True, InstallmentStatus.FAILED)):
            attempts = (
                PaymentInstallment.attempt_count >= max_attempts
                if exhausted
                else PaymentInstallment.attempt_count < max_attempts
            )
            self.db.execute(
                update(PaymentInstallment)
                .where(PaymentInstallment.id.in_(ids), stale, attempts)
                .values(status=status.value, failure_reason=reason)
                .execution_options(synchronize_session=False)
            )
        self.db.flush()

        rows = self.db.query(PaymentInstallment).filter(PaymentInstallment.id.in_(ids)).all()
        for row in rows:
            self.db.refresh(row)
        # Rows a live worker finished in the meantime were not touched
        return [row for row in rows if row.failure_reason == reason]

    def set_installment_staging(self, installment: PaymentInstallment, staging_record_id: uuid.UUID) -> None:
        installment.staging_record_id = staging_record_id
        self.db.flush()

    def mark_installment_succeeded(self, installment: PaymentInstallment, payment_id: uuid.UUID) -> None:
        installment.status = InstallmentStatus.SUCCEEDED.value
        installment.payment_id = payment_id
        installment.failure_reason = None
        self.db.flush()

    def mark_installment_pending(self, installment: PaymentInstallment, payment_id: uuid.UUID) -> None:
        installment.status = InstallmentStatus.PENDING.value
        installment.payment_id = payment_id
        installment.failure_reason = None
        self.db.flush()

    def mark_installment_failed(self, installment: PaymentInstallment, status: InstallmentStatus, reason: str) -> None:
        installment.status = status.value
        installment.failure_reason = reason
        self.db.flush()

    def refresh_plan_progress(self, plan_id: uuid.UUID, now: datetime) -> bool:
        """
        Recompute installments_paid and next_payment_date from installments.

        Returns True only for the call that moved the plan from active to completed.
        """
        plan = self.get_plan(plan_id)
        self.db.refresh(plan)
        installments = list(plan.installments)
        for inst in installments:
            self.db.refresh(inst)

        paid = sum(1 for i in installments if i.status == InstallmentStatus.SUCCEEDED.value)
        unpaid = [i for i in installments if i.status != InstallmentStatus.SUCCEEDED.value]
        plan.installments_paid = paid
        plan.next_payment_date = min((i.scheduled_date for i in unpaid), default=None)
        self.db.flush()

        if paid < plan.installments_count:
            return False

        result = self.db.execute(
            update(PaymentPlan)
            .where(PaymentPlan.id == plan_id, PaymentPlan.status == PlanStatus.ACTIVE.value)
            .values(status=PlanStatus.COMPLETED.value, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
        self.db.refresh(plan)
        return result.rowcount == 1

    def pending_installments(self, plan_id: uuid.UUID) -> List[PaymentInstallment]:
        return (
            self.db.query(PaymentInstallment)
            .filter(
                PaymentInstallment.plan_id == plan_id,
                PaymentInstallment.status.in_(_OPEN_INSTALLMENT_STATUSES),
            )
            .order_by(PaymentInstallment.installment_number)
            .all()
        )

    def set_scheduled_date(self, installment: PaymentInstallment, scheduled_date: date) -> None:
        installment.scheduled_date = scheduled_date
        self.db.flush()


class NotificationRepository:
    """Outbox of notifications awaiting delivery"""

    def __init__(self, db: Session):
        self.db = db

    def stage(self, user_id: uuid.UUID, event_type: str, payload: dict, dedupe_key: str) -> bool:
        """Insert a notification unless one with the same dedupe key exists"""
        exists = self.db.query(NotificationOutbox.id).filter(NotificationOutbox.dedupe_key == dedupe_key).first()
        if exists:
            return False
        self.db.add(
            NotificationOutbox(
                user_id=user_id,
                event_type=event_type,
                payload=payload,
                dedupe_key=dedupe_key,
            )
        )
        self.db.flush()
        return True
