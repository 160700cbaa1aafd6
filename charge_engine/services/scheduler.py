"""Installment scheduler & retry engine

One routine, ``InstallmentScheduler.run``, serves both the daily cron
trigger and the admin manual trigger so the two can never drift apart.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Awaitable, List, Optional
from sqlalchemy.orm import Session

from charge_engine.config import EngineConfig
from charge_engine.domain.exceptions import (
    ChargeValidationError,
    GatewayError,
    InstallmentNotFoundError,
    InvalidPaymentMethod,
    PaymentPlanNotFoundError,
    PaymentPlanStateError,
    ReconciliationLinkError,
)
from charge_engine.domain.installments import (
    generate_installment_schedule,
    reschedule_dates,
    select_eligible,
    status_after_failure,
)
from charge_engine.domain.models import (
    ChargeResult,
    DueInstallment,
    InstallmentStatus,
    PaymentStatus,
    PlanStatus,
    ProcessingResults,
)
from charge_engine.infrastructure.database.models import PaymentInstallment, PaymentPlan, StagingRecord
from charge_engine.infrastructure.database.repositories import (
    PaymentPlanRepository,
    PaymentRepository,
    StagingRepository,
    UserRepository,
)
from charge_engine.infrastructure.observability.logging import log_event
from charge_engine.infrastructure.observability.metrics import installment_attempt_counter
from charge_engine.services.notifications import Notifier
from charge_engine.services.orchestrator import ChargeOrchestrator
from charge_engine.services.staging import StagingLedgerWriter
from charge_engine.utils.date_utils import utcnow


@dataclass
class InstallmentOutcome:
    installment_id: uuid.UUID
    claimed: bool
    succeeded: bool = False
    pending: bool = False
    payment_id: Optional[uuid.UUID] = None
    plan_completed: bool = False
    completion_notified: bool = False
    exhausted: bool = False
    error: Optional[str] = None


@dataclass
class ScheduleChange:
    installment_id: uuid.UUID
    installment_number: int
    scheduled_date: date
    status: str


class InstallmentScheduler:
    """Owns payment plan lifecycle: creation, due processing, retries, completion"""

    def __init__(
        self,
        db: Session,
        orchestrator: ChargeOrchestrator,
        staging_writer: StagingLedgerWriter,
        notifier: Notifier,
        config: EngineConfig,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.staging_writer = staging_writer
        self.notifier = notifier
        self.config = config
        self.plans = PaymentPlanRepository(db)
        self.users = UserRepository(db)
        self.payments = PaymentRepository(db)
        self.staging = StagingRepository(db)

    def create_plan(
        self,
        user_id: uuid.UUID,
        category_id: uuid.UUID,
        season_id: uuid.UUID,
        total_cents: int,
        start_date: date,
        user_registration_id: Optional[uuid.UUID] = None,
        discount_code_id: Optional[uuid.UUID] = None,
        discount_cents: int = 0,
        staging_record_id: Optional[uuid.UUID] = None,
    ) -> PaymentPlan:
        """Create a plan of equal installments, the first one due on start_date"""
        if total_cents <= 0:
            raise ChargeValidationError("Payment plans require a positive amount")

        installments = generate_installment_schedule(
            total_cents,
            num_installments=self.config.payment_plan_installments,
            interval_days=self.config.installment_interval_days,
            start_date=start_date,
        )
        plan = self.plans.create_plan(
            user_id=user_id,
            category_id=category_id,
            season_id=season_id,
            total_cents=total_cents,
            installments=installments,
            user_registration_id=user_registration_id,
            discount_code_id=discount_code_id,
            discount_cents=discount_cents,
            staging_record_id=staging_record_id,
        )
        self.db.commit()

        log_event(
            "payment-plan-created",
            "Created payment plan",
            plan_id=plan.id,
            user_id=user_id,
            total_cents=total_cents,
            installment_cents=plan.installment_cents,
            installments_count=plan.installments_count,
        )
        return plan

    async def run(self, today: date, now: datetime) -> ProcessingResults:
        """Process everything due today, then stage pre-notifications"""
        log_event("payment-processor-start", "Starting payment plan processing", today=today)

        results = ProcessingResults()
        await self.process_due(today, now, results)
        results.pre_notifications_sent = self.send_pre_notifications(
            today + timedelta(days=self.config.pre_notification_days)
        )

        log_event(
            "payment-processor-complete",
            "Payment plan processing completed",
            logging.WARNING if results.errors else logging.INFO,
            payments_found=results.payments_found,
            payments_processed=results.payments_processed,
            payments_failed=results.payments_failed,
            retries_attempted=results.retries_attempted,
            completion_emails_sent=results.completion_emails_sent,
            pre_notifications_sent=results.pre_notifications_sent,
            error_count=len(results.errors),
        )
        return results

    async def process_due(self, today: date, now: datetime, results: ProcessingResults) -> None:
        self.release_stale_claims(now, results)

        due = self.plans.find_due_installments(today)
        results.payments_found = len(due)

        if not due:
            log_event("payment-processor-none-found", "No payments due for processing", today=today)
            return

        unsettled = [inst for inst in due if inst.status == InstallmentStatus.PENDING]
        eligible = select_eligible(due, now, self.config)
        log_event(
            "payment-processor-processable",
            f"{len(eligible)} payments are eligible for processing",
            total=len(due),
            processable=len(eligible),
            unsettled=len(unsettled),
            skipped=len(due) - len(eligible) - len(unsettled),
        )

        for installment in unsettled:
            await self._tally(results, installment, self.settle_installment(installment, now), is_retry=False)
        for installment in eligible:
            await self._tally(
                results, installment, self.process_installment(installment, now), is_retry=installment.attempt_count > 0
            )

    async def _tally(
        self,
        results: ProcessingResults,
        installment: DueInstallment,
        work: Awaitable[InstallmentOutcome],
        is_retry: bool,
    ) -> None:
        try:
            outcome = await work
        except Exception as e:
            # One installment must never abort the batch
            self.db.rollback()
            logging.getLogger(__name__).exception("Unexpected error processing installment")
            if is_retry and self._attempt_counted(installment):
                results.retries_attempted += 1
            results.payments_failed += 1
            results.errors.append(f"Installment {installment.id}: {e}")
            return

        if not outcome.claimed:
            return
        if is_retry:
            results.retries_attempted += 1
        if outcome.pending:
            return

        if outcome.succeeded:
            results.payments_processed += 1
            if outcome.completion_notified:
                results.completion_emails_sent += 1
            if outcome.error:
                results.errors.append(f"Installment {installment.id}: {outcome.error}")
        else:
            results.payments_failed += 1
            results.errors.append(f"Installment {installment.id}: {outcome.error}")

    def _attempt_counted(self, installment: DueInstallment) -> bool:
        """True when this run's claim went through before the failure"""
        row = self.plans.get_installment(installment.id)
        return row is not None and row.attempt_count > installment.attempt_count

    def release_stale_claims(self, now: datetime, results: ProcessingResults) -> int:
        """Installments claimed by a worker that never finished go back to the retry path"""
        stale_before = now - timedelta(minutes=self.config.claim_timeout_minutes)
        released = self.plans.release_stale_claims(stale_before, self.config.max_payment_attempts)
        self.db.commit()

        for row in released:
            log_event(
                "installment-claim-expired",
                "Installment claim expired before the attempt finished",
                logging.ERROR,
                installment_id=row.id,
                plan_id=row.plan_id,
                attempt_count=row.attempt_count,
                status=row.status,
            )
            suffix = " (attempts exhausted)" if row.status == InstallmentStatus.FAILED.value else ""
            results.errors.append(f"Installment {row.id}: claim expired{suffix}")
        return len(released)

    async def process_installment(self, installment: DueInstallment, now: datetime) -> InstallmentOutcome:
        """
        Claim one due installment and drive it through staging and the orchestrator.

        The claim is a conditional update; if another worker got there first the
        installment is skipped untouched.
        """
        claimed = self.plans.claim_installment(installment.id, installment.attempt_count, now)
        self.db.commit()
        if not claimed:
            log_event(
                "installment-claim-skipped",
                "Installment already claimed or changed by another worker",
                installment_id=installment.id,
            )
            return InstallmentOutcome(installment_id=installment.id, claimed=False)

        attempt_number = installment.attempt_count + 1
        log_event(
            "payment-processor-processing-payment",
            f"Processing {'retry' if attempt_number > 1 else 'initial'} payment",
            installment_id=installment.id,
            plan_id=installment.plan_id,
            installment_number=installment.installment_number,
            attempt_number=attempt_number,
        )

        row = self.plans.get_installment(installment.id)
        try:
            return await self._charge_claimed(installment, row, attempt_number, now)
        except Exception as e:
            # Never leave a claimed installment stuck in processing
            self.db.rollback()
            row = self.plans.get_installment(installment.id)
            if row.status == InstallmentStatus.PROCESSING.value:
                self.plans.mark_installment_failed(row, status_after_failure(attempt_number, self.config), str(e))
                self.db.commit()
            raise

    async def _charge_claimed(
        self,
        installment: DueInstallment,
        row: PaymentInstallment,
        attempt_number: int,
        now: datetime,
    ) -> InstallmentOutcome:
        profile = self.users.get_payment_profile(installment.user_id)
        if profile is None:
            return self._record_failure(installment, row, attempt_number, "User not found")

        try:
            record = self._staging_for(installment, row)
            result = await self.orchestrator.charge(
                profile,
                installment.amount_cents,
                record,
                description=(
                    f"Payment Plan Installment {installment.installment_number}/"
                    f"{installment.installments_count} - {installment.category_name}"
                ),
                metadata={
                    "plan_id": str(installment.plan_id),
                    "installment_id": str(installment.id),
                    "installment_number": str(installment.installment_number),
                    "purpose": "payment_plan_installment",
                },
                notify=False,
            )
        except ReconciliationLinkError as e:
            payment = self.payments.get(e.payment_id)
            if payment is not None and payment.status == PaymentStatus.COMPLETED.value:
                # Money moved; the installment is paid even though the ledger link needs repair
                outcome = self._record_success(installment, row, payment.id, now)
                outcome.error = f"Reconciliation link failed for payment {payment.id}"
                return outcome
            return self._record_failure(installment, row, attempt_number, str(e))
        except (InvalidPaymentMethod, GatewayError, ChargeValidationError) as e:
            return self._record_failure(installment, row, attempt_number, str(e))

        if result.succeeded:
            return self._record_success(installment, row, result.payment_id, now)
        if result.status == PaymentStatus.PENDING:
            return self._record_pending(installment, row, result.payment_id)

        return self._record_failure(
            installment, row, attempt_number, result.failure_reason or f"Payment status: {result.status.value}"
        )

    def _staging_for(self, installment: DueInstallment, row: PaymentInstallment) -> StagingRecord:
        """
        Reuse the previous attempt's staging record unless its payment failed.

        No payment yet (timeout or transport error) means the same record id and
        gateway idempotency key, so an unknown-outcome charge cannot be taken
        twice. A pending or completed payment is returned by the orchestrator
        without a new gateway call.
        """
        if row.staging_record_id is not None:
            previous = self.staging.get(row.staging_record_id)
            if previous is not None and not self._payment_failed(previous):
                log_event(
                    "installment-staging-reused",
                    "Reusing staging record of the previous attempt",
                    installment_id=installment.id,
                    staging_record_id=previous.id,
                    payment_id=previous.payment_id,
                )
                return previous

        record = self.staging_writer.create_installment(installment)
        self.plans.set_installment_staging(row, record.id)
        self.db.commit()
        return record

    def _payment_failed(self, record: StagingRecord) -> bool:
        if record.payment_id is None:
            return False
        payment = self.payments.get(record.payment_id)
        return payment is not None and payment.status == PaymentStatus.FAILED.value

    async def settle_installment(self, installment: DueInstallment, now: datetime) -> InstallmentOutcome:
        """
        Check an installment whose charge the gateway has not settled yet.

        No new charge is made; the attempt was counted when it was charged.
        """
        claimed = self.plans.claim_pending_installment(installment.id, now)
        self.db.commit()
        if not claimed:
            return InstallmentOutcome(installment_id=installment.id, claimed=False)

        row = self.plans.get_installment(installment.id)
        record = self.staging.get(row.staging_record_id) if row.staging_record_id else None
        if record is None or record.payment_id is None:
            return self._record_failure(installment, row, row.attempt_count, "Pending installment has no linked payment")

        try:
            result = await self.orchestrator.settle(record)
        except GatewayError as e:
            self.db.rollback()
            row = self.plans.get_installment(installment.id)
            self.plans.mark_installment_pending(row, record.payment_id)
            self.db.commit()
            log_event(
                "installment-settlement-check-failed",
                "Could not read charge status from the gateway; will check again next run",
                logging.WARNING,
                installment_id=installment.id,
                error=str(e),
            )
            return InstallmentOutcome(installment_id=installment.id, claimed=True, pending=True, error=str(e))

        if result.succeeded:
            return self._record_success(installment, row, result.payment_id, now)
        if result.status == PaymentStatus.PENDING:
            return self._record_pending(installment, row, result.payment_id)
        return self._record_failure(
            installment, row, row.attempt_count, result.failure_reason or f"Payment status: {result.status.value}"
        )

    def _record_pending(
        self,
        installment: DueInstallment,
        row: PaymentInstallment,
        payment_id: uuid.UUID,
    ) -> InstallmentOutcome:
        self.plans.mark_installment_pending(row, payment_id)
        self.db.commit()
        installment_attempt_counter.labels(outcome="pending").inc()
        log_event(
            "installment-payment-pending",
            "Installment charge is waiting for the gateway to settle",
            installment_id=installment.id,
            plan_id=installment.plan_id,
            payment_id=payment_id,
        )
        return InstallmentOutcome(
            installment_id=installment.id,
            claimed=True,
            pending=True,
            payment_id=payment_id,
        )

    def _record_success(
        self,
        installment: DueInstallment,
        row: PaymentInstallment,
        payment_id: uuid.UUID,
        now: datetime,
    ) -> InstallmentOutcome:
        self.plans.mark_installment_succeeded(row, payment_id)
        self.db.commit()
        plan_completed = self.plans.refresh_plan_progress(installment.plan_id, now)
        self.db.commit()
        installment_attempt_counter.labels(outcome="succeeded").inc()

        summary = self.plans.get_summary(installment.plan_id, self.config.max_payment_attempts)
        self.notifier.payment_processed(installment, summary, payment_id)

        completion_notified = False
        if plan_completed:
            completion_notified = self.notifier.plan_completed(summary)
            log_event(
                "payment-plan-completed",
                "Payment plan completed",
                plan_id=installment.plan_id,
                user_id=installment.user_id,
            )

        log_event(
            "payment-processor-payment-success",
            "Successfully processed payment",
            installment_id=installment.id,
            installment_number=installment.installment_number,
            payment_id=payment_id,
        )
        return InstallmentOutcome(
            installment_id=installment.id,
            claimed=True,
            succeeded=True,
            payment_id=payment_id,
            plan_completed=plan_completed,
            completion_notified=completion_notified,
        )

    def _record_failure(
        self,
        installment: DueInstallment,
        row: PaymentInstallment,
        attempt_number: int,
        reason: str,
    ) -> InstallmentOutcome:
        status = status_after_failure(attempt_number, self.config)
        self.plans.mark_installment_failed(row, status, reason)
        self.db.commit()

        exhausted = status == InstallmentStatus.FAILED
        installment_attempt_counter.labels(outcome="exhausted" if exhausted else "failed").inc()
        remaining_retries = max(0, self.config.max_payment_attempts - attempt_number)

        summary = self.plans.get_summary(installment.plan_id, self.config.max_payment_attempts)
        self.notifier.payment_failed(installment, summary, attempt_number, remaining_retries, reason)

        if exhausted:
            # Plan stays active; an operator must decide what happens next
            log_event(
                "installment-attempts-exhausted",
                "Installment exhausted all payment attempts; manual follow-up required",
                logging.ERROR,
                installment_id=installment.id,
                plan_id=installment.plan_id,
                user_id=installment.user_id,
                attempt_count=attempt_number,
                error=reason,
            )
        else:
            log_event(
                "payment-processor-payment-failed",
                "Payment processing failed",
                logging.WARNING,
                installment_id=installment.id,
                installment_number=installment.installment_number,
                attempt_count=attempt_number,
                remaining_retries=remaining_retries,
                error=reason,
            )

        error = f"{reason} (attempts exhausted)" if exhausted else reason
        return InstallmentOutcome(
            installment_id=installment.id,
            claimed=True,
            succeeded=False,
            exhausted=exhausted,
            error=error,
        )

    def send_pre_notifications(self, notification_date: date) -> int:
        """Stage reminders for installments due on notification_date; mutates nothing"""
        upcoming = self.plans.find_upcoming_installments(notification_date)
        if not upcoming:
            return 0

        log_event(
            "payment-processor-upcoming-found",
            f"Found {len(upcoming)} upcoming payments for pre-notification",
            count=len(upcoming),
        )

        sent = 0
        for installment in upcoming:
            summary = self.plans.get_summary(installment.plan_id, self.config.max_payment_attempts)
            if self.notifier.pre_notification(installment, summary):
                sent += 1
        return sent

    def update_schedule(
        self,
        today: date,
        installment_id: Optional[uuid.UUID] = None,
        plan_id: Optional[uuid.UUID] = None,
        scheduled_date: Optional[date] = None,
        days_from_now: Optional[int] = None,
    ) -> List[ScheduleChange]:
        """
        Support/testing tool: move one installment, or all open installments of
        a plan spaced installment_interval_days apart, to a new date.
        """
        if scheduled_date is not None:
            target = scheduled_date
        elif days_from_now is not None:
            target = today + timedelta(days=days_from_now)
        else:
            raise ChargeValidationError("Must provide either scheduled_date or days_from_now")

        if installment_id is not None:
            row = self.plans.get_installment(installment_id)
            if row is None:
                raise InstallmentNotFoundError(f"Installment {installment_id} not found")
            rows, dates = [row], [target]
            plan_id = row.plan_id
        elif plan_id is not None:
            if self.plans.get_plan(plan_id) is None:
                raise PaymentPlanNotFoundError(f"Payment plan {plan_id} not found")
            rows = self.plans.pending_installments(plan_id)
            dates = reschedule_dates(len(rows), target, self.config.installment_interval_days)
        else:
            raise ChargeValidationError("Must provide either installment_id or payment_plan_id")

        changes = []
        for row, new_date in zip(rows, dates):
            self.plans.set_scheduled_date(row, new_date)
            changes.append(ScheduleChange(row.id, row.installment_number, new_date, row.status))
        self.plans.refresh_plan_progress(plan_id, utcnow())
        self.db.commit()

        log_event(
            "payment-plan-schedule-updated",
            "Updated installment schedule",
            plan_id=plan_id,
            installments_updated=len(changes),
            target_date=target,
        )
        return changes

    async def early_payoff(self, plan_id: uuid.UUID, now: datetime) -> ChargeResult:
        """
        Charge every outstanding installment in one off-session charge.

        Raises:
            PaymentPlanNotFoundError: unknown plan
            PaymentPlanStateError: plan not active, nothing outstanding, or an installment mid-charge or unsettled
        """
        plan = self.plans.get_plan(plan_id)
        if plan is None:
            raise PaymentPlanNotFoundError(f"Payment plan {plan_id} not found")
        if plan.status != PlanStatus.ACTIVE.value:
            raise PaymentPlanStateError(f"Payment plan {plan_id} is {plan.status}")
        busy = (InstallmentStatus.PROCESSING.value, InstallmentStatus.PENDING.value)
        if any(i.status in busy for i in plan.installments):
            raise PaymentPlanStateError("An installment is currently being charged or settling")

        outstanding = self.plans.pending_installments(plan_id)
        if not outstanding:
            raise PaymentPlanStateError("No outstanding installments")

        remaining = sum(i.amount_cents for i in outstanding)
        profile = self.users.get_payment_profile(plan.user_id)
        if profile is None:
            raise PaymentPlanStateError("Plan owner not found")
        if not plan.category.accounting_code:
            raise ChargeValidationError(f"Category {plan.category.name} has no accounting code configured")

        log_event(
            "payment-plan-early-payoff-start",
            "Processing early payoff for payment plan",
            plan_id=plan_id,
            remaining_cents=remaining,
            outstanding_count=len(outstanding),
        )

        record = self.staging_writer.create_payoff(
            user_id=plan.user_id,
            season_id=plan.season_id,
            amount_cents=remaining,
            registration_name=plan.category.name,
            accounting_code=plan.category.accounting_code,
        )
        result = await self.orchestrator.charge(
            profile,
            remaining,
            record,
            description=f"Payment Plan Early Payoff - {plan.category.name}",
            metadata={"plan_id": str(plan_id), "purpose": "payment_plan_early_payoff"},
            notify=False,
        )
        if not result.succeeded:
            log_event(
                "payment-plan-early-payoff-failed",
                "Early payoff charge did not succeed",
                logging.WARNING,
                plan_id=plan_id,
                payment_status=result.status.value,
            )
            return result

        for row in outstanding:
            self.plans.mark_installment_succeeded(row, result.payment_id)
        self.db.commit()

        if self.plans.refresh_plan_progress(plan_id, now):
            self.db.commit()
            summary = self.plans.get_summary(plan_id, self.config.max_payment_attempts)
            self.notifier.plan_completed(summary)

        log_event(
            "payment-plan-early-payoff-success",
            "Payment plan paid off early",
            plan_id=plan_id,
            payment_id=result.payment_id,
            amount_cents=remaining,
        )
        return result
