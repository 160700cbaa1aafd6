"""Purchase service: entry point for a registration purchase"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from sqlalchemy.orm import Session

from charge_engine.domain.exceptions import ChargeValidationError, PaymentPlanNotFoundError, ReconciliationLinkError
from charge_engine.domain.models import ChargeBreakdown, ChargeRequest, ChargeResult, PaymentProfile, PaymentStatus
from charge_engine.infrastructure.database.repositories import (
    PaymentPlanRepository,
    PaymentRepository,
    RegistrationRepository,
    UserRepository,
)
from charge_engine.infrastructure.observability.logging import log_event
from charge_engine.services.orchestrator import ChargeOrchestrator, check_payment_profile
from charge_engine.services.pricing import PricingCalculator
from charge_engine.services.scheduler import InstallmentOutcome, InstallmentScheduler
from charge_engine.services.staging import StagingLedgerWriter


@dataclass
class PurchaseResult:
    breakdown: ChargeBreakdown
    registration_id: Optional[uuid.UUID] = None
    charge: Optional[ChargeResult] = None
    plan_id: Optional[uuid.UUID] = None
    first_installment: Optional[InstallmentOutcome] = None
    staging_record_id: Optional[uuid.UUID] = None
    reconciliation_pending: bool = False


class PurchaseService:
    """
    Pricing → Staging → Orchestrator for an immediate charge, or
    Pricing → plan creation → Scheduler for a payment plan purchase.
    """

    def __init__(
        self,
        db: Session,
        pricing: PricingCalculator,
        staging_writer: StagingLedgerWriter,
        orchestrator: ChargeOrchestrator,
        scheduler: InstallmentScheduler,
    ):
        self.db = db
        self.pricing = pricing
        self.staging_writer = staging_writer
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.users = UserRepository(db)
        self.payments = PaymentRepository(db)
        self.registrations = RegistrationRepository(db)
        self.plans = PaymentPlanRepository(db)

    async def purchase(self, request: ChargeRequest, today: date, now: datetime) -> PurchaseResult:
        """
        Raises:
            ChargeValidationError / CategoryNotFoundError: bad request, nothing written
            ConfigurationError: discount accounting code missing, nothing written
            InvalidPaymentMethod: paid purchase without a usable instrument, nothing written
            GatewayError: gateway failed; staging record left for reconciliation
        """
        profile = self.users.get_payment_profile(request.user_id)
        if profile is None:
            raise ChargeValidationError(f"User {request.user_id} not found")

        breakdown = self.pricing.price(request, today)

        log_event(
            "purchase-priced",
            "Priced registration purchase",
            user_id=request.user_id,
            category_id=request.category_id,
            base_cents=breakdown.base_cents,
            discount_cents=breakdown.discount_cents,
            final_cents=breakdown.final_cents,
            payment_plan=request.use_payment_plan,
        )

        if request.use_payment_plan:
            return await self._purchase_plan(profile, breakdown, today, now)
        return await self._purchase_now(profile, breakdown)

    async def _purchase_now(self, profile: PaymentProfile, breakdown: ChargeBreakdown) -> PurchaseResult:
        if not breakdown.is_free:
            # Fail before staging so an unusable instrument leaves no orphan intent
            check_payment_profile(profile)

        record = self.staging_writer.create(breakdown)
        category = breakdown.category
        try:
            charge = await self.orchestrator.charge(
                profile,
                breakdown.final_cents,
                record,
                description=f"Registration - {category.name}",
                metadata={"category_id": str(category.id), "purpose": "registration"},
            )
        except ReconciliationLinkError as e:
            payment = self.payments.get(e.payment_id)
            if payment is None or payment.status != PaymentStatus.COMPLETED.value:
                raise
            registration = self.registrations.create(profile.user_id, category.id, payment.id)
            self.db.commit()
            return PurchaseResult(
                breakdown=breakdown,
                registration_id=registration.id,
                charge=ChargeResult(
                    payment_id=payment.id,
                    staging_record_id=e.staging_record_id,
                    status=PaymentStatus.COMPLETED,
                    amount_cents=payment.final_cents,
                    gateway_transaction_id=payment.gateway_transaction_id,
                    is_free=breakdown.is_free,
                ),
                reconciliation_pending=True,
            )

        result = PurchaseResult(breakdown=breakdown, charge=charge)
        if charge.succeeded:
            registration = self.registrations.create(profile.user_id, category.id, charge.payment_id)
            self.db.commit()
            result.registration_id = registration.id
            log_event(
                "registration-created",
                "Registration created for completed charge",
                user_id=profile.user_id,
                registration_id=registration.id,
                payment_id=charge.payment_id,
            )
        return result

    async def _purchase_plan(
        self, profile: PaymentProfile, breakdown: ChargeBreakdown, today: date, now: datetime
    ) -> PurchaseResult:
        if breakdown.final_cents <= 0:
            raise ChargeValidationError("Payment plans are not available for free registrations")
        check_payment_profile(profile)

        # Discount lines and their accounting codes are posted once, on the invoice
        invoice = self.staging_writer.create_plan_invoice(breakdown)

        category = breakdown.category
        registration = self.registrations.create(profile.user_id, category.id)
        self.db.flush()
        plan = self.scheduler.create_plan(
            user_id=profile.user_id,
            category_id=category.id,
            season_id=category.season_id,
            total_cents=breakdown.final_cents,
            start_date=today,
            user_registration_id=registration.id,
            discount_code_id=breakdown.discount_code.id if breakdown.discount_code else None,
            discount_cents=breakdown.discount_cents,
            staging_record_id=invoice.id,
        )

        first = self.plans.to_due_installment(plan.installments[0])
        outcome = await self.scheduler.process_installment(first, now)
        if not outcome.succeeded and not outcome.pending:
            log_event(
                "payment-plan-first-installment-failed",
                "First installment failed; left to the retry schedule",
                logging.WARNING,
                plan_id=plan.id,
                error=outcome.error,
            )

        return PurchaseResult(
            breakdown=breakdown,
            registration_id=registration.id,
            plan_id=plan.id,
            first_installment=outcome,
            staging_record_id=invoice.id,
        )

    async def payoff(self, plan_id: uuid.UUID, user_id: uuid.UUID, is_admin: bool, now: datetime) -> ChargeResult:
        """Early payoff for the plan owner (or an admin)"""
        plan = self.plans.get_plan(plan_id)
        if plan is None or (plan.user_id != user_id and not is_admin):
            raise PaymentPlanNotFoundError(f"Payment plan {plan_id} not found")
        return await self.scheduler.early_payoff(plan_id, now)
