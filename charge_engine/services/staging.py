"""Staging ledger writer: records the ledger intent before any money moves"""

import logging
import uuid
from typing import List
from sqlalchemy.orm import Session

from charge_engine.domain.exceptions import ChargeValidationError, ConfigurationError
from charge_engine.domain.ledger import build_charge_line_items, check_line_item_balance
from charge_engine.domain.models import ChargeBreakdown, DueInstallment, LineItem, LineItemKind
from charge_engine.infrastructure.database.models import StagingRecord
from charge_engine.infrastructure.database.repositories import StagingRepository
from charge_engine.infrastructure.observability.logging import log_event
from charge_engine.infrastructure.observability.metrics import configuration_error_counter


class StagingLedgerWriter:
    """
    Creates exactly one committed StagingRecord per call.

    The record is committed before returning so the accounting intent exists
    even if the process dies during the gateway call that follows.
    """

    def __init__(self, db: Session):
        self.db = db
        self.records = StagingRepository(db)

    def create(self, breakdown: ChargeBreakdown) -> StagingRecord:
        return self._write(
            user_id=breakdown.user_id,
            season_id=breakdown.category.season_id,
            total_cents=breakdown.base_cents,
            discount_cents=breakdown.discount_cents,
            final_cents=breakdown.final_cents,
            items=self._charge_items(breakdown),
            is_free=breakdown.is_free,
        )

    def create_plan_invoice(self, breakdown: ChargeBreakdown) -> StagingRecord:
        """
        Registration and discount lines for a payment plan purchase.

        The invoice is never charged directly; each installment gets its own
        record and payment against it.
        """
        items = self._charge_items(breakdown)
        record = self._write(
            user_id=breakdown.user_id,
            season_id=breakdown.category.season_id,
            total_cents=breakdown.base_cents,
            discount_cents=breakdown.discount_cents,
            final_cents=breakdown.final_cents,
            items=items,
        )
        log_event(
            "staging-plan-invoice-created",
            "Staged payment plan invoice",
            staging_record_id=record.id,
            user_id=breakdown.user_id,
        )
        return record

    def _charge_items(self, breakdown: ChargeBreakdown) -> List[LineItem]:
        try:
            return build_charge_line_items(breakdown)
        except ConfigurationError as e:
            configuration_error_counter.inc()
            log_event(
                "staging-discount-accounting-code-missing",
                str(e),
                logging.CRITICAL,
                user_id=breakdown.user_id,
                discount_code_id=breakdown.discount_code.id if breakdown.discount_code else None,
            )
            raise

    def create_installment(self, installment: DueInstallment) -> StagingRecord:
        """Fixed-amount record for one installment; no discount recomputation"""
        if not installment.accounting_code:
            raise ChargeValidationError(f"Category {installment.category_name} has no accounting code configured")
        item = LineItem(
            kind=LineItemKind.INSTALLMENT,
            amount_cents=installment.amount_cents,
            description=(
                f"Payment plan installment {installment.installment_number}/"
                f"{installment.installments_count}: {installment.category_name}"
            ),
            accounting_code=installment.accounting_code,
        )
        return self._write(
            user_id=installment.user_id,
            season_id=installment.season_id,
            total_cents=installment.amount_cents,
            discount_cents=0,
            final_cents=installment.amount_cents,
            items=[item],
        )

    def create_payoff(
        self,
        user_id: uuid.UUID,
        season_id: uuid.UUID,
        amount_cents: int,
        registration_name: str,
        accounting_code: str,
    ) -> StagingRecord:
        item = LineItem(
            kind=LineItemKind.PAYOFF,
            amount_cents=amount_cents,
            description=f"Payment plan early payoff: {registration_name}",
            accounting_code=accounting_code,
        )
        return self._write(
            user_id=user_id,
            season_id=season_id,
            total_cents=amount_cents,
            discount_cents=0,
            final_cents=amount_cents,
            items=[item],
        )

    def _write(self, user_id, season_id, total_cents, discount_cents, final_cents, items, is_free=False) -> StagingRecord:
        check_line_item_balance(items, total_cents, discount_cents)
        record = self.records.create(
            user_id=user_id,
            season_id=season_id,
            total_cents=total_cents,
            discount_cents=discount_cents,
            final_cents=final_cents,
            line_items=items,
            is_free=is_free,
        )
        self.db.commit()

        log_event(
            "staging-record-created",
            "Created staging record",
            staging_record_id=record.id,
            user_id=user_id,
            total_cents=total_cents,
            discount_cents=discount_cents,
            final_cents=final_cents,
            line_item_count=len(items),
            is_free=is_free,
        )
        return record
