"""Pricing & discount calculator: reads catalog and usage, never writes"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Optional

from charge_engine.domain.exceptions import CategoryNotFoundError
from charge_engine.domain.models import ChargeBreakdown, ChargeRequest, DiscountCode, DiscountOutcome
from charge_engine.domain.pricing import price_charge
from charge_engine.infrastructure.database.repositories import (
    CatalogRepository,
    DiscountUsageRepository,
    parse_uuid,
)
from charge_engine.infrastructure.observability.logging import log_event
from charge_engine.infrastructure.observability.metrics import record_discount


@dataclass
class SeasonalUsageSummary:
    total_used_cents: int
    remaining_cents: int
    max_allowed_cents: int


@dataclass
class DiscountPreview:
    code: DiscountCode
    breakdown: ChargeBreakdown
    seasonal: Optional[SeasonalUsageSummary] = None


class PricingCalculator:
    """Computes the charge breakdown for a purchase"""

    def __init__(self, catalog: CatalogRepository, usage: DiscountUsageRepository):
        self.catalog = catalog
        self.usage = usage

    def price(self, request: ChargeRequest, as_of: date) -> ChargeBreakdown:
        """
        Price a charge request against the current usage ledger.

        An unusable discount code id never blocks the purchase; it is logged
        and the charge is priced without a discount.

        Raises:
            CategoryNotFoundError: Unknown registration category
            ChargeValidationError: Missing price or override outside [0, base]
        """
        category = self.catalog.get_category(request.category_id)
        if category is None:
            raise CategoryNotFoundError(f"Category {request.category_id} not found")

        code = self._resolve_code(request.user_id, request.discount_code_id, as_of)
        usage_count, seasonal_used = self._usage_for(request.user_id, code, category.season_id)

        breakdown = price_charge(
            user_id=request.user_id,
            category=category,
            override_price=request.override_price,
            code=code,
            usage_count=usage_count,
            seasonal_used_cents=seasonal_used,
        )
        self._log_discount(breakdown, code)
        return breakdown

    def discount_preview(self, user_id: uuid.UUID, code: str, category_id: uuid.UUID, as_of: date) -> Optional[DiscountPreview]:
        """What a code typed by the user would do; None when the code is unusable"""
        discount_code = self.catalog.get_discount_code_by_code(code, as_of)
        if discount_code is None:
            return None
        breakdown = self.price(
            ChargeRequest(user_id=user_id, category_id=category_id, discount_code_id=str(discount_code.id)),
            as_of,
        )
        seasonal = self.seasonal_usage_summary(user_id, discount_code.category.id, breakdown.category.season_id)
        return DiscountPreview(code=discount_code, breakdown=breakdown, seasonal=seasonal)

    def seasonal_usage_summary(
        self, user_id: uuid.UUID, discount_category_id: uuid.UUID, season_id: uuid.UUID
    ) -> Optional[SeasonalUsageSummary]:
        """Usage against a category's seasonal cap, None when the category has no cap"""
        category = self.catalog.get_discount_category(discount_category_id)
        if category is None or not category.max_discount_per_user_per_season:
            return None
        used = self.usage.seasonal_usage(user_id, discount_category_id, season_id)
        cap = category.max_discount_per_user_per_season
        return SeasonalUsageSummary(
            total_used_cents=used,
            remaining_cents=max(0, cap - used),
            max_allowed_cents=cap,
        )

    def _resolve_code(self, user_id, raw_code_id, as_of: date) -> Optional[DiscountCode]:
        if raw_code_id is None or raw_code_id == "":
            return None

        code_id = parse_uuid(raw_code_id)
        code = self.catalog.get_discount_code(code_id, as_of) if code_id else None
        if code is None:
            log_event(
                "discount-code-ignored",
                "Discount code not usable; charging without discount",
                logging.WARNING,
                user_id=user_id,
                discount_code_id=str(raw_code_id),
                malformed=code_id is None,
            )
        return code

    def _usage_for(self, user_id, code: Optional[DiscountCode], season_id) -> tuple[int, int]:
        if code is None:
            return 0, 0

        usage_count = self.usage.code_usage_count(user_id, code.id)
        limit = code.per_user_usage_limit
        if limit is not None and usage_count >= limit:
            # Usage limit wins; the seasonal cap is irrelevant
            return usage_count, 0

        seasonal_used = 0
        if code.category.max_discount_per_user_per_season:
            seasonal_used = self.usage.seasonal_usage(user_id, code.category.id, season_id)
        return usage_count, seasonal_used

    @staticmethod
    def _log_discount(breakdown: ChargeBreakdown, code: Optional[DiscountCode]) -> None:
        decision = breakdown.discount
        if decision is None or code is None:
            record_discount(DiscountOutcome.NONE.value)
            return

        record_discount(decision.outcome.value)
        fields = dict(
            user_id=breakdown.user_id,
            discount_code_id=code.id,
            discount_code=code.code,
            discount_category=code.category.name,
            season_id=breakdown.category.season_id,
            requested_cents=decision.requested_cents,
            applied_cents=decision.applied_cents,
            seasonal_used_cents=decision.seasonal_used_cents,
            seasonal_cap_cents=decision.seasonal_cap_cents,
        )

        if decision.outcome == DiscountOutcome.PARTIAL:
            log_event(
                "seasonal-discount-partial-applied",
                "Applied partial discount due to seasonal limit",
                logging.WARNING,
                **fields,
            )
        elif decision.outcome == DiscountOutcome.SEASONAL_LIMIT_REACHED:
            log_event("seasonal-discount-limit-reached", "User has reached seasonal discount limit", **fields)
        elif decision.outcome == DiscountOutcome.USAGE_LIMIT_REACHED:
            log_event("discount-usage-limit-reached", "User has exhausted discount code usage limit", **fields)
        elif decision.outcome == DiscountOutcome.FULL:
            log_event("discount-applied", "Applied full discount", **fields)
