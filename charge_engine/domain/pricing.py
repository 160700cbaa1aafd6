"""Pricing and discount arithmetic - pure functions, no I/O"""

from typing import Optional
from charge_engine.domain.models import (
    ChargeBreakdown,
    DiscountCode,
    DiscountDecision,
    DiscountOutcome,
    RegistrationCategory,
)
from charge_engine.domain.exceptions import ChargeValidationError


def round_half_up(numerator: int, denominator: int) -> int:
    """Integer division rounded half away from zero (no banker's rounding)"""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    sign = -1 if numerator < 0 else 1
    return sign * ((2 * abs(numerator) + denominator) // (2 * denominator))


def resolve_effective_base(category: RegistrationCategory, override_price: Optional[int] = None) -> int:
    """
    Pick the price the discount is computed against.

    Raises:
        ChargeValidationError: category has no price, or override outside [0, base]
    """
    if category.price is None:
        raise ChargeValidationError(f"Category {category.name} has no price configured")
    if category.price < 0:
        raise ChargeValidationError(f"Category {category.name} has a negative price")

    if override_price is None:
        return category.price

    if override_price < 0 or override_price > category.price:
        raise ChargeValidationError(
            f"Override price {override_price} must be between 0 and {category.price}"
        )
    return override_price


def calculate_requested_discount(base_cents: int, percentage: int) -> int:
    """
    Nominal discount for a percentage code.

    Example:
        5000 cents at 20% → 1000 cents
        4999 cents at 15% → 749.85 → 750 cents
    """
    if not 1 <= percentage <= 100:
        raise ChargeValidationError(f"Discount percentage {percentage} outside 1-100")
    return round_half_up(base_cents * percentage, 100)


def apply_discount_limits(
    requested_cents: int,
    code: DiscountCode,
    usage_count: int,
    seasonal_used_cents: int,
) -> DiscountDecision:
    """
    Cap a requested discount by per-user usage limit and seasonal category cap.

    Requirements:
    - Usage limit exhausted → 0, seasonal cap not consulted
    - No seasonal cap → full discount
    - Cap already used up → 0
    - Cap partially used → min(requested, remaining), flagged partial when reduced

    Args:
        requested_cents: Nominal discount from the code's percentage
        code: Discount code with its category
        usage_count: Times this user already used this code
        seasonal_used_cents: Discount already received this season in the code's category

    Returns:
        DiscountDecision with applied amount and outcome
    """
    limit = code.per_user_usage_limit
    if limit is not None and usage_count >= limit:
        return DiscountDecision(
            requested_cents=requested_cents,
            applied_cents=0,
            outcome=DiscountOutcome.USAGE_LIMIT_REACHED,
            seasonal_used_cents=seasonal_used_cents,
            seasonal_cap_cents=code.category.max_discount_per_user_per_season,
        )

    cap = code.category.max_discount_per_user_per_season
    if cap is None or cap <= 0:
        return DiscountDecision(
            requested_cents=requested_cents,
            applied_cents=requested_cents,
            outcome=DiscountOutcome.FULL if requested_cents > 0 else DiscountOutcome.NONE,
            seasonal_used_cents=seasonal_used_cents,
        )

    remaining = max(0, cap - seasonal_used_cents)
    applied = min(requested_cents, remaining)

    if applied == requested_cents:
        outcome = DiscountOutcome.FULL if requested_cents > 0 else DiscountOutcome.NONE
    elif applied == 0:
        outcome = DiscountOutcome.SEASONAL_LIMIT_REACHED
    else:
        outcome = DiscountOutcome.PARTIAL

    return DiscountDecision(
        requested_cents=requested_cents,
        applied_cents=applied,
        outcome=outcome,
        seasonal_used_cents=seasonal_used_cents,
        seasonal_cap_cents=cap,
    )


def price_charge(
    user_id,
    category: RegistrationCategory,
    override_price: Optional[int] = None,
    code: Optional[DiscountCode] = None,
    usage_count: int = 0,
    seasonal_used_cents: int = 0,
) -> ChargeBreakdown:
    """Main entry point: effective base, discount decision and final amount"""
    base = resolve_effective_base(category, override_price)

    if code is None:
        return ChargeBreakdown(
            user_id=user_id,
            category=category,
            base_cents=base,
            discount_cents=0,
            final_cents=base,
        )

    requested = calculate_requested_discount(base, code.percentage)
    decision = apply_discount_limits(requested, code, usage_count, seasonal_used_cents)

    return ChargeBreakdown(
        user_id=user_id,
        category=category,
        base_cents=base,
        discount_cents=decision.applied_cents,
        final_cents=max(0, base - decision.applied_cents),
        discount_code=code if decision.applied_cents > 0 else None,
        discount=decision,
    )
