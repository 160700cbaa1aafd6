"""Staging ledger line-item construction"""

from typing import List
from charge_engine.domain.models import ChargeBreakdown, LineItem, LineItemKind
from charge_engine.domain.exceptions import ChargeValidationError, ConfigurationError


def build_charge_line_items(breakdown: ChargeBreakdown) -> List[LineItem]:
    """
    Line items for a single charge: one positive registration line, plus one
    negative discount line when a discount was applied.

    Raises:
        ChargeValidationError: registration category has no accounting code
        ConfigurationError: discount category has no accounting code
    """
    category = breakdown.category
    if not category.accounting_code:
        raise ChargeValidationError(f"Category {category.name} has no accounting code configured")

    items = [
        LineItem(
            kind=LineItemKind.REGISTRATION,
            amount_cents=breakdown.base_cents,
            description=f"Registration: {category.name}",
            accounting_code=category.accounting_code,
        )
    ]

    if breakdown.discount_cents > 0:
        code = breakdown.discount_code
        if code is None:
            raise ChargeValidationError("Discount amount present without a discount code")
        if not code.category.accounting_code:
            raise ConfigurationError(
                f"Discount category {code.category.name} has no accounting code; "
                f"refusing to post unattributed discount for code {code.code}"
            )
        items.append(
            LineItem(
                kind=LineItemKind.DISCOUNT,
                amount_cents=-breakdown.discount_cents,
                description=f"Discount: {code.category.name} ({code.code})",
                accounting_code=code.category.accounting_code,
                discount_code_id=code.id,
            )
        )

    check_line_item_balance(items, breakdown.base_cents, breakdown.discount_cents)
    return items


def check_line_item_balance(items: List[LineItem], total_cents: int, discount_cents: int) -> None:
    """Line items must net to total minus discount"""
    line_sum = sum(item.amount_cents for item in items)
    if line_sum != total_cents - discount_cents:
        raise ChargeValidationError(
            f"Line items sum to {line_sum}, expected {total_cents - discount_cents}"
        )
