"""Installment schedule generation and retry eligibility"""

from datetime import date, datetime, timedelta
from typing import List, Optional
from charge_engine.config import EngineConfig
from charge_engine.domain.models import DueInstallment, Installment, InstallmentStatus


def generate_installment_schedule(
    amount_cents: int,
    num_installments: int = 4,
    interval_days: int = 30,
    start_date: date | None = None,
) -> List[Installment]:
    """
    Generate equal installments for a payment plan.

    Requirements:
    - 4 equal installments by default
    - 30 days apart
    - First installment due on start_date (the purchase date)
    - Last installment absorbs rounding remainder (≤ num_installments-1 cents drift)

    Args:
        amount_cents: Total amount to split into installments
        num_installments: Number of payments (default 4)
        interval_days: Days between payments (default 30)
        start_date: First due date (default: today)

    Returns:
        List of Installment objects with due dates and amounts

    Example:
        $400.03 → [$100.00, $100.00, $100.00, $100.03]
        40003 cents / 4 = 10000 base, remainder 3
        Last installment: 10000 + 3 = 10003
    """
    if amount_cents <= 0 or num_installments <= 0:
        return []

    if start_date is None:
        start_date = date.today()

    base_amount = amount_cents // num_installments
    remainder = amount_cents % num_installments

    installments = []
    for i in range(num_installments):
        due_date = start_date + timedelta(days=i * interval_days)

        # Last installment absorbs remainder to ensure exact total
        amount = base_amount + (remainder if i == num_installments - 1 else 0)

        installments.append(Installment(due_date=due_date, amount_cents=amount))

    return installments


def is_retry_eligible(
    attempt_count: int,
    last_attempt_at: Optional[datetime],
    now: datetime,
    config: EngineConfig,
) -> bool:
    """
    Decide whether a due installment may be attempted now.

    - Never attempted: always eligible
    - Under max attempts: eligible once retry_interval_hours have passed since the last attempt
    - At or over max attempts: permanently ineligible
    """
    if attempt_count == 0:
        return True

    if attempt_count >= config.max_payment_attempts:
        return False

    if last_attempt_at is None:
        return True

    return now - last_attempt_at >= timedelta(hours=config.retry_interval_hours)


def select_eligible(
    due: List[DueInstallment],
    now: datetime,
    config: EngineConfig,
) -> List[DueInstallment]:
    """Filter due installments down to the ones a run should charge"""
    return [
        inst
        for inst in due
        if inst.status in (InstallmentStatus.PLANNED, InstallmentStatus.FAILED)
        and is_retry_eligible(inst.attempt_count, inst.last_attempt_at, now, config)
    ]


def status_after_failure(attempt_count: int, config: EngineConfig) -> InstallmentStatus:
    """Installment status once a failed attempt has been counted"""
    if attempt_count >= config.max_payment_attempts:
        return InstallmentStatus.FAILED
    return InstallmentStatus.PLANNED


def reschedule_dates(count: int, target: date, interval_days: int) -> List[date]:
    """Dates for a plan's pending installments when an operator moves the schedule"""
    return [target + timedelta(days=i * interval_days) for i in range(count)]
