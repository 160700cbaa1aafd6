"""Unit tests for the installment scheduler and retry engine"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, patch
from charge_engine.domain.exceptions import ConfigurationError, PaymentPlanStateError
from charge_engine.domain.models import (
    ChargeRequest,
    InstallmentStatus,
    LineItemKind,
    PaymentStatus,
    PlanStatus,
    ProcessingResults,
)
from charge_engine.infrastructure.database.models import (
    NotificationOutbox,
    Payment,
    PaymentInstallment,
    PaymentPlan,
    StagingRecord,
    UserRegistration,
)
from charge_engine.infrastructure.database.repositories import PaymentPlanRepository, StagingRepository


def make_plan(services, catalog, today, total_cents=40000, user=None):
    user = user or catalog.member
    return services.scheduler.create_plan(
        user_id=user.id,
        category_id=catalog.category.id,
        season_id=catalog.season.id,
        total_cents=total_cents,
        start_date=today,
    )


def installments(db, plan_id):
    return (
        db.query(PaymentInstallment)
        .filter(PaymentInstallment.plan_id == plan_id)
        .order_by(PaymentInstallment.installment_number)
        .all()
    )


def outbox_count(db, event_type):
    return db.query(NotificationOutbox).filter(NotificationOutbox.event_type == event_type).count()


def test_create_plan_splits_total(services, catalog, today, db):
    plan = make_plan(services, catalog, today, total_cents=40003)

    rows = installments(db, plan.id)
    assert [row.amount_cents for row in rows] == [10000, 10000, 10000, 10003]
    assert [row.scheduled_date for row in rows] == [today + timedelta(days=30 * i) for i in range(4)]
    assert all(row.status == InstallmentStatus.PLANNED.value for row in rows)
    assert plan.next_payment_date == today


async def test_run_charges_due_installment(services, catalog, today, now, db, gateway):
    plan = make_plan(services, catalog, today)

    results = await services.scheduler.run(today, now)

    assert results.payments_found == 1
    assert results.payments_processed == 1
    assert results.payments_failed == 0
    assert results.retries_attempted == 0
    assert results.errors == []

    first = installments(db, plan.id)[0]
    assert first.status == InstallmentStatus.SUCCEEDED.value
    assert first.attempt_count == 1
    assert first.payment_id is not None
    assert gateway.calls[0]["amount_cents"] == 10000
    assert gateway.calls[0]["metadata"]["installment_id"] == str(first.id)

    db.refresh(plan)
    assert plan.installments_paid == 1
    assert plan.next_payment_date == today + timedelta(days=30)
    assert outbox_count(db, "payment_plan_payment_processed") == 1


async def test_future_installments_are_not_due(services, catalog, today, now):
    make_plan(services, catalog, today)

    results = await services.scheduler.run(today - timedelta(days=1), now)

    assert results == ProcessingResults()


async def test_retry_waits_for_interval(services, catalog, today, now, db, gateway):
    """Failed at t0: not retried at t0+10h, retried at t0+25h"""
    plan = make_plan(services, catalog, today)
    gateway.outcomes.append("requires_payment_method")

    first = await services.scheduler.run(today, now)
    assert first.payments_failed == 1
    row = installments(db, plan.id)[0]
    assert row.status == InstallmentStatus.PLANNED.value
    assert row.attempt_count == 1
    assert outbox_count(db, "payment_plan_payment_failed") == 1

    too_soon = await services.scheduler.run(today, now + timedelta(hours=10))
    assert too_soon.payments_found == 1
    assert too_soon.payments_processed == 0
    assert too_soon.payments_failed == 0
    assert len(gateway.calls) == 1

    later = now + timedelta(hours=25)
    retry = await services.scheduler.run(later.date(), later)
    assert retry.payments_processed == 1
    assert retry.retries_attempted == 1
    assert installments(db, plan.id)[0].attempt_count == 2


async def test_third_failure_exhausts_installment(services, catalog, today, now, db, gateway):
    plan = make_plan(services, catalog, today)
    gateway.default_status = "requires_payment_method"

    for hours in (0, 25, 50):
        moment = now + timedelta(hours=hours)
        results = await services.scheduler.run(moment.date(), moment)
        assert results.payments_failed == 1

    row = installments(db, plan.id)[0]
    assert row.status == InstallmentStatus.FAILED.value
    assert row.attempt_count == 3
    assert any("attempts exhausted" in error for error in results.errors)

    db.refresh(plan)
    assert plan.status == PlanStatus.ACTIVE.value

    attention = PaymentPlanRepository(db).list_requiring_attention(3)
    assert [summary.id for summary in attention] == [plan.id]
    assert attention[0].requires_attention
    assert attention[0].stuck_installments == [1]

    moment = now + timedelta(hours=100)
    after = await services.scheduler.run(moment.date(), moment)
    assert after.payments_found == 1
    assert after.payments_processed == 0
    assert after.payments_failed == 0
    assert len(gateway.calls) == 3


async def test_invalid_payment_method_counts_as_failed_attempt(services, catalog, today, now, db, gateway):
    plan = make_plan(services, catalog, today, user=catalog.no_card)

    results = await services.scheduler.run(today, now)

    assert results.payments_failed == 1
    assert gateway.calls == []
    row = installments(db, plan.id)[0]
    assert row.attempt_count == 1
    assert "No saved payment method" in row.failure_reason


async def test_plan_completes_exactly_once(services, catalog, today, now, db):
    plan = make_plan(services, catalog, today)
    for row in installments(db, plan.id):
        row.scheduled_date = today
    db.commit()

    results = await services.scheduler.run(today, now)
    assert results.payments_processed == 4
    assert results.completion_emails_sent == 1

    db.refresh(plan)
    assert plan.status == PlanStatus.COMPLETED.value
    assert plan.installments_paid == 4
    assert plan.next_payment_date is None
    assert plan.completed_at is not None

    again = await services.scheduler.run(today, now + timedelta(hours=1))
    assert again.payments_found == 0
    assert again.completion_emails_sent == 0
    assert outbox_count(db, "payment_plan_completed") == 1


async def test_timeout_retry_reuses_staging_record(services, catalog, today, now, db, gateway):
    """Unknown outcome: the retry carries the same idempotency key, so one charge"""
    plan = make_plan(services, catalog, today)
    gateway.outcomes.append("timeout_after_create")

    first = await services.scheduler.run(today, now)
    assert first.payments_failed == 1
    assert db.query(Payment).count() == 0
    staged = installments(db, plan.id)[0].staging_record_id
    assert staged is not None

    later = now + timedelta(hours=25)
    retry = await services.scheduler.run(later.date(), later)

    assert retry.payments_processed == 1
    assert gateway.calls[0]["idempotency_key"] == gateway.calls[1]["idempotency_key"] == f"staging-{staged}"
    assert db.query(Payment).count() == 1
    assert db.query(StagingRecord).count() == 1
    assert installments(db, plan.id)[0].staging_record_id == staged


async def test_stale_claim_is_skipped(services, catalog, today, now, db, gateway):
    plan = make_plan(services, catalog, today)
    due = PaymentPlanRepository(db).find_due_installments(today)[0]

    claimed = PaymentPlanRepository(db).claim_installment(due.id, 0, now)
    db.commit()
    assert claimed

    outcome = await services.scheduler.process_installment(due, now)

    assert outcome.claimed is False
    assert gateway.calls == []
    assert installments(db, plan.id)[0].status == InstallmentStatus.PROCESSING.value


async def test_pre_notification_staged_once(services, catalog, today, now, db):
    make_plan(services, catalog, today)
    day = today + timedelta(days=27)
    moment = now + timedelta(days=27)

    first = await services.scheduler.run(day, moment)
    second = await services.scheduler.run(day, moment + timedelta(hours=1))

    assert first.pre_notifications_sent == 1
    assert second.pre_notifications_sent == 0
    assert outbox_count(db, "payment_plan_pre_notification") == 1


def test_update_schedule_single_installment(services, catalog, today, db):
    plan = make_plan(services, catalog, today)
    second = installments(db, plan.id)[1]

    changes = services.scheduler.update_schedule(today, installment_id=second.id, days_from_now=2)

    assert [change.installment_number for change in changes] == [2]
    assert installments(db, plan.id)[1].scheduled_date == today + timedelta(days=2)


def test_update_schedule_whole_plan(services, catalog, today, db):
    plan = make_plan(services, catalog, today)
    target = today + timedelta(days=5)

    services.scheduler.update_schedule(today, plan_id=plan.id, scheduled_date=target)

    dates = [row.scheduled_date for row in installments(db, plan.id)]
    assert dates == [target + timedelta(days=30 * i) for i in range(4)]
    db.refresh(plan)
    assert plan.next_payment_date == target


async def test_early_payoff_charges_remaining_balance(services, catalog, today, now, db, gateway):
    plan = make_plan(services, catalog, today)
    await services.scheduler.run(today, now)

    result = await services.scheduler.early_payoff(plan.id, now)

    assert result.succeeded
    assert result.amount_cents == 30000
    assert gateway.calls[-1]["amount_cents"] == 30000
    assert len(gateway.calls) == 2

    db.refresh(plan)
    assert plan.status == PlanStatus.COMPLETED.value
    assert all(row.status == InstallmentStatus.SUCCEEDED.value for row in installments(db, plan.id))
    assert outbox_count(db, "payment_plan_completed") == 1

    with pytest.raises(PaymentPlanStateError):
        await services.scheduler.early_payoff(plan.id, now)


async def test_plan_purchase_charges_first_installment(services, catalog, today, now, db, gateway):
    request = ChargeRequest(
        user_id=catalog.member.id,
        category_id=catalog.category.id,
        discount_code_id=str(catalog.code.id),
        use_payment_plan=True,
    )

    result = await services.purchases.purchase(request, today, now)

    assert result.first_installment.succeeded
    plan = db.get(PaymentPlan, result.plan_id)
    assert plan.total_cents == 4000
    assert plan.discount_cents == 1000
    assert plan.installments_paid == 1
    assert gateway.calls[0]["amount_cents"] == 1000

    used = services.pricing.seasonal_usage_summary(catalog.member.id, catalog.sibling.id, catalog.season.id)
    assert used.total_used_cents == 1000


def plan_request(catalog, code=None):
    return ChargeRequest(
        user_id=catalog.member.id,
        category_id=catalog.category.id,
        discount_code_id=str(code.id) if code else None,
        use_payment_plan=True,
    )


async def test_plan_purchase_stages_invoice_with_discount_line(services, catalog, today, now, db):
    result = await services.purchases.purchase(plan_request(catalog, catalog.code), today, now)

    invoice = db.get(StagingRecord, result.staging_record_id)
    assert invoice.payment_id is None
    assert [(item.kind, item.amount_cents, item.accounting_code) for item in invoice.line_items] == [
        (LineItemKind.REGISTRATION.value, 5000, "REG-2026"),
        (LineItemKind.DISCOUNT.value, -1000, "DISC-SIB"),
    ]
    assert invoice.final_cents == 4000
    assert db.get(PaymentPlan, result.plan_id).staging_record_id == invoice.id
    assert StagingRepository(db).list_orphaned() == []


async def test_plan_purchase_with_uncoded_discount_writes_nothing(services, catalog, today, now, db, gateway):
    with pytest.raises(ConfigurationError):
        await services.purchases.purchase(plan_request(catalog, catalog.uncoded_code), today, now)

    assert db.query(PaymentPlan).count() == 0
    assert db.query(UserRegistration).count() == 0
    assert db.query(StagingRecord).count() == 0
    assert gateway.calls == []


async def test_pending_charge_settles_without_second_charge(services, catalog, today, now, db, gateway):
    plan = make_plan(services, catalog, today)
    gateway.outcomes.append("processing")

    first = await services.scheduler.run(today, now)
    assert first.payments_processed == 0
    assert first.payments_failed == 0
    row = installments(db, plan.id)[0]
    assert row.status == InstallmentStatus.PENDING.value
    assert row.attempt_count == 1
    assert outbox_count(db, "payment_plan_payment_failed") == 0

    later = now + timedelta(hours=25)
    waiting = await services.scheduler.run(later.date(), later)
    assert waiting.payments_processed == 0
    assert waiting.payments_failed == 0
    assert waiting.retries_attempted == 0
    assert installments(db, plan.id)[0].status == InstallmentStatus.PENDING.value
    assert gateway.retrieved == ["pi_test_1"]

    gateway.settle("pi_test_1", "succeeded")
    settled_at = now + timedelta(hours=50)
    settled = await services.scheduler.run(settled_at.date(), settled_at)

    assert settled.payments_processed == 1
    assert len(gateway.calls) == 1
    row = installments(db, plan.id)[0]
    assert row.status == InstallmentStatus.SUCCEEDED.value
    assert row.attempt_count == 1
    assert db.query(Payment).one().status == PaymentStatus.COMPLETED.value
    assert db.query(StagingRecord).count() == 1
    assert row.staging_record_id in services.orchestrator.finalized_records

    db.refresh(plan)
    assert plan.installments_paid == 1


async def test_failed_settlement_retries_with_new_staging_record(services, catalog, today, now, db, gateway):
    plan = make_plan(services, catalog, today)
    gateway.outcomes.append("processing")
    await services.scheduler.run(today, now)
    first_record = installments(db, plan.id)[0].staging_record_id

    gateway.settle("pi_test_1", "requires_payment_method")
    check = now + timedelta(hours=1)
    declined = await services.scheduler.run(check.date(), check)

    assert declined.payments_failed == 1
    row = installments(db, plan.id)[0]
    assert row.status == InstallmentStatus.PLANNED.value
    assert row.attempt_count == 1
    assert outbox_count(db, "payment_plan_payment_failed") == 1

    later = now + timedelta(hours=26)
    retry = await services.scheduler.run(later.date(), later)

    assert retry.payments_processed == 1
    assert retry.retries_attempted == 1
    row = installments(db, plan.id)[0]
    assert row.staging_record_id != first_record
    assert gateway.calls[0]["idempotency_key"] != gateway.calls[1]["idempotency_key"]
    assert sorted(p.status for p in db.query(Payment).all()) == ["completed", "failed"]


async def test_payoff_blocked_while_installment_pending(services, catalog, today, now, gateway):
    plan = make_plan(services, catalog, today)
    gateway.outcomes.append("processing")
    await services.scheduler.run(today, now)

    with pytest.raises(PaymentPlanStateError):
        await services.scheduler.early_payoff(plan.id, now)
    assert len(gateway.calls) == 1


async def test_abandoned_claim_is_released_and_retried(services, catalog, today, now, db, gateway):
    plan = make_plan(services, catalog, today)
    due = PaymentPlanRepository(db).find_due_installments(today)[0]
    assert PaymentPlanRepository(db).claim_installment(due.id, 0, now)
    db.commit()

    later = now + timedelta(days=3)
    results = await services.scheduler.run(later.date(), later)

    assert results.payments_processed == 1
    assert results.retries_attempted == 1
    assert any("claim expired" in error for error in results.errors)
    row = installments(db, plan.id)[0]
    assert row.status == InstallmentStatus.SUCCEEDED.value
    assert row.attempt_count == 2
    assert len(gateway.calls) == 1


async def test_abandoned_claim_at_max_attempts_needs_attention(services, catalog, today, now, db, gateway):
    plan = make_plan(services, catalog, today)
    row = installments(db, plan.id)[0]
    row.status = InstallmentStatus.PROCESSING.value
    row.attempt_count = 3
    row.last_attempt_at = now
    db.commit()

    later = now + timedelta(hours=1)
    results = await services.scheduler.run(later.date(), later)

    assert any("claim expired (attempts exhausted)" in error for error in results.errors)
    assert gateway.calls == []
    assert installments(db, plan.id)[0].status == InstallmentStatus.FAILED.value

    attention = PaymentPlanRepository(db).list_requiring_attention(3)
    assert [summary.id for summary in attention] == [plan.id]


async def test_unexpected_error_on_retry_still_counts_retry(services, catalog, today, now, db, gateway):
    plan = make_plan(services, catalog, today)
    gateway.outcomes.append("requires_payment_method")
    await services.scheduler.run(today, now)

    later = now + timedelta(hours=25)
    with patch.object(services.scheduler, "_charge_claimed", AsyncMock(side_effect=RuntimeError("ledger offline"))):
        results = await services.scheduler.run(later.date(), later)

    assert results.retries_attempted == 1
    assert results.payments_failed == 1
    assert any("ledger offline" in error for error in results.errors)
    row = installments(db, plan.id)[0]
    assert row.attempt_count == 2
    assert row.status == InstallmentStatus.PLANNED.value
