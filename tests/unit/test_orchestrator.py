"""Unit tests for the charge orchestrator"""

import pytest
from unittest.mock import patch
from sqlalchemy.exc import OperationalError
from charge_engine.domain.exceptions import (
    ChargeValidationError,
    GatewayError,
    GatewayTimeoutError,
    InvalidPaymentMethod,
    ReconciliationLinkError,
)
from charge_engine.domain.models import ChargeRequest, PaymentStatus
from charge_engine.infrastructure.database.models import NotificationOutbox, Payment, StagingRecord
from charge_engine.infrastructure.database.repositories import UserRepository
from charge_engine.services.orchestrator import map_gateway_status


def stage(services, catalog, today, code=None, user=None):
    user = user or catalog.member
    breakdown = services.pricing.price(
        ChargeRequest(user_id=user.id, category_id=catalog.category.id, discount_code_id=str(code.id) if code else None),
        today,
    )
    return breakdown, services.writer.create(breakdown)


def profile_for(db, user):
    return UserRepository(db).get_payment_profile(user.id)


@pytest.mark.parametrize(
    "gateway_status,expected",
    [
        ("succeeded", PaymentStatus.COMPLETED),
        ("processing", PaymentStatus.PENDING),
        ("requires_capture", PaymentStatus.PENDING),
        ("requires_payment_method", PaymentStatus.FAILED),
        ("canceled", PaymentStatus.FAILED),
        ("something_new", PaymentStatus.FAILED),
    ],
)
def test_map_gateway_status(gateway_status, expected):
    assert map_gateway_status(gateway_status) == expected


async def test_paid_charge_links_payment(services, catalog, today, db, gateway):
    breakdown, record = stage(services, catalog, today, catalog.code)

    result = await services.orchestrator.charge(profile_for(db, catalog.member), 4000, record, "Registration")

    assert result.succeeded
    assert result.amount_cents == 4000
    assert len(gateway.calls) == 1
    call = gateway.calls[0]
    assert call["amount_cents"] == 4000
    assert call["payment_method"] == "pm_card_visa"
    assert call["customer"] == "cus_member"
    assert call["idempotency_key"] == f"staging-{record.id}"
    assert call["metadata"]["staging_record_id"] == str(record.id)

    db.refresh(record)
    assert record.payment_id == result.payment_id
    assert record.gateway_transaction_id == result.gateway_transaction_id
    assert services.orchestrator.finalized_records == [record.id]
    assert db.query(NotificationOutbox).filter_by(event_type="charge_completed").count() == 1


async def test_free_charge_skips_gateway_and_is_idempotent(services, catalog, today, db, gateway):
    breakdown, record = stage(services, catalog, today, catalog.full_code)
    assert breakdown.is_free
    profile = profile_for(db, catalog.member)

    first = await services.orchestrator.charge(profile, 0, record, "Registration")
    second = await services.orchestrator.charge(profile, 0, record, "Registration")

    assert gateway.calls == []
    assert first.is_free and first.status == PaymentStatus.COMPLETED
    assert second.already_processed
    assert second.payment_id == first.payment_id
    assert db.query(Payment).count() == 1


async def test_free_charge_needs_no_payment_method(services, catalog, today, db, gateway):
    breakdown = services.pricing.price(
        ChargeRequest(
            user_id=catalog.no_card.id, category_id=catalog.category.id, discount_code_id=str(catalog.full_code.id)
        ),
        today,
    )
    record = services.writer.create(breakdown)

    result = await services.orchestrator.charge(profile_for(db, catalog.no_card), 0, record, "Registration")

    assert result.succeeded
    assert gateway.calls == []


async def test_paid_charge_without_instrument_never_calls_gateway(services, catalog, today, db, gateway):
    breakdown = services.pricing.price(
        ChargeRequest(user_id=catalog.no_card.id, category_id=catalog.category.id), today
    )
    record = services.writer.create(breakdown)

    with pytest.raises(InvalidPaymentMethod) as exc_info:
        await services.orchestrator.charge(profile_for(db, catalog.no_card), 5000, record, "Registration")

    assert exc_info.value.reason == "no_payment_method"
    assert gateway.calls == []
    assert db.query(Payment).count() == 0


async def test_unverified_setup_is_invalid(services, catalog, today, db, gateway):
    catalog.member.setup_intent_status = "requires_action"
    db.commit()
    _, record = stage(services, catalog, today)

    with pytest.raises(InvalidPaymentMethod) as exc_info:
        await services.orchestrator.charge(profile_for(db, catalog.member), 5000, record, "Registration")

    assert exc_info.value.reason == "setup_not_verified"
    assert gateway.calls == []


async def test_amount_must_match_staging_record(services, catalog, today, db):
    _, record = stage(services, catalog, today)

    with pytest.raises(ChargeValidationError):
        await services.orchestrator.charge(profile_for(db, catalog.member), 4999, record, "Registration")


async def test_declined_charge_records_failed_payment(services, catalog, today, db, gateway):
    gateway.outcomes.append("requires_payment_method")
    _, record = stage(services, catalog, today)

    result = await services.orchestrator.charge(profile_for(db, catalog.member), 5000, record, "Registration")

    assert result.status == PaymentStatus.FAILED
    assert result.failure_reason == "Your card was declined."
    assert services.orchestrator.finalized_records == []
    db.refresh(record)
    assert record.payment_id == result.payment_id


async def test_timeout_leaves_orphaned_staging_record(services, catalog, today, db, gateway):
    gateway.outcomes.append(GatewayTimeoutError("read timeout"))
    _, record = stage(services, catalog, today)

    with pytest.raises(GatewayTimeoutError):
        await services.orchestrator.charge(profile_for(db, catalog.member), 5000, record, "Registration")

    assert db.query(Payment).count() == 0
    assert db.query(StagingRecord).filter(StagingRecord.payment_id.is_(None)).count() == 1


async def test_gateway_error_propagates(services, catalog, today, db, gateway):
    gateway.outcomes.append(GatewayError("HTTP 500"))
    _, record = stage(services, catalog, today)

    with pytest.raises(GatewayError):
        await services.orchestrator.charge(profile_for(db, catalog.member), 5000, record, "Registration")
    assert len(gateway.calls) == 1


async def test_link_failure_raises_reconciliation_error(services, catalog, today, db):
    _, record = stage(services, catalog, today)

    with patch.object(
        services.orchestrator.staging,
        "attach_payment",
        side_effect=OperationalError("UPDATE staging_record", {}, Exception("database is locked")),
    ):
        with pytest.raises(ReconciliationLinkError) as exc_info:
            await services.orchestrator.charge(profile_for(db, catalog.member), 5000, record, "Registration")

    payment = db.get(Payment, exc_info.value.payment_id)
    assert payment.status == PaymentStatus.COMPLETED.value
    db.refresh(record)
    assert record.payment_id is None
