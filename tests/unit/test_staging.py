"""Unit tests for staging ledger records"""

import uuid
import pytest
from charge_engine.domain.exceptions import ChargeValidationError, ConfigurationError, StagingConflictError
from charge_engine.domain.models import ChargeRequest, LineItemKind
from charge_engine.infrastructure.database.models import StagingRecord


def price(services, catalog, today, code=None, **kwargs):
    return services.pricing.price(
        ChargeRequest(
            user_id=catalog.member.id,
            category_id=catalog.category.id,
            discount_code_id=str(code.id) if code else None,
            **kwargs,
        ),
        today,
    )


def test_registration_and_discount_lines(services, catalog, today):
    """$50 at 20% → +5000 registration line, -1000 discount line, final 4000"""
    record = services.writer.create(price(services, catalog, today, catalog.code))

    assert record.total_cents == 5000
    assert record.discount_cents == 1000
    assert record.final_cents == 4000
    assert record.payment_id is None

    lines = record.line_items
    assert [line.kind for line in lines] == [LineItemKind.REGISTRATION.value, LineItemKind.DISCOUNT.value]
    assert lines[0].amount_cents == 5000
    assert lines[0].accounting_code == "REG-2026"
    assert lines[1].amount_cents == -1000
    assert lines[1].accounting_code == "DISC-SIB"
    assert lines[1].discount_code_id == catalog.code.id
    assert sum(line.amount_cents for line in lines) == record.total_cents - record.discount_cents


def test_no_discount_line_without_discount(services, catalog, today):
    record = services.writer.create(price(services, catalog, today))

    assert len(record.line_items) == 1
    assert record.line_items[0].kind == LineItemKind.REGISTRATION.value


def test_missing_discount_accounting_code_blocks_staging(services, catalog, today, db):
    breakdown = price(services, catalog, today, catalog.uncoded_code)

    with pytest.raises(ConfigurationError):
        services.writer.create(breakdown)

    assert db.query(StagingRecord).count() == 0


def test_missing_category_accounting_code_is_validation_error(services, catalog, today, db):
    catalog.category.accounting_code = None
    db.commit()

    with pytest.raises(ChargeValidationError):
        services.writer.create(price(services, catalog, today))


def test_attach_payment_is_set_once(services, catalog, today, db):
    record = services.writer.create(price(services, catalog, today))
    payment_id = uuid.uuid4()
    staging = services.orchestrator.staging

    assert staging.attach_payment(record, payment_id) is True
    db.commit()
    assert staging.attach_payment(record, payment_id) is False

    with pytest.raises(StagingConflictError):
        staging.attach_payment(record, uuid.uuid4())


def test_staged_amounts_are_immutable(services, catalog, today, db):
    record = services.writer.create(price(services, catalog, today))

    record.final_cents = 1
    with pytest.raises(StagingConflictError):
        db.flush()
    db.rollback()


def test_orphaned_records_listed(services, catalog, today):
    record = services.writer.create(price(services, catalog, today))

    orphaned = services.orchestrator.staging.list_orphaned()
    assert [r.id for r in orphaned] == [record.id]
