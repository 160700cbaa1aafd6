"""SQLAlchemy ORM models for the charge engine"""

import uuid
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.orm.attributes import get_history
from sqlalchemy.sql import func

from charge_engine.domain.exceptions import StagingConflictError

Base = declarative_base()


class User(Base):
    """Member account with its stored payment instrument"""

    __tablename__ = "app_user"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(Text, nullable=False, unique=True)
    first_name = Column(Text, nullable=False, default="")
    last_name = Column(Text, nullable=False, default="")
    is_admin = Column(Boolean, nullable=False, default=False)
    api_token = Column(Text, nullable=True, unique=True, index=True)
    payment_instrument_id = Column(Text, nullable=True)
    setup_intent_status = Column(Text, nullable=True)
    gateway_customer_id = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class Season(Base):
    __tablename__ = "season"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)


class RegistrationCategory(Base):
    """Purchasable registration with its base price and accounting code"""

    __tablename__ = "registration_category"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    season_id = Column(UUID(as_uuid=True), ForeignKey("season.id"), nullable=False)
    name = Column(Text, nullable=False)
    price = Column(BigInteger, nullable=True)
    accounting_code = Column(Text, nullable=True)

    season = relationship("Season")


class DiscountCategory(Base):
    __tablename__ = "discount_category"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False, unique=True)
    accounting_code = Column(Text, nullable=True)
    max_discount_per_user_per_season = Column(BigInteger, nullable=True)  # NULL = no cap
    is_active = Column(Boolean, nullable=False, default=True)

    codes = relationship("DiscountCode", back_populates="category")


class DiscountCode(Base):
    __tablename__ = "discount_code"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    discount_category_id = Column(UUID(as_uuid=True), ForeignKey("discount_category.id"), nullable=False)
    code = Column(Text, nullable=False, unique=True)
    percentage = Column(Integer, nullable=False)
    per_user_usage_limit = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    valid_from = Column(Date, nullable=True)
    valid_until = Column(Date, nullable=True)

    category = relationship("DiscountCategory", back_populates="codes")


class UserRegistration(Base):
    __tablename__ = "user_registration"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("app_user.id"), nullable=False, index=True)
    category_id = Column(UUID(as_uuid=True), ForeignKey("registration_category.id"), nullable=False)
    payment_id = Column(UUID(as_uuid=True), ForeignKey("payment.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    category = relationship("RegistrationCategory")


class StagingRecord(Base):
    """Pre-charge ledger intent awaiting accounting sync"""

    __tablename__ = "staging_record"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("app_user.id"), nullable=False, index=True)
    season_id = Column(UUID(as_uuid=True), ForeignKey("season.id"), nullable=True)
    total_cents = Column(BigInteger, nullable=False)
    discount_cents = Column(BigInteger, nullable=False, default=0)
    final_cents = Column(BigInteger, nullable=False)
    is_free = Column(Boolean, nullable=False, default=False)
    gateway_transaction_id = Column(Text, nullable=True)
    payment_id = Column(UUID(as_uuid=True), ForeignKey("payment.id"), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    line_items = relationship(
        "StagingLineItem",
        back_populates="record",
        cascade="all, delete-orphan",
        order_by="StagingLineItem.position",
    )


class StagingLineItem(Base):
    __tablename__ = "staging_line_item"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    staging_record_id = Column(
        UUID(as_uuid=True), ForeignKey("staging_record.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    kind = Column(Text, nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    description = Column(Text, nullable=False)
    accounting_code = Column(Text, nullable=False)
    discount_code_id = Column(UUID(as_uuid=True), ForeignKey("discount_code.id"), nullable=True)

    record = relationship("StagingRecord", back_populates="line_items")


class Payment(Base):
    __tablename__ = "payment"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("app_user.id"), nullable=False, index=True)
    total_cents = Column(BigInteger, nullable=False)
    final_cents = Column(BigInteger, nullable=False)
    gateway_transaction_id = Column(Text, nullable=True, unique=True)
    status = Column(Text, nullable=False, default="pending")
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    completed_at = Column(DateTime, nullable=True)


class PaymentPlan(Base):
    """Multi-installment payment plan for a registration"""

    __tablename__ = "payment_plan"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("app_user.id"), nullable=False, index=True)
    user_registration_id = Column(UUID(as_uuid=True), ForeignKey("user_registration.id"), nullable=True)
    category_id = Column(UUID(as_uuid=True), ForeignKey("registration_category.id"), nullable=False)
    season_id = Column(UUID(as_uuid=True), ForeignKey("season.id"), nullable=False)
    total_cents = Column(BigInteger, nullable=False)
    installment_cents = Column(BigInteger, nullable=False)
    installments_count = Column(Integer, nullable=False)
    installments_paid = Column(Integer, nullable=False, default=0)
    next_payment_date = Column(Date, nullable=True)
    status = Column(Text, nullable=False, default="active")
    discount_code_id = Column(UUID(as_uuid=True), ForeignKey("discount_code.id"), nullable=True)
    discount_cents = Column(BigInteger, nullable=False, default=0)
    # Invoice staged at purchase; installments are paid against it
    staging_record_id = Column(UUID(as_uuid=True), ForeignKey("staging_record.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    completed_at = Column(DateTime, nullable=True)

    category = relationship("RegistrationCategory")
    installments = relationship(
        "PaymentInstallment",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="PaymentInstallment.installment_number",
    )


class PaymentInstallment(Base):
    """Individual scheduled charge within a payment plan"""

    __tablename__ = "payment_installment"
    __table_args__ = (UniqueConstraint("plan_id", "installment_number", name="uq_installment_number"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    plan_id = Column(UUID(as_uuid=True), ForeignKey("payment_plan.id", ondelete="CASCADE"), nullable=False)
    installment_number = Column(Integer, nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    scheduled_date = Column(Date, nullable=False, index=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    status = Column(Text, nullable=False, default="planned")
    failure_reason = Column(Text, nullable=True)
    staging_record_id = Column(UUID(as_uuid=True), ForeignKey("staging_record.id"), nullable=True)
    payment_id = Column(UUID(as_uuid=True), ForeignKey("payment.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    plan = relationship("PaymentPlan", back_populates="installments")


class NotificationOutbox(Base):
    """Notification delivery queue with retry tracking"""

    __tablename__ = "notification_outbox"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("app_user.id"), nullable=False, index=True)
    event_type = Column(Text, nullable=False)
    payload = Column(JSON, nullable=False)
    dedupe_key = Column(Text, nullable=False, unique=True)
    status = Column(Text, nullable=False, default="pending")
    last_attempt_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


# Staging records are immutable after insert except for the two link columns,
# each of which may be set once.
_STAGING_LINK_COLUMNS = ("gateway_transaction_id", "payment_id")
_STAGING_FROZEN_COLUMNS = ("user_id", "season_id", "total_cents", "discount_cents", "final_cents", "is_free")


@event.listens_for(StagingRecord, "before_update")
def _check_staging_record_immutability(mapper, connection, target):
    for column in _STAGING_FROZEN_COLUMNS:
        if get_history(target, column).has_changes():
            raise StagingConflictError(f"Staging record {target.id}: {column} is immutable")

    for column in _STAGING_LINK_COLUMNS:
        history = get_history(target, column)
        if not history.has_changes():
            continue
        previous = history.deleted[0] if history.deleted else None
        if previous is not None and previous != history.added[0]:
            raise StagingConflictError(
                f"Staging record {target.id}: {column} already set to {previous}"
            )


@event.listens_for(StagingLineItem, "before_update")
def _check_staging_line_item_immutability(mapper, connection, target):
    raise StagingConflictError(f"Staging line item {target.id} is immutable")
