"""Domain models - pure Python dataclasses representing business entities"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PlanStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class InstallmentStatus(str, enum.Enum):
    PLANNED = "planned"
    PROCESSING = "processing"  # claimed by a worker
    PENDING = "pending"  # charged, gateway has not settled yet
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class LineItemKind(str, enum.Enum):
    REGISTRATION = "registration"
    DISCOUNT = "discount"
    INSTALLMENT = "installment"
    PAYOFF = "payoff"


class DiscountOutcome(str, enum.Enum):
    NONE = "none"
    FULL = "full"
    PARTIAL = "partial"
    SEASONAL_LIMIT_REACHED = "seasonal_limit_reached"
    USAGE_LIMIT_REACHED = "usage_limit_reached"


@dataclass
class ChargeRequest:
    """A purchase/selection event, never persisted"""

    user_id: uuid.UUID
    category_id: uuid.UUID
    discount_code_id: Optional[str] = None
    override_price: Optional[int] = None
    use_payment_plan: bool = False


@dataclass
class DiscountCategory:
    id: uuid.UUID
    name: str
    accounting_code: Optional[str]
    max_discount_per_user_per_season: Optional[int]


@dataclass
class DiscountCode:
    id: uuid.UUID
    code: str
    percentage: int
    per_user_usage_limit: Optional[int]
    category: DiscountCategory


@dataclass
class RegistrationCategory:
    id: uuid.UUID
    name: str
    season_id: uuid.UUID
    price: Optional[int]
    accounting_code: Optional[str]


@dataclass
class DiscountDecision:
    """Result of applying usage and seasonal limits to a requested discount"""

    requested_cents: int
    applied_cents: int
    outcome: DiscountOutcome
    seasonal_used_cents: int = 0
    seasonal_cap_cents: Optional[int] = None

    @property
    def is_partial(self) -> bool:
        return self.outcome == DiscountOutcome.PARTIAL


@dataclass
class ChargeBreakdown:
    """Output of the pricing calculator, input to the staging writer"""

    user_id: uuid.UUID
    category: RegistrationCategory
    base_cents: int
    discount_cents: int
    final_cents: int
    discount_code: Optional[DiscountCode] = None
    discount: Optional[DiscountDecision] = None

    @property
    def is_free(self) -> bool:
        return self.final_cents == 0


@dataclass
class LineItem:
    kind: LineItemKind
    amount_cents: int  # negative for discounts
    description: str
    accounting_code: str
    discount_code_id: Optional[uuid.UUID] = None


@dataclass
class PaymentProfile:
    """Stored payment instrument for off-session charges"""

    user_id: uuid.UUID
    email: str
    full_name: str
    payment_instrument_id: Optional[str]
    setup_intent_status: Optional[str]
    gateway_customer_id: Optional[str]


@dataclass
class GatewayCharge:
    """Charge object returned by the payment gateway"""

    id: str
    status: str
    failure_reason: Optional[str] = None


@dataclass
class ChargeResult:
    payment_id: uuid.UUID
    staging_record_id: uuid.UUID
    status: PaymentStatus
    amount_cents: int
    gateway_transaction_id: Optional[str] = None
    is_free: bool = False
    already_processed: bool = False
    failure_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentStatus.COMPLETED


@dataclass
class Installment:
    """Single payment in a repayment plan"""

    due_date: date
    amount_cents: int


@dataclass
class DueInstallment:
    """Installment joined with its plan and owner, flattened for the scheduler"""

    id: uuid.UUID
    plan_id: uuid.UUID
    user_id: uuid.UUID
    installment_number: int
    installments_count: int
    amount_cents: int
    scheduled_date: date
    attempt_count: int
    last_attempt_at: Optional[datetime]
    status: InstallmentStatus
    staging_record_id: Optional[uuid.UUID]
    category_name: str
    accounting_code: str
    season_id: uuid.UUID


@dataclass
class PlanSummary:
    id: uuid.UUID
    user_id: uuid.UUID
    user_registration_id: Optional[uuid.UUID]
    registration_name: str
    total_cents: int
    paid_cents: int
    installment_cents: int
    installments_count: int
    installments_paid: int
    next_payment_date: Optional[date]
    status: PlanStatus
    created_at: Optional[datetime]
    stuck_installments: List[int] = field(default_factory=list)

    @property
    def remaining_cents(self) -> int:
        return self.total_cents - self.paid_cents

    @property
    def requires_attention(self) -> bool:
        """Active plan holding an installment that exhausted its attempts"""
        return self.status == PlanStatus.ACTIVE and bool(self.stuck_installments)


@dataclass
class ProcessingResults:
    """Outcome counters for one scheduler run"""

    payments_found: int = 0
    payments_processed: int = 0
    payments_failed: int = 0
    retries_attempted: int = 0
    completion_emails_sent: int = 0
    pre_notifications_sent: int = 0
    errors: List[str] = field(default_factory=list)
