"""Pydantic schemas for API request/response validation"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from datetime import date, datetime
from typing import List, Optional


class ChargeRequestBody(BaseModel):
    """Request body for POST /v1/charges"""

    category_id: str = Field(..., min_length=1, description="Registration category identifier")
    discount_code_id: Optional[str] = Field(None, description="Discount code identifier")
    use_payment_plan: bool = False
    user_id: Optional[str] = Field(None, description="Charge on behalf of this user (admin only)")
    override_price: Optional[int] = Field(None, ge=0, description="Admin price override in cents")


class LineItemSchema(BaseModel):
    kind: str
    amount_cents: int
    description: str
    accounting_code: str


class ChargeResponse(BaseModel):
    """Response for POST /v1/charges"""

    status: str
    base_cents: int
    discount_cents: int
    final_cents: int
    discount_outcome: str
    is_free: bool
    payment_id: Optional[str] = None
    staging_record_id: Optional[str] = None
    registration_id: Optional[str] = None
    plan_id: Optional[str] = None
    failure_reason: Optional[str] = None
    line_items: List[LineItemSchema] = []


class DiscountPreviewResponse(BaseModel):
    """Response for GET /v1/discounts/validate"""

    valid: bool
    code: str
    base_cents: Optional[int] = None
    discount_cents: int = 0
    final_cents: Optional[int] = None
    outcome: Optional[str] = None
    seasonal_remaining_cents: Optional[int] = None


class ProcessingResultsSchema(BaseModel):
    """Batch results, camelCase on the wire"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    payments_found: int
    payments_processed: int
    payments_failed: int
    retries_attempted: int
    completion_emails_sent: int
    pre_notifications_sent: int
    errors: List[str]


class RunPaymentsResponse(BaseModel):
    """Response for the manual and scheduled payment runs"""

    success: bool
    message: str
    results: ProcessingResultsSchema


class UpdateScheduleRequest(BaseModel):
    """Request body for POST /v1/admin/payment-plans/update-schedule"""

    installment_id: Optional[str] = None
    payment_plan_id: Optional[str] = None
    scheduled_date: Optional[date] = None
    days_from_now: Optional[int] = None

    @model_validator(mode="after")
    def check_targets(self):
        if not self.installment_id and not self.payment_plan_id:
            raise ValueError("Must provide either installment_id or payment_plan_id")
        if self.scheduled_date is None and self.days_from_now is None:
            raise ValueError("Must provide either scheduled_date or days_from_now")
        return self


class ScheduleChangeSchema(BaseModel):
    installment_id: str
    installment_number: int
    scheduled_date: date
    status: str


class UpdateScheduleResponse(BaseModel):
    success: bool
    message: str
    updated: List[ScheduleChangeSchema]


class PlanResponse(BaseModel):
    """Payment plan summary"""

    plan_id: str
    user_id: str
    registration_name: str
    status: str
    total_cents: int
    paid_cents: int
    remaining_cents: int
    installment_cents: int
    installments_count: int
    installments_paid: int
    next_payment_date: Optional[date] = None
    requires_attention: bool = False
    stuck_installments: List[int] = []
    created_at: Optional[datetime] = None


class UserPlansResponse(BaseModel):
    user_id: str
    plans: List[PlanResponse]


class AttentionResponse(BaseModel):
    plans: List[PlanResponse]


class PayoffResponse(BaseModel):
    plan_id: str
    status: str
    payment_id: str
    amount_cents: int
    failure_reason: Optional[str] = None
