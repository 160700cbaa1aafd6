"""POST /v1/charges and discount preview endpoints"""

import logging
from typing import List
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request

from charge_engine.api.dependencies import (
    get_current_user,
    get_pricing_calculator,
    get_purchase_service,
    get_request_id,
    get_sync_client,
    queue_staging_sync,
)
from charge_engine.api.errors import http_error
from charge_engine.api.v1.schemas import (
    ChargeRequestBody,
    ChargeResponse,
    DiscountPreviewResponse,
    LineItemSchema,
)
from charge_engine.domain.exceptions import DomainException
from charge_engine.domain.models import ChargeRequest, DiscountOutcome, PaymentStatus
from charge_engine.infrastructure.clients.ledger import AccountingSyncClient
from charge_engine.infrastructure.database.models import User
from charge_engine.infrastructure.database.repositories import parse_uuid
from charge_engine.services.pricing import PricingCalculator
from charge_engine.services.purchases import PurchaseResult, PurchaseService
from charge_engine.utils.date_utils import utc_today, utcnow

router = APIRouter()


@router.post("/charges", response_model=ChargeResponse)
async def create_charge(
    body: ChargeRequestBody,
    background_tasks: BackgroundTasks,
    request: Request,
    user: User = Depends(get_current_user),
    purchases: PurchaseService = Depends(get_purchase_service),
    sync_client: AccountingSyncClient = Depends(get_sync_client),
):
    """
    Purchase a registration.

    Flow:
    1. Price the category with the discount code against the usage ledger
    2. Stage the ledger intent (committed before any money moves)
    3. Charge off-session, or create a payment plan and charge its first installment
    4. Tell the accounting sync service about finalized staging records
    """
    request_id = get_request_id(request)
    charge_request = _charge_request(body, user)

    try:
        result = await purchases.purchase(charge_request, utc_today(), utcnow())
    except DomainException as e:
        purchases.db.rollback()
        logging.warning(f"Charge rejected: {e}", extra={"request_id": request_id, "user_id": str(user.id)})
        raise http_error(e)

    staged = list(purchases.orchestrator.finalized_records)
    if result.plan_id and result.staging_record_id:
        staged.insert(0, result.staging_record_id)
    queue_staging_sync(background_tasks, sync_client, staged, user_id=str(charge_request.user_id))

    if result.charge is not None and not result.charge.succeeded and result.charge.status == PaymentStatus.FAILED:
        raise HTTPException(
            status_code=402,
            detail={
                "reason": "payment_failed",
                "message": result.charge.failure_reason or "Payment failed",
                "payment_id": str(result.charge.payment_id),
            },
        )

    return _charge_response(result, purchases)


@router.get("/discounts/validate", response_model=DiscountPreviewResponse)
def validate_discount(
    code: str = Query(..., min_length=1),
    category_id: str = Query(...),
    user: User = Depends(get_current_user),
    pricing: PricingCalculator = Depends(get_pricing_calculator),
):
    """Preview what a discount code would do for the caller, without writing anything"""
    category_uuid = parse_uuid(category_id)
    if category_uuid is None:
        raise HTTPException(status_code=404, detail="Category not found")

    try:
        preview = pricing.discount_preview(user.id, code, category_uuid, utc_today())
    except DomainException as e:
        raise http_error(e)

    if preview is None:
        return DiscountPreviewResponse(valid=False, code=code)

    breakdown = preview.breakdown
    return DiscountPreviewResponse(
        valid=True,
        code=preview.code.code,
        base_cents=breakdown.base_cents,
        discount_cents=breakdown.discount_cents,
        final_cents=breakdown.final_cents,
        outcome=breakdown.discount.outcome.value if breakdown.discount else DiscountOutcome.NONE.value,
        seasonal_remaining_cents=preview.seasonal.remaining_cents if preview.seasonal else None,
    )


def _charge_request(body: ChargeRequestBody, user: User) -> ChargeRequest:
    """Only admins may charge on behalf of someone else or override the price"""
    target_id = user.id
    if body.user_id:
        target_id = parse_uuid(body.user_id)
        if target_id is None:
            raise HTTPException(status_code=422, detail="Malformed user id")
    if (target_id != user.id or body.override_price is not None) and not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")

    category_id = parse_uuid(body.category_id)
    if category_id is None:
        raise HTTPException(status_code=404, detail="Category not found")

    return ChargeRequest(
        user_id=target_id,
        category_id=category_id,
        discount_code_id=body.discount_code_id,
        override_price=body.override_price,
        use_payment_plan=body.use_payment_plan,
    )


def _charge_response(result: PurchaseResult, purchases: PurchaseService) -> ChargeResponse:
    breakdown = result.breakdown
    response = ChargeResponse(
        status="pending",
        base_cents=breakdown.base_cents,
        discount_cents=breakdown.discount_cents,
        final_cents=breakdown.final_cents,
        discount_outcome=breakdown.discount.outcome.value if breakdown.discount else DiscountOutcome.NONE.value,
        is_free=breakdown.is_free,
        registration_id=str(result.registration_id) if result.registration_id else None,
        plan_id=str(result.plan_id) if result.plan_id else None,
    )

    if result.charge is not None:
        response.status = result.charge.status.value
        response.payment_id = str(result.charge.payment_id)
        response.staging_record_id = str(result.charge.staging_record_id)
        response.failure_reason = result.charge.failure_reason
        response.line_items = _line_items(purchases, result.charge.staging_record_id)
    elif result.first_installment is not None:
        first = result.first_installment
        response.status = PaymentStatus.COMPLETED.value if first.succeeded else PaymentStatus.PENDING.value
        response.payment_id = str(first.payment_id) if first.payment_id else None
        response.failure_reason = first.error
        if result.staging_record_id:
            response.staging_record_id = str(result.staging_record_id)
            response.line_items = _line_items(purchases, result.staging_record_id)

    return response


def _line_items(purchases: PurchaseService, staging_record_id) -> List[LineItemSchema]:
    record = purchases.staging_writer.records.get(staging_record_id)
    if record is None:
        return []
    return [
        LineItemSchema(
            kind=item.kind,
            amount_cents=item.amount_cents,
            description=item.description,
            accounting_code=item.accounting_code,
        )
        for item in record.line_items
    ]
