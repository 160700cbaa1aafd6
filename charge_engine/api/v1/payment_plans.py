"""Payment plan endpoints: manual and scheduled runs, schedule tools, plan views, payoff"""

import logging
from dataclasses import asdict
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from charge_engine.api.dependencies import (
    get_current_user,
    get_engine_config,
    get_purchase_service,
    get_request_id,
    get_scheduler,
    get_sync_client,
    queue_staging_sync,
    require_admin,
    verify_cron_secret,
)
from charge_engine.api.errors import http_error
from charge_engine.api.v1.schemas import (
    AttentionResponse,
    PayoffResponse,
    PlanResponse,
    ProcessingResultsSchema,
    RunPaymentsResponse,
    ScheduleChangeSchema,
    UpdateScheduleRequest,
    UpdateScheduleResponse,
    UserPlansResponse,
)
from charge_engine.config import EngineConfig
from charge_engine.domain.exceptions import DomainException
from charge_engine.domain.models import PlanSummary
from charge_engine.infrastructure.clients.ledger import AccountingSyncClient
from charge_engine.infrastructure.database.models import User
from charge_engine.infrastructure.database.repositories import PaymentPlanRepository, parse_uuid
from charge_engine.infrastructure.database.session import get_db
from charge_engine.infrastructure.observability.logging import log_event
from charge_engine.services.purchases import PurchaseService
from charge_engine.services.scheduler import InstallmentScheduler
from charge_engine.utils.date_utils import utc_today, utcnow

router = APIRouter()


async def _run_payments(
    scheduler: InstallmentScheduler,
    trigger: str,
    request_id: str,
    background_tasks: BackgroundTasks,
    sync_client: AccountingSyncClient,
) -> RunPaymentsResponse:
    try:
        results = await scheduler.run(utc_today(), utcnow())
    except Exception as e:
        scheduler.db.rollback()
        logging.error(f"Payment run failed: {e}", extra={"request_id": request_id, "trigger": trigger})
        raise HTTPException(status_code=500, detail="Failed to process payments")

    queue_staging_sync(background_tasks, sync_client, scheduler.orchestrator.finalized_records, trigger=trigger)

    return RunPaymentsResponse(
        success=True,
        message="Payment processing completed",
        results=ProcessingResultsSchema(**asdict(results)),
    )


@router.post(
    "/admin/payment-plans/run-payments",
    response_model=RunPaymentsResponse,
    response_model_by_alias=True,
)
async def run_payments(
    request: Request,
    background_tasks: BackgroundTasks,
    admin: User = Depends(require_admin),
    scheduler: InstallmentScheduler = Depends(get_scheduler),
    sync_client: AccountingSyncClient = Depends(get_sync_client),
):
    """Manual trigger; runs exactly the same routine as the daily cron"""
    log_event("payment-processor-manual-trigger", "Manual payment processing triggered", admin_id=admin.id)
    return await _run_payments(scheduler, "manual", get_request_id(request), background_tasks, sync_client)


@router.get(
    "/cron/payment-plans",
    response_model=RunPaymentsResponse,
    response_model_by_alias=True,
    dependencies=[Depends(verify_cron_secret)],
)
async def cron_payment_plans(
    request: Request,
    background_tasks: BackgroundTasks,
    scheduler: InstallmentScheduler = Depends(get_scheduler),
    sync_client: AccountingSyncClient = Depends(get_sync_client),
):
    """Daily scheduled trigger"""
    return await _run_payments(scheduler, "cron", get_request_id(request), background_tasks, sync_client)


@router.post("/admin/payment-plans/update-schedule", response_model=UpdateScheduleResponse)
def update_schedule(
    body: UpdateScheduleRequest,
    admin: User = Depends(require_admin),
    scheduler: InstallmentScheduler = Depends(get_scheduler),
):
    """Move installment dates (support and testing tool)"""
    installment_id = parse_uuid(body.installment_id) if body.installment_id else None
    plan_id = parse_uuid(body.payment_plan_id) if body.payment_plan_id else None
    if (body.installment_id and installment_id is None) or (body.payment_plan_id and plan_id is None):
        raise HTTPException(status_code=422, detail="Malformed identifier")

    try:
        changes = scheduler.update_schedule(
            utc_today(),
            installment_id=installment_id,
            plan_id=None if installment_id else plan_id,
            scheduled_date=body.scheduled_date,
            days_from_now=body.days_from_now,
        )
    except DomainException as e:
        scheduler.db.rollback()
        raise http_error(e)

    log_event("payment-plan-schedule-updated-by-admin", "Admin updated installment schedule", admin_id=admin.id)
    return UpdateScheduleResponse(
        success=True,
        message=f"Updated {len(changes)} installment(s)",
        updated=[
            ScheduleChangeSchema(
                installment_id=str(change.installment_id),
                installment_number=change.installment_number,
                scheduled_date=change.scheduled_date,
                status=change.status,
            )
            for change in changes
        ],
    )


@router.get("/admin/payment-plans/attention", response_model=AttentionResponse)
def plans_requiring_attention(
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
):
    """Active plans holding an installment that exhausted every attempt"""
    summaries = PaymentPlanRepository(db).list_requiring_attention(config.max_payment_attempts)
    return AttentionResponse(plans=[_plan_response(s) for s in summaries])


@router.get("/payment-plans/{plan_id}", response_model=PlanResponse)
def get_payment_plan(
    plan_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
):
    plan_uuid = parse_uuid(plan_id)
    summary = PaymentPlanRepository(db).get_summary(plan_uuid, config.max_payment_attempts) if plan_uuid else None
    if summary is None or (summary.user_id != user.id and not user.is_admin):
        raise HTTPException(status_code=404, detail="Payment plan not found")
    return _plan_response(summary)


@router.get("/users/{user_id}/payment-plans", response_model=UserPlansResponse)
def list_user_payment_plans(
    user_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
):
    owner_id = parse_uuid(user_id)
    if owner_id is None:
        raise HTTPException(status_code=422, detail="Malformed user id")
    if owner_id != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")

    summaries = PaymentPlanRepository(db).list_user_summaries(owner_id, config.max_payment_attempts)
    return UserPlansResponse(user_id=user_id, plans=[_plan_response(s) for s in summaries])


@router.post("/payment-plans/{plan_id}/payoff", response_model=PayoffResponse)
async def pay_off_plan(
    plan_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    purchases: PurchaseService = Depends(get_purchase_service),
    sync_client: AccountingSyncClient = Depends(get_sync_client),
):
    """Charge every outstanding installment at once"""
    plan_uuid = parse_uuid(plan_id)
    if plan_uuid is None:
        raise HTTPException(status_code=404, detail="Payment plan not found")

    try:
        result = await purchases.payoff(plan_uuid, user.id, user.is_admin, utcnow())
    except DomainException as e:
        purchases.db.rollback()
        logging.warning(f"Early payoff rejected: {e}", extra={"request_id": get_request_id(request)})
        raise http_error(e)

    queue_staging_sync(
        background_tasks, sync_client, purchases.orchestrator.finalized_records, user_id=str(user.id)
    )

    if not result.succeeded:
        raise HTTPException(
            status_code=402,
            detail={"reason": "payment_not_completed", "message": result.failure_reason or result.status.value},
        )

    return PayoffResponse(
        plan_id=plan_id,
        status=result.status.value,
        payment_id=str(result.payment_id),
        amount_cents=result.amount_cents,
        failure_reason=result.failure_reason,
    )


def _plan_response(summary: PlanSummary) -> PlanResponse:
    return PlanResponse(
        plan_id=str(summary.id),
        user_id=str(summary.user_id),
        registration_name=summary.registration_name,
        status=summary.status.value,
        total_cents=summary.total_cents,
        paid_cents=summary.paid_cents,
        remaining_cents=summary.remaining_cents,
        installment_cents=summary.installment_cents,
        installments_count=summary.installments_count,
        installments_paid=summary.installments_paid,
        next_payment_date=summary.next_payment_date,
        requires_attention=summary.requires_attention,
        stuck_installments=summary.stuck_installments,
        created_at=summary.created_at,
    )
