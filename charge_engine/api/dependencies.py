"""Dependency injection for FastAPI endpoints"""

import uuid
from typing import List, Optional
from fastapi import BackgroundTasks, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from charge_engine.config import EngineConfig, settings
from charge_engine.infrastructure.clients.gateway import PaymentGatewayClient
from charge_engine.infrastructure.clients.ledger import AccountingSyncClient
from charge_engine.infrastructure.database.models import User
from charge_engine.infrastructure.database.repositories import (
    CatalogRepository,
    DiscountUsageRepository,
    UserRepository,
)
from charge_engine.infrastructure.database.session import get_db
from charge_engine.services.notifications import Notifier
from charge_engine.services.orchestrator import ChargeOrchestrator
from charge_engine.services.pricing import PricingCalculator
from charge_engine.services.purchases import PurchaseService
from charge_engine.services.scheduler import InstallmentScheduler
from charge_engine.services.staging import StagingLedgerWriter


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_gateway_client() -> PaymentGatewayClient:
    """Provide payment gateway client instance"""
    return PaymentGatewayClient()


def get_sync_client() -> AccountingSyncClient:
    """Provide accounting sync client instance"""
    return AccountingSyncClient()


def get_engine_config() -> EngineConfig:
    return EngineConfig.from_settings(settings)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the caller from a bearer api token (401 when missing or unknown)"""
    user = UserRepository(db).get_by_token(_bearer_token(authorization))
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Scheduled trigger authenticates with the shared cron secret"""
    token = _bearer_token(authorization)
    if not settings.cron_secret or token != settings.cron_secret:
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_pricing_calculator(db: Session = Depends(get_db)) -> PricingCalculator:
    return PricingCalculator(CatalogRepository(db), DiscountUsageRepository(db))


def get_orchestrator(
    db: Session = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_gateway_client),
) -> ChargeOrchestrator:
    return ChargeOrchestrator(db, gateway, Notifier(db))


def get_scheduler(
    db: Session = Depends(get_db),
    orchestrator: ChargeOrchestrator = Depends(get_orchestrator),
    config: EngineConfig = Depends(get_engine_config),
) -> InstallmentScheduler:
    return InstallmentScheduler(db, orchestrator, StagingLedgerWriter(db), orchestrator.notifier, config)


def get_purchase_service(
    db: Session = Depends(get_db),
    pricing: PricingCalculator = Depends(get_pricing_calculator),
    scheduler: InstallmentScheduler = Depends(get_scheduler),
) -> PurchaseService:
    return PurchaseService(db, pricing, scheduler.staging_writer, scheduler.orchestrator, scheduler)


def queue_staging_sync(
    background_tasks: BackgroundTasks,
    sync_client: AccountingSyncClient,
    staging_record_ids: List[uuid.UUID],
    **fields,
) -> None:
    """Tell the accounting sync service about finalized staging records once the response is sent"""
    if not staging_record_ids:
        return
    background_tasks.add_task(
        sync_client.notify_staging_ready,
        {
            "event": "STAGING_READY",
            "staging_record_ids": [str(record_id) for record_id in staging_record_ids],
            **fields,
        },
    )
