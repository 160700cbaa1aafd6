"""Domain exception → HTTP error mapping"""

from fastapi import HTTPException

from charge_engine.domain.exceptions import (
    CategoryNotFoundError,
    ChargeValidationError,
    ConfigurationError,
    DomainException,
    GatewayError,
    GatewayTimeoutError,
    InstallmentNotFoundError,
    InvalidPaymentMethod,
    PaymentPlanNotFoundError,
    PaymentPlanStateError,
    ReconciliationLinkError,
)


def http_error(exc: DomainException) -> HTTPException:
    # Subclasses before their parents
    if isinstance(exc, (CategoryNotFoundError, PaymentPlanNotFoundError, InstallmentNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ChargeValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, InvalidPaymentMethod):
        return HTTPException(status_code=402, detail={"reason": exc.reason, "message": str(exc)})
    if isinstance(exc, GatewayTimeoutError):
        return HTTPException(status_code=504, detail="Payment gateway timed out; outcome unknown")
    if isinstance(exc, GatewayError):
        return HTTPException(status_code=502, detail="Payment gateway unavailable")
    if isinstance(exc, PaymentPlanStateError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=500, detail="Payment configuration error")
    if isinstance(exc, ReconciliationLinkError):
        return HTTPException(status_code=500, detail="Payment recorded; reconciliation pending")
    return HTTPException(status_code=500, detail="Internal server error")
