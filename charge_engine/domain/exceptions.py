"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class ChargeValidationError(DomainException):
    """Charge request rejected locally before any staging or gateway call"""

    pass


class CategoryNotFoundError(ChargeValidationError):
    """Registration category does not exist"""

    pass


class ConfigurationError(DomainException):
    """Reference data is missing something the ledger requires (operator must fix)"""

    pass


class InvalidPaymentMethod(DomainException):
    """User has no usable stored payment instrument"""

    def __init__(self, reason: str, message: str | None = None):
        self.reason = reason
        super().__init__(message or f"Invalid payment method: {reason}")


class GatewayError(DomainException):
    """Payment gateway returned an error or is unavailable"""

    pass


class GatewayTimeoutError(GatewayError):
    """Gateway did not answer in time; the charge outcome is unknown"""

    pass


class StagingConflictError(DomainException):
    """Attempt to overwrite an id already attached to a staging record"""

    pass


class ReconciliationLinkError(DomainException):
    """Payment exists but could not be linked back to its staging record"""

    def __init__(self, payment_id, staging_record_id, cause: str = ""):
        self.payment_id = payment_id
        self.staging_record_id = staging_record_id
        super().__init__(
            f"Payment {payment_id} could not be linked to staging record {staging_record_id}: {cause}"
        )


class PaymentPlanNotFoundError(DomainException):
    """Payment plan does not exist"""

    pass


class InstallmentNotFoundError(DomainException):
    """Installment does not exist"""

    pass


class PaymentPlanStateError(DomainException):
    """Operation not allowed in the plan's current status"""

    pass
