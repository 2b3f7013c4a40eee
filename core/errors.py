"""
Typed exceptions for billing failures.

Each error carries a machine-readable ``code`` so an outer HTTP layer can map
it without parsing messages: NotFound/Validation → 4xx, Conflict → 409,
Configuration/NotSupported → 4xx for the studio admin, ExternalService → 502.
"""


class ErrorCodes:
    """Standard error codes for consistent error handling."""

    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    CONFLICT = "CONFLICT"
    INVOICE_ALREADY_PAID = "INVOICE_ALREADY_PAID"
    INVOICE_CANCELLED = "INVOICE_CANCELLED"
    PAYMENT_NOT_REFUNDABLE = "PAYMENT_NOT_REFUNDABLE"
    CAMPAIGN_ALREADY_SENT = "CAMPAIGN_ALREADY_SENT"
    GATEWAY_NOT_CONFIGURED = "GATEWAY_NOT_CONFIGURED"
    NOT_SUPPORTED = "NOT_SUPPORTED"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class BillingError(Exception):
    """Base class for billing errors."""

    code = ErrorCodes.CONFLICT

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class NotFoundError(BillingError):
    """Studio, client, booking, invoice, payment or campaign does not exist in this studio."""

    code = ErrorCodes.NOT_FOUND


class ValidationError(BillingError):
    """Input is well-formed but breaks a business rule (empty line items, bad amounts)."""

    code = ErrorCodes.VALIDATION_ERROR


class InvalidAmountError(ValidationError):
    """Amount is outside what the target record allows (e.g. refund above refundable balance)."""

    code = ErrorCodes.INVALID_AMOUNT


class ConflictError(BillingError):
    """Operation not allowed in the record's current state (mutating a PAID invoice)."""

    code = ErrorCodes.CONFLICT


class ConfigurationError(BillingError):
    """Payment gateway is not set up for this studio."""

    code = ErrorCodes.GATEWAY_NOT_CONFIGURED


class NotSupportedError(BillingError):
    """Gateway has no implementation for the requested capability."""

    code = ErrorCodes.NOT_SUPPORTED


class ExternalServiceError(BillingError):
    """A third-party call (gateway, email) failed."""

    code = ErrorCodes.SERVICE_UNAVAILABLE


class PaymentGatewayError(ExternalServiceError):
    """Payment gateway rejected or failed a request."""

    code = ErrorCodes.GATEWAY_ERROR

    def __init__(self, gateway: str, message: str):
        self.gateway = gateway
        super().__init__(f"{gateway} error: {message}")
