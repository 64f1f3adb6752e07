from rest_framework import status

from apps.utils.exceptions import BusinessLogicException


class PaymentProcessingFailed(BusinessLogicException):
    """
    Base for payment failures surfaced to the caller.
    `raw` keeps whatever the gateway returned, for logs only.
    """
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message="Payment processing failed", code="payment_failed", raw=None):
        self.raw = raw
        super().__init__(message, code=code)


class TransientGatewayError(PaymentProcessingFailed):
    """Network failure, timeout or non-2xx from the gateway."""

    def __init__(self, message="Payment gateway unavailable", raw=None):
        super().__init__(message, code="gateway_unavailable", raw=raw)


class InvalidGatewayResponse(PaymentProcessingFailed):
    def __init__(self, message="Invalid response from payment gateway", raw=None):
        super().__init__(message, code="gateway_invalid_response", raw=raw)


class OrderNotFound(BusinessLogicException):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, message="Order not found", code="order_not_found"):
        super().__init__(message, code=code)


class InvalidStateTransition(BusinessLogicException):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message="Invalid payment state transition", code="invalid_state_transition"):
        super().__init__(message, code=code)


class RefundIneligible(BusinessLogicException):
    def __init__(self, message="Payment must be completed to be refunded", code="refund_ineligible"):
        super().__init__(message, code=code)


class InvalidPhoneNumber(BusinessLogicException):
    def __init__(self, message="Invalid phone number", code="invalid_phone"):
        super().__init__(message, code=code)
