from fastapi import HTTPException


class OrderflowError(Exception):
    """Base for every business error raised by the settlement services."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderflowError):
    status_code = 400


class InvalidCoupon(OrderflowError):
    status_code = 400


class InsufficientPoints(OrderflowError):
    status_code = 400


class InvalidTransition(OrderflowError):
    status_code = 409


class NotFound(OrderflowError):
    status_code = 404


class PermissionDenied(OrderflowError):
    status_code = 403


class ProviderError(OrderflowError):
    """The payment provider call itself failed (network, outage, bad response)."""

    status_code = 502


class PaymentTimeout(OrderflowError):
    """Polling gave up before a terminal status. Not a failure: still pending confirmation."""

    status_code = 202


def to_http(exc: OrderflowError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)
