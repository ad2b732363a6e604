"""Exceptions raised by the store services and mapped to HTTP responses."""

from typing import List, Optional


class StoreError(Exception):
    """Base exception for all store errors."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None,
                 errors: Optional[List[dict]] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors


class InvalidInputError(StoreError):
    """Raised for malformed payloads and rejected business rules."""

    status_code = 400


class InsufficientStockError(InvalidInputError):
    """Raised when a variant cannot cover the requested quantity."""

    def __init__(self, product_name: str, color: str, available: int, requested: int):
        self.product_name = product_name
        self.color = color
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {product_name} in {color}. Available: {available}",
            errors=[{
                "field": "quantity",
                "message": f"Requested {requested}, available {available}",
            }],
        )


class UnauthorizedError(StoreError):
    """Raised when credentials are missing or invalid."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized access"):
        super().__init__(message)


class ForbiddenError(StoreError):
    """Raised when the caller lacks the role or ownership for an action."""

    status_code = 403

    def __init__(self, message: str = "You do not have permission to perform this action"):
        super().__init__(message)


class NotFoundError(StoreError):
    status_code = 404


class ConflictError(StoreError):
    status_code = 409


class PaymentProviderError(StoreError):
    """Raised when the payment provider cannot be reached or answers garbage."""

    status_code = 502
