from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


# Ledger errors. All are recoverable by the caller; none leave partial state.


class LedgerError(AppError):
    """Base for coin ledger failures."""


class UserNotFound(LedgerError):
    def __init__(self, user_id: str):
        super().__init__(
            f"User {user_id} not found",
            code="USER_NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"user_id": user_id},
        )


class InvalidAmount(LedgerError):
    def __init__(self, message: str = "Invalid amount", amount: int | None = None):
        super().__init__(
            message,
            code="INVALID_AMOUNT",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"amount": amount},
        )


class InvalidTransactionType(LedgerError):
    def __init__(self, transaction_type: str):
        super().__init__(
            f"Invalid transaction type: {transaction_type}",
            code="INVALID_TRANSACTION_TYPE",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"transaction_type": transaction_type},
        )


class InsufficientBalance(LedgerError):
    def __init__(self, balance: int, amount: int):
        super().__init__(
            "Insufficient coins",
            code="INSUFFICIENT_BALANCE",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"balance": balance, "amount": amount},
        )


class NoEligibleTransactions(LedgerError):
    def __init__(self, requested_ids: list[str] | None = None):
        super().__init__(
            "No matching transactions found to refund",
            code="NO_ELIGIBLE_TRANSACTIONS",
            status_code=status.HTTP_409_CONFLICT,
            details={"requested_ids": requested_ids or []},
        )


class NoDuplicatesFound(LedgerError):
    def __init__(self, user_id: str):
        super().__init__(
            "No duplicate transactions found",
            code="NO_DUPLICATES_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"user_id": user_id},
        )


class ConcurrentModification(LedgerError):
    def __init__(self, user_id: str, attempts: int):
        super().__init__(
            "Ledger was modified concurrently; retry the request",
            code="CONCURRENT_MODIFICATION",
            status_code=status.HTTP_409_CONFLICT,
            details={"user_id": user_id, "attempts": attempts},
        )


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from app.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
