"""
Custom exception classes and error handling utilities.
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse


class BidPeekException(Exception):
    """Base exception class for the BidPeek entitlement service."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class AuthenticationError(BidPeekException):
    """Missing or invalid caller identity."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class ValidationError(BidPeekException):
    """Data validation errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class WebhookSignatureError(BidPeekException):
    """Webhook payload failed authenticity checks. Nothing is applied."""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"retryable": False}
        )


class WebhookPayloadError(BidPeekException):
    """Authentic webhook body that is not a usable event. Retrying cannot fix it."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={**(details or {}), "retryable": False}
        )


class WebhookUnresolvedPrincipalError(BidPeekException):
    """Webhook event references an entity with no known principal yet."""

    def __init__(self, event_id: str, reference: Optional[str] = None):
        super().__init__(
            message=f"No principal mapping for event {event_id}",
            status_code=status.HTTP_409_CONFLICT,
            details={"event_id": event_id, "reference": reference, "retryable": True}
        )


class StoreUnavailableError(BidPeekException):
    """Persistent store could not be reached or failed mid-operation."""

    def __init__(self, operation: str, message: str = ""):
        text = f"Store unavailable during {operation}"
        if message:
            text += f": {message}"
        super().__init__(
            message=text,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"operation": operation, "retryable": True}
        )


# Exception handlers
async def bidpeek_exception_handler(request: Request, exc: BidPeekException) -> JSONResponse:
    """Global exception handler for BidPeek exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.message,
                "type": exc.__class__.__name__,
                "details": exc.details,
                "status_code": exc.status_code
            }
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for plain HTTP exceptions raised by routers and dependencies."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.detail,
                "type": "HTTPException",
                "status_code": exc.status_code
            }
        },
        headers=getattr(exc, "headers", None)
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unexpected exceptions."""
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "message": "Internal server error",
                "type": "InternalServerError",
                "status_code": status.HTTP_500_INTERNAL_SERVER_ERROR
            }
        }
    )
