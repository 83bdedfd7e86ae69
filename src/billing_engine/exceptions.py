"""
Billing exceptions and FastAPI exception handlers
Standardized error response format: { code, message, details?, request_id }
"""
from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
from typing import Optional, Dict, Any

from .logging_config import get_request_id

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for billing domain errors"""
    
    code = "BILLING_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    
    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}


class BillingAccountNotFound(BillingError):
    code = "BILLING_ACCOUNT_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class InvoiceNotFound(BillingError):
    code = "INVOICE_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class WalletNotFound(BillingError):
    code = "WALLET_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidStatusTransition(BillingError):
    """Raised when a billing status change is not an allowed transition"""
    
    code = "INVALID_STATUS_TRANSITION"
    status_code = status.HTTP_409_CONFLICT
    
    def __init__(self, from_status: str, to_status: str, allowed=None):
        allowed = list(allowed or [])
        super().__init__(
            f"Invalid billing status transition: {from_status} -> {to_status}. "
            f"Valid transitions from {from_status}: {', '.join(allowed) or 'none'}",
            details={"from": from_status, "to": to_status, "allowed": allowed},
        )
        self.from_status = from_status
        self.to_status = to_status


class InvoiceNotRetryable(BillingError):
    code = "INVOICE_NOT_RETRYABLE"
    status_code = status.HTTP_400_BAD_REQUEST


class WebhookRejected(BillingError):
    """Webhook request refused at the boundary (missing/invalid signature, malformed body)"""

    code = "WEBHOOK_REJECTED"

    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST, code: Optional[str] = None):
        super().__init__(message, code=code)
        self.status_code = status_code


class TenantTimeout(BillingError):
    """A single tenant's batch operation exceeded its time budget"""
    
    code = "TENANT_TIMEOUT"
    status_code = status.HTTP_504_GATEWAY_TIMEOUT


class InvariantViolation(BillingError):
    """A runtime invariant did not hold"""
    
    code = "INVARIANT_VIOLATION"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    
    def __init__(self, invariant_name: str, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"[INVARIANT VIOLATION: {invariant_name}] {message}", details=context)
        self.invariant_name = invariant_name


def assert_invariant(
    condition: bool,
    invariant_name: str,
    message: str,
    context: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Assert a runtime invariant
    
    Outside production a violation raises InvariantViolation. In production the
    violation is logged at alert level and the caller continues with the
    first-found record.
    
    Returns:
        True if the invariant holds, False if it was violated (production only)
    """
    if condition:
        return True
    
    from .config import config
    
    if not config.is_prod:
        raise InvariantViolation(invariant_name, message, context)
    
    logger.error(
        f"[BILLING_ALERT] Invariant violation {invariant_name}: {message}",
        extra={"invariant": invariant_name, "context": context or {}}
    )
    return False


class ErrorResponse:
    """
    Standard error response format
    
    Schema: { code, message, details?, request_id }
    """
    
    @staticmethod
    def create(
        message: str,
        code: str,
        status_code: int,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> dict:
        """
        Create standardized error response
        
        Args:
            message: Human-readable error message
            code: Error code (e.g., "VALIDATION_ERROR", "AUTH_ERROR", "INVOICE_NOT_FOUND")
            status_code: HTTP status code
            request_id: Request ID from context (auto-fetched if None)
            details: Optional additional error details
        
        Returns:
            Dictionary with error details
        """
        if request_id is None:
            request_id = get_request_id()
        
        response = {
            "code": code,
            "message": message,
            "status_code": status_code,
        }
        
        if request_id:
            response["request_id"] = request_id
        
        if details:
            response["details"] = details
        
        return response


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with request ID"""
    request_id = get_request_id()
    
    error_code_map = {
        400: "BAD_REQUEST",
        401: "AUTH_ERROR",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        500: "INTERNAL_ERROR",
        503: "SERVICE_UNAVAILABLE"
    }
    error_code = error_code_map.get(exc.status_code, "HTTP_ERROR")
    
    detail = exc.detail
    error_message = str(detail) if detail else f"HTTP {exc.status_code} error"
    error_details = None
    
    if isinstance(detail, dict):
        error_message = detail.get("message", str(detail))
        error_code = detail.get("code", error_code)
        error_details = {k: v for k, v in detail.items() if k not in ["message", "code"]} or None
    
    error_response = ErrorResponse.create(
        message=error_message,
        code=error_code,
        status_code=exc.status_code,
        request_id=request_id,
        details=error_details
    )
    
    logger.warning(
        f"HTTP {exc.status_code}: {error_message}",
        extra={"request_id": request_id, "path": request.url.path}
    )
    
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response,
        headers=getattr(exc, "headers", None)
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle validation exceptions with request ID"""
    request_id = get_request_id()
    
    errors = exc.errors()
    detail = "; ".join(f"{err['loc']}: {err['msg']}" for err in errors)
    
    error_response = ErrorResponse.create(
        message=f"Validation error: {detail}",
        code="VALIDATION_ERROR",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        request_id=request_id,
        details={"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in errors]}
    )
    
    logger.warning(
        f"Validation error: {detail}",
        extra={"request_id": request_id, "path": request.url.path}
    )
    
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_response
    )


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Map billing domain errors onto the standard error envelope"""
    request_id = get_request_id()
    
    error_response = ErrorResponse.create(
        message=exc.message,
        code=exc.code,
        status_code=exc.status_code,
        request_id=request_id,
        details=exc.details or None
    )
    
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Billing error {exc.code}: {exc.message}",
        extra={"request_id": request_id, "path": request.url.path}
    )
    
    return JSONResponse(status_code=exc.status_code, content=error_response)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle general exceptions with request ID"""
    request_id = get_request_id()
    
    # Don't expose internal error details outside dev
    from .config import config
    error_message = "Internal server error"
    error_details = None
    
    if config.is_dev:
        error_message = f"Internal server error: {str(exc)}"
        error_details = {"exception_type": type(exc).__name__}
    
    error_response = ErrorResponse.create(
        message=error_message,
        code="INTERNAL_ERROR",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        request_id=request_id,
        details=error_details
    )
    
    logger.error(
        f"Unhandled exception: {str(exc)}",
        exc_info=True,
        extra={"request_id": request_id, "path": request.url.path}
    )
    
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_response
    )
