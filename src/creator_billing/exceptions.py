"""
Billing error hierarchy and FastAPI exception handlers
Standardized error response format: { code, message, status_code, request_id?, details? }
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
    """Base class for every error raised by the billing engine"""

    code = "BILLING_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class WebhookVerificationError(BillingError):
    """Webhook signature missing, malformed or not matching the payload"""

    code = "WEBHOOK_SIGNATURE_INVALID"
    status_code = status.HTTP_400_BAD_REQUEST


class ProcessorError(BillingError):
    """The payment processor refused or failed a request"""

    code = "PROCESSOR_ERROR"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, provider: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.provider = provider


class ChargeDeclinedError(ProcessorError):
    """The processor answered but did not approve the charge"""

    code = "CHARGE_DECLINED"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class ProcessorTimeoutError(ProcessorError):
    code = "PROCESSOR_TIMEOUT"
    status_code = status.HTTP_504_GATEWAY_TIMEOUT


class ProcessorNetworkError(ProcessorError):
    code = "PROCESSOR_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ReconciliationError(BillingError):
    """A verified event could not be mapped onto the ledger"""

    code = "RECONCILIATION_FAILED"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "AUTH_ERROR",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def error_body(
    code: str,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Build the error payload shared by every handler

    The request ID is taken from the logging context; it and details are
    omitted when empty.
    """
    body: Dict[str, Any] = {"code": code, "message": message, "status_code": status_code}
    request_id = get_request_id()
    if request_id:
        body["request_id"] = request_id
    if details:
        body["details"] = details
    return body


def _respond(request: Request, level: int, body: Dict[str, Any], exc_info: bool = False) -> JSONResponse:
    logger.log(
        level,
        f"{body['code']} on {request.method} {request.url.path}: {body['message']}",
        exc_info=exc_info,
    )
    return JSONResponse(status_code=body["status_code"], content=body)


async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render a BillingError using its own code and status"""
    body = error_body(exc.code, exc.message, exc.status_code, exc.details)
    return _respond(request, logging.WARNING, body)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    detail = exc.detail
    details = None

    if isinstance(detail, dict):
        message = detail.get("message", str(detail))
        code = detail.get("code", code)
        details = {k: v for k, v in detail.items() if k not in ("message", "code")}
    else:
        message = str(detail) if detail else f"HTTP {exc.status_code} error"

    return _respond(request, logging.WARNING, error_body(code, message, exc.status_code, details))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()]
    summary = "; ".join(f"{'.'.join(str(part) for part in p['loc'])}: {p['msg']}" for p in problems)

    body = error_body("VALIDATION_ERROR", f"Invalid request: {summary}", 422, {"errors": problems})
    return _respond(request, logging.WARNING, body)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler; exception text is only exposed in dev"""
    from .config import config

    if config.is_dev:
        body = error_body("INTERNAL_ERROR", f"Internal server error: {exc}", 500,
                          {"exception_type": type(exc).__name__})
    else:
        body = error_body("INTERNAL_ERROR", "Internal server error", 500)
    return _respond(request, logging.ERROR, body, exc_info=True)
