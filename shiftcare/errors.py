import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from shiftcare_shared import (
    ChallengeAlreadyUsed,
    ChallengeExpired,
    ChallengeLocked,
    ChallengeNotFound,
    CodeMismatch,
    OTPError,
    OTPRateLimited,
)

from .middleware_request_id import request_id_of

logger = logging.getLogger("shiftcare.errors")


class AppError(Exception):
    status_code = 400
    code = "bad_request"
    message = "Bad request"

    def __init__(self, message: str | None = None, *, details: dict | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = details


class MissingInput(AppError):
    status_code = 400
    code = "missing_input"
    message = "Phone number is required"


class InvalidPhone(AppError):
    status_code = 400
    code = "invalid_phone"
    message = "Phone number is not valid"


class AccountNotFound(AppError):
    status_code = 404
    code = "account_not_found"
    message = "Professional not found"


class DeliveryFailure(AppError):
    status_code = 500
    code = "otp_delivery_failed"
    message = "Could not deliver the OTP. Please try again later."


class InternalFailure(AppError):
    status_code = 500
    code = "internal_error"
    message = "Internal server error"


OTP_ERROR_STATUS: dict[type, int] = {
    ChallengeNotFound: 404,
    ChallengeExpired: 400,
    ChallengeAlreadyUsed: 400,
    CodeMismatch: 400,
    ChallengeLocked: 429,
    OTPRateLimited: 429,
}


def _error_body(code: str, message: str, details: dict | None = None) -> dict:
    error: dict = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"success": False, "error": error}


async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, exc.message, exc.details))


async def otp_error_handler(request: Request, exc: OTPError):
    status_code = OTP_ERROR_STATUS.get(type(exc), 400)
    details = None
    headers = None
    if isinstance(exc, CodeMismatch) and exc.remaining_attempts is not None:
        details = {"remaining_attempts": exc.remaining_attempts}
    elif isinstance(exc, OTPRateLimited) and exc.retry_after:
        details = {"retry_after": exc.retry_after}
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=status_code,
        content=_error_body(exc.code, exc.message, details),
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    if isinstance(detail, dict):
        code = str(detail.get("code", "http_error"))
        message = str(detail.get("message", code))
    else:
        code = "http_error"
        message = str(detail)
    return JSONResponse(status_code=exc.status_code, content=_error_body(code, message), headers=exc.headers)


async def unhandled_exception_handler(request: Request, exc: Exception):
    req_id = request_id_of(request)
    logger.exception("Unhandled error on %s %s (request %s)", request.method, request.url.path, req_id)
    err = InternalFailure()
    return JSONResponse(
        status_code=err.status_code,
        content=_error_body(err.code, err.message, {"request_id": req_id}),
    )
