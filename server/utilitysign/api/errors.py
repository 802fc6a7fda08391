from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from utilitysign.core.logging import get_logger
from utilitysign.integrations.backend import ErrorKind, GatewayConfigurationError, GatewayError
from utilitysign.integrations.webhooks import (
    WebhookError,
    WebhookIntegrityError,
    WebhookVerificationError,
)
from utilitysign.schemas.common import ErrorDetail, ErrorResponse
from utilitysign.services.order_store import StaleSessionError
from utilitysign.services.validators import SignerValidationError

logger = get_logger(__name__)

GATEWAY_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.CONFIGURATION: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.SERVER_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.NETWORK: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INTEGRITY: status.HTTP_409_CONFLICT,
    ErrorKind.UNKNOWN: status.HTTP_502_BAD_GATEWAY,
}


class SigningRequestFailed(Exception):
    """A signing step failed with a classified gateway error."""

    def __init__(self, error: GatewayError, *, step: str | None = None, correlation_id: str | None = None):
        super().__init__(error.message)
        self.error = error
        self.step = step or error.step
        self.correlation_id = correlation_id


def _error_body(
    kind: str,
    message: str,
    *,
    retryable: bool = False,
    correlation_id: str | None = None,
    **extra,
) -> dict:
    detail = ErrorDetail(kind=kind, message=message, retryable=retryable, **extra)
    return ErrorResponse(error=detail, correlation_id=correlation_id).model_dump()


async def signing_request_failed_handler(request: Request, exc: SigningRequestFailed) -> JSONResponse:
    error = exc.error
    body = _error_body(
        error.kind.value,
        error.message,
        retryable=error.retryable,
        step=exc.step,
        user_message=error.user_message or error.message,
        validation_errors=error.validation_errors or None,
        correlation_id=exc.correlation_id,
    )
    headers = {}
    if error.retry_after_seconds:
        headers["Retry-After"] = str(int(error.retry_after_seconds) or 1)
    return JSONResponse(status_code=GATEWAY_STATUS_CODES[error.kind], content=body, headers=headers or None)


async def signer_validation_handler(request: Request, exc: SignerValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(ErrorKind.VALIDATION.value, str(exc), step="identity", validation_errors=exc.errors),
    )


async def webhook_error_handler(request: Request, exc: WebhookError) -> JSONResponse:
    if isinstance(exc, (WebhookVerificationError, WebhookIntegrityError)):
        kind = ErrorKind.INTEGRITY.value
    else:
        kind = ErrorKind.VALIDATION.value
    logger.warning("webhook.rejected", path=request.url.path, kind=kind, error_code=exc.error_code)
    return JSONResponse(status_code=exc.status_code, content=_error_body(kind, exc.error_message,
                                                                         error_code=exc.error_code))


async def gateway_configuration_handler(request: Request, exc: GatewayConfigurationError) -> JSONResponse:
    logger.error("gateway.misconfigured", missing=exc.missing)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=_error_body(ErrorKind.CONFIGURATION.value, exc.error_message),
    )


async def stale_session_handler(request: Request, exc: StaleSessionError) -> JSONResponse:
    logger.warning("signing.session.conflict", path=request.url.path, order_ref=exc.order_ref,
                   expected=exc.expected, actual=exc.actual)
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=_error_body("conflict", "Signing session was modified concurrently, retry the request",
                            retryable=True, error_code="stale_session"),
    )


def register_exception_handlers(application: FastAPI) -> None:
    application.add_exception_handler(SigningRequestFailed, signing_request_failed_handler)
    application.add_exception_handler(SignerValidationError, signer_validation_handler)
    application.add_exception_handler(WebhookError, webhook_error_handler)
    application.add_exception_handler(GatewayConfigurationError, gateway_configuration_handler)
    application.add_exception_handler(StaleSessionError, stale_session_handler)
