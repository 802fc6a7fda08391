"""
Classification of backend responses and transport failures into GatewayError.
"""

import asyncio
from typing import Any, Dict, List, Mapping, Optional

import aiohttp

from .base import ErrorKind, GatewayError

CONFIGURATION_ERROR_CODES = frozenset(
    {"CRIIPTO_NOT_CONFIGURED", "CRIIPTO_SUPPLIER_NOT_CONFIGURED", "MISSING_PLUGIN_KEY"}
)

CONFIGURATION_KEYWORDS = (
    "not configured",
    "configuration error",
    "credentials are missing",
    "contact administrator",
    "configuration_missing",
    "invalid_product_or_supplier",
)

RETRYABLE_STATUS_CODES = frozenset({408, 429})

USER_MESSAGES = {
    401: "Autentisering mislyktes. Vennligst oppdater siden og prøv igjen.",
    403: "Tilgang nektet. Du har ikke tillatelse til å utføre denne handlingen.",
    404: "Den forespurte ressursen ble ikke funnet.",
    429: "For mange forespørsler. Vennligst vent et øyeblikk og prøv igjen.",
    500: "Serverfeil. Vennligst prøv igjen senere.",
    503: "Tjenesten er midlertidig utilgjengelig. Vennligst prøv igjen senere.",
}
CONFIGURATION_USER_MESSAGE = "Signeringstjenesten er ikke konfigurert. Kontakt administrator."
NETWORK_USER_MESSAGE = "Nettverksfeil. Sjekk tilkoblingen og prøv igjen."
DEFAULT_USER_MESSAGE = "En uventet feil oppstod. Vennligst prøv igjen."


def _error_code(body: Mapping[str, Any]) -> Optional[str]:
    code = body.get("errorCode")
    if not code and isinstance(body.get("backend_response"), Mapping):
        code = body["backend_response"].get("errorCode")
    return str(code) if code else None


def _body_message(body: Mapping[str, Any]) -> Optional[str]:
    for key in ("message", "error", "title", "detail"):
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_validation_errors(body: Mapping[str, Any]) -> Dict[str, List[str]]:
    """Flatten ModelState style ``{"errors": {field: [messages]}}`` bodies."""
    errors = body.get("errors")
    if not isinstance(errors, Mapping):
        return {}
    result: Dict[str, List[str]] = {}
    for field_name, messages in errors.items():
        if isinstance(messages, str):
            messages = [messages]
        if isinstance(messages, list):
            result[str(field_name)] = [str(message) for message in messages]
    return result


def is_configuration_error(body: Mapping[str, Any]) -> bool:
    code = _error_code(body)
    if code and code in CONFIGURATION_ERROR_CODES:
        return True
    message = (_body_message(body) or "").lower()
    return any(keyword in message for keyword in CONFIGURATION_KEYWORDS)


def is_retryable_status(status: int) -> bool:
    return status >= 500 or status in RETRYABLE_STATUS_CODES


def _retry_after(headers: Mapping[str, str]) -> Optional[float]:
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_response(status: int, body: Optional[Mapping[str, Any]], headers: Mapping[str, str]) -> GatewayError:
    """Map a non-2xx backend response to a classified error."""
    body = body or {}
    code = _error_code(body)
    validation_errors = extract_validation_errors(body)
    message = (
        ", ".join(message for messages in validation_errors.values() for message in messages)
        or _body_message(body)
        or f"HTTP error! status: {status}"
    )

    if is_configuration_error(body) or status in (401, 403):
        return GatewayError(
            kind=ErrorKind.CONFIGURATION,
            message=message,
            retryable=False,
            user_message=USER_MESSAGES.get(status) if status in (401, 403) else CONFIGURATION_USER_MESSAGE,
            status_code=status,
            error_code=code,
        )

    if status == 429:
        return GatewayError(
            kind=ErrorKind.RATE_LIMITED,
            message=message,
            retryable=True,
            user_message=USER_MESSAGES[429],
            status_code=status,
            error_code=code,
            retry_after_seconds=_retry_after(headers),
        )

    if status == 408:
        return GatewayError(
            kind=ErrorKind.NETWORK,
            message=message,
            retryable=True,
            user_message=NETWORK_USER_MESSAGE,
            status_code=status,
            error_code=code,
        )

    if status >= 500:
        return GatewayError(
            kind=ErrorKind.SERVER_UNAVAILABLE,
            message=message,
            retryable=True,
            user_message=USER_MESSAGES.get(status, USER_MESSAGES[503]),
            status_code=status,
            error_code=code,
            retry_after_seconds=_retry_after(headers),
        )

    if 400 <= status < 500:
        return GatewayError(
            kind=ErrorKind.VALIDATION,
            message=message,
            retryable=False,
            user_message=USER_MESSAGES.get(status, message),
            status_code=status,
            error_code=code,
            validation_errors=validation_errors,
        )

    return GatewayError(
        kind=ErrorKind.UNKNOWN,
        message=message,
        retryable=False,
        user_message=DEFAULT_USER_MESSAGE,
        status_code=status,
        error_code=code,
    )


def classify_exception(exc: BaseException) -> GatewayError:
    """Map a transport level failure (no HTTP response) to a classified error."""
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return GatewayError(
            kind=ErrorKind.NETWORK,
            message=f"Request timed out: {exc}" if str(exc) else "Request timed out",
            retryable=True,
            user_message=NETWORK_USER_MESSAGE,
            error_code="timeout",
        )
    if isinstance(exc, aiohttp.ClientError):
        return GatewayError(
            kind=ErrorKind.NETWORK,
            message=str(exc) or exc.__class__.__name__,
            retryable=True,
            user_message=NETWORK_USER_MESSAGE,
            error_code="network_error",
        )
    return GatewayError(
        kind=ErrorKind.UNKNOWN,
        message=str(exc) or exc.__class__.__name__,
        retryable=False,
        user_message=DEFAULT_USER_MESSAGE,
        error_code="unexpected_error",
    )
