"""Exceptions and the provider error taxonomy."""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict

import httpx


class QuorumError(Exception):
    """Base class for quorum errors."""
    pass


class InvalidRequestError(QuorumError):
    """Raised when a request primitive or its resolved context is invalid."""
    pass


class ArtifactError(QuorumError):
    """Raised by strict normalization when a claim-map artifact is malformed."""
    pass


class SessionNotFoundError(QuorumError):
    """Raised when a session id does not resolve to a stored session."""
    pass


class WorkflowError(QuorumError):
    """Raised when a workflow cannot produce any usable result."""
    pass


class ProviderExhaustedError(WorkflowError):
    """Raised when every provider failed on a brand-new session's first fan-out."""
    pass


class ProviderCallError(Exception):
    """Transport-level provider failure carrying HTTP details for classification."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        headers: Dict[str, str] | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.headers = headers or {}
        self.code = code


RATE_LIMIT = "rate_limit"
AUTH_EXPIRED = "auth_expired"
TIMEOUT = "timeout"
NETWORK = "network"
CIRCUIT_OPEN = "circuit_open"
CONTENT_FILTER = "content_filter"
INPUT_TOO_LONG = "input_too_long"
UNKNOWN = "unknown"

DEFAULT_RATE_LIMIT_WAIT_MS = 60000

ERROR_DISPLAY_TEXT: Dict[str, Dict[str, str]] = {
    RATE_LIMIT: {
        "title": "Rate Limited",
        "description": "This provider is temporarily unavailable. It will automatically retry.",
    },
    AUTH_EXPIRED: {
        "title": "Login Required",
        "description": "Please log in to this provider again.",
    },
    TIMEOUT: {
        "title": "Timed Out",
        "description": "The request took too long. Retry to try again.",
    },
    CIRCUIT_OPEN: {
        "title": "Temporarily Unavailable",
        "description": "Too many recent failures. Will automatically recover.",
    },
    CONTENT_FILTER: {
        "title": "Content Blocked",
        "description": "This provider blocked the response. Try rephrasing your request.",
    },
    INPUT_TOO_LONG: {
        "title": "Input Too Long",
        "description": "Your message exceeds this provider's input limit. Shorten it and retry.",
    },
    NETWORK: {
        "title": "Connection Failed",
        "description": "Could not reach the provider. Check your connection.",
    },
    UNKNOWN: {
        "title": "Error",
        "description": "Something went wrong.",
    },
}

_RATE_LIMIT_RE = re.compile(r"rate[_\s-]?limit", re.IGNORECASE)
_NETWORK_CODES = {"ECONNREFUSED", "ENOTFOUND", "ENETUNREACH"}
_TIMEOUT_CODES = {"ETIMEDOUT", "ESOCKETTIMEDOUT"}


@dataclass
class ClassifiedError:
    type: str
    message: str
    retryable: bool
    retry_after_ms: int | None = None
    requires_reauth: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @property
    def display(self) -> Dict[str, str]:
        return ERROR_DISPLAY_TEXT.get(self.type, ERROR_DISPLAY_TEXT[UNKNOWN])


def _retry_after_ms(headers: Dict[str, Any] | None) -> int | None:
    if not headers:
        return None
    lowered = {str(k).lower(): v for k, v in headers.items()}
    value = lowered.get("retry-after")
    if value is None:
        return None
    try:
        return int(str(value).strip()) * 1000
    except ValueError:
        return None


def _rate_limited(message: str, headers: Dict[str, Any] | None) -> ClassifiedError:
    return ClassifiedError(
        type=RATE_LIMIT,
        message=message or "Rate limit reached. Please wait before retrying.",
        retryable=True,
        retry_after_ms=_retry_after_ms(headers) or DEFAULT_RATE_LIMIT_WAIT_MS,
    )


def classify_error(error: Any) -> ClassifiedError:
    """Map an exception or failed provider result onto the error taxonomy.

    Accepts anything carrying some of ``status_code``, ``headers``, ``code``
    and a message (``error`` attribute or ``str(exc)``). Classification order
    follows the taxonomy: HTTP status first, then codes, then message text.
    """
    if isinstance(error, ClassifiedError):
        return error
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ClassifiedError(TIMEOUT, "Request timed out. Retrying may help.", True)
    if isinstance(error, (httpx.ConnectError, httpx.NetworkError)):
        return ClassifiedError(NETWORK, "Network connection failed.", True)

    status = getattr(error, "status_code", None)
    headers = getattr(error, "headers", None)
    code = getattr(error, "code", None)
    if isinstance(error, BaseException):
        message = str(error)
    else:
        message = str(getattr(error, "error", None) or error or "")
    lowered = message.lower()

    if code == "RATE_LIMITED":
        return _rate_limited(message, headers)

    if isinstance(status, int):
        if status == 429:
            return _rate_limited("Rate limit reached. Please wait before retrying.", headers)
        if status in (401, 403):
            return ClassifiedError(
                AUTH_EXPIRED,
                "Authentication expired. Please log in again.",
                retryable=False,
                requires_reauth=True,
            )
        if status >= 500:
            return ClassifiedError(UNKNOWN, "Provider server error. Will retry automatically.", True)

    if code in ("rate_limit_error",) or _RATE_LIMIT_RE.search(message):
        return _rate_limited("Rate limit reached. Please wait before retrying.", headers)

    if code in _TIMEOUT_CODES or "timeout" in lowered:
        return ClassifiedError(TIMEOUT, "Request timed out. Retrying may help.", True)

    if code in _NETWORK_CODES or "network" in lowered:
        return ClassifiedError(NETWORK, "Network connection failed.", True)

    if "content filter" in lowered or "safety" in lowered or "blocked" in lowered:
        return ClassifiedError(CONTENT_FILTER, "Response blocked by provider safety filters.", False)

    return ClassifiedError(UNKNOWN, message or "An unexpected error occurred.", True)


def circuit_open_error(provider_id: str, retry_after_ms: int | None = None) -> ClassifiedError:
    return ClassifiedError(
        CIRCUIT_OPEN,
        f"{provider_id} skipped: circuit open after repeated failures",
        retryable=True,
        retry_after_ms=retry_after_ms,
    )


def input_too_long_error(provider_id: str, length: int, limit: int) -> ClassifiedError:
    return ClassifiedError(
        INPUT_TOO_LONG,
        f"Input of {length} chars exceeds {provider_id} limit of {limit}",
        retryable=False,
    )
