# errors.py
# ------------------------------------------------------------------------------------
#  Error taxonomy for the relay. Every failure that reaches a caller is an
#  IdeogramError carrying a machine code, a technical message, a message fit
#  for end users, an HTTP status and whether retrying can help.
# ------------------------------------------------------------------------------------

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional

import httpx

from constants import ASPECT_RATIOS, RETRYABLE_STATUS_CODES, ErrorCode


class IdeogramError(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        user_message: str,
        status_code: int = 500,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.user_message = user_message
        self.status_code = status_code
        self.retryable = retryable
        self.details = details

    def to_tool_error(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": False,
            "error_code": self.code,
            "error": self.message,
            "user_message": self.user_message,
            "retryable": self.retryable,
        }
        if self.details is not None:
            out["details"] = self.details
        return out

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class PredictionNotFoundError(IdeogramError):
    def __init__(self, prediction_id: str):
        super().__init__(
            ErrorCode.PREDICTION_NOT_FOUND,
            f"Prediction not found: {prediction_id}",
            "The requested prediction was not found. It may have expired or never existed.",
            404,
            False,
            {"prediction_id": prediction_id},
        )
        self.prediction_id = prediction_id


class QueueFullError(IdeogramError):
    def __init__(self, max_queue_size: int):
        super().__init__(
            ErrorCode.QUEUE_FULL,
            f"Queue is full (max {max_queue_size} predictions)",
            "The generation queue is full. Please try again later.",
            503,
            True,
            {"max_queue_size": max_queue_size},
        )


class InvalidTransitionError(IdeogramError):
    def __init__(self, prediction_id: str, current: str, requested: str):
        code = ErrorCode.INVALID_STATE_TRANSITION
        if current in ("completed", "failed", "cancelled"):
            code = ErrorCode.PREDICTION_ALREADY_COMPLETED
        super().__init__(
            code,
            f"Prediction {prediction_id} cannot move from '{current}' to '{requested}'",
            f"This prediction is {current} and cannot become {requested}.",
            409,
            False,
            {"prediction_id": prediction_id, "status": current, "requested": requested},
        )


# ---------- Factories ----------

def invalid_api_key_error(details: Optional[Dict[str, Any]] = None) -> IdeogramError:
    return IdeogramError(
        ErrorCode.INVALID_API_KEY,
        "Invalid or missing Ideogram API key",
        "Your API key is invalid or has been revoked. Please check the IDEOGRAM_API_KEY "
        "environment variable.",
        401,
        False,
        details,
    )


def missing_api_key_error() -> IdeogramError:
    return IdeogramError(
        ErrorCode.MISSING_API_KEY,
        "Ideogram API key not configured",
        "No API key found. Please set the IDEOGRAM_API_KEY environment variable.",
        401,
        False,
    )


def rate_limit_error(retry_after: Optional[int] = None) -> IdeogramError:
    if retry_after:
        return IdeogramError(
            ErrorCode.RATE_LIMITED,
            f"Rate limit exceeded (retry after {retry_after}s)",
            f"Too many requests. Please wait {retry_after} seconds before retrying.",
            429,
            True,
            {"retry_after_seconds": retry_after},
        )
    return IdeogramError(
        ErrorCode.RATE_LIMITED,
        "Rate limit exceeded",
        "Too many requests. Please wait a moment and try again.",
        429,
        True,
    )


def insufficient_credits_error(
    required: Optional[float] = None, available: Optional[float] = None
) -> IdeogramError:
    details: Dict[str, Any] = {}
    if required is not None:
        details["required_credits"] = required
    if available is not None:
        details["available_credits"] = available
    return IdeogramError(
        ErrorCode.INSUFFICIENT_CREDITS,
        "Insufficient credits to complete the request",
        "You do not have enough credits to complete this request.",
        403,
        False,
        details or None,
    )


def validation_error(field: str, reason: str, **details: Any) -> IdeogramError:
    return IdeogramError(
        ErrorCode.VALIDATION_ERROR,
        f"Validation failed for '{field}': {reason}",
        f"Invalid input: {reason}",
        400,
        False,
        {"field": field, **details},
    )


def invalid_prompt_error(reason: str) -> IdeogramError:
    return IdeogramError(
        ErrorCode.INVALID_PROMPT,
        f"Invalid prompt: {reason}",
        f"Please check your prompt: {reason}",
        400,
        False,
        {"field": "prompt"},
    )


def invalid_aspect_ratio_error(provided: str) -> IdeogramError:
    return IdeogramError(
        ErrorCode.INVALID_ASPECT_RATIO,
        f"Invalid aspect ratio: {provided}",
        f'The aspect ratio "{provided}" is not supported. Please use one of: '
        + ", ".join(ASPECT_RATIOS),
        400,
        False,
        {"field": "aspect_ratio", "provided": provided},
    )


def invalid_image_error(reason: str, field: str = "image") -> IdeogramError:
    if field == "mask":
        return IdeogramError(
            ErrorCode.INVALID_MASK,
            f"Invalid mask: {reason}",
            f"There was a problem with the provided mask image: {reason}",
            400,
            False,
            {"field": "mask"},
        )
    return IdeogramError(
        ErrorCode.INVALID_IMAGE,
        f"Invalid image: {reason}",
        f"There was a problem with the provided image: {reason}",
        400,
        False,
        {"field": field},
    )


def image_too_large_error(size_bytes: int, max_size_bytes: int) -> IdeogramError:
    size_mb = f"{size_bytes / (1024 * 1024):.2f}"
    max_mb = f"{max_size_bytes / (1024 * 1024):.0f}"
    return IdeogramError(
        ErrorCode.IMAGE_TOO_LARGE,
        f"Image size {size_mb}MB exceeds maximum {max_mb}MB",
        f"The image is too large ({size_mb}MB). Maximum allowed size is {max_mb}MB.",
        400,
        False,
        {"size_bytes": size_bytes, "max_size_bytes": max_size_bytes},
    )


def network_error(reason: str, original: Optional[BaseException] = None) -> IdeogramError:
    return IdeogramError(
        ErrorCode.NETWORK_ERROR,
        f"Network error: {reason}",
        "A network error occurred. Please check your internet connection and try again.",
        0,
        True,
        {"original_error": str(original)} if original is not None else None,
    )


def timeout_error(timeout_seconds: float) -> IdeogramError:
    return IdeogramError(
        ErrorCode.TIMEOUT,
        f"Request timed out after {timeout_seconds:g}s",
        "The request took too long to complete. Please try again.",
        0,
        True,
        {"timeout_seconds": timeout_seconds},
    )


def prediction_timeout_error(prediction_id: str, timeout_seconds: float) -> IdeogramError:
    message = f"Prediction exceeded the {timeout_seconds:g}s time limit"
    return IdeogramError(
        ErrorCode.TIMEOUT,
        message,
        message,
        504,
        True,
        {"prediction_id": prediction_id, "timeout_seconds": timeout_seconds},
    )


def storage_error(operation: str, reason: str) -> IdeogramError:
    return IdeogramError(
        ErrorCode.STORAGE_ERROR,
        f"Storage error during {operation}: {reason}",
        f"Failed to save image: {reason}",
        0,
        True,
        {"operation": operation},
    )


def download_failed_error(url: str, reason: str) -> IdeogramError:
    return IdeogramError(
        ErrorCode.DOWNLOAD_FAILED,
        f"Failed to download image from {url}: {reason}",
        "Failed to download the generated image. The URL may have expired.",
        0,
        True,
        {"url": url},
    )


def internal_error(reason: str, details: Optional[Dict[str, Any]] = None) -> IdeogramError:
    return IdeogramError(
        ErrorCode.INTERNAL_ERROR,
        f"Internal error: {reason}",
        "An unexpected error occurred. Please try again.",
        500,
        True,
        details,
    )


_API_USER_MESSAGES = {
    401: "Authentication failed. Please check your API key.",
    403: "Access denied. You may not have permission for this operation.",
    404: "The requested resource was not found.",
    429: "Too many requests. Please wait before trying again.",
    500: "The Ideogram API encountered an error. Please try again.",
    503: "The Ideogram API is temporarily unavailable. Please try again later.",
}


def api_error(
    status_code: int, message: str, details: Optional[Dict[str, Any]] = None
) -> IdeogramError:
    if status_code == 400:
        user_message = f"Invalid request: {message}"
    else:
        user_message = _API_USER_MESSAGES.get(status_code, f"An error occurred: {message}")
    return IdeogramError(
        ErrorCode.API_ERROR,
        f"API error ({status_code}): {message}",
        user_message,
        status_code,
        status_code in RETRYABLE_STATUS_CODES,
        details,
    )


# ---------- Conversion ----------

def parse_retry_after(headers: Optional[Mapping[str, str]]) -> Optional[int]:
    """Seconds from a Retry-After header (delta-seconds or HTTP date)."""
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - datetime.now(timezone.utc)).total_seconds()
    return max(0, int(delta + 0.999))


def from_response(response: httpx.Response) -> IdeogramError:
    """Map a non-2xx upstream response onto the taxonomy."""
    status = response.status_code
    message = response.text or response.reason_phrase
    details = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = str(body.get("message") or body.get("error") or message)
        if isinstance(body.get("details"), dict):
            details = body["details"]

    if status == 401:
        return invalid_api_key_error(details)
    if status == 429:
        return rate_limit_error(parse_retry_after(response.headers))
    if status == 403 and ("credit" in message.lower() or "balance" in message.lower()):
        return insufficient_credits_error()
    return api_error(status, message, details)


def from_transport_error(exc: httpx.TransportError, timeout_seconds: float) -> IdeogramError:
    if isinstance(exc, httpx.TimeoutException):
        return timeout_error(timeout_seconds)
    return network_error(str(exc) or type(exc).__name__, exc)


def wrap_error(exc: BaseException) -> IdeogramError:
    if isinstance(exc, IdeogramError):
        return exc
    if str(exc):
        return internal_error(str(exc), {"original_error": type(exc).__name__})
    return internal_error("An unknown error occurred")


def classify_error(exc: BaseException) -> Dict[str, Any]:
    """Reduce whatever a processor raised to the {code, message, retryable} triple."""
    if isinstance(exc, IdeogramError):
        return {"code": exc.code, "message": exc.user_message, "retryable": exc.retryable}
    if isinstance(exc, Exception):
        return {
            "code": ErrorCode.PROCESSING_ERROR,
            "message": str(exc) or type(exc).__name__,
            "retryable": False,
        }
    return {
        "code": ErrorCode.UNKNOWN_ERROR,
        "message": "An unexpected error occurred",
        "retryable": False,
    }


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, IdeogramError) and exc.retryable


def has_error_code(exc: BaseException, code: str) -> bool:
    return isinstance(exc, IdeogramError) and exc.code == code
