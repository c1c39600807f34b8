import asyncio

import httpx
import pytest

from errors import (
    IdeogramError,
    api_error,
    classify_error,
    from_response,
    from_transport_error,
    has_error_code,
    image_too_large_error,
    invalid_image_error,
    is_retryable,
    parse_retry_after,
    prediction_timeout_error,
    rate_limit_error,
    validation_error,
    wrap_error,
)


def response(status, json=None, text=None, headers=None):
    request = httpx.Request("POST", "https://api.ideogram.ai/v1/ideogram-v3/generate")
    if json is not None:
        return httpx.Response(status, json=json, headers=headers, request=request)
    return httpx.Response(status, text=text or "", headers=headers, request=request)


def test_to_tool_error_shape():
    err = validation_error("prompt", "too long", limit=10)
    out = err.to_tool_error()
    assert out["success"] is False
    assert out["error_code"] == "VALIDATION_ERROR"
    assert out["user_message"] == "Invalid input: too long"
    assert out["retryable"] is False
    assert out["details"] == {"field": "prompt", "limit": 10}


def test_from_response_401_is_invalid_key():
    err = from_response(response(401, json={"message": "bad key"}))
    assert err.code == "INVALID_API_KEY"
    assert err.status_code == 401
    assert err.retryable is False


def test_from_response_429_reads_retry_after():
    err = from_response(response(429, text="slow down", headers={"Retry-After": "12"}))
    assert err.code == "RATE_LIMITED"
    assert err.retryable is True
    assert err.details == {"retry_after_seconds": 12}


def test_from_response_403_credits():
    err = from_response(response(403, json={"error": "Insufficient credit balance"}))
    assert err.code == "INSUFFICIENT_CREDITS"


def test_from_response_generic_api_error():
    err = from_response(response(503, json={"message": "overloaded", "details": {"region": "us"}}))
    assert err.code == "API_ERROR"
    assert err.message == "API error (503): overloaded"
    assert err.retryable is True
    assert err.details == {"region": "us"}

    bad_request = from_response(response(400, text="prompt rejected"))
    assert bad_request.retryable is False
    assert bad_request.user_message == "Invalid request: prompt rejected"


def test_api_error_retryable_statuses():
    assert api_error(500, "x").retryable is True
    assert api_error(429, "x").retryable is True
    assert api_error(502, "x").retryable is False
    assert api_error(404, "x").user_message == "The requested resource was not found."


def test_parse_retry_after():
    assert parse_retry_after(None) is None
    assert parse_retry_after({"retry-after": "7"}) == 7
    assert parse_retry_after({"retry-after": "not a date"}) is None
    assert parse_retry_after({"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"}) == 0


def test_from_transport_error():
    request = httpx.Request("GET", "https://api.ideogram.ai")
    timeout = from_transport_error(httpx.ReadTimeout("slow", request=request), 30)
    assert timeout.code == "TIMEOUT"
    assert timeout.retryable is True
    assert timeout.message == "Request timed out after 30s"

    network = from_transport_error(httpx.ConnectError("refused", request=request), 30)
    assert network.code == "NETWORK_ERROR"
    assert network.status_code == 0


def test_image_errors():
    assert invalid_image_error("broken", "mask").code == "INVALID_MASK"
    assert invalid_image_error("broken").code == "INVALID_IMAGE"
    err = image_too_large_error(11 * 1024 * 1024, 10 * 1024 * 1024)
    assert err.code == "IMAGE_TOO_LARGE"
    assert "11.00MB" in err.message


def test_wrap_error():
    original = rate_limit_error()
    assert wrap_error(original) is original

    wrapped = wrap_error(ValueError("bad"))
    assert wrapped.code == "INTERNAL_ERROR"
    assert wrapped.message == "Internal error: bad"
    assert wrapped.details == {"original_error": "ValueError"}

    assert wrap_error(ValueError()).message == "Internal error: An unknown error occurred"


class Halt(BaseException):
    pass


@pytest.mark.parametrize(
    "exc, code, retryable, message",
    [
        (rate_limit_error(5), "RATE_LIMITED", True, "Too many requests. Please wait 5 seconds before retrying."),
        (prediction_timeout_error("pred_1", 300), "TIMEOUT", True, "Prediction exceeded the 300s time limit"),
        (asyncio.TimeoutError(), "PROCESSING_ERROR", False, "TimeoutError"),
        (TimeoutError("socket read timed out"), "PROCESSING_ERROR", False, "socket read timed out"),
        (RuntimeError("upstream exploded"), "PROCESSING_ERROR", False, "upstream exploded"),
        (ValueError(), "PROCESSING_ERROR", False, "ValueError"),
        (Halt(), "UNKNOWN_ERROR", False, "An unexpected error occurred"),
    ],
)
def test_classify_error(exc, code, retryable, message):
    assert classify_error(exc) == {"code": code, "message": message, "retryable": retryable}


def test_classify_error_uses_user_message():
    assert classify_error(rate_limit_error(5))["message"] == (
        "Too many requests. Please wait 5 seconds before retrying."
    )


def test_predicates():
    err = IdeogramError("X", "m", "u", retryable=True)
    assert is_retryable(err)
    assert not is_retryable(RuntimeError("x"))
    assert has_error_code(err, "X")
    assert not has_error_code(ValueError(), "X")
