"""
Error taxonomy for model calls.

Every failure that can come out of the Model Gateway is classified into one
AIErrorType. The type decides whether the gateway retries and which
remediation the user is shown.
"""

import re
from enum import Enum
from typing import Dict, Mapping, Optional

import httpx


class AIErrorType(str, Enum):
    RATE_LIMITED = "RATE_LIMITED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    CONTENT_POLICY = "CONTENT_POLICY"
    SERVER_ERROR = "SERVER_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN = "UNKNOWN"


RETRYABLE_TYPES = {
    AIErrorType.RATE_LIMITED,
    AIErrorType.NETWORK_ERROR,
    AIErrorType.TIMEOUT,
    AIErrorType.SERVER_ERROR,
}

USER_MESSAGES: Dict[AIErrorType, str] = {
    AIErrorType.RATE_LIMITED: "Too many requests. Please wait a moment and try again.",
    AIErrorType.QUOTA_EXCEEDED: "API quota exceeded. Add credits to your account or upgrade your plan.",
    AIErrorType.INVALID_CREDENTIALS: "Invalid API key. Go to Settings and update your API key.",
    AIErrorType.NETWORK_ERROR: "Network error. Check your internet connection and try again.",
    AIErrorType.TIMEOUT: "The request timed out. Try again, or shorten the story.",
    AIErrorType.INVALID_RESPONSE: "The AI returned an unexpected response. Try again.",
    AIErrorType.CONTENT_POLICY: "The content was blocked by the provider's safety policy. Try rephrasing the story.",
    AIErrorType.SERVER_ERROR: "The AI service is temporarily unavailable. Try again in a few minutes.",
    AIErrorType.VALIDATION_ERROR: "The AI response did not match the expected format. Try again or switch models.",
    AIErrorType.UNKNOWN: "An unexpected error occurred. Try again, and contact support if it persists.",
}

_HARD_QUOTA_MARKERS = ("insufficient_quota", "billing", "credit balance", "exceeded your current quota")
_QUOTA_MARKERS = _HARD_QUOTA_MARKERS + ("quota",)
_CREDENTIAL_MARKERS = ("unauthorized", "forbidden", "invalid api key", "api key not valid",
                       "invalid x-api-key", "authentication", "permission denied")
_POLICY_MARKERS = ("content policy", "safety", "harmful", "blocked")
_RATE_MARKERS = ("rate limit", "resource exhausted", "resource_exhausted", "too many requests")


class AIError(Exception):
    """
    A classified failure from a model call.
    """

    def __init__(
        self,
        error_type: AIErrorType,
        message: str,
        retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None
    ):
        """
        Args:
            error_type: Classification of the failure
            message: Technical detail for logs
            retryable: Overrides the default retry policy for the type
            retry_after: Provider-supplied wait before retrying, in seconds
            status_code: HTTP status of the failed call, if any
        """
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.retryable = error_type in RETRYABLE_TYPES if retryable is None else retryable
        self.retry_after = retry_after
        self.status_code = status_code

    @property
    def user_message(self) -> str:
        """Message naming the remediation, safe to show to the user."""
        return USER_MESSAGES[self.error_type]

    def __str__(self) -> str:
        return f"{self.error_type.value}: {self.message}"


class RateLimitExceededError(AIError):
    """
    Raised by the local rate limiter before any network call is made.

    It is a RATE_LIMITED error that the caller must not retry blindly; the
    remaining quota and the wait until the next free slot are attached.
    """

    def __init__(
        self,
        message: str,
        remaining_minute: int,
        remaining_hour: int,
        remaining_day: int,
        retry_after: float
    ):
        super().__init__(AIErrorType.RATE_LIMITED, message, retryable=False, retry_after=retry_after)
        self.remaining_minute = remaining_minute
        self.remaining_hour = remaining_hour
        self.remaining_day = remaining_day

    @property
    def user_message(self) -> str:
        return f"Rate limit reached. Try again in {int(self.retry_after or 0) + 1} seconds."


def parse_retry_after(headers: Mapping[str, str], body: str = "") -> Optional[float]:
    """
    Read a retry-after hint from response headers or an error message.

    Args:
        headers: HTTP response headers
        body: Response body text

    Returns:
        Seconds to wait, or None when the provider gave no hint
    """
    value = headers.get("retry-after")
    if value:
        try:
            return max(0.0, float(value))
        except ValueError:
            pass

    match = re.search(r"retry (?:after|in) (\d+(?:\.\d+)?)\s*(?:s|sec|seconds)?", body, re.IGNORECASE)
    if match:
        return float(match.group(1))
    return None


def classify_http_error(status_code: int, body: str, headers: Optional[Mapping[str, str]] = None) -> AIError:
    """
    Classify a non-success HTTP response from a model provider.

    Args:
        status_code: HTTP status code
        body: Response body text
        headers: Response headers

    Returns:
        The classified AIError (not raised)
    """
    headers = headers or {}
    text = body.lower()
    detail = f"HTTP {status_code}: {body[:300]}"

    if status_code == 402 or any(marker in text for marker in _HARD_QUOTA_MARKERS):
        return AIError(AIErrorType.QUOTA_EXCEEDED, detail, status_code=status_code)
    if status_code == 429 or any(marker in text for marker in _RATE_MARKERS):
        return AIError(AIErrorType.RATE_LIMITED, detail,
                       retry_after=parse_retry_after(headers, body), status_code=status_code)
    if "quota" in text:
        return AIError(AIErrorType.QUOTA_EXCEEDED, detail, status_code=status_code)
    if status_code in (401, 403) or any(marker in text for marker in _CREDENTIAL_MARKERS):
        return AIError(AIErrorType.INVALID_CREDENTIALS, detail, status_code=status_code)
    if any(marker in text for marker in _POLICY_MARKERS):
        return AIError(AIErrorType.CONTENT_POLICY, detail, status_code=status_code)
    if status_code == 408:
        return AIError(AIErrorType.TIMEOUT, detail, status_code=status_code)
    if status_code >= 500:
        return AIError(AIErrorType.SERVER_ERROR, detail, status_code=status_code)
    return AIError(AIErrorType.UNKNOWN, detail, status_code=status_code)


def classify_exception(error: Exception) -> AIError:
    """
    Classify an exception raised while talking to a provider.

    Args:
        error: Any exception

    Returns:
        The classified AIError (not raised)
    """
    if isinstance(error, AIError):
        return error
    if isinstance(error, httpx.TimeoutException):
        return AIError(AIErrorType.TIMEOUT, f"Request timed out: {error}")
    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        return classify_http_error(response.status_code, response.text, response.headers)
    if isinstance(error, httpx.RequestError):
        return AIError(AIErrorType.NETWORK_ERROR, f"Failed to reach provider: {error}")

    text = str(error).lower()
    if any(marker in text for marker in _QUOTA_MARKERS):
        return AIError(AIErrorType.QUOTA_EXCEEDED, str(error))
    if any(marker in text for marker in _RATE_MARKERS):
        return AIError(AIErrorType.RATE_LIMITED, str(error), retry_after=parse_retry_after({}, str(error)))
    if any(marker in text for marker in _CREDENTIAL_MARKERS):
        return AIError(AIErrorType.INVALID_CREDENTIALS, str(error))
    if any(marker in text for marker in _POLICY_MARKERS):
        return AIError(AIErrorType.CONTENT_POLICY, str(error))
    if "timeout" in text or "timed out" in text:
        return AIError(AIErrorType.TIMEOUT, str(error))
    if "network" in text or "connection" in text:
        return AIError(AIErrorType.NETWORK_ERROR, str(error))
    return AIError(AIErrorType.UNKNOWN, str(error))
