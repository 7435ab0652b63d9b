"""Error taxonomy for the Ally completion engine.

Every failure that can reach a caller is an :class:`ApiError`.  The error
carries the raw provider fields (status, type, code) and derives from them a
category, a retryability flag and a message that is safe to show a user.
"""

from __future__ import annotations

import enum


class ErrorCategory(enum.Enum):
    """Coarse classification used for retry decisions and user messaging."""

    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    PARSE = "parse"
    TOOL_FAILURE = "tool_failure"
    RETRY_EXHAUSTED = "retry_exhausted"
    AUTHENTICATION = "authentication"
    QUOTA_EXCEEDED = "quota_exceeded"
    CONTEXT_LENGTH = "context_length"
    CONTENT_FILTER = "content_filter"
    MODEL_NOT_FOUND = "model_not_found"
    INVALID_REQUEST = "invalid_request"
    UNKNOWN = "unknown"


_RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.NETWORK,
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.SERVER,
})

_USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.AUTHENTICATION:
        "Authentication failed. Please check your API key in Settings.",
    ErrorCategory.RATE_LIMIT:
        "Too many requests. Please wait a moment and try again.",
    ErrorCategory.QUOTA_EXCEEDED:
        "API quota exceeded. Please check your billing settings with your AI provider.",
    ErrorCategory.CONTEXT_LENGTH:
        "Message is too long. Try shortening your conversation or starting a new chat.",
    ErrorCategory.CONTENT_FILTER:
        "Your message was flagged by content filters. Please try rephrasing.",
    ErrorCategory.MODEL_NOT_FOUND:
        "The selected model is not available. Please choose a different model in Settings.",
    ErrorCategory.NETWORK:
        "Network error. Please check your internet connection and try again.",
    ErrorCategory.SERVER:
        "The AI service is temporarily unavailable. Please try again in a few moments.",
    ErrorCategory.INVALID_REQUEST:
        "Invalid request. Please try again or contact support if the issue persists.",
    ErrorCategory.PARSE:
        "The AI service returned a response that could not be read. Please try again.",
    ErrorCategory.RETRY_EXHAUSTED:
        "The AI service did not respond after several attempts. Please try again later.",
    ErrorCategory.TOOL_FAILURE:
        "A tool failed while preparing the answer.",
}

_SUGGESTED_ACTIONS: dict[ErrorCategory, str] = {
    ErrorCategory.AUTHENTICATION: "Go to Settings to update your API key",
    ErrorCategory.QUOTA_EXCEEDED: "Check billing in your AI provider dashboard",
    ErrorCategory.CONTEXT_LENGTH: "Start a new conversation",
    ErrorCategory.MODEL_NOT_FOUND: "Select a different model",
    ErrorCategory.NETWORK: "Check your internet connection",
    ErrorCategory.SERVER: "Retry in a few moments",
    ErrorCategory.PARSE: "Retry the message",
    ErrorCategory.RETRY_EXHAUSTED: "Retry later",
}

_RETRY_DELAYS: dict[ErrorCategory, int] = {
    ErrorCategory.RATE_LIMIT: 10,
    ErrorCategory.SERVER: 5,
    ErrorCategory.NETWORK: 3,
}


def _contains(text: str, *needles: str) -> bool:
    lower = text.lower()
    return any(n in lower for n in needles)


class AllyError(Exception):
    """Base exception for all ally-agent errors."""


class AgentBusyError(AllyError):
    """Raised when a second generation is started on a busy agent."""


class ApiError(AllyError):
    """A categorized failure from the provider, the transport or a tool.

    ``category`` may be forced for failures that cannot be derived from HTTP
    fields (``parse``, ``tool_failure``, ``retry_exhausted``).  Otherwise it is
    computed from the status code, the provider's error type/code and, as a
    last resort, the message text.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 500,
        type: str | None = None,
        code: str | None = None,
        param: str | None = None,
        retry_after: float | None = None,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.type = type
        self.code = code
        self.param = param
        self.retry_after = retry_after
        self._category = category
        self._retryable = retryable

    def __repr__(self) -> str:
        return (
            f"ApiError({self.message!r}, status_code={self.status_code}, "
            f"code={self.code!r}, category={self.category.value})"
        )

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def network(cls, message: str) -> ApiError:
        return cls(message or "Connection failed", status_code=0)

    @classmethod
    def parse(cls, message: str, *, status_code: int = 200) -> ApiError:
        return cls(
            message, status_code=status_code, code="parse_error",
            category=ErrorCategory.PARSE, retryable=False,
        )

    @classmethod
    def rate_limited(cls, message: str, retry_after: float | None = None) -> ApiError:
        return cls(
            message, status_code=429, type="rate_limit_exceeded",
            code="rate_limit_exceeded", retry_after=retry_after,
        )

    @classmethod
    def exhausted(cls, last: ApiError, attempts: int) -> ApiError:
        err = cls(
            f"Gave up after {attempts} attempt{'' if attempts == 1 else 's'}: {last.message}",
            status_code=last.status_code,
            type=last.type,
            code="retry_exhausted",
            category=ErrorCategory.RETRY_EXHAUSTED,
            retryable=False,
        )
        err.__cause__ = last
        return err

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def is_rate_limit_error(self) -> bool:
        return (
            self.status_code == 429
            or self.type == "rate_limit_exceeded"
            or self.code == "rate_limit_exceeded"
        )

    def is_auth_error(self) -> bool:
        return (
            self.status_code in (401, 403)
            or self.type == "authentication_error"
            or self.code == "invalid_api_key"
        )

    def is_quota_exceeded(self) -> bool:
        return (
            self.code in ("insufficient_quota", "billing_hard_limit_reached")
            or _contains(self.message, "quota", "billing")
        )

    def is_context_length_error(self) -> bool:
        return self.code == "context_length_exceeded" or _contains(
            self.message, "context length", "maximum context", "token limit",
        )

    def is_content_filter_error(self) -> bool:
        return (
            self.code == "content_filter"
            or self.type == "content_policy_violation"
            or _contains(self.message, "content policy", "safety")
        )

    def is_model_not_found_error(self) -> bool:
        return (
            self.status_code == 404
            or self.code == "model_not_found"
            or _contains(self.message, "model not found", "does not exist")
        )

    def is_invalid_request(self) -> bool:
        return self.status_code == 400 or self.type == "invalid_request_error"

    def is_network_error(self) -> bool:
        return self.status_code in (0, -1) or _contains(
            self.message, "network", "timeout", "timed out", "connection",
        )

    def is_server_error(self) -> bool:
        return self.status_code >= 500

    @property
    def category(self) -> ErrorCategory:
        if self._category is not None:
            return self._category
        if self.is_auth_error():
            return ErrorCategory.AUTHENTICATION
        if self.is_rate_limit_error():
            return ErrorCategory.RATE_LIMIT
        if self.is_quota_exceeded():
            return ErrorCategory.QUOTA_EXCEEDED
        if self.is_context_length_error():
            return ErrorCategory.CONTEXT_LENGTH
        if self.is_content_filter_error():
            return ErrorCategory.CONTENT_FILTER
        if self.is_model_not_found_error():
            return ErrorCategory.MODEL_NOT_FOUND
        if self.is_invalid_request():
            return ErrorCategory.INVALID_REQUEST
        if self.is_network_error():
            return ErrorCategory.NETWORK
        if self.is_server_error():
            return ErrorCategory.SERVER
        return ErrorCategory.UNKNOWN

    @property
    def is_retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        return self.category in _RETRYABLE_CATEGORIES

    # ------------------------------------------------------------------
    # User-facing presentation
    # ------------------------------------------------------------------

    @property
    def retry_delay_seconds(self) -> int:
        if self.retry_after is not None and self.category is ErrorCategory.RATE_LIMIT:
            return max(1, int(round(self.retry_after)))
        return _RETRY_DELAYS.get(self.category, 0)

    @property
    def user_message(self) -> str:
        category = self.category
        if category in _USER_MESSAGES:
            return _USER_MESSAGES[category]
        if len(self.message) > 150:
            return self.message[:150] + "..."
        return self.message

    @property
    def suggested_action(self) -> str | None:
        category = self.category
        if category is ErrorCategory.RATE_LIMIT:
            return f"Wait {self.retry_delay_seconds}s before retrying"
        return _SUGGESTED_ACTIONS.get(category)
