"""Error types raised by provider adapters and the fallback orchestrator.

``classify_error`` is the single place deciding how a failed attempt is
recovered:

- capacity problems (rate limit, service unavailable, throttling) advance
  the execution plan to the next model,
- malformed structured output retries the same model,
- everything else is fatal: no retry, no fallback.
"""

import json

import httpx
from pydantic import ValidationError

from jenn.schemas.llm import ErrorType, RecoveryAction

_UNAVAILABLE_STATUSES = {502, 503, 504, 529}


class LLMError(Exception):
    """Base class for errors raised by the LLM layer."""


class ProviderAPIError(LLMError):
    """A provider returned a non-2xx response."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: int | None = None,
        body: str = "",
        error_code: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.body = body
        self.error_code = error_code

    @classmethod
    def from_http_error(cls, error: httpx.HTTPStatusError, provider: str) -> "ProviderAPIError":
        """Build from an httpx error, extracting the provider's error message."""
        response = error.response
        body = response.text
        message = body or str(error)
        error_code = ""
        try:
            payload = json.loads(body)
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            err = payload.get("error", payload)
            if isinstance(err, dict):
                message = err.get("message") or message
                error_code = str(err.get("code") or err.get("type") or "")
            elif isinstance(err, str):
                message = err
        return cls(
            message,
            provider=provider,
            status_code=response.status_code,
            body=body,
            error_code=error_code,
        )


class ProviderRetryError(ProviderAPIError):
    """The provider's own retries were exhausted."""


class NoObjectGeneratedError(LLMError):
    """The model's output could not be parsed into the requested schema."""

    def __init__(self, message: str, *, text: str = "", cause: Exception | None = None) -> None:
        super().__init__(message)
        self.text = text
        self.cause = cause


class AllModelsExhaustedError(LLMError):
    """Every model in the execution plan failed with a capacity error."""

    def __init__(self, last_error: BaseException, attempted: list[str]) -> None:
        super().__init__(
            f"All models exhausted ({', '.join(attempted)}): {last_error}"
        )
        self.last_error = last_error
        self.attempted = attempted


class GenerationTimeoutError(LLMError):
    """The caller-supplied deadline passed before any model succeeded."""


class EmptyExecutionPlanError(LLMError):
    """An execution plan had no targets."""


# --- Predicates ---


def _message(error: BaseException) -> str:
    if isinstance(error, ProviderAPIError):
        return f"{error.message} {error.error_code}".lower()
    return str(error).lower()


def is_rate_limit_error(error: BaseException) -> bool:
    if isinstance(error, ProviderAPIError) and error.status_code == 429:
        return True
    msg = _message(error)
    return "rate limit" in msg or "rate_limit" in msg


def is_service_unavailable_error(error: BaseException) -> bool:
    if isinstance(error, ProviderAPIError) and error.status_code in _UNAVAILABLE_STATUSES:
        return True
    # Connection refused/reset and read timeouts never reached the model.
    if isinstance(error, httpx.TransportError):
        return True
    msg = _message(error)
    return "overloaded" in msg or "service unavailable" in msg


def is_throttling_error(error: BaseException) -> bool:
    msg = _message(error)
    return "throttlingexception" in msg or "too many requests" in msg


def is_incorrect_api_key_error(error: BaseException) -> bool:
    if not isinstance(error, ProviderAPIError):
        return False
    msg = _message(error)
    return error.status_code == 401 and (
        "incorrect api key" in msg or "invalid x-api-key" in msg or "invalid api key" in msg
    )


def is_invalid_model_error(error: BaseException) -> bool:
    if not isinstance(error, ProviderAPIError):
        return False
    msg = _message(error)
    return error.status_code in (400, 404) and (
        "model_not_found" in msg
        or "does not exist" in msg
        or ("model" in msg and "not found" in msg)
    )


def is_api_key_deactivated_error(error: BaseException) -> bool:
    if not isinstance(error, ProviderAPIError):
        return False
    msg = _message(error)
    return error.status_code == 401 and "deactivated" in msg


def is_insufficient_balance_error(error: BaseException) -> bool:
    if not isinstance(error, ProviderAPIError):
        return False
    msg = _message(error)
    return "credit balance is too low" in msg or "insufficient_quota" in msg


def is_structured_output_error(error: BaseException) -> bool:
    return isinstance(error, (NoObjectGeneratedError, ValidationError))


# --- Classification ---


def classify_error(error: BaseException) -> RecoveryAction:
    """Decide how the orchestrator recovers from a failed attempt."""
    # Provider-side retry exhaustion and balance problems look like 429s for
    # some providers but are not fixed by trying elsewhere.
    if isinstance(error, ProviderRetryError) or is_insufficient_balance_error(error):
        return RecoveryAction.FATAL
    if (
        is_rate_limit_error(error)
        or is_service_unavailable_error(error)
        or is_throttling_error(error)
    ):
        return RecoveryAction.ADVANCE_PLAN
    if is_structured_output_error(error):
        return RecoveryAction.RETRY_SAME_MODEL
    return RecoveryAction.FATAL


def user_error_type(error: BaseException) -> ErrorType | None:
    """Map a fatal error to the user-facing notice category, if any."""
    if is_incorrect_api_key_error(error):
        return ErrorType.INCORRECT_API_KEY
    if is_invalid_model_error(error):
        return ErrorType.INVALID_MODEL
    if is_api_key_deactivated_error(error):
        return ErrorType.API_KEY_DEACTIVATED
    if isinstance(error, ProviderRetryError):
        return ErrorType.PROVIDER_RETRY_ERROR
    if is_insufficient_balance_error(error):
        return ErrorType.INSUFFICIENT_BALANCE
    return None
