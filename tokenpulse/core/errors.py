"""
tokenpulse - Error Definitions

Error taxonomy for the usage monitor with infra vs semantic classification.

- Infra errors are transient; the poll loop retries on its next scheduled cycle.
- Semantic errors need an operator fix (credential, upstream contract) and
  leave the monitor in degraded, local-only mode until then.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    """Error classification."""
    INFRA = "infra_error"
    SEMANTIC = "semantic_error"


@dataclass
class ErrorDetails:
    """Full error information for logs and the status surface."""
    # Core fields (always present)
    code: str
    message: str
    type: ErrorType

    # Context fields
    provider: Optional[str] = None
    status_code: Optional[int] = None

    # Trace fields
    request_id: str = ""

    # Recovery fields
    retryable: bool = False
    retry_after: Optional[int] = None

    # Debug fields
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.code,
            "message": self.message,
            "type": self.type.value,
            "request_id": self.request_id,
            "retryable": self.retryable,
        }

        if self.provider:
            result["provider"] = self.provider
        if self.status_code is not None:
            result["status_code"] = self.status_code
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.details:
            result["details"] = self.details

        return {"error": result}


class TokenPulseException(Exception):
    """Base exception for all tokenpulse errors."""

    def __init__(self, error: ErrorDetails):
        self.error = error
        super().__init__(error.message)

    @property
    def code(self) -> str:
        return self.error.code


# ============================================================
# Infra Errors (retry on next cycle)
# ============================================================

class InfraError(TokenPulseException):
    """Base class for infrastructure errors."""
    pass


class UpstreamUnavailableError(InfraError):
    """Upstream usage API could not be reached or answered with 429/5xx."""

    def __init__(
        self,
        provider: str,
        message: str = "",
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
        request_id: str = "",
        retryable: bool = True,
    ):
        code_map = {
            429: "upstream_rate_limited",
            500: "upstream_500",
            502: "upstream_502",
            503: "upstream_503",
            504: "upstream_504",
        }
        if status_code is None:
            code = "upstream_unreachable"
        else:
            code = code_map.get(status_code, "upstream_error")

        super().__init__(
            ErrorDetails(
                code=code,
                message=message or f"{provider} usage API is unavailable",
                type=ErrorType.INFRA,
                provider=provider,
                status_code=status_code,
                request_id=request_id,
                retryable=retryable,
                retry_after=retry_after,
            )
        )


class StorageError(InfraError):
    """History store could not be read or written."""

    def __init__(self, operation: str, location: str, reason: str):
        super().__init__(
            ErrorDetails(
                code=f"storage_{operation}_failed",
                message=f"Could not {operation} usage history at {location}: {reason}",
                type=ErrorType.INFRA,
                retryable=True,
                details={"location": location},
            )
        )


# ============================================================
# Semantic Errors (operator must fix)
# ============================================================

class SemanticError(TokenPulseException):
    """Base class for semantic errors."""
    pass


class UnauthorizedError(SemanticError):
    """Credential is missing or was rejected by the upstream."""

    def __init__(
        self,
        provider: str,
        message: str = "",
        status_code: Optional[int] = None,
        request_id: str = "",
    ):
        super().__init__(
            ErrorDetails(
                code="missing_credential" if status_code is None else "invalid_credential",
                message=message or f"No valid {provider} credential configured",
                type=ErrorType.SEMANTIC,
                provider=provider,
                status_code=status_code,
                request_id=request_id,
                retryable=False,
            )
        )

    @property
    def credential_missing(self) -> bool:
        return self.error.status_code is None


class MalformedResponseError(SemanticError):
    """Upstream answered 200 with a body that does not match the usage schema."""

    def __init__(
        self,
        provider: str,
        reason: str,
        request_id: str = "",
        body_preview: str = "",
    ):
        details: Dict[str, Any] = {"reason": reason}
        if body_preview:
            details["body_preview"] = body_preview
        super().__init__(
            ErrorDetails(
                code="malformed_response",
                message=f"{provider} usage response did not match the expected schema",
                type=ErrorType.SEMANTIC,
                provider=provider,
                status_code=200,
                request_id=request_id,
                retryable=False,
                details=details,
            )
        )


class TooManyPagesWarning(UserWarning):
    """Pagination stopped at the page ceiling; the returned data is partial."""

    def __init__(self, max_pages: int, buckets_collected: int):
        self.max_pages = max_pages
        self.buckets_collected = buckets_collected
        super().__init__(
            f"Reached maximum page limit ({max_pages}) with "
            f"{buckets_collected} buckets collected; data may be incomplete"
        )


# ============================================================
# Error Factory
# ============================================================

def _retry_after(headers: Optional[Dict[str, str]]) -> Optional[int]:
    if not headers:
        return None
    for key, value in headers.items():
        if key.lower() == "retry-after":
            try:
                return int(value)
            except (TypeError, ValueError):
                return None
    return None


def error_from_status(
    provider: str,
    status_code: int,
    body: Any = None,
    headers: Optional[Dict[str, str]] = None,
    request_id: str = "",
) -> TokenPulseException:
    """
    Map a non-200 upstream response to the error taxonomy.

    OpenAI error format:
    {
        "error": {
            "message": "...",
            "type": "invalid_request_error|...",
            "code": "..."
        }
    }
    """
    message = ""
    if isinstance(body, dict):
        error_info = body.get("error", body)
        if isinstance(error_info, dict):
            message = str(error_info.get("message", ""))
    elif isinstance(body, str):
        message = body[:200]

    if status_code in (401, 403):
        return UnauthorizedError(
            provider,
            message=f"{provider} rejected the credential: {message}".rstrip(": "),
            status_code=status_code,
            request_id=request_id,
        )

    if status_code == 429 or status_code >= 500:
        return UpstreamUnavailableError(
            provider,
            message=message or f"{provider} returned error {status_code}",
            status_code=status_code,
            retry_after=_retry_after(headers),
            request_id=request_id,
        )

    # Remaining 4xx: the request itself was refused; waiting for the next
    # cycle is still the only recovery available to the poll loop.
    return UpstreamUnavailableError(
        provider,
        message=message or f"{provider} refused the usage request ({status_code})",
        status_code=status_code,
        request_id=request_id,
        retryable=False,
    )


def handle_http_error(
    error: Exception,
    provider: str = "openai",
    request_id: str = "",
) -> TokenPulseException:
    """Convert an httpx transport/status error into the error taxonomy."""
    import httpx

    if isinstance(error, TokenPulseException):
        return error

    if isinstance(error, httpx.TimeoutException):
        return UpstreamUnavailableError(
            provider,
            message=f"{provider} usage API timed out",
            request_id=request_id,
        )

    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        return error_from_status(
            provider,
            response.status_code,
            body,
            dict(response.headers),
            request_id,
        )

    if isinstance(error, httpx.TransportError):
        return UpstreamUnavailableError(
            provider,
            message=f"Connection to {provider} usage API failed: {error}",
            request_id=request_id,
        )

    return UpstreamUnavailableError(
        provider,
        message=str(error),
        request_id=request_id,
    )
