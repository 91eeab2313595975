"""Provider error type and the classifiers the runner branches on."""

from __future__ import annotations

import json

import httpx

_CONTEXT_KEYWORDS = ("context", "token", "length", "exceeded", "too long")

_ROLE_ORDERING_KEYWORDS = (
    "roles must alternate",
    "incorrect role information",
    "function call turn comes immediately after",
    "expected alternating",
    "must be followed by",
)

_BILLING_PATTERNS = (
    "billing", "quota", "payment", "credit", "insufficient",
    "subscription", "exceeded your", "spending limit",
)
_RATE_LIMIT_PATTERNS = (
    "rate limit", "rate_limit", "too many requests", "429",
    "throttle", "throttling", "slow down",
)
_AUTH_PATTERNS = (
    "authentication", "unauthorized", "api key", "401",
    "forbidden", "403", "invalid credentials",
)
_TIMEOUT_PATTERNS = (
    "timeout", "timed out", "deadline exceeded", "context deadline",
    "etimedout", "esockettimedout", "context canceled",
)

# HTTP status -> (code, type) used when the body carries no structured error
_STATUS_DEFAULTS: dict[int, tuple[str, str]] = {
    401: ("authentication_error", "authentication_error"),
    403: ("authentication_error", "authentication_error"),
    429: ("rate_limit_exceeded", "rate_limit_error"),
}


class ProviderError(Exception):
    """Error reported by a model provider."""

    def __init__(self, message: str, code: str = "", type: str = "", raw: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.type = type
        self.raw = raw  # undecoded response body, used for fingerprinting

    def __repr__(self) -> str:
        return f"ProviderError(code={self.code!r}, type={self.type!r}, message={self.message!r})"


def provider_error_from_response(status_code: int, body: bytes | str) -> ProviderError:
    """Build a ProviderError from a non-2xx HTTP response body.

    Understands both Anthropic ({"type":"error","error":{...}}) and OpenAI
    ({"error":{"code":...}}) error envelopes. The undecoded body is kept on .raw so fingerprinting
    sees the full payload.
    """
    text = body.decode(errors="replace") if isinstance(body, bytes) else body
    code, err_type = "", ""
    message = text
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            code = str(err.get("code") or "")
            err_type = str(err.get("type") or "")
            if isinstance(err.get("message"), str) and err["message"]:
                message = f"{status_code}: {err['message']}"
        elif isinstance(err, str):
            message = f"{status_code}: {err}"
    if not code and not err_type and status_code in _STATUS_DEFAULTS:
        code, err_type = _STATUS_DEFAULTS[status_code]
    if message == text:
        message = f"{status_code}: {text[:500]}"
    return ProviderError(message, code=code, type=err_type, raw=text)


def is_context_overflow(err: BaseException | None) -> bool:
    if not isinstance(err, ProviderError):
        return False
    if err.code == "context_length_exceeded":
        return True
    lower = err.message.lower()
    return err.type == "invalid_request_error" and any(k in lower for k in _CONTEXT_KEYWORDS)


def is_rate_limit_or_auth(err: BaseException | None) -> bool:
    if not isinstance(err, ProviderError):
        return False
    return (
        err.code in ("rate_limit_exceeded", "authentication_error")
        or err.type in ("rate_limit_error", "authentication_error")
    )


def is_role_ordering_error(err: BaseException | None) -> bool:
    """Provider rejected the history because roles did not alternate."""
    if err is None:
        return False
    lower = str(err).lower()
    return any(k in lower for k in _ROLE_ORDERING_KEYWORDS)


def is_transport_error(err: BaseException | None) -> bool:
    """Network or subprocess failure, raised directly or wrapped in a ProviderError."""
    transport = (httpx.TransportError, OSError)
    return isinstance(err, transport) or (err is not None and isinstance(err.__cause__, transport))


def classify_error_reason(err: BaseException | None) -> str:
    """Map an error to a cooldown reason: billing, rate_limit, auth, timeout or other."""
    if err is None:
        return "other"

    if isinstance(err, ProviderError):
        if err.code == "rate_limit_exceeded":
            return "rate_limit"
        if err.code in ("authentication_error", "invalid_api_key", "unauthorized"):
            return "auth"
        if err.code in ("insufficient_quota", "billing_error", "payment_required"):
            return "billing"
        if err.type == "rate_limit_error":
            return "rate_limit"
        if err.type == "authentication_error":
            return "auth"

    if isinstance(err, (TimeoutError, httpx.TimeoutException)):
        return "timeout"

    lower = str(err).lower()
    for reason, patterns in (
        ("billing", _BILLING_PATTERNS),
        ("rate_limit", _RATE_LIMIT_PATTERNS),
        ("auth", _AUTH_PATTERNS),
        ("timeout", _TIMEOUT_PATTERNS),
    ):
        if any(p in lower for p in patterns):
            return reason
    return "other"
