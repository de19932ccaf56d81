from __future__ import annotations

import re


class BrokerAPIError(RuntimeError):
    """Non-retryable broker API error."""

    def __init__(self, message: str, *, return_code: int | None = None):
        super().__init__(message)
        self.return_code = return_code


class TransientNetworkError(BrokerAPIError):
    """Network/server error. Reads may retry it, writes never do."""


class OrderOutcomeUnknown(TransientNetworkError):
    """Order request left the process but no answer came back."""


class RateLimitError(BrokerAPIError):
    """Broker throttled the request (HTTP 429 or equivalent return code)."""


class InsufficientFundsError(BrokerAPIError):
    """Order rejected for lack of buying power."""


class InstrumentRestrictedError(BrokerAPIError):
    """Instrument cannot be traded under the current account mode."""


class BrokerAuthError(BrokerAPIError):
    """Token issuance or authorization failure."""


class DataIncompleteError(RuntimeError):
    """Ledger data is not complete enough to aggregate yet."""


class InvariantViolation(RuntimeError):
    """Conflicting ledger data that must not be merged."""


_RATE_LIMIT_PATTERNS = (
    "허용된 요청",
    "요청 개수",
    "too many requests",
    "rate limit",
)

_INSUFFICIENT_FUNDS_PATTERNS = (
    "주문가능금액",
    "증거금",
    "예수금",
    "매수가능",
    "insufficient",
)

_RESTRICTED_PATTERNS = (
    "매매제한",
    "거래정지",
    "매매정지",
    "주문불가",
    "모의투자",
    "신용",
    "정리매매",
    "restricted",
)


def _matches(message: str, patterns: tuple[str, ...]) -> bool:
    lowered = message.lower()
    return any(pattern.lower() in lowered for pattern in patterns)


def classify_rejection(
    message: str,
    *,
    return_code: int | None = None,
    http_status: int | None = None,
) -> BrokerAPIError:
    """Map a broker rejection to the matching error type."""
    text = re.sub(r"\s+", " ", str(message or "")).strip()
    if http_status == 429 or return_code == 5 or _matches(text, _RATE_LIMIT_PATTERNS):
        return RateLimitError(text or "rate limited", return_code=return_code)
    if _matches(text, _INSUFFICIENT_FUNDS_PATTERNS):
        return InsufficientFundsError(text, return_code=return_code)
    if _matches(text, _RESTRICTED_PATTERNS):
        return InstrumentRestrictedError(text, return_code=return_code)
    return BrokerAPIError(text or f"broker rejected request (code={return_code})", return_code=return_code)
