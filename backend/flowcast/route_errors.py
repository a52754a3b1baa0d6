from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "rate_limited_retrying",
        "no_routes_found",
        "location_unavailable",
        "provider_error",
        "permission_denied",
        "mode_unsupported",
    }
)

# Only rate limiting is handled by retrying; everything else is terminal for the request.
RETRYING_REASON_CODES: frozenset[str] = frozenset({"rate_limited_retrying"})

USER_MESSAGES: dict[str, str] = {
    "rate_limited_retrying": "Rate limited. Retrying...",
    "no_routes_found": "No routes found",
    "location_unavailable": "Unable to get current location",
    "provider_error": "Unable to calculate route. Please try again.",
    "permission_denied": "Location access was denied. Please enable location services in Settings.",
    "mode_unsupported": "Mode not supported",
}


def normalize_reason_code(reason_code: str, *, default: str = "provider_error") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default


@dataclass(frozen=True)
class RouteIssue:
    """User-visible problem state published next to the data it concerns."""

    reason_code: str
    message: str
    retrying: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message


def make_issue(reason_code: str, **details: Any) -> RouteIssue:
    code = normalize_reason_code(reason_code)
    return RouteIssue(
        reason_code=code,
        message=USER_MESSAGES[code],
        retrying=code in RETRYING_REASON_CODES,
        details=dict(details),
    )
