from __future__ import annotations

import re
from typing import Any


# Scout-facing wording; technical detail stays on the exception for logs.
SCOUT_ERROR_MESSAGES: dict[str, str] = {
    "NETWORK_ERROR": "Unable to connect to OSM. Check your internet connection and try again.",
    "TIMEOUT_ERROR": "Request timed out. The server may be busy - please try again in a moment.",
    "AUTH_EXPIRED": "Your session has expired. Please log in again to continue.",
    "PERMISSION_DENIED": "You don't have permission for this action. Contact your section admin.",
    "NOT_FOUND": "The requested information wasn't found.",
    "SYNC_FAILED": "Unable to sync data from OSM. Check your connection and try refreshing.",
    "DATA_CORRUPTED": "Some data couldn't be loaded. Try refreshing to reload from OSM.",
    "MISSING_DATA": "Required information is missing. Try syncing from OSM again.",
    "INVALID_DATA": "The data format is invalid. Please contact support if this continues.",
    "SERVER_ERROR": "OSM server is having problems. Please try again in a few minutes.",
    "RATE_LIMITED": "Too many requests. Please wait a moment before trying again.",
    "API_ERROR": "There was a problem with OSM. Please try again or contact support.",
    "STORAGE_FULL": "Device storage is full. Free up space and try again.",
    "DEMO_MODE": "This action isn't available in demo mode.",
    "UNKNOWN_ERROR": "Something went wrong. Please try again or contact support if this continues.",
}

# Ordered: the first category with a matching pattern wins.
ERROR_PATTERNS: tuple[tuple[str, tuple[re.Pattern[str], ...]], ...] = (
    (
        "network",
        tuple(
            re.compile(p, re.IGNORECASE)
            for p in (r"network", r"fetch", r"connection", r"cors", r"timeout", r"refused", r"dns", r"unreachable")
        ),
    ),
    (
        "auth",
        tuple(
            re.compile(p, re.IGNORECASE)
            for p in (r"unauthorized", r"authentication", r"token", r"login", r"session", r"expired")
        ),
    ),
    (
        "permission",
        tuple(re.compile(p, re.IGNORECASE) for p in (r"forbidden", r"permission", r"access.*denied", r"not.*allowed")),
    ),
    (
        "rate_limited",
        tuple(re.compile(p, re.IGNORECASE) for p in (r"rate limit", r"too many requests", r"wait \d+ seconds?")),
    ),
    (
        "server",
        tuple(
            re.compile(p, re.IGNORECASE)
            for p in (r"server.*error", r"internal.*error", r"service.*unavailable", r"bad.*gateway", r"gateway.*timeout")
        ),
    ),
    (
        "data",
        tuple(
            re.compile(p, re.IGNORECASE)
            for p in (r"parse", r"json", r"invalid.*data", r"corrupt", r"missing.*data")
        ),
    ),
    (
        "storage",
        tuple(re.compile(p, re.IGNORECASE) for p in (r"storage", r"quota", r"disk.*full", r"space")),
    ),
)

_CATEGORY_MESSAGES: dict[str, str] = {
    "network": SCOUT_ERROR_MESSAGES["NETWORK_ERROR"],
    "timeout": SCOUT_ERROR_MESSAGES["TIMEOUT_ERROR"],
    "auth": SCOUT_ERROR_MESSAGES["AUTH_EXPIRED"],
    "permission": SCOUT_ERROR_MESSAGES["PERMISSION_DENIED"],
    "not_found": SCOUT_ERROR_MESSAGES["NOT_FOUND"],
    "rate_limited": SCOUT_ERROR_MESSAGES["RATE_LIMITED"],
    "server": SCOUT_ERROR_MESSAGES["SERVER_ERROR"],
    "application": SCOUT_ERROR_MESSAGES["API_ERROR"],
    "data": SCOUT_ERROR_MESSAGES["DATA_CORRUPTED"],
    "missing": SCOUT_ERROR_MESSAGES["MISSING_DATA"],
    "storage": SCOUT_ERROR_MESSAGES["STORAGE_FULL"],
    "demo": SCOUT_ERROR_MESSAGES["DEMO_MODE"],
    "unknown": SCOUT_ERROR_MESSAGES["UNKNOWN_ERROR"],
}

_OFFLINE_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (r"network", r"offline", r"failed to fetch", r"connection", r"unreachable", r"timed? ?out")
)


class VikingSyncError(Exception):
    """Base error for vikingsync."""

    kind = "unknown"
    category = "unknown"

    def __init__(
        self,
        detail: str = "",
        *,
        message: str | None = None,
        status_code: int | None = None,
        context: str | None = None,
    ) -> None:
        super().__init__(detail or self.kind)
        self.detail = detail or self.kind
        self.status_code = status_code
        self.context = context
        self.message = message or with_context(_CATEGORY_MESSAGES[self.category], context)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "detail": self.detail,
            "status_code": self.status_code,
        }


class NetworkError(VikingSyncError):
    """Upstream could not be reached."""

    kind = "network_error"
    category = "network"


class RateLimited(VikingSyncError):
    """Upstream asked the client to slow down."""

    kind = "rate_limited"
    category = "rate_limited"

    def __init__(self, detail: str = "", *, retry_after_seconds: float | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("status_code", 429)
        super().__init__(detail, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class AuthExpired(VikingSyncError):
    """Session token missing, expired or rejected."""

    kind = "auth_expired"
    category = "auth"


class AuthForbidden(VikingSyncError):
    """Token valid but not permitted for the resource."""

    kind = "auth_forbidden"
    category = "permission"


class ServerError(VikingSyncError):
    """Upstream returned a 5xx."""

    kind = "server_error"
    category = "server"


class ApplicationFailure(VikingSyncError):
    """Upstream envelope reported ok:false or status:error."""

    kind = "application_failure"
    category = "application"


class RequestTimeout(VikingSyncError):
    """Queued request passed its deadline before it could run."""

    kind = "request_timeout"
    category = "timeout"


class NotFound(VikingSyncError):
    """Upstream resource does not exist."""

    kind = "not_found"
    category = "not_found"


class StorageFull(VikingSyncError):
    """Local store rejected a write."""

    kind = "storage_full"
    category = "storage"


class InvalidData(VikingSyncError):
    """Payload or identifier failed validation."""

    kind = "invalid_data"
    category = "data"


class MissingFields(VikingSyncError):
    """FlexiRecord structure lacks required named fields."""

    kind = "missing_fields"
    category = "missing"

    def __init__(self, detail: str = "", *, missing: list[str] | None = None, **kwargs: Any) -> None:
        super().__init__(detail, **kwargs)
        self.missing = list(missing or [])


class DemoMode(VikingSyncError):
    """Operation is not available while demo mode is active."""

    kind = "demo_mode"
    category = "demo"


class QueueCleared(VikingSyncError):
    """Pending request was dropped by an explicit queue clear."""

    kind = "queue_cleared"
    category = "unknown"


def with_context(message: str, context: str | None) -> str:
    if not context:
        return message
    return f"Unable to {context}. {message}"


def _message_of(error: Any) -> str:
    if isinstance(error, VikingSyncError):
        return error.detail
    if isinstance(error, BaseException):
        return str(error)
    if isinstance(error, dict):
        return str(error.get("message") or error.get("error") or error)
    return str(error)


def classify_message(message: str) -> str:
    # Embedded status codes are more specific than keyword patterns.
    if "401" in message or "403" in message:
        return "permission"
    if "404" in message:
        return "not_found"
    if "429" in message:
        return "rate_limited"
    if any(code in message for code in ("500", "502", "503", "504")):
        return "server"
    for category, patterns in ERROR_PATTERNS:
        if any(pattern.search(message) for pattern in patterns):
            return category
    return "unknown"


def classify_error(error: Any) -> str:
    if isinstance(error, VikingSyncError) and error.category != "unknown":
        return error.category
    return classify_message(_message_of(error))


def scout_message(error: Any, context: str | None = None) -> str:
    return with_context(_CATEGORY_MESSAGES[classify_error(error)], context)


def is_offline_error(error: Any) -> bool:
    if isinstance(error, NetworkError):
        return True
    message = _message_of(error)
    return any(pattern.search(message) for pattern in _OFFLINE_PATTERNS)
