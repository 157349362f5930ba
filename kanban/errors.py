from __future__ import annotations

from typing import Any, Optional


class KanbanError(Exception):
    """Base class for errors surfaced to API clients.

    ``status_code`` and ``code`` end up in the ``ErrorEnvelope`` body so a client
    can tell a stale ordering request (refetch and retry) from a policy rejection
    (show it to the user) without parsing messages.
    """

    status_code = 500
    code = "internal_error"

    def __init__(self, message: Optional[str] = None, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}


class BadRequest(KanbanError):
    status_code = 400
    code = "bad_request"


class Unauthorized(KanbanError):
    status_code = 401
    code = "unauthorized"


class Forbidden(KanbanError):
    status_code = 403
    code = "forbidden"


class NotFound(KanbanError):
    status_code = 404
    code = "not_found"


class Conflict(KanbanError):
    status_code = 409
    code = "conflict"


class AnchorNotFound(Conflict):
    code = "anchor_not_found"


class OrderingExhausted(Conflict):
    code = "ordering_exhausted"


class ShareExpired(KanbanError):
    status_code = 410
    code = "share_expired"


class WipLimitExceeded(KanbanError):
    status_code = 422
    code = "wip_limit_exceeded"
