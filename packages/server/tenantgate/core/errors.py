"""
Authorization error taxonomy.

Every error carries a stable ``code`` and an HTTP status so the API layer can
render a precise message without inspecting the exception type. Guard
violations are raised unmodified all the way to the caller and are never
retried automatically.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse
import structlog

log = structlog.get_logger()


class AccessControlError(Exception):
    """Base class for every error raised by the authorization core."""

    code = "ACCESS_CONTROL_ERROR"
    status_code = 400
    default_message = "Access control error"

    def __init__(self, message: str | None = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


class Forbidden(AccessControlError):
    """The principal lacks the role required for an authorization-controller action."""

    code = "FORBIDDEN"
    status_code = 403
    default_message = "You do not have permission to perform this action"


class NotFound(AccessControlError):
    """Missing resource, or a resource the principal may not know exists."""

    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class LastAdminViolation(AccessControlError):
    code = "LAST_ADMIN_VIOLATION"
    status_code = 409
    default_message = "An organization must keep at least one admin"


class SelfModificationViolation(AccessControlError):
    code = "SELF_MODIFICATION_VIOLATION"
    status_code = 409
    default_message = "You cannot remove or change your own project membership"


class UnknownEntityOrAction(AccessControlError):
    code = "UNKNOWN_ENTITY_OR_ACTION"
    status_code = 400
    default_message = "Unknown permission entity or action"


class StaleRoleState(AccessControlError):
    """The session's cached actual role no longer matches current membership."""

    code = "STALE_ROLE_STATE"
    status_code = 409
    default_message = "Your role has changed; the session was refreshed"


class ConcurrentMembershipChange(AccessControlError):
    code = "CONCURRENT_MEMBERSHIP_CHANGE"
    status_code = 409
    default_message = "Membership was changed by another request; reload and try again"


class Conflict(AccessControlError):
    code = "CONFLICT"
    status_code = 409
    default_message = "Resource already exists"


class MembershipNotFound(AccessControlError):
    code = "MEMBERSHIP_NOT_FOUND"
    status_code = 404
    default_message = "Membership not found"


class DuplicateMembership(AccessControlError):
    code = "DUPLICATE_MEMBERSHIP"
    status_code = 409
    default_message = "User is already a member"


class NotOrganizationMember(AccessControlError):
    code = "NOT_ORGANIZATION_MEMBER"
    status_code = 422
    default_message = (
        "User must be an organization member before being assigned to a project"
    )


class SessionNotStarted(AccessControlError):
    code = "SESSION_NOT_STARTED"
    status_code = 409
    default_message = "No active session; start one first"


async def access_control_error_handler(
    request: Request, exc: AccessControlError
) -> JSONResponse:
    """Render any AccessControlError in the standard error envelope."""
    log.info(
        "request.denied",
        code=exc.code,
        status=exc.status_code,
        path=request.url.path,
        **{k: str(v) for k, v in exc.context.items()},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": exc.code,
                "message": exc.message,
                "status": exc.status_code,
            }
        },
    )
