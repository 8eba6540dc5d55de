"""
Domain errors for the membership and chat workflows.

Each is an HTTPException so routes and exception handlers render them the same
way as any other API error.
"""

from fastapi import HTTPException, status


class DomainError(HTTPException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Request could not be processed"

    def __init__(self, detail: str = None):
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)


class Forbidden(DomainError):
    """Actor lacks the role required for the action."""
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Only the group owner can perform this action"


class InvalidState(DomainError):
    """Request or group is not in the state the action requires."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Invalid state for this action"


class CapacityExceeded(DomainError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Group is full"


class Conflict(DomainError):
    """Duplicate pending join request."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = "You have already requested to join this group"


class Unauthorized(DomainError):
    """Non-member access to group chat."""
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "You must be a member of this group to use its chat"


class NotFound(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class InvalidMessage(DomainError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "Message text is required"
