"""
Error taxonomy for the pipeline controller.

Non-error outcomes are not exceptions:
- A run name that does not match the grammar yields None from the parser.
- A missing or expired cache slot yields None from the cache.

Everything below is raised to the caller of a mutating action.
"""

from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class PipelineControllerError(Exception):
    """Base class for all controller errors."""

    def to_dict(self) -> Dict[str, Any]:
        return {"error": str(self)}


class GatewayError(PipelineControllerError):
    """
    A call to the remote automation platform failed.

    transient: retrying later may succeed (network, 5xx, rate limit)
    rate_limited: the platform refused the call because the quota is exhausted
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        transient: bool = False,
        rate_limited: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient or rate_limited
        self.rate_limited = rate_limited

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": str(self),
            "status_code": self.status_code,
            "transient": self.transient,
            "rate_limited": self.rate_limited,
        }


class AuthenticationFailure(PipelineControllerError):
    """Identity is unknown or the credentials do not match."""


class AuthorizationKind(str, Enum):
    """Why an authorization check failed."""
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"


class AuthorizationFailure(PipelineControllerError):
    """
    Identity is known but may not perform the requested action.

    kind is NOT_FOUND when the target team does not exist. For role
    failures required_roles carries the roles that would have been allowed.
    """

    def __init__(
        self,
        message: str,
        kind: AuthorizationKind = AuthorizationKind.FORBIDDEN,
        required_roles: Optional[FrozenSet[str]] = None,
        role: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.required_roles = required_roles
        self.role = role

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"error": str(self)}
        if self.required_roles is not None:
            result["required"] = sorted(self.required_roles)
            result["your_role"] = self.role
        return result


class InvalidInput(PipelineControllerError):
    """Request is malformed: schedule time not in the future, missing team, bad config."""
