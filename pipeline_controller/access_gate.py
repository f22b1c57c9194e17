"""
Access Control Gate

The single point of authorization for actions taken through the controller.

Authentication: identity -> {role, teams} from the static user registry.
Lookup is case-insensitive; the configured spelling is what callers get back.

Authorization for a mutating action A against team T:
1. T missing                          -> InvalidInput
2. T unknown                          -> AuthorizationFailure(NOT_FOUND)
3. identity not a member of T         -> AuthorizationFailure(FORBIDDEN)
4. role not in T.permissions[A]       -> AuthorizationFailure(FORBIDDEN, required=...)

Read actions (view_logs, listing) skip the team checks entirely, even when a
team is supplied. Mutating endpoints enforce them. This asymmetry is the
established behaviour of the dashboard and is kept as is.
"""

import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from .config import Action, PipelineConfig, Role, TeamConfig
from .errors import (
    AuthenticationFailure,
    AuthorizationFailure,
    AuthorizationKind,
    InvalidInput,
)
from .models import utcnow

logger = logging.getLogger("access_gate")


@dataclass(frozen=True)
class User:
    identity: str
    role: Role
    teams: FrozenSet[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.identity,
            "role": self.role.value,
            "teams": sorted(self.teams),
        }


@dataclass
class AccessDecision:
    """Outcome of a successful authorization check."""
    user: User
    action: Action
    team: Optional[str]
    team_checked: bool
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user.identity,
            "role": self.user.role.value,
            "action": self.action.value,
            "team": self.team,
            "team_checked": self.team_checked,
            "timestamp": self.timestamp.isoformat(),
        }


class AccessGate:
    def __init__(self, config: PipelineConfig):
        self._config = config
        self._users: Dict[str, User] = {
            name: User(identity=name, role=user.role, teams=frozenset(user.teams))
            for name, user in config.users.items()
        }
        self._folded = {name.lower(): name for name in self._users}

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------
    def _canonical(self, identity: Optional[str]) -> Optional[str]:
        if not isinstance(identity, str) or not identity:
            return None
        return self._folded.get(identity.strip().lower())

    def authenticate(self, identity: Optional[str]) -> User:
        """Resolve an identity to its registered user."""
        canonical = self._canonical(identity)
        if canonical is None:
            raise AuthenticationFailure(f"Unknown user: {identity}")
        return self._users[canonical]

    def login(self, identity: Optional[str], password: Optional[str]) -> User:
        """Check a password against the configured one."""
        user = self.authenticate(identity)
        expected = self._config.users[user.identity].password
        if expected is None or password is None:
            raise AuthenticationFailure("Incorrect password")
        if not hmac.compare_digest(expected.encode(), password.encode()):
            logger.warning(f"Failed login for {user.identity}")
            raise AuthenticationFailure("Incorrect password")
        logger.info(f"User logged in: {user.identity} ({user.role.value})")
        return user

    def list_users(self, identity: str) -> List[User]:
        """All registered users. Admin only."""
        requester = self.authenticate(identity)
        if requester.role != Role.ADMIN:
            raise AuthorizationFailure("Admin access required")
        return list(self._users.values())

    def switch_user(self, identity: str, target: Optional[str]) -> User:
        """Resolve the user an admin session switches to. Admin only."""
        requester = self.authenticate(identity)
        if requester.role != Role.ADMIN:
            raise AuthorizationFailure("Admin access required")
        canonical = self._canonical(target)
        if canonical is None:
            raise AuthorizationFailure("User not found", kind=AuthorizationKind.NOT_FOUND)
        logger.info(f"{requester.identity} switched session to {canonical}")
        return self._users[canonical]

    # -------------------------------------------------------------------------
    # Authorization
    # -------------------------------------------------------------------------
    def get_team(self, team: str) -> TeamConfig:
        team_config = self._config.teams.get(team)
        if team_config is None:
            raise AuthorizationFailure("Team not found", kind=AuthorizationKind.NOT_FOUND)
        return team_config

    def authorize(
        self,
        identity: str,
        action: Action,
        team: Optional[str] = None,
    ) -> AccessDecision:
        """Raise unless identity may perform action for team."""
        user = self.authenticate(identity)
        action = Action(action)

        if action.is_read:
            return AccessDecision(user=user, action=action, team=team, team_checked=False)

        if not team:
            raise InvalidInput("Team is required for this action")

        team_config = self.get_team(team)

        if team not in user.teams:
            logger.warning(f"{user.identity} denied {action.value}: not a member of {team}")
            raise AuthorizationFailure("Not a member of this team")

        allowed_roles = team_config.permitted_roles(action)
        if user.role not in allowed_roles:
            logger.warning(
                f"{user.identity} denied {action.value} on {team}: role {user.role.value}"
            )
            raise AuthorizationFailure(
                f"Insufficient permissions for {action.value}",
                required_roles=frozenset(role.value for role in allowed_roles),
                role=user.role.value,
            )

        return AccessDecision(user=user, action=action, team=team, team_checked=True)
