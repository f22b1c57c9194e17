"""
Configuration for the pipeline controller.

Two layers:
1. Tunables: module-level constants read from environment variables.
2. Fleet configuration: a YAML file (owner, teams, users, workflows) validated
   into pydantic models at load time. Unknown permission actions or roles are
   rejected here rather than discovered on first lookup.
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import InvalidInput
from .models import WorkflowKind, WorkflowRef

logger = logging.getLogger("config")

# -----------------------------------------------------------------------------
# Tunables
# -----------------------------------------------------------------------------
PIPELINE_CONFIG = Path(os.getenv("PIPELINE_CONFIG", "config/pipelines.yaml"))
GITHUB_API_BASE = os.getenv("GITHUB_API_BASE", "https://api.github.com")
GATEWAY_TIMEOUT = float(os.getenv("GATEWAY_TIMEOUT", "30"))
GATEWAY_CALL_TIMEOUT = float(os.getenv("GATEWAY_CALL_TIMEOUT", "60"))

MAX_RUNS_PER_WORKFLOW = int(os.getenv("MAX_RUNS_PER_WORKFLOW", "15"))
CONCURRENT_WORKFLOWS = int(os.getenv("CONCURRENT_WORKFLOWS", "10"))
CONCURRENT_JOBS = int(os.getenv("CONCURRENT_JOBS", "20"))

CACHE_FILE = Path(os.getenv("CACHE_FILE", ".workflow-cache.json"))
CACHE_TTL_SECONDS = float(os.getenv("CACHE_TTL_SECONDS", "300"))

REALTIME_POLL_INTERVAL = float(os.getenv("REALTIME_POLL_INTERVAL", "120"))
RECENT_RUN_WINDOW_SECONDS = 300  # completed runs younger than this still count as active
SEND_TIMEOUT = float(os.getenv("SEND_TIMEOUT", "5"))

SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "24"))


# -----------------------------------------------------------------------------
# Roles & Actions
# -----------------------------------------------------------------------------
class Role(str, Enum):
    ADMIN = "admin"
    LEAD = "lead"
    DEVELOPER = "developer"
    VIEWER = "viewer"


class Action(str, Enum):
    """
    Actions that can be granted per team.

    Read actions skip the team-membership check entirely; only mutating
    actions are evaluated against a team's permission table.
    """
    TRIGGER_BUILD = "trigger_build"
    TRIGGER_RELEASE = "trigger_release"
    APPROVE_RELEASE = "approve_release"
    VIEW_LOGS = "view_logs"
    RESTART_SERVICES = "restart_services"

    @classmethod
    def read_actions(cls) -> FrozenSet["Action"]:
        return frozenset({cls.VIEW_LOGS})

    @property
    def is_read(self) -> bool:
        return self in Action.read_actions()


# -----------------------------------------------------------------------------
# Fleet configuration models
# -----------------------------------------------------------------------------
class TeamConfig(BaseModel):
    """A team, the apps it owns and who may do what."""
    name: str
    branches: List[str] = Field(default_factory=list)
    apps: List[str] = Field(default_factory=list)
    permissions: Dict[Action, FrozenSet[Role]] = Field(default_factory=dict)

    def permitted_roles(self, action: Action) -> FrozenSet[Role]:
        return self.permissions.get(action, frozenset())


class UserConfig(BaseModel):
    role: Role
    teams: List[str] = Field(default_factory=list)
    password: Optional[str] = None


class AppRepoConfig(BaseModel):
    """Build pipeline of one app."""
    name: str
    repo: str
    build_workflow: str


class ReleaseRepoConfig(BaseModel):
    """Release pipeline of one app."""
    app_name: str
    repo: str
    release_workflow: str


class PipelineConfig(BaseModel):
    owner: str
    token: Optional[str] = None
    teams: Dict[str, TeamConfig] = Field(default_factory=dict)
    users: Dict[str, UserConfig] = Field(default_factory=dict)
    app_repos: List[AppRepoConfig] = Field(default_factory=list)
    release_repos: List[ReleaseRepoConfig] = Field(default_factory=list)

    def workflows(self, kind: WorkflowKind) -> List[WorkflowRef]:
        """All configured workflows of one kind, in configuration order."""
        if kind == WorkflowKind.BUILD:
            return [
                WorkflowRef(self.owner, a.repo, a.build_workflow, a.name, WorkflowKind.BUILD)
                for a in self.app_repos
            ]
        return [
            WorkflowRef(self.owner, r.repo, r.release_workflow, r.app_name, WorkflowKind.RELEASE)
            for r in self.release_repos
        ]

    def find_workflow(self, app_name: str, kind: WorkflowKind) -> Optional[WorkflowRef]:
        for ref in self.workflows(kind):
            if ref.app_name == app_name:
                return ref
        return None

    def public_teams(self) -> Dict[str, Dict]:
        """Team table as shown to dashboard clients."""
        return {
            key: {
                "name": team.name,
                "branches": team.branches,
                "apps": team.apps,
                "permissions": {
                    action.value: sorted(role.value for role in roles)
                    for action, roles in team.permissions.items()
                },
            }
            for key, team in self.teams.items()
        }


def parse_config(raw: Dict) -> PipelineConfig:
    """Validate a raw config mapping. Raises InvalidInput on any schema error."""
    try:
        config = PipelineConfig.model_validate(raw)
    except ValidationError as e:
        raise InvalidInput(f"Invalid pipeline configuration: {e}") from e

    env_token = os.getenv("GITHUB_TOKEN")
    if env_token:
        config.token = env_token

    for username, user in config.users.items():
        unknown = [t for t in user.teams if t not in config.teams]
        if unknown:
            # Membership in an undefined team is tolerated; the gate reports NotFound on use.
            logger.warning(f"User {username} references undefined teams: {unknown}")

    return config


def load_config(path: Path = PIPELINE_CONFIG) -> PipelineConfig:
    """Load and validate the fleet configuration file."""
    if not path.exists():
        raise InvalidInput(f"Pipeline configuration not found: {path}")
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise InvalidInput(f"Pipeline configuration is not valid YAML: {e}") from e

    config = parse_config(raw)
    logger.info(
        f"Loaded pipeline config: {len(config.app_repos)} build, "
        f"{len(config.release_repos)} release workflows, {len(config.teams)} teams"
    )
    return config
