"""
Run Identifier Parser

Release pipelines encode what they build in the run display name. Two
grammars are recognised (markers match case-insensitively):

    Build:    <branch>-<app>-build-<version>
    Release:  <branch>-<app>-release-<version>-<commit>

Capture semantics:
- branch   shortest prefix, so it may itself contain dashes ("feat-x")
- app      exactly one dash-free token, the one right before the marker
- version  Build: everything after "-build-"; Release: one dash-free token
- commit   Release only: hex token of 7+ chars, truncated to 7

A branch of "prod" (any case) is reported as "main". Older pipelines named
the default branch "prod" and the dashboard has always shown them as main.

When a name does not parse, resolve_run_identity() falls back to the
metadata GitHub reports for the run, then to synthesized defaults.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .models import WorkflowKind

BUILD_NAME_PATTERN = re.compile(r"^(.+?)-([^-]+)-build-(.+)$", re.IGNORECASE)
RELEASE_NAME_PATTERN = re.compile(
    r"^(.+?)-([^-]+)-release-([^-]+)-([a-f0-9]{7,})$", re.IGNORECASE
)

PROD_BRANCH_ALIAS = "prod"
DEFAULT_BRANCH = "main"
SHORT_SHA_LENGTH = 7
UNKNOWN = "N/A"


@dataclass(frozen=True)
class ParsedRunName:
    app_name: str
    branch: str
    version: str
    commit: Optional[str] = None


def _normalize_branch(branch: str) -> str:
    if branch.lower() == PROD_BRANCH_ALIAS:
        return DEFAULT_BRANCH
    return branch


def parse_run_name(name: Optional[str], kind: WorkflowKind) -> Optional[ParsedRunName]:
    """Decode a run display name, or None when it does not follow the grammar."""
    if not name:
        return None

    if kind == WorkflowKind.RELEASE:
        match = RELEASE_NAME_PATTERN.match(name)
        if not match:
            return None
        branch, app, version, commit = (g.strip() for g in match.groups())
        return ParsedRunName(
            app_name=app,
            branch=_normalize_branch(branch),
            version=version,
            commit=commit[:SHORT_SHA_LENGTH],
        )

    match = BUILD_NAME_PATTERN.match(name)
    if not match:
        return None
    branch, app, version = (g.strip() for g in match.groups())
    return ParsedRunName(
        app_name=app,
        branch=_normalize_branch(branch),
        version=version,
    )


def resolve_run_identity(
    run: Dict[str, Any],
    kind: WorkflowKind,
    configured_app_name: str,
) -> ParsedRunName:
    """
    Final app/branch/version/commit for a raw run.

    Precedence per field: parsed name -> GitHub metadata -> default.
    """
    parsed = parse_run_name(run.get("name"), kind)
    head_sha = run.get("head_sha") or ""

    app_name = (parsed.app_name if parsed else None) or configured_app_name
    branch = (parsed.branch if parsed else None) or run.get("head_branch") or UNKNOWN
    version = (parsed.version if parsed else None) or f"build-{run.get('run_number', 0)}"
    commit = (parsed.commit if parsed else None) or head_sha[:SHORT_SHA_LENGTH] or UNKNOWN

    return ParsedRunName(app_name=app_name, branch=branch, version=version, commit=commit)
