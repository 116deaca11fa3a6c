"""
GitHub events dataset (``github_events``).

Accepts Events API records as well as commit, issue and pull request
objects from the repository endpoints.
"""

from typing import Any, Dict, Optional

from ingestion.transformers.base import DatasetSchema, dig, first_present, format_timestamp
from ingestion.transformers.registry import register_schema

TIMESTAMP_FIELDS = ("created_at", "updated_at", "pushed_at", "timestamp", "commit.author.date")
METADATA_EXCLUDED = ("ref", "commits")
BRANCH_PREFIX = "refs/heads/"


def determine_event_type(raw: Dict[str, Any]) -> str:
    """Explicit type, then payload action, then which keys are present."""
    if raw.get("type") is not None:
        return str(raw["type"])
    action = dig(raw, "payload.action")
    if action is not None:
        return str(action)
    if raw.get("commits") is not None:
        return "push"
    if raw.get("pull_request") is not None:
        return "pull_request"
    if raw.get("issue") is not None:
        return "issue"
    return "unknown"


def extract_commit_count(raw: Dict[str, Any]) -> int:
    for commits in (dig(raw, "payload.commits"), raw.get("commits")):
        if isinstance(commits, list):
            return len(commits)
    return 0


def extract_branch(raw: Dict[str, Any]) -> Optional[str]:
    ref = first_present(raw, "payload.ref", "ref")
    if isinstance(ref, str) and ref.startswith(BRANCH_PREFIX):
        return ref[len(BRANCH_PREFIX):]
    return ref


@register_schema
class GitHubDatasetSchema(DatasetSchema):
    source_name = "github"
    dataset_name = "github_events"
    version = "1.0"

    def get_fields(self) -> Dict[str, Dict[str, str]]:
        return {
            "repository_name": {"type": "string", "description": "Full name of the repository (owner/repo)"},
            "repository_id": {"type": "integer", "description": "GitHub repository ID"},
            "event_type": {"type": "string", "description": "Type of event (push, pull_request, issue, ...)"},
            "actor": {"type": "string", "description": "GitHub username of the actor"},
            "actor_id": {"type": "integer", "description": "GitHub user ID of the actor"},
            "timestamp": {"type": "datetime", "description": "ISO 8601 timestamp of the event"},
            "commit_count": {"type": "integer", "description": "Number of commits (push events)"},
            "branch": {"type": "string", "description": "Branch name (push events)"},
            "is_public": {"type": "boolean", "description": "Whether the repository is public"},
            "metadata": {"type": "json", "description": "Additional event-specific metadata"},
        }

    def get_source_mapping(self) -> Dict[str, str]:
        return {
            "repository.full_name": "repository_name",
            "repository.id": "repository_id",
            "type": "event_type",
            "actor.login": "actor",
            "actor.id": "actor_id",
            "created_at": "timestamp",
            "payload.commits": "commit_count (array length)",
            "payload.ref": "branch",
            "repository.private": "is_public (inverted)",
        }

    def prepare(self, payload: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        context = context or {}
        prepared = dict(payload)

        repository = context.get("repository")
        if repository and not prepared.get("repository") and not prepared.get("repo"):
            prepared["repository"] = {"full_name": repository, "name": repository}

        # Commit / issue / pull request objects carry no type of their own
        event_type = context.get("event_type")
        if event_type and event_type != "unknown" and prepared.get("type") is None:
            prepared["type"] = event_type

        return prepared

    def transform(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        repository = first_present(payload, "repository", "repo", default={})
        if not isinstance(repository, dict):
            repository = {}
        actor = first_present(payload, "actor", "user", "sender", "author", default={})
        if not isinstance(actor, dict):
            actor = {}

        event_type = determine_event_type(payload)

        return {
            "repository_name": first_present(repository, "full_name", "name", default="unknown"),
            "repository_id": repository.get("id"),
            "event_type": event_type,
            "actor": first_present(actor, "login", "name", default="unknown"),
            "actor_id": actor.get("id"),
            "timestamp": format_timestamp(first_present(payload, *TIMESTAMP_FIELDS)),
            "commit_count": extract_commit_count(payload),
            "branch": extract_branch(payload),
            "is_public": repository.get("private") is False,
            "metadata": self.extract_metadata(payload, event_type),
        }

    def extract_metadata(self, payload: Dict[str, Any], event_type: str) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {}

        inner = payload.get("payload")
        if isinstance(inner, dict):
            metadata.update({k: v for k, v in inner.items() if k not in METADATA_EXCLUDED})

        if event_type == "pull_request":
            metadata["pr_number"] = dig(payload, "payload.number")
            metadata["pr_state"] = dig(payload, "payload.pull_request.state")
        elif event_type == "issue":
            metadata["issue_number"] = dig(payload, "payload.issue.number")
            metadata["issue_state"] = dig(payload, "payload.issue.state")

        return metadata
