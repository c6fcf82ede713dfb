"""
Tracker client: GitHub issues, comments, labels and assignees.

Thin wrapper over the `gh` CLI (`gh api`), which carries authentication
(GH_TOKEN) and rate-limit handling. No state of its own.
"""

from __future__ import annotations

import base64
import json
import subprocess
from datetime import datetime
from typing import Any, Protocol
from urllib.parse import quote, urlencode

from loguru import logger
from pydantic import BaseModel, Field


class TrackerError(Exception):
    pass


class WorkItem(BaseModel):
    repo_full_name: str
    number: int
    title: str
    body: str = ""
    labels: list[str] = Field(default_factory=list)
    author: str = ""
    assignees: list[str] = Field(default_factory=list)
    state: str = "open"
    created_at: datetime | None = None
    updated_at: datetime | None = None
    url: str = ""

    @property
    def key(self) -> tuple[str, int]:
        return (self.repo_full_name, self.number)

    @property
    def ref(self) -> str:
        return f"{self.repo_full_name}#{self.number}"

    @classmethod
    def from_api(cls, repo_full_name: str, data: dict[str, Any]) -> "WorkItem":
        return cls(
            repo_full_name=repo_full_name,
            number=data["number"],
            title=data.get("title") or "",
            body=data.get("body") or "",
            labels=[lbl["name"] if isinstance(lbl, dict) else str(lbl) for lbl in data.get("labels", [])],
            author=(data.get("user") or {}).get("login", ""),
            assignees=[a["login"] for a in data.get("assignees") or []],
            state=data.get("state", "open"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            url=data.get("html_url", ""),
        )


class Comment(BaseModel):
    id: int
    body: str = ""
    author: str = ""
    created_at: datetime
    url: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Comment":
        return cls(
            id=data["id"],
            body=data.get("body") or "",
            author=(data.get("user") or {}).get("login", ""),
            created_at=data["created_at"],
            url=data.get("html_url", ""),
        )


class Tracker(Protocol):
    """What the orchestrator needs from an issue tracker."""

    def list_open_items(self, repo: str, label: str, assignee: str | None = None) -> list[WorkItem]: ...
    def get_item(self, repo: str, number: int) -> WorkItem | None: ...
    def list_comments(self, repo: str, number: int, since: datetime | None = None) -> list[Comment]: ...
    def post_comment(self, repo: str, number: int, body: str) -> Comment: ...
    def add_labels(self, repo: str, number: int, labels: list[str]) -> None: ...
    def remove_label(self, repo: str, number: int, label: str) -> None: ...
    def add_assignees(self, repo: str, number: int, logins: list[str]) -> None: ...
    def remove_assignees(self, repo: str, number: int, logins: list[str]) -> None: ...
    def get_file(self, repo: str, path: str) -> str | None: ...
    def dispatch_workflow(self, repo: str, workflow_file: str, ref: str, inputs: dict[str, str]) -> None: ...


# ---------------------------------------------------------------------------
# gh-backed implementation
# ---------------------------------------------------------------------------

class GitHubTracker:
    def __init__(self, gh_binary: str = "gh", timeout: int = 30):
        self.gh_binary = gh_binary
        self.timeout = timeout

    def _api(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        allow_404: bool = False,
    ) -> Any:
        if params:
            path = f"{path}?{urlencode(params)}"
        cmd = [
            self.gh_binary, "api",
            "-X", method,
            "-H", "Accept: application/vnd.github+json",
            path,
        ]
        if payload is not None:
            cmd += ["--input", "-"]

        logger.debug(f"[TRACKER] {method} {path}")
        try:
            result = subprocess.run(
                cmd,
                input=json.dumps(payload) if payload is not None else None,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise TrackerError(f"`{self.gh_binary}` not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise TrackerError(f"{method} {path} timed out after {self.timeout}s") from e

        if result.returncode != 0:
            if allow_404 and "HTTP 404" in result.stderr:
                return None
            raise TrackerError(f"{method} {path} failed: {result.stderr.strip()}")

        out = result.stdout.strip()
        return json.loads(out) if out else None

    def list_open_items(self, repo: str, label: str, assignee: str | None = None) -> list[WorkItem]:
        params: dict[str, Any] = {"state": "open", "labels": label, "per_page": 100}
        if assignee:
            params["assignee"] = assignee
        data = self._api("GET", f"repos/{repo}/issues", params=params) or []
        # The issues endpoint also returns pull requests.
        return [WorkItem.from_api(repo, d) for d in data if "pull_request" not in d]

    def get_item(self, repo: str, number: int) -> WorkItem | None:
        data = self._api("GET", f"repos/{repo}/issues/{number}", allow_404=True)
        return WorkItem.from_api(repo, data) if data else None

    def list_comments(self, repo: str, number: int, since: datetime | None = None) -> list[Comment]:
        params: dict[str, Any] = {"per_page": 100}
        if since is not None:
            params["since"] = since.isoformat()
        data = self._api("GET", f"repos/{repo}/issues/{number}/comments", params=params) or []
        return [Comment.from_api(d) for d in data]

    def post_comment(self, repo: str, number: int, body: str) -> Comment:
        data = self._api("POST", f"repos/{repo}/issues/{number}/comments", payload={"body": body})
        comment = Comment.from_api(data)
        logger.info(f"[TRACKER] Commented on {repo}#{number}: {comment.url}")
        return comment

    def add_labels(self, repo: str, number: int, labels: list[str]) -> None:
        self._api("POST", f"repos/{repo}/issues/{number}/labels", payload={"labels": labels})

    def remove_label(self, repo: str, number: int, label: str) -> None:
        # Removing a label that is not present is not an error for us.
        self._api("DELETE", f"repos/{repo}/issues/{number}/labels/{quote(label, safe='')}", allow_404=True)

    def add_assignees(self, repo: str, number: int, logins: list[str]) -> None:
        self._api("POST", f"repos/{repo}/issues/{number}/assignees", payload={"assignees": logins})

    def remove_assignees(self, repo: str, number: int, logins: list[str]) -> None:
        self._api("DELETE", f"repos/{repo}/issues/{number}/assignees", payload={"assignees": logins})

    def get_file(self, repo: str, path: str) -> str | None:
        data = self._api("GET", f"repos/{repo}/contents/{path}", allow_404=True)
        if not data or "content" not in data:
            return None
        return base64.b64decode(data["content"]).decode("utf-8")

    def dispatch_workflow(self, repo: str, workflow_file: str, ref: str, inputs: dict[str, str]) -> None:
        self._api(
            "POST",
            f"repos/{repo}/actions/workflows/{workflow_file}/dispatches",
            payload={"ref": ref, "inputs": inputs},
        )
        logger.info(f"[TRACKER] Dispatched {workflow_file}@{ref} on {repo}")


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------

class DryRunTracker:
    """Reads go to the real tracker; writes are logged and skipped."""

    def __init__(self, inner: Tracker):
        self.inner = inner
        self._next_id = 1

    def list_open_items(self, repo: str, label: str, assignee: str | None = None) -> list[WorkItem]:
        return self.inner.list_open_items(repo, label, assignee)

    def get_item(self, repo: str, number: int) -> WorkItem | None:
        return self.inner.get_item(repo, number)

    def list_comments(self, repo: str, number: int, since: datetime | None = None) -> list[Comment]:
        return self.inner.list_comments(repo, number, since)

    def get_file(self, repo: str, path: str) -> str | None:
        return self.inner.get_file(repo, path)

    def post_comment(self, repo: str, number: int, body: str) -> Comment:
        logger.warning(f"[DRY-RUN] Would comment on {repo}#{number}:\n{body}")
        comment = Comment(id=-self._next_id, body=body, created_at=datetime.now().astimezone())
        self._next_id += 1
        return comment

    def add_labels(self, repo: str, number: int, labels: list[str]) -> None:
        logger.warning(f"[DRY-RUN] Would add labels {labels} to {repo}#{number}")

    def remove_label(self, repo: str, number: int, label: str) -> None:
        logger.warning(f"[DRY-RUN] Would remove label {label!r} from {repo}#{number}")

    def add_assignees(self, repo: str, number: int, logins: list[str]) -> None:
        logger.warning(f"[DRY-RUN] Would assign {logins} to {repo}#{number}")

    def remove_assignees(self, repo: str, number: int, logins: list[str]) -> None:
        logger.warning(f"[DRY-RUN] Would unassign {logins} from {repo}#{number}")

    def dispatch_workflow(self, repo: str, workflow_file: str, ref: str, inputs: dict[str, str]) -> None:
        logger.warning(f"[DRY-RUN] Would dispatch {workflow_file}@{ref} on {repo}")
