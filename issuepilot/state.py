"""
IssuePilot State Store

Single-document durable registry: per-item status records, in-flight
task records and agent stats. Every read is a full load, every write a
full atomic save (temp file + rename). Missing keys from older documents
are backfilled by model defaults.
"""

from __future__ import annotations

import os
import secrets
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from issuepilot.config_loader import AgentConfig


class StateStoreError(Exception):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


ItemStatusValue = Literal[
    "responded",
    "acknowledged",
    "skipped",
    "awaiting_clarification",
    "clarification_received",
    "development_completed",
]

TaskStatus = Literal["pending", "in_progress", "completed", "failed"]


# ---------------------------------------------------------------------------
# Persisted models
# ---------------------------------------------------------------------------

class _Persisted(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ClarificationRequest(_Persisted):
    requested_at: datetime = Field(default_factory=utcnow)
    questions: str
    original_assignee: str
    last_checked_for_response: datetime | None = None


class ItemStatus(_Persisted):
    repo_full_name: str
    issue_number: int
    status: ItemStatusValue
    processed_at: datetime = Field(default_factory=utcnow)
    comment_id: int | None = None
    comment_url: str | None = None
    clarification_request: ClarificationRequest | None = None

    @property
    def key(self) -> tuple[str, int]:
        return (self.repo_full_name, self.issue_number)


class TaskAction(_Persisted):
    type: str
    timestamp: datetime = Field(default_factory=utcnow)
    details: dict[str, Any] = Field(default_factory=dict)


class TaskRecord(_Persisted):
    id: str
    type: str
    issue_number: int
    repo_full_name: str
    status: TaskStatus = "in_progress"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    actions: list[TaskAction] = Field(default_factory=list)


class AgentStats(_Persisted):
    total_issues_processed: int = 0
    total_comments_posted: int = 0
    total_cycles_run: int = 0
    last_cycle_at: datetime | None = None


class AgentSettings(_Persisted):
    assignee_username: str = "issuepilot-agent"
    max_concurrent_tasks: int = 3
    default_repo: str | None = None


class AgentState(_Persisted):
    last_active_at: datetime = Field(default_factory=utcnow)
    processed_issues: list[ItemStatus] = Field(default_factory=list)
    current_tasks: list[TaskRecord] = Field(default_factory=list)
    completed_tasks: list[TaskRecord] = Field(default_factory=list)
    stats: AgentStats = Field(default_factory=AgentStats)
    config: AgentSettings = Field(default_factory=AgentSettings)

    def find_item(self, repo_full_name: str, issue_number: int) -> ItemStatus | None:
        for record in self.processed_issues:
            if record.key == (repo_full_name, issue_number):
                return record
        return None

    def find_task(self, task_id: str) -> TaskRecord | None:
        for task in self.current_tasks:
            if task.id == task_id:
                return task
        return None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


def new_task_id() -> str:
    """Opaque task id: epoch milliseconds plus 9 random hex chars."""
    return f"task_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class StateStore:
    """
    File-backed AgentState repository.

    Every public mutator is a read-modify-write of the whole document.
    Callers must serialize cycles against one store (see Orchestrator).
    """

    def __init__(self, path: Path, settings: AgentConfig | None = None):
        self.path = Path(path)
        self.settings = settings

    # -- document I/O -------------------------------------------------------

    def load(self) -> AgentState:
        """Load the document, creating a default one on first use."""
        if not self.path.exists():
            logger.info(f"[STATE] No state at {self.path}, creating default document")
            state = AgentState()
            self._apply_settings(state)
            self.save(state)
            return state

        try:
            raw = self.path.read_text(encoding="utf-8")
            state = AgentState.model_validate_json(raw)
        except OSError as e:
            raise StateStoreError(f"Failed to read state {self.path}: {e}") from e
        except ValidationError as e:
            raise StateStoreError(f"Corrupt state document {self.path}: {e}") from e

        self._apply_settings(state)
        return state

    def save(self, state: AgentState) -> None:
        """Atomically replace the document, refreshing last_active_at."""
        state.last_active_at = utcnow()
        payload = state.to_json()

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StateStoreError(f"Failed to write state {self.path}: {e}") from e

    def _apply_settings(self, state: AgentState) -> None:
        # Runtime configuration is authoritative over the persisted copy.
        if self.settings is None:
            return
        state.config.assignee_username = self.settings.assignee_username
        state.config.max_concurrent_tasks = self.settings.max_concurrent_tasks
        if self.settings.default_repo:
            state.config.default_repo = self.settings.default_repo

    # -- item status --------------------------------------------------------

    def has_processed(self, repo_full_name: str, issue_number: int) -> bool:
        return self.load().find_item(repo_full_name, issue_number) is not None

    def get_item_status(self, repo_full_name: str, issue_number: int) -> ItemStatus | None:
        return self.load().find_item(repo_full_name, issue_number)

    def upsert_item_status(
        self,
        repo_full_name: str,
        issue_number: int,
        status: ItemStatusValue,
        comment_id: int | None = None,
        comment_url: str | None = None,
        clarification: ClarificationRequest | None = None,
    ) -> ItemStatus:
        """
        Replace or insert the record for (repo, number).

        A clarification request is written only alongside
        awaiting_clarification; any other status keeps the prior request
        and stamps last_checked_for_response.
        """
        state = self.load()
        existing = state.find_item(repo_full_name, issue_number)

        if status == "awaiting_clarification" and clarification is not None:
            request = clarification
        elif existing and existing.clarification_request:
            request = existing.clarification_request.model_copy(
                update={"last_checked_for_response": utcnow()}
            )
        else:
            request = None

        record = ItemStatus(
            repo_full_name=repo_full_name,
            issue_number=issue_number,
            status=status,
            comment_id=comment_id,
            comment_url=comment_url,
            clarification_request=request,
        )

        if existing is None:
            state.processed_issues.append(record)
            state.stats.total_issues_processed += 1
        else:
            index = state.processed_issues.index(existing)
            state.processed_issues[index] = record

        if comment_id is not None:
            state.stats.total_comments_posted += 1

        self.save(state)
        logger.debug(f"[STATE] {repo_full_name}#{issue_number} → {status}")
        return record

    def awaiting_clarification(self, repo_full_name: str | None = None) -> list[ItemStatus]:
        state = self.load()
        return [
            r for r in state.processed_issues
            if r.status == "awaiting_clarification"
            and r.clarification_request is not None
            and (repo_full_name is None or r.repo_full_name == repo_full_name)
        ]

    def forget(self, repo_full_name: str, issue_number: int) -> bool:
        """Drop the record for an item so it is treated as new."""
        state = self.load()
        existing = state.find_item(repo_full_name, issue_number)
        if existing is None:
            return False
        state.processed_issues.remove(existing)
        self.save(state)
        logger.info(f"[STATE] Forgot {repo_full_name}#{issue_number}")
        return True

    # -- tasks --------------------------------------------------------------

    def start_task(
        self,
        task_type: str,
        repo_full_name: str,
        issue_number: int,
        context: dict[str, Any] | None = None,
    ) -> str:
        state = self.load()
        task = TaskRecord(
            id=new_task_id(),
            type=task_type,
            issue_number=issue_number,
            repo_full_name=repo_full_name,
            status="in_progress",
            context=context or {},
        )
        state.current_tasks.append(task)
        self.save(state)
        logger.debug(f"[STATE] Task {task.id} started ({task_type} {repo_full_name}#{issue_number})")
        return task.id

    def complete_task(self, task_id: str, status: TaskStatus = "completed") -> TaskRecord | None:
        """Move a task from current to completed. No-op if it already moved."""
        state = self.load()
        task = state.find_task(task_id)
        if task is None:
            logger.warning(f"[STATE] complete_task: {task_id} is not in flight")
            return None
        state.current_tasks.remove(task)
        task.status = status
        task.completed_at = utcnow()
        state.completed_tasks.append(task)
        self.save(state)
        logger.debug(f"[STATE] Task {task_id} → {status}")
        return task

    def append_task_action(self, task_id: str, action_type: str, details: dict[str, Any] | None = None) -> None:
        state = self.load()
        task = state.find_task(task_id)
        if task is None:
            logger.warning(f"[STATE] append_task_action: {task_id} is not in flight")
            return
        task.actions.append(TaskAction(type=action_type, details=details or {}))
        self.save(state)

    def current_tasks(self) -> list[TaskRecord]:
        return self.load().current_tasks

    def sweep_stale_tasks(self, max_age: timedelta) -> list[str]:
        """Fail in-progress tasks older than max_age (orphans of a crashed process)."""
        state = self.load()
        cutoff = utcnow() - max_age
        stale = [t for t in state.current_tasks if t.started_at < cutoff]
        if not stale:
            return []

        for task in stale:
            state.current_tasks.remove(task)
            task.actions.append(TaskAction(
                type="swept_stale",
                details={"max_age_minutes": int(max_age.total_seconds() // 60)},
            ))
            task.status = "failed"
            task.completed_at = utcnow()
            state.completed_tasks.append(task)

        self.save(state)
        swept = [t.id for t in stale]
        logger.warning(f"[STATE] Swept {len(swept)} stale task(s): {', '.join(swept)}")
        return swept

    # -- stats --------------------------------------------------------------

    def record_cycle(self) -> AgentStats:
        state = self.load()
        state.stats.total_cycles_run += 1
        state.stats.last_cycle_at = utcnow()
        self.save(state)
        return state.stats
