"""
IssuePilot Orchestrator

One cycle:
  1. Heartbeat
  2. Pull open items carrying the trigger label
  3. Screen: skip items with a settled record or an existing agent comment
  4. Admit through the Capacity Gate (each admitted item gets a task record)
  5. Clarify → on ready, run the repository's configured workflow
  6. Check every item awaiting clarification for replies

Every item is isolated: an exception is logged against that item and the
cycle moves on. Cycles and single-item runs are serialised by a lock.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal

from loguru import logger
from pydantic import BaseModel, Field

from issuepilot.agents.analyst import AnalystAgent
from issuepilot.capacity import CapacityGate
from issuepilot.clarification import SIGNATURE, ClarificationFlow
from issuepilot.config_loader import (
    REPO_CONFIG_PATH,
    ConfigError,
    IssuePilotConfig,
    RepoWorkflowConfig,
    parse_repo_config,
)
from issuepilot.event_bus import EventBus
from issuepilot.executor import DevelopmentBrief, ExecutionResult, TaskExecutor
from issuepilot.remote import RemoteTransportError
from issuepilot.state import AgentStats, ItemStatus, ItemStatusValue, StateStore, utcnow
from issuepilot.tracker import Tracker, TrackerError, WorkItem
from issuepilot.vm import ProvisioningError, VMInstance, VMManager


DevelopmentStatus = Literal[
    "pending", "provisioning", "developing", "testing", "completing", "completed", "failed",
]

_PHASE_STATUS: dict[str, DevelopmentStatus] = {
    "analyze": "developing",
    "implement": "developing",
    "test": "testing",
    "validate": "testing",
    "publish": "completing",
}


# ---------------------------------------------------------------------------
# Development strategy (VM-backed workflow)
# ---------------------------------------------------------------------------

@dataclass
class DevelopmentTask:
    """One orchestration attempt; never persisted."""
    item: WorkItem
    vm: VMInstance | None = None
    status: DevelopmentStatus = "pending"
    phase: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    result: ExecutionResult | None = None


class DevelopmentStrategy:
    """Lease a VM, set it up, run the phases, always release it."""

    def __init__(self, vms: VMManager, executor: TaskExecutor, config: IssuePilotConfig):
        self.vms = vms
        self.executor = executor
        self.config = config
        self.active: dict[tuple[str, int], DevelopmentTask] = {}

    def develop(
        self,
        item: WorkItem,
        repo_config: RepoWorkflowConfig,
        clarification: str | None = None,
        on_action: Callable[[str, dict[str, Any]], None] | None = None,
    ) -> DevelopmentTask:
        task = DevelopmentTask(item=item)
        self.active[item.key] = task
        workflow = repo_config.vm_development
        brief = DevelopmentBrief(
            item=item,
            clarification=clarification,
            browser_tests=workflow.browser_tests,
            project=repo_config.project,
        )

        def note(action: str, **details: Any) -> None:
            if on_action:
                on_action(action, details)

        def on_phase(phase: str) -> None:
            task.phase = phase
            task.status = _PHASE_STATUS.get(phase, task.status)
            note("phase_started", phase=phase)

        try:
            task.status = "provisioning"
            with self.vms.lease(item.ref, size=workflow.vm_size) as vm:
                task.vm = vm
                note("vm_provisioned", vm_id=vm.id, ip=vm.ip, name=vm.name)
                self.vms.bootstrap(
                    vm,
                    item.repo_full_name,
                    self.config.executor.workdir,
                    repo_setup_script=workflow.setup_script,
                    browser_tests=workflow.browser_tests,
                )
                note("vm_setup_complete", vm_id=vm.id)
                task.result = self.executor.run_phases(vm, brief, on_phase=on_phase)
        except (ProvisioningError, RemoteTransportError) as e:
            logger.error(f"[ORCH] Environment failure for {item.ref}: {e}")
            task.result = ExecutionResult(
                success=False,
                hard_failure=True,
                failed_phase="environment",
                error=str(e),
            )
        except Exception as e:
            logger.exception(f"[ORCH] Development of {item.ref} crashed: {e}")
            task.result = ExecutionResult(
                success=False,
                hard_failure=True,
                failed_phase=task.phase or "environment",
                error=f"{type(e).__name__}: {e}",
            )
        finally:
            self.active.pop(item.key, None)
            task.completed_at = utcnow()

        task.status = "completed" if task.result.success else "failed"
        note("development_finished", success=task.result.success, pr_url=task.result.pr_url)
        return task


def success_comment(task: DevelopmentTask) -> str:
    result = task.result
    lines = [
        "🎉 **Implementation Complete!**",
        "",
        f"**Pull request:** {result.pr_url or 'opened (link not captured, see the repository PR list)'}",
        f"**Validation:** {result.summary}",
    ]
    if result.test_report is not None:
        verdict = "✅ PASSED" if result.test_report.passed else "❌ FAILED"
        lines += ["", f"**Browser tests:** {verdict}"]
        for shot in result.test_report.screenshots[:10]:
            lines.append(f"- 📸 {shot}")
    if task.completed_at:
        minutes = (task.completed_at - task.started_at).total_seconds() / 60
        lines += ["", f"Finished in {minutes:.1f} min. The development VM has been released."]
    return "\n".join(lines) + SIGNATURE


def failure_comment(task: DevelopmentTask) -> str:
    result = task.result
    lines = [
        "❌ **Implementation Failed**",
        "",
        f"**Phase:** {result.failed_phase or 'unknown'}",
        f"**Error:** {result.error or 'unknown error'}",
    ]
    tail = result.log_tail(5)
    if tail:
        lines += ["", "**Last log lines:**", "```", tail, "```"]
    lines += [
        "",
        "The development VM has been cleaned up. A maintainer can re-run this item once the cause is fixed.",
    ]
    return "\n".join(lines) + SIGNATURE


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

class CycleReport(BaseModel):
    repo: str
    started_at: datetime = Field(default_factory=utcnow)
    candidates: int = 0
    admitted: list[str] = Field(default_factory=list)
    deferred: list[str] = Field(default_factory=list)
    skipped: dict[str, str] = Field(default_factory=dict)
    outcomes: dict[str, str] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)
    clarifications: dict[str, str] = Field(default_factory=dict)


class AgentStatus(BaseModel):
    assignee: str
    stats: AgentStats
    in_flight: int
    max_concurrent_tasks: int
    awaiting_clarification: int
    active_developments: list[str] = Field(default_factory=list)
    vm_workflow_enabled: bool = False


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class Orchestrator:
    def __init__(
        self,
        tracker: Tracker,
        store: StateStore,
        gate: CapacityGate,
        clarifier: ClarificationFlow,
        analyst: AnalystAgent,
        config: IssuePilotConfig,
        development: DevelopmentStrategy | None = None,
        bus: EventBus | None = None,
    ):
        self.tracker = tracker
        self.store = store
        self.gate = gate
        self.clarifier = clarifier
        self.analyst = analyst
        self.config = config
        self.development = development
        self.bus = bus or EventBus()
        self._lock = threading.Lock()

    @property
    def _labels(self):
        return self.config.labels

    # -----------------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------------

    def run_cycle(self, repo: str) -> CycleReport:
        with self._lock:
            return self._cycle(repo)

    def handle_item(self, repo: str, number: int, force: bool = False) -> str:
        """Process one item now (webhook or CLI). Returns the outcome name."""
        with self._lock:
            if force:
                self.store.forget(repo, number)
            item = self.tracker.get_item(repo, number)
            if item is None:
                logger.warning(f"[ORCH] {repo}#{number} not found")
                return "not_found"
            if item.state != "open":
                return "closed"

            if not force:
                reason = self._screen(item)
                if reason is not None:
                    logger.info(f"[ORCH] {item.ref}: skipped ({reason})")
                    return reason

            task_id = self._admit(item)
            if task_id is None:
                return "deferred"
            return self._process(item, task_id)

    def check_clarifications(self, repo: str | None = None) -> dict[str, str]:
        with self._lock:
            return {ref: o.value for ref, o in self.clarifier.check_all(repo).items()}

    def status(self) -> AgentStatus:
        state = self.store.load()
        awaiting = [r for r in state.processed_issues if r.status == "awaiting_clarification"]
        active = [f"{r}#{n}" for (r, n) in self.development.active] if self.development else []
        return AgentStatus(
            assignee=state.config.assignee_username,
            stats=state.stats,
            in_flight=len(state.current_tasks),
            max_concurrent_tasks=state.config.max_concurrent_tasks,
            awaiting_clarification=len(awaiting),
            active_developments=active,
            vm_workflow_enabled=self.development is not None,
        )

    # -----------------------------------------------------------------------
    # Cycle
    # -----------------------------------------------------------------------

    def _cycle(self, repo: str) -> CycleReport:
        stats = self.store.record_cycle()
        report = CycleReport(repo=repo)
        logger.info(f"[ORCH] Cycle {stats.total_cycles_run} on {repo}")
        self.bus.emit("cycle_started", "orchestrator", {"repo": repo, "cycle": stats.total_cycles_run})

        assignee = self.config.agent.assignee_username if self.config.agent.require_assignment else None
        items = self.tracker.list_open_items(repo, self._labels.trigger, assignee)
        report.candidates = len(items)

        # Admission pass: every admitted item holds a task slot before any work starts.
        admitted: list[tuple[WorkItem, str]] = []
        for item in items:
            try:
                reason = self._screen(item)
                if reason is not None:
                    report.skipped[item.ref] = reason
                    continue
                task_id = self._admit(item)
                if task_id is None:
                    report.deferred.append(item.ref)
                    continue
                admitted.append((item, task_id))
                report.admitted.append(item.ref)
            except Exception as e:
                logger.error(f"[ORCH] Screening {item.ref} failed: {e}")
                report.errors[item.ref] = str(e)

        for item, task_id in admitted:
            try:
                report.outcomes[item.ref] = self._process(item, task_id)
            except Exception as e:
                logger.exception(f"[ORCH] {item.ref} failed: {e}")
                report.errors[item.ref] = str(e)

        report.clarifications = {
            ref: o.value for ref, o in self.clarifier.check_all(repo).items()
        }

        self.bus.emit("cycle_completed", "orchestrator", report.model_dump(mode="json"))
        logger.info(
            f"[ORCH] Cycle done: {len(report.admitted)} admitted, {len(report.deferred)} deferred, "
            f"{len(report.skipped)} skipped, {len(report.errors)} errors"
        )
        return report

    def _screen(self, item: WorkItem) -> str | None:
        """None when the item should be worked on, else the reason to skip it."""
        record = self.store.get_item_status(*item.key)
        if record is not None:
            if record.status == "clarification_received":
                return None
            return record.status

        # No local record, but our comment on the item means state was lost.
        own = self.config.agent.own_logins
        comments = self.tracker.list_comments(*item.key)
        if any(c.author in own for c in comments):
            self.store.upsert_item_status(item.repo_full_name, item.number, "acknowledged")
            return "already_commented"
        return None

    def _admit(self, item: WorkItem) -> str | None:
        if not self.gate.can_admit():
            logger.info(f"[ORCH] {item.ref} deferred: no capacity")
            self.bus.emit("admission_denied", "orchestrator", {"item": item.ref})
            return None
        task_id = self.store.start_task(
            "process_issue", item.repo_full_name, item.number, {"title": item.title}
        )
        self.bus.emit("admitted", "orchestrator", {"item": item.ref, "task_id": task_id})
        return task_id

    def _process(self, item: WorkItem, task_id: str) -> str:
        """Clarify, then dispatch. Always completes the task record."""
        try:
            record = self.store.get_item_status(*item.key)
            clarified = record is not None and record.status == "clarification_received"

            if not clarified:
                assessment = self.clarifier.assess(item)
                self.store.append_task_action(task_id, "assessed", {"outcome": assessment.status})
                if assessment.needs_clarification:
                    self.clarifier.request_clarification(item, assessment, task_id)
                    self.store.complete_task(task_id, "completed")
                    return "awaiting_clarification"

            outcome, ok = self._dispatch(item, task_id, record if clarified else None)
        except Exception:
            self.store.complete_task(task_id, "failed")
            raise

        self.store.complete_task(task_id, "completed" if ok else "failed")
        self.bus.emit("item_processed", "orchestrator", {"item": item.ref, "outcome": outcome})
        return outcome

    # -----------------------------------------------------------------------
    # Workflows
    # -----------------------------------------------------------------------

    def _dispatch(self, item: WorkItem, task_id: str, record: ItemStatus | None) -> tuple[str, bool]:
        try:
            repo_config = parse_repo_config(self.tracker.get_file(item.repo_full_name, REPO_CONFIG_PATH))
        except ConfigError as e:
            return self._config_error(item, str(e)), False

        workflow = repo_config.workflow_type
        self.store.append_task_action(task_id, "workflow_selected", {"workflow": workflow})
        logger.info(f"[ORCH] {item.ref}: running {workflow!r} workflow")

        if not repo_config.is_known:
            return self._config_error(item, f'Unknown workflow type: "{workflow}"'), False
        if workflow == "simple_comment":
            return self._simple_comment(item), True
        if workflow == "github_actions":
            return self._github_actions(item, repo_config)
        if self.development is None:
            return self._config_error(
                item, "The `vm_development` workflow is not enabled on this agent (no compute credentials)."
            ), False
        return self._vm_development(item, task_id, repo_config, record)

    def _config_error(self, item: WorkItem, message: str) -> str:
        logger.error(f"[ORCH] Configuration error on {item.ref}: {message}")
        comment = self.tracker.post_comment(item.repo_full_name, item.number, (
            f"❌ **Configuration Error**\n\n{message}\n\n"
            f"Please check your `{REPO_CONFIG_PATH}` file."
            f"{SIGNATURE}"
        ))
        self.store.upsert_item_status(
            item.repo_full_name, item.number, "skipped",
            comment_id=comment.id, comment_url=comment.url,
        )
        return "config_error"

    def _simple_comment(self, item: WorkItem) -> str:
        analysis = self.analyst.run(self.clarifier.context_for(item))
        body = analysis or "This issue looks ready to work on. 👍"
        comment = self.tracker.post_comment(item.repo_full_name, item.number, body + SIGNATURE)
        self._swap_labels(item, remove=[self._labels.trigger], add=[])
        self.store.upsert_item_status(
            item.repo_full_name, item.number, "responded",
            comment_id=comment.id, comment_url=comment.url,
        )
        return "responded"

    def _github_actions(self, item: WorkItem, repo_config: RepoWorkflowConfig) -> tuple[str, bool]:
        workflow = repo_config.github_actions
        try:
            self.tracker.dispatch_workflow(item.repo_full_name, workflow.workflow_file, workflow.ref, {
                "issue_number": str(item.number),
                "issue_title": item.title,
                "issue_body": item.body[:10000],
                "issue_author": item.author,
                "repository": item.repo_full_name,
            })
        except TrackerError as e:
            logger.error(f"[ORCH] Workflow dispatch failed on {item.ref}: {e}")
            comment = self.tracker.post_comment(item.repo_full_name, item.number, (
                "❌ **Workflow Trigger Failed**\n\n"
                f"I couldn't dispatch `{workflow.workflow_file}`. Please check that the workflow exists, "
                "accepts `workflow_dispatch` and that I have permission to run it."
                f"{SIGNATURE}"
            ))
            self.store.upsert_item_status(
                item.repo_full_name, item.number, "skipped",
                comment_id=comment.id, comment_url=comment.url,
            )
            return "dispatch_failed", False

        comment = self.tracker.post_comment(item.repo_full_name, item.number, (
            "🚀 **Ready to Implement!**\n\n"
            f"I've triggered `{workflow.workflow_file}` with this issue's context and will follow up from there."
            f"{SIGNATURE}"
        ))
        self._swap_labels(item, remove=[self._labels.trigger], add=[self._labels.implementing])
        self.store.upsert_item_status(
            item.repo_full_name, item.number, "responded",
            comment_id=comment.id, comment_url=comment.url,
        )
        return "workflow_dispatched", True

    def _vm_development(
        self,
        item: WorkItem,
        task_id: str,
        repo_config: RepoWorkflowConfig,
        record: ItemStatus | None,
    ) -> tuple[str, bool]:
        self._swap_labels(item, remove=[], add=[self._labels.in_progress])
        self.tracker.post_comment(item.repo_full_name, item.number, (
            "🚀 **Starting development**\n\n"
            "I'm leasing a fresh VM for this issue. I'll analyze, implement, validate and open a "
            "pull request, then release the VM. I'll report back here either way."
            f"{SIGNATURE}"
        ))

        clarification = self._author_answers(item, record)
        # From here on the item must not be re-armed, whatever happens to the session.
        self.store.upsert_item_status(item.repo_full_name, item.number, "acknowledged")
        task = self.development.develop(
            item,
            repo_config,
            clarification=clarification,
            on_action=lambda action, details: self.store.append_task_action(task_id, action, details),
        )

        ok = task.result.success
        status = "development_completed" if ok else "skipped"
        self.store.upsert_item_status(item.repo_full_name, item.number, status)
        self._report_development(item, task, status)
        return ("development_completed" if ok else "development_failed"), ok

    def _report_development(self, item: WorkItem, task: DevelopmentTask, status: ItemStatusValue) -> None:
        """Post the outcome comment and labels. The outcome is already recorded."""
        ok = task.result.success
        body = success_comment(task) if ok else failure_comment(task)
        try:
            comment = self.tracker.post_comment(item.repo_full_name, item.number, body)
        except TrackerError as e:
            logger.error(f"[ORCH] Could not report the outcome on {item.ref}: {e}")
            self.bus.emit("report_failed", "orchestrator", {"item": item.ref, "error": str(e)})
        else:
            self.store.upsert_item_status(
                item.repo_full_name, item.number, status,
                comment_id=comment.id, comment_url=comment.url,
            )
        self._swap_labels(
            item,
            remove=[self._labels.in_progress, self._labels.trigger],
            add=[self._labels.completed if ok else self._labels.failed],
        )

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _author_answers(self, item: WorkItem, record: ItemStatus | None) -> str | None:
        """Human replies since the first clarification question, for the brief."""
        if record is None or record.clarification_request is None:
            return None
        own = self.config.agent.own_logins
        asked_at = record.clarification_request.requested_at
        replies = [
            c for c in self.tracker.list_comments(*item.key)
            if c.author not in own and c.created_at > asked_at
        ]
        if not replies:
            return None
        return "\n\n".join(f"{c.author}: {c.body}" for c in replies)

    def _swap_labels(self, item: WorkItem, remove: list[str], add: list[str]) -> None:
        try:
            for label in remove:
                self.tracker.remove_label(item.repo_full_name, item.number, label)
            if add:
                self.tracker.add_labels(item.repo_full_name, item.number, add)
        except TrackerError as e:
            logger.warning(f"[ORCH] Label update failed on {item.ref}: {e}")
