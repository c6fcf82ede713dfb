"""
Remote Task Executor

Drives one development session on a leased VM:

    analyze → implement → [test] → validate → publish

Each phase is one remote command with its own timeout and tool
allow-list. Logical success comes from the validate phase's sentinel
line, never from exit codes alone. A transport error (timeout, lost
connection) aborts the remaining phases as a hard failure with the
partial log kept; nothing is retried within the same lease.
"""

from __future__ import annotations

import re
import shlex
import time
from typing import Callable

from loguru import logger
from pydantic import BaseModel, Field

from issuepilot.config_loader import ExecutorConfig, PhaseConfig, ProjectInfo
from issuepilot.event_bus import EventBus
from issuepilot.remote import RemoteShell, RemoteTransportError
from issuepilot.tracker import WorkItem
from issuepilot.vm import VMInstance


VALIDATION_SUCCESS = "VALIDATION_SUCCESS:"
VALIDATION_FAILED = "VALIDATION_FAILED:"
TESTS_PASSED = "TESTS_PASSED"
TESTS_FAILED = "TESTS_FAILED"

_SCREENSHOT_RE = re.compile(r"screenshot[s]?\s*(?:saved|taken|captured)[:\s]+([^\n]+)", re.IGNORECASE)
_PR_URL_RE = re.compile(r"https://github\.com/[^\s]+/pull/\d+")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class PhaseRecord(BaseModel):
    phase: str
    command: str
    exit_code: int | None = None
    output: str = ""
    duration_s: float = 0.0
    error: str | None = None


class DevelopmentBrief(BaseModel):
    item: WorkItem
    clarification: str | None = None
    browser_tests: bool = False
    project: ProjectInfo = Field(default_factory=ProjectInfo)


class BrowserTestReport(BaseModel):
    passed: bool
    screenshots: list[str] = Field(default_factory=list)
    report: str = ""


class ExecutionResult(BaseModel):
    success: bool
    summary: str = ""
    pr_url: str | None = None
    test_report: BrowserTestReport | None = None
    hard_failure: bool = False
    failed_phase: str | None = None
    error: str | None = None
    log: list[PhaseRecord] = Field(default_factory=list)

    def log_tail(self, lines: int = 5) -> str:
        text = "\n".join(r.output.strip() for r in self.log if r.output.strip())
        return "\n".join(text.splitlines()[-lines:])


class PhaseFailed(Exception):
    """A phase finished but cannot be built upon (non-zero exit)."""

    def __init__(self, phase: str, message: str):
        super().__init__(message)
        self.phase = phase


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------

def parse_validation(output: str) -> tuple[bool, str]:
    """(success, summary) from the validate phase; no sentinel means failure."""
    failed = re.search(rf"{VALIDATION_FAILED}\s*(.+)", output)
    if failed:
        return False, failed.group(1).strip()
    succeeded = re.search(rf"{VALIDATION_SUCCESS}\s*(.+)", output)
    if succeeded:
        return True, succeeded.group(1).strip()
    return False, "Validation produced no VALIDATION_SUCCESS/VALIDATION_FAILED line"


def extract_screenshots(output: str) -> list[str]:
    return [m.strip() for m in _SCREENSHOT_RE.findall(output)]


def extract_pr_url(output: str) -> str | None:
    match = _PR_URL_RE.search(output)
    return match.group(0) if match else None


def parse_test_output(output: str) -> BrowserTestReport:
    if TESTS_FAILED in output or "❌ FAILED" in output:
        passed = False
    else:
        passed = TESTS_PASSED in output or "✅" in output
    return BrowserTestReport(passed=passed, screenshots=extract_screenshots(output), report=output[-4000:])


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

def _issue_block(brief: DevelopmentBrief) -> str:
    item = brief.item
    text = f"Issue #{item.number}: {item.title}\n\n{item.body or 'No description provided'}"
    if brief.clarification:
        text += f"\n\nClarifications from the author:\n{brief.clarification}"
    if brief.project.name or brief.project.tech_stack:
        text += f"\n\nProject: {brief.project.name} ({', '.join(brief.project.tech_stack)})"
        if brief.project.key_directories:
            text += f"\nKey directories: {', '.join(brief.project.key_directories)}"
    return text


def analyze_prompt(brief: DevelopmentBrief) -> str:
    return f"""Analyze this repository and produce an implementation plan for the issue below.
Do not modify any files yet.

{_issue_block(brief)}

List the files to change, the approach, and how to verify it."""


def implement_prompt(brief: DevelopmentBrief, plan: str) -> str:
    return f"""Implement the issue below following the plan. Keep changes minimal and in scope.
Add or update tests where the project has them.

{_issue_block(brief)}

Plan:
{plan[-6000:]}"""


def browser_test_prompt(brief: DevelopmentBrief) -> str:
    return f"""Start the application and exercise the change for the issue below in a browser.
Take screenshots of each verified scenario and say where they were saved.
End with a line containing {TESTS_PASSED} or {TESTS_FAILED}.

{_issue_block(brief)}"""


def validate_prompt(brief: DevelopmentBrief) -> str:
    return f"""Run the project's existing checks (tests, linters, build) against the current changes.

{_issue_block(brief)}

If everything looks good, respond with "{VALIDATION_SUCCESS} [summary]"
If there are issues, respond with "{VALIDATION_FAILED} [issues]\""""


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class TaskExecutor:
    def __init__(self, shell: RemoteShell, config: ExecutorConfig, bus: EventBus | None = None):
        self.shell = shell
        self.config = config
        self.bus = bus or EventBus()

    def _phase(self, name: str) -> PhaseConfig | None:
        return self.config.phases.get(name)

    def agent_command(self, prompt: str, tools: list[str]) -> str:
        cmd = f"cd {shlex.quote(self.config.workdir)} && {self.config.agent_command} -p {shlex.quote(prompt)}"
        if tools:
            cmd += f" --allowedTools {shlex.quote(','.join(tools))}"
        cmd += f" --output-format {self.config.output_format}"
        return cmd

    def publish_command(self, brief: DevelopmentBrief, summary: str) -> str:
        item = brief.item
        branch = f"{self.config.branch_prefix}{item.number}"
        title = f"Fix #{item.number}: {item.title}"[:240]
        body = (
            f"Closes #{item.number}\n\n"
            f"### Validation\n{summary}\n\n"
            f"---\n*Opened by IssuePilot from an automated development session.*"
        )
        q = shlex.quote
        return " && ".join([
            f"cd {q(self.config.workdir)}",
            f"git checkout -B {q(branch)}",
            "git add -A",
            f"(git diff --cached --quiet || git commit -m {q(title)})",
            f"git push --force -u origin {q(branch)}",
            f"gh pr create --title {q(title)} --body {q(body)} --head {q(branch)}",
        ])

    def _run(self, vm: VMInstance, name: str, command: str, log: list[PhaseRecord]) -> PhaseRecord:
        phase_config = self._phase(name)
        timeout = phase_config.timeout_seconds if phase_config else 300
        logger.info(f"[EXEC] {vm.ticket_id}: {name} (≤{timeout}s)")
        self.bus.emit("phase_started", "executor", {"ticket": vm.ticket_id, "phase": name})

        record = PhaseRecord(phase=name, command=command[:500])
        log.append(record)
        start = time.monotonic()
        try:
            result = self.shell.run(vm, command, timeout=timeout)
        except RemoteTransportError as e:
            record.error = str(e)
            record.duration_s = round(time.monotonic() - start, 1)
            raise

        record.exit_code = result.exit_code
        record.output = result.stdout + (f"\n[stderr]\n{result.stderr}" if result.stderr.strip() else "")
        record.duration_s = round(time.monotonic() - start, 1)
        self.bus.emit("phase_completed", "executor", {
            "ticket": vm.ticket_id, "phase": name,
            "exit_code": result.exit_code, "duration_s": record.duration_s,
        })
        return record

    def _agent_phase(self, vm: VMInstance, name: str, prompt: str, log: list[PhaseRecord]) -> PhaseRecord:
        phase_config = self._phase(name)
        tools = phase_config.allowed_tools if phase_config else []
        return self._run(vm, name, self.agent_command(prompt, tools), log)

    def run_phases(
        self,
        vm: VMInstance,
        brief: DevelopmentBrief,
        on_phase: Callable[[str], None] | None = None,
    ) -> ExecutionResult:
        vm.status = "running"
        log: list[PhaseRecord] = []
        current = "analyze"
        test_report: BrowserTestReport | None = None

        def enter(phase: str) -> None:
            nonlocal current
            current = phase
            if on_phase:
                on_phase(phase)

        try:
            enter("analyze")
            plan = self._agent_phase(vm, "analyze", analyze_prompt(brief), log)
            if plan.exit_code != 0:
                raise PhaseFailed("analyze", f"analysis exited {plan.exit_code}")

            enter("implement")
            impl = self._agent_phase(vm, "implement", implement_prompt(brief, plan.output), log)
            if impl.exit_code != 0:
                raise PhaseFailed("implement", f"implementation exited {impl.exit_code}")

            if brief.browser_tests and self._phase("test") is not None:
                enter("test")
                tested = self._agent_phase(vm, "test", browser_test_prompt(brief), log)
                test_report = parse_test_output(tested.output)
                if tested.exit_code != 0:
                    test_report.passed = False
                logger.info(f"[EXEC] {vm.ticket_id}: browser tests {'passed' if test_report.passed else 'failed'}")

            enter("validate")
            validated = self._agent_phase(vm, "validate", validate_prompt(brief), log)
            ok, summary = parse_validation(validated.output)
            if not ok:
                logger.warning(f"[EXEC] {vm.ticket_id}: validation failed: {summary[:200]}")
                return ExecutionResult(
                    success=False, summary=summary, test_report=test_report,
                    failed_phase="validate", error=summary, log=log,
                )

            enter("publish")
            published = self._run(vm, "publish", self.publish_command(brief, summary), log)
            if published.exit_code != 0:
                raise PhaseFailed("publish", f"publish exited {published.exit_code}")
            pr_url = extract_pr_url(published.output)

        except RemoteTransportError as e:
            logger.error(f"[EXEC] {vm.ticket_id}: transport failure in {current}: {e}")
            return ExecutionResult(
                success=False, hard_failure=True, failed_phase=current,
                error=str(e), test_report=test_report, log=log,
            )
        except PhaseFailed as e:
            logger.warning(f"[EXEC] {vm.ticket_id}: {e}")
            return ExecutionResult(
                success=False, failed_phase=e.phase, error=str(e),
                test_report=test_report, log=log,
            )

        logger.info(f"[EXEC] {vm.ticket_id}: complete, PR {pr_url or '(url not found)'}")
        return ExecutionResult(success=True, summary=summary, pr_url=pr_url, test_report=test_report, log=log)
