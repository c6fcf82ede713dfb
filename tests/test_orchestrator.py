import pytest

from issuepilot.agents.analyst import AnalystAgent
from issuepilot.agents.responder import ResponseAgent
from issuepilot.agents.triage import TriageAgent
from issuepilot.capacity import CapacityGate
from issuepilot.clarification import ClarificationFlow
from issuepilot.executor import TaskExecutor
from issuepilot.orchestrator import DevelopmentStrategy, Orchestrator
from issuepilot.remote import RemoteTimeoutError
from issuepilot.vm import VMManager

from conftest import AGENT, REPO, FakeProvider, FakeShell, ScriptedRouter, ok

READY = '{"status": "ready"}'
CLARIFY = '{"status": "needs_clarification", "questions": ["Which pages?"]}'
ANSWERED = '{"status": "answered", "summary": "All pages."}'

VM_WORKFLOW = """
issuepilot:
  workflow_type: vm_development
  project:
    name: widgets
    tech_stack: [python, flask]
"""


@pytest.fixture
def router():
    return ScriptedRouter()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def shell():
    shell = FakeShell()
    shell.on("Analyze this repository", ok("Plan: edit theme.css"))
    shell.on("Implement the issue below", ok("Edited theme.css"))
    shell.on("existing checks", ok("VALIDATION_SUCCESS: tests pass"))
    shell.on("gh pr create", ok("https://github.com/acme/widgets/pull/7"))
    return shell


@pytest.fixture
def development(provider, shell, config, credentials, poll, bus):
    vms = VMManager(provider, shell, config.vm, credentials, poll=poll, bus=bus)
    return DevelopmentStrategy(vms, TaskExecutor(shell, config.executor, bus=bus), config)


def _orchestrator(tracker, store, router, config, bus, development=None):
    clarifier = ClarificationFlow(tracker, store, TriageAgent(router), ResponseAgent(router), config, bus=bus)
    return Orchestrator(
        tracker=tracker,
        store=store,
        gate=CapacityGate(store),
        clarifier=clarifier,
        analyst=AnalystAgent(router),
        config=config,
        development=development,
        bus=bus,
    )


@pytest.fixture
def orch(tracker, store, router, config, bus):
    return _orchestrator(tracker, store, router, config, bus)


@pytest.fixture
def vm_orch(tracker, store, router, config, bus, development):
    tracker.set_repo_config(VM_WORKFLOW)
    return _orchestrator(tracker, store, router, config, bus, development)


def _triage_calls(router):
    return sum(1 for role, _ in router.calls if role == "triage")


# ---------------------------------------------------------------------------
# simple_comment
# ---------------------------------------------------------------------------

def test_ready_item_gets_an_analysis_comment(orch, tracker, router, store):
    item = tracker.add_item(7)
    router.queue("triage", READY)
    router.queue("analyst", "## Plan\n1. Change the footer.")

    report = orch.run_cycle(REPO)

    assert report.outcomes == {f"{REPO}#7": "responded"}
    assert "## Plan" in tracker.agent_comments(7)[0].body
    assert "for-issuepilot" not in item.labels
    state = store.load()
    assert state.find_item(REPO, 7).status == "responded"
    assert state.current_tasks == []
    assert state.completed_tasks[0].status == "completed"
    assert state.stats.total_cycles_run == 1


def test_settled_items_are_not_reprocessed(orch, tracker, router, store):
    item = tracker.add_item(7)
    router.queue("triage", READY)
    router.queue("analyst", "analysis")
    orch.run_cycle(REPO)

    item.labels.append("for-issuepilot")
    report = orch.run_cycle(REPO)

    assert report.skipped == {f"{REPO}#7": "responded"}
    assert _triage_calls(router) == 1
    assert len(tracker.agent_comments(7)) == 1


def test_existing_agent_comment_is_acknowledged(orch, tracker, router, store):
    tracker.add_item(3)
    tracker.post_comment(REPO, 3, "Earlier analysis from a previous install")

    report = orch.run_cycle(REPO)

    assert report.skipped == {f"{REPO}#3": "already_commented"}
    assert store.get_item_status(REPO, 3).status == "acknowledged"
    assert router.calls == []


def test_require_assignment_filters_candidates(orch, tracker, router, config):
    config.agent.require_assignment = True
    item = tracker.add_item(4)
    item.assignees = ["someone-else"]

    report = orch.run_cycle(REPO)

    assert report.candidates == 0


# ---------------------------------------------------------------------------
# Clarification round-trip
# ---------------------------------------------------------------------------

def test_clarification_round_trip_resumes_without_retriage(orch, tracker, router, store):
    item = tracker.add_item(42, body="Add dark mode")
    router.queue("triage", CLARIFY)

    first = orch.run_cycle(REPO)
    assert first.outcomes == {f"{REPO}#42": "awaiting_clarification"}
    assert first.clarifications == {f"{REPO}#42": "no_response"}
    assert item.assignees == ["alice"]

    tracker.add_reply(42, "All pages please.")
    router.queue("responder", ANSWERED)
    second = orch.run_cycle(REPO)
    assert second.candidates == 0
    assert second.clarifications == {f"{REPO}#42": "clarification_received"}
    assert "for-issuepilot" in item.labels

    router.queue("analyst", "Implementation outline")
    third = orch.run_cycle(REPO)
    assert third.outcomes == {f"{REPO}#42": "responded"}
    assert _triage_calls(router) == 1
    assert store.get_item_status(REPO, 42).status == "responded"


# ---------------------------------------------------------------------------
# Capacity
# ---------------------------------------------------------------------------

def test_second_item_waits_for_a_slot(orch, tracker, router, store, config):
    config.agent.max_concurrent_tasks = 1
    store.start_task("process_issue", "acme/other", 1)
    tracker.add_item(1)
    tracker.add_item(2)

    report = orch.run_cycle(REPO)

    assert report.admitted == []
    assert report.deferred == [f"{REPO}#1", f"{REPO}#2"]
    assert router.calls == []


def test_admission_happens_before_work(orch, tracker, router, store, config):
    config.agent.max_concurrent_tasks = 1
    tracker.add_item(1)
    tracker.add_item(2)
    router.queue("triage", READY)
    router.queue("analyst", "analysis")

    report = orch.run_cycle(REPO)

    assert report.admitted == [f"{REPO}#1"]
    assert report.deferred == [f"{REPO}#2"]
    assert store.get_item_status(REPO, 2) is None

    router.queue("triage", READY)
    router.queue("analyst", "analysis")
    later = orch.run_cycle(REPO)
    assert later.outcomes == {f"{REPO}#2": "responded"}


def test_item_failure_frees_its_slot_and_cycle_continues(orch, tracker, router, store):
    tracker.add_item(1)
    tracker.add_item(2)
    tracker.fail_comments_on = {1}
    router.queue("triage", READY, READY)
    router.queue("analyst", "first", "second")

    report = orch.run_cycle(REPO)

    assert "HTTP 502" in report.errors[f"{REPO}#1"]
    assert report.outcomes == {f"{REPO}#2": "responded"}
    state = store.load()
    assert state.current_tasks == []
    assert [t.status for t in state.completed_tasks] == ["failed", "completed"]


# ---------------------------------------------------------------------------
# Workflow selection
# ---------------------------------------------------------------------------

def test_invalid_repo_config_is_reported(orch, tracker, router, store):
    tracker.add_item(5)
    tracker.set_repo_config("workflow_type: [unclosed")
    router.queue("triage", READY)

    assert orch.run_cycle(REPO).outcomes == {f"{REPO}#5": "config_error"}
    assert "Configuration Error" in tracker.agent_comments(5)[0].body
    assert store.get_item_status(REPO, 5).status == "skipped"
    assert store.load().completed_tasks[0].status == "failed"


def test_unknown_workflow_is_reported(orch, tracker, router):
    tracker.add_item(5)
    tracker.set_repo_config("workflow_type: custom\n")
    router.queue("triage", READY)

    orch.run_cycle(REPO)

    assert 'Unknown workflow type: "custom"' in tracker.agent_comments(5)[0].body


def test_github_actions_dispatch(orch, tracker, router, store):
    item = tracker.add_item(6, title="Fix login")
    tracker.set_repo_config("workflow_type: github_actions\ngithub_actions:\n  workflow_file: impl.yml\n")
    router.queue("triage", READY)

    assert orch.run_cycle(REPO).outcomes == {f"{REPO}#6": "workflow_dispatched"}
    repo, workflow_file, ref, inputs = tracker.dispatched[0]
    assert (repo, workflow_file, ref) == (REPO, "impl.yml", "main")
    assert inputs["issue_number"] == "6"
    assert inputs["issue_title"] == "Fix login"
    assert "agent-implementing" in item.labels
    assert store.get_item_status(REPO, 6).status == "responded"


def test_github_actions_dispatch_failure(orch, tracker, router, store):
    tracker.add_item(6)
    tracker.set_repo_config("workflow_type: github_actions\n")
    tracker.fail_dispatch = True
    router.queue("triage", READY)

    assert orch.run_cycle(REPO).outcomes == {f"{REPO}#6": "dispatch_failed"}
    assert store.get_item_status(REPO, 6).status == "skipped"


def test_vm_workflow_without_compute_is_a_config_error(orch, tracker, router):
    tracker.add_item(8)
    tracker.set_repo_config(VM_WORKFLOW)
    router.queue("triage", READY)

    assert orch.run_cycle(REPO).outcomes == {f"{REPO}#8": "config_error"}


# ---------------------------------------------------------------------------
# vm_development
# ---------------------------------------------------------------------------

def test_vm_development_success(vm_orch, tracker, router, store, provider):
    item = tracker.add_item(42)
    router.queue("triage", READY)

    report = vm_orch.run_cycle(REPO)

    assert report.outcomes == {f"{REPO}#42": "development_completed"}
    assert len(provider.created) == 1
    assert provider.droplets == {}
    comments = tracker.agent_comments(42)
    assert "Starting development" in comments[0].body
    assert "https://github.com/acme/widgets/pull/7" in comments[-1].body
    assert "agent-completed" in item.labels
    assert "agent-in-progress" not in item.labels

    record = store.get_item_status(REPO, 42)
    assert record.status == "development_completed"
    task = store.load().completed_tasks[0]
    assert task.status == "completed"
    assert "vm_provisioned" in [a.type for a in task.actions]


def test_completed_development_is_never_redone(vm_orch, tracker, router, provider):
    item = tracker.add_item(42)
    router.queue("triage", READY)
    vm_orch.run_cycle(REPO)

    item.labels.append("for-issuepilot")
    report = vm_orch.run_cycle(REPO)

    assert report.skipped == {f"{REPO}#42": "development_completed"}
    assert len(provider.created) == 1


def test_vm_development_failure_releases_vm(vm_orch, tracker, router, store, provider, shell):
    item = tracker.add_item(43)
    shell.on("Implement the issue below", RemoteTimeoutError("ssh timed out after 900s"))
    router.queue("triage", READY)

    report = vm_orch.run_cycle(REPO)

    assert report.outcomes == {f"{REPO}#43": "development_failed"}
    assert provider.droplets == {}
    body = tracker.agent_comments(43)[-1].body
    assert "Implementation Failed" in body
    assert "implement" in body
    assert "agent-failed" in item.labels
    assert store.get_item_status(REPO, 43).status == "skipped"
    assert store.load().completed_tasks[0].status == "failed"


def test_provisioning_failure_is_reported_as_environment(vm_orch, tracker, router, store, provider):
    tracker.add_item(44)
    provider.fail_create = True
    router.queue("triage", READY)

    report = vm_orch.run_cycle(REPO)

    assert report.outcomes == {f"{REPO}#44": "development_failed"}
    assert "environment" in tracker.agent_comments(44)[-1].body


def test_clarified_answers_reach_the_development_brief(vm_orch, tracker, router, shell):
    tracker.add_item(45)
    router.queue("triage", CLARIFY)
    vm_orch.run_cycle(REPO)

    tracker.add_reply(45, "Only the settings page.")
    router.queue("responder", ANSWERED)
    vm_orch.run_cycle(REPO)
    vm_orch.run_cycle(REPO)

    analyze = next(c for c in shell.commands if "Analyze this repository" in c)
    assert "Only the settings page." in analyze


def _clarify_then_resume(vm_orch, tracker, router, number):
    tracker.add_item(number)
    router.queue("triage", CLARIFY)
    vm_orch.run_cycle(REPO)
    tracker.add_reply(number, "Only the settings page.")
    router.queue("responder", ANSWERED)
    vm_orch.run_cycle(REPO)


def test_comments_before_the_question_stay_out_of_the_brief(vm_orch, tracker, router, shell):
    tracker.add_item(46)
    tracker.add_reply(46, "Blue would be nice too.", author="bob")
    router.queue("triage", CLARIFY)
    vm_orch.run_cycle(REPO)
    tracker.add_reply(46, "Only the settings page.")
    router.queue("responder", ANSWERED)
    vm_orch.run_cycle(REPO)
    vm_orch.run_cycle(REPO)

    analyze = next(c for c in shell.commands if "Analyze this repository" in c)
    assert "Only the settings page." in analyze
    assert "Blue would be nice too." not in analyze


def test_lost_outcome_comment_does_not_lease_a_second_vm(vm_orch, tracker, router, store, provider):
    _clarify_then_resume(vm_orch, tracker, router, 42)
    tracker.fail_comments_containing = "Implementation Complete"

    vm_orch.run_cycle(REPO)
    tracker.items[(REPO, 42)].labels.append("for-issuepilot")
    report = vm_orch.run_cycle(REPO)

    assert len(provider.created) == 1
    assert report.skipped == {f"{REPO}#42": "development_completed"}
    record = store.get_item_status(REPO, 42)
    assert record.status == "development_completed"
    assert record.comment_id is None


def test_unexpected_development_error_is_reported_as_failure(vm_orch, tracker, router, store, provider, shell):
    item = tracker.add_item(47)
    shell.on("Implement the issue below", UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"))
    router.queue("triage", READY)

    report = vm_orch.run_cycle(REPO)

    assert report.outcomes == {f"{REPO}#47": "development_failed"}
    assert provider.droplets == {}
    body = tracker.agent_comments(47)[-1].body
    assert "Implementation Failed" in body
    assert "**Phase:** implement" in body
    assert "UnicodeDecodeError" in body
    assert "agent-failed" in item.labels
    assert store.get_item_status(REPO, 47).status == "skipped"


def test_clarified_item_is_not_rearmed_once_development_starts(vm_orch, tracker, router, store, provider):
    _clarify_then_resume(vm_orch, tracker, router, 48)
    statuses = []
    original = vm_orch.development.develop

    def develop(item, *args, **kwargs):
        statuses.append(store.get_item_status(REPO, 48).status)
        return original(item, *args, **kwargs)

    vm_orch.development.develop = develop
    vm_orch.run_cycle(REPO)

    assert statuses == ["acknowledged"]
    assert len(provider.created) == 1


# ---------------------------------------------------------------------------
# Single-item entry point and status
# ---------------------------------------------------------------------------

def test_handle_item(orch, tracker, router):
    assert orch.handle_item(REPO, 99) == "not_found"

    tracker.add_item(9)
    router.queue("triage", READY)
    router.queue("analyst", "analysis")
    assert orch.handle_item(REPO, 9) == "responded"
    assert orch.handle_item(REPO, 9) == "responded"
    assert _triage_calls(router) == 1


def test_handle_item_force_reprocesses(orch, tracker, router):
    tracker.add_item(9)
    router.queue("triage", READY, READY)
    router.queue("analyst", "first", "second")
    orch.handle_item(REPO, 9)

    assert orch.handle_item(REPO, 9, force=True) == "responded"
    assert _triage_calls(router) == 2


def test_status_reports_capacity(vm_orch, store):
    store.start_task("process_issue", REPO, 1)

    status = vm_orch.status()

    assert status.assignee == AGENT
    assert status.in_flight == 1
    assert status.max_concurrent_tasks == 3
    assert status.vm_workflow_enabled
