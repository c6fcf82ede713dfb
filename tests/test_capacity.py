from pathlib import Path

from issuepilot.capacity import CapacityGate
from issuepilot.config_loader import AgentConfig
from issuepilot.state import StateStore

from conftest import REPO


def test_admits_until_limit(tmp_path):
    store = StateStore(Path(tmp_path / "s.json"), settings=AgentConfig(max_concurrent_tasks=2))
    gate = CapacityGate(store)

    assert gate.can_admit()
    assert gate.headroom() == 2

    store.start_task("process_issue", REPO, 1)
    assert gate.can_admit()
    assert gate.headroom() == 1

    store.start_task("process_issue", REPO, 2)
    assert not gate.can_admit()
    assert gate.headroom() == 0


def test_completing_a_task_frees_a_slot(tmp_path):
    store = StateStore(Path(tmp_path / "s.json"), settings=AgentConfig(max_concurrent_tasks=1))
    gate = CapacityGate(store)

    task_id = store.start_task("process_issue", REPO, 1)
    assert not gate.can_admit()

    store.complete_task(task_id, "failed")
    assert gate.can_admit()
