"""
Capacity Gate: admission control over in-flight tasks.

A pure read of the State Store. Not a lock: check-then-act is only safe
while one worker owns the store, which the Orchestrator enforces.
"""

from __future__ import annotations

from loguru import logger

from issuepilot.state import StateStore


class CapacityGate:
    def __init__(self, store: StateStore):
        self.store = store

    def can_admit(self) -> bool:
        state = self.store.load()
        in_flight = len(state.current_tasks)
        limit = state.config.max_concurrent_tasks
        if in_flight >= limit:
            logger.info(f"[GATE] At capacity ({in_flight}/{limit})")
            return False
        return True

    def headroom(self) -> int:
        state = self.store.load()
        return max(0, state.config.max_concurrent_tasks - len(state.current_tasks))
