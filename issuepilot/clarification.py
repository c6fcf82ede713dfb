"""
Clarification State Machine

    NEW ──assess──▶ READY
     │
     └──▶ AWAITING_CLARIFICATION ──check──▶ CLARIFICATION_RECEIVED ──▶ READY
               ▲        │
               └────────┘  follow-up / re-ask / no reply / unparseable

Triage never silently proceeds on output it cannot parse, and the
response check never silently advances on one either.
"""

from __future__ import annotations

from enum import Enum

from loguru import logger

from issuepilot.agents import AgentContext
from issuepilot.agents.responder import (
    Ambiguous,
    FullyAnswered,
    PartiallyAnswered,
    ResponseAgent,
    ResponseVerdict,
)
from issuepilot.agents.triage import Assessment, TriageAgent
from issuepilot.config_loader import IssuePilotConfig
from issuepilot.event_bus import EventBus
from issuepilot.state import ClarificationRequest, ItemStatus, StateStore
from issuepilot.tracker import Comment, Tracker, TrackerError, WorkItem


class ClarificationOutcome(str, Enum):
    NO_RESPONSE = "no_response"
    RECEIVED = "clarification_received"
    FOLLOW_UP = "follow_up_requested"
    REASK = "reclarification_requested"
    UNCHANGED = "unchanged"
    ITEM_GONE = "item_gone"


SIGNATURE = "\n\n---\n*IssuePilot*"


class ClarificationFlow:
    def __init__(
        self,
        tracker: Tracker,
        store: StateStore,
        triage: TriageAgent,
        responder: ResponseAgent,
        config: IssuePilotConfig,
        bus: EventBus | None = None,
    ):
        self.tracker = tracker
        self.store = store
        self.triage = triage
        self.responder = responder
        self.config = config
        self.bus = bus or EventBus()

    @property
    def _labels(self):
        return self.config.labels

    @property
    def _agent_login(self) -> str:
        return self.config.agent.assignee_username

    # -----------------------------------------------------------------------
    # Triage
    # -----------------------------------------------------------------------

    def context_for(self, item: WorkItem, comments: list[Comment] | None = None) -> AgentContext:
        if comments is None:
            comments = self.tracker.list_comments(item.repo_full_name, item.number)
        return AgentContext(
            repo_full_name=item.repo_full_name,
            issue_number=item.number,
            title=item.title,
            body=item.body,
            author=item.author,
            labels=item.labels,
            comments=[f"{c.author}: {c.body}" for c in comments],
        )

    def assess(self, item: WorkItem) -> Assessment:
        """Ready, or something that must be asked of the author."""
        assessment = self.triage.run(self.context_for(item))
        self.bus.emit("triage_assessed", "clarification", {
            "item": item.ref,
            "outcome": assessment.status,
        })
        return assessment

    def request_clarification(
        self,
        item: WorkItem,
        assessment: Assessment,
        task_id: str | None = None,
    ) -> ItemStatus:
        """Ask the author, hand the item back to them and persist AWAITING."""
        questions = assessment.render()
        body = (
            f"Hi @{item.author}! 👋\n\n"
            f"I'd like to work on this, but need a bit more information first:\n\n"
            f"{questions}\n\n"
            f"I've labeled this issue `{self._labels.needs_human}` and assigned it back to you. "
            f"Reply here and I'll pick it up again."
            f"{SIGNATURE}"
        )
        comment = self.tracker.post_comment(item.repo_full_name, item.number, body)

        self._relabel(item, remove=self._labels.trigger, add=self._labels.needs_human)
        self._reassign(item, from_login=self._agent_login, to_login=item.author)

        record = self.store.upsert_item_status(
            item.repo_full_name,
            item.number,
            "awaiting_clarification",
            comment_id=comment.id,
            comment_url=comment.url,
            clarification=ClarificationRequest(questions=questions, original_assignee=item.author),
        )
        if task_id:
            self.store.append_task_action(task_id, "clarification_requested", {
                "comment_id": comment.id,
                "comment_url": comment.url,
                "questions": questions,
            })

        logger.info(f"[CLARIFY] Asked {item.author} on {item.ref}: {comment.url}")
        self.bus.emit("clarification_requested", "clarification", {"item": item.ref, "questions": questions})
        return record

    # -----------------------------------------------------------------------
    # Response check
    # -----------------------------------------------------------------------

    def check_for_responses(self, record: ItemStatus) -> ClarificationOutcome:
        request = record.clarification_request
        if request is None:
            logger.warning(f"[CLARIFY] {record.repo_full_name}#{record.issue_number} has no clarification request")
            return ClarificationOutcome.UNCHANGED

        repo, number = record.key
        item = self.tracker.get_item(repo, number)
        if item is None:
            logger.warning(f"[CLARIFY] {repo}#{number} not found, marking skipped")
            self.store.upsert_item_status(repo, number, "skipped")
            return ClarificationOutcome.ITEM_GONE

        own = self.config.agent.own_logins
        replies = [
            c for c in self.tracker.list_comments(repo, number, since=request.requested_at)
            if c.created_at > request.requested_at and c.author not in own
        ]
        if not replies:
            return ClarificationOutcome.NO_RESPONSE

        logger.info(f"[CLARIFY] {len(replies)} new repl(y/ies) on {item.ref}")
        context = self.context_for(item, comments=[])
        context.extra = {
            "questions": request.questions,
            "responses": [f"{c.author}: {c.body}" for c in replies],
        }
        verdict = self.responder.run(context)
        return self._apply_verdict(item, record, verdict)

    def _apply_verdict(
        self,
        item: WorkItem,
        record: ItemStatus,
        verdict: ResponseVerdict,
    ) -> ClarificationOutcome:
        request = record.clarification_request
        repo, number = item.key

        if isinstance(verdict, FullyAnswered):
            summary = verdict.summary or "Your answers cover everything I asked."
            comment = self.tracker.post_comment(repo, number, (
                f"Thanks for the clarification! 🙏\n\n{summary}\n\n"
                f"I'll proceed with the implementation now."
                f"{SIGNATURE}"
            ))
            self._relabel(item, remove=self._labels.needs_human, add=self._labels.trigger)
            self._reassign(item, from_login=request.original_assignee, to_login=self._agent_login)
            self.store.upsert_item_status(
                repo, number, "clarification_received",
                comment_id=comment.id, comment_url=comment.url,
            )
            outcome = ClarificationOutcome.RECEIVED

        elif isinstance(verdict, (PartiallyAnswered, Ambiguous)):
            if isinstance(verdict, PartiallyAnswered):
                lead = "Thanks! A few points are still open:"
                outcome = ClarificationOutcome.FOLLOW_UP
            else:
                lead = "Thanks for the reply. I couldn't quite interpret it. Could you clarify:"
                outcome = ClarificationOutcome.REASK

            questions = verdict.render()
            comment = self.tracker.post_comment(repo, number, (
                f"{lead}\n\n{questions}{SIGNATURE}"
            ))
            # A fresh request moves the reply cut-off past the replies just classified.
            self.store.upsert_item_status(
                repo, number, "awaiting_clarification",
                comment_id=comment.id, comment_url=comment.url,
                clarification=ClarificationRequest(
                    questions=questions,
                    original_assignee=request.original_assignee,
                ),
            )

        else:
            logger.warning(f"[CLARIFY] Unparseable reply classification on {item.ref}; leaving it awaiting")
            outcome = ClarificationOutcome.UNCHANGED

        self.bus.emit("clarification_checked", "clarification", {"item": item.ref, "outcome": outcome.value})
        return outcome

    def check_all(self, repo_full_name: str | None = None) -> dict[str, ClarificationOutcome]:
        """Check every awaiting item; one item's failure never stops the rest."""
        outcomes: dict[str, ClarificationOutcome] = {}
        for record in self.store.awaiting_clarification(repo_full_name):
            ref = f"{record.repo_full_name}#{record.issue_number}"
            try:
                outcomes[ref] = self.check_for_responses(record)
            except Exception as e:
                logger.error(f"[CLARIFY] Response check failed for {ref}: {e}")
        return outcomes

    # -----------------------------------------------------------------------
    # Best-effort tracker writes
    # -----------------------------------------------------------------------

    def _relabel(self, item: WorkItem, remove: str, add: str) -> None:
        try:
            self.tracker.remove_label(item.repo_full_name, item.number, remove)
            self.tracker.add_labels(item.repo_full_name, item.number, [add])
        except TrackerError as e:
            logger.warning(f"[CLARIFY] Relabel failed on {item.ref}: {e}")

    def _reassign(self, item: WorkItem, from_login: str, to_login: str) -> None:
        if not to_login or from_login == to_login:
            return
        try:
            self.tracker.remove_assignees(item.repo_full_name, item.number, [from_login])
            self.tracker.add_assignees(item.repo_full_name, item.number, [to_login])
        except TrackerError as e:
            logger.warning(f"[CLARIFY] Reassign failed on {item.ref}: {e}")
