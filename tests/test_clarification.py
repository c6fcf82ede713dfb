import pytest

from issuepilot.agents.responder import ResponseAgent
from issuepilot.agents.triage import Ready, TriageAgent
from issuepilot.clarification import ClarificationFlow, ClarificationOutcome

from conftest import AGENT, REPO, ScriptedRouter

CLARIFY = '{"status": "needs_clarification", "questions": ["Which pages?", "Should there be a toggle?"]}'


@pytest.fixture
def router():
    return ScriptedRouter()


@pytest.fixture
def flow(tracker, store, router, config, bus):
    return ClarificationFlow(tracker, store, TriageAgent(router), ResponseAgent(router), config, bus=bus)


def _ask(flow, tracker, router, number=42):
    item = tracker.add_item(number, title="Add dark mode", body="Make it dark.")
    router.queue("triage", CLARIFY)
    assessment = flow.assess(item)
    flow.request_clarification(item, assessment)
    return item


def test_ready_item_is_not_asked(flow, tracker, router):
    item = tracker.add_item(1, body="Change the footer year to 2026 in templates/base.html")
    router.queue("triage", '{"status": "ready"}')

    assert isinstance(flow.assess(item), Ready)
    assert tracker.agent_comments(1) == []


def test_request_hands_item_back_to_author(flow, tracker, router, store):
    item = _ask(flow, tracker, router)

    comments = tracker.agent_comments(42)
    assert len(comments) == 1
    assert "@alice" in comments[0].body
    assert "1. Which pages?\n2. Should there be a toggle?" in comments[0].body

    assert "needs-human" in item.labels
    assert "for-issuepilot" not in item.labels
    assert item.assignees == ["alice"]

    record = store.get_item_status(REPO, 42)
    assert record.status == "awaiting_clarification"
    assert record.comment_id == comments[0].id
    assert record.clarification_request.original_assignee == "alice"
    assert record.clarification_request.questions.startswith("1. Which pages?")


def test_unparseable_triage_still_asks(flow, tracker, router, store):
    item = tracker.add_item(5)
    router.queue("triage", "Sure thing, on it!")

    assessment = flow.assess(item)
    assert assessment.needs_clarification

    flow.request_clarification(item, assessment)
    assert store.get_item_status(REPO, 5).status == "awaiting_clarification"


def test_no_reply_leaves_item_awaiting(flow, tracker, router, store):
    _ask(flow, tracker, router)
    record = store.get_item_status(REPO, 42)

    assert flow.check_for_responses(record) == ClarificationOutcome.NO_RESPONSE
    assert store.get_item_status(REPO, 42).status == "awaiting_clarification"
    assert router.calls[-1][0] == "triage"


def test_own_comments_are_not_replies(flow, tracker, router, store):
    _ask(flow, tracker, router)
    tracker.add_reply(42, "bump", author=f"{AGENT}[bot]")

    record = store.get_item_status(REPO, 42)
    assert flow.check_for_responses(record) == ClarificationOutcome.NO_RESPONSE


def test_full_answer_returns_item_to_agent(flow, tracker, router, store):
    item = _ask(flow, tracker, router)
    tracker.add_reply(42, "All pages, with a toggle in the header.")
    router.queue("responder", '{"status": "answered", "summary": "All pages; header toggle."}')

    outcome = flow.check_for_responses(store.get_item_status(REPO, 42))

    assert outcome == ClarificationOutcome.RECEIVED
    assert "for-issuepilot" in item.labels
    assert "needs-human" not in item.labels
    assert item.assignees == [AGENT]
    assert "All pages; header toggle." in tracker.agent_comments(42)[-1].body

    record = store.get_item_status(REPO, 42)
    assert record.status == "clarification_received"
    assert record.clarification_request is not None


def test_partial_answer_asks_follow_up_with_new_cutoff(flow, tracker, router, store):
    _ask(flow, tracker, router)
    first_request = store.get_item_status(REPO, 42).clarification_request
    tracker.add_reply(42, "All pages.")
    router.queue("responder", '{"status": "partial", "follow_up_questions": ["Should there be a toggle?"]}')

    outcome = flow.check_for_responses(store.get_item_status(REPO, 42))

    assert outcome == ClarificationOutcome.FOLLOW_UP
    assert "1. Should there be a toggle?" in tracker.agent_comments(42)[-1].body
    record = store.get_item_status(REPO, 42)
    assert record.status == "awaiting_clarification"
    assert record.clarification_request.questions == "1. Should there be a toggle?"
    assert record.clarification_request.requested_at > first_request.requested_at

    # The reply already classified is not reconsidered.
    assert flow.check_for_responses(record) == ClarificationOutcome.NO_RESPONSE


def test_ambiguous_reply_is_reasked(flow, tracker, router, store):
    _ask(flow, tracker, router)
    tracker.add_reply(42, "yes")
    router.queue("responder", '{"status": "ambiguous", "request": "Yes to which question?"}')

    outcome = flow.check_for_responses(store.get_item_status(REPO, 42))

    assert outcome == ClarificationOutcome.REASK
    assert "Yes to which question?" in tracker.agent_comments(42)[-1].body
    assert store.get_item_status(REPO, 42).status == "awaiting_clarification"


def test_unparseable_verdict_changes_nothing(flow, tracker, router, store):
    _ask(flow, tracker, router)
    tracker.add_reply(42, "All pages, toggle please.")
    router.queue("responder", "hmm, hard to say")
    before = store.get_item_status(REPO, 42)
    comments_before = len(tracker.agent_comments(42))

    outcome = flow.check_for_responses(before)

    assert outcome == ClarificationOutcome.UNCHANGED
    after = store.get_item_status(REPO, 42)
    assert after.status == "awaiting_clarification"
    assert after.clarification_request == before.clarification_request
    assert len(tracker.agent_comments(42)) == comments_before


def test_deleted_item_is_marked_skipped(flow, tracker, router, store):
    _ask(flow, tracker, router)
    del tracker.items[(REPO, 42)]

    outcome = flow.check_for_responses(store.get_item_status(REPO, 42))

    assert outcome == ClarificationOutcome.ITEM_GONE
    assert store.get_item_status(REPO, 42).status == "skipped"


def test_check_all_isolates_failures(flow, tracker, router, store):
    _ask(flow, tracker, router, number=1)
    _ask(flow, tracker, router, number=2)
    tracker.add_reply(1, "answer one")
    tracker.add_reply(2, "answer two")
    # Only one scripted verdict: the second check raises inside the responder.
    router.queue("responder", '{"status": "answered", "summary": "ok"}')

    outcomes = flow.check_all(REPO)

    assert outcomes == {f"{REPO}#1": ClarificationOutcome.RECEIVED}
    assert store.get_item_status(REPO, 2).status == "awaiting_clarification"


def test_label_failures_do_not_block_the_request(flow, tracker, router, store):
    tracker.fail_labels = True
    item = tracker.add_item(8)
    router.queue("triage", CLARIFY)

    flow.request_clarification(item, flow.assess(item))

    assert store.get_item_status(REPO, 8).status == "awaiting_clarification"
