"""
Triage: is this item actionable as written?

Three outcomes only: ready, needs clarification (ordered questions),
or reconsider (reasons + recommendations). Anything else parses to
Unparseable, which callers must treat as a clarification request.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from issuepilot.agents import (
    AgentContext,
    BaseAgent,
    list_items,
    load_json_object,
    numbered,
    section_after,
)
from issuepilot.router import RouterResponse


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class Ready(BaseModel):
    status: Literal["ready"] = "ready"

    @property
    def needs_clarification(self) -> bool:
        return False

    def render(self) -> str:
        return ""


class NeedsClarification(BaseModel):
    status: Literal["needs_clarification"] = "needs_clarification"
    questions: list[str] = Field(min_length=1)

    @property
    def needs_clarification(self) -> bool:
        return True

    def render(self) -> str:
        return numbered(self.questions)


class Reconsider(BaseModel):
    status: Literal["reconsider"] = "reconsider"
    reasons: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)

    @property
    def needs_clarification(self) -> bool:
        return True

    def render(self) -> str:
        reasons = numbered(self.reasons) or "This needs to be reconsidered."
        recs = numbered(self.recommendations) or "Please clarify the requirements."
        return f"**Issues with this request:**\n{reasons}\n\n**My recommendations:**\n{recs}"


class Unparseable(BaseModel):
    status: Literal["unparseable"] = "unparseable"
    raw: str

    @property
    def needs_clarification(self) -> bool:
        return True

    def render(self) -> str:
        return self.raw.strip() or "Please provide more details about this request."


Assessment = Union[Ready, NeedsClarification, Reconsider, Unparseable]

_MODEL_OUTCOMES = TypeAdapter(
    Annotated[Union[Ready, NeedsClarification, Reconsider], Field(discriminator="status")]
)

READY_SENTINEL = "✅ Ready to proceed."
CLARIFY_SENTINEL = "❓ Need clarification on:"


def parse_assessment(content: str) -> Assessment:
    """Parse a triage reply: JSON first, then the plain-text sentinels."""
    data = load_json_object(content)
    if data is not None:
        try:
            return _MODEL_OUTCOMES.validate_python(data)
        except ValidationError as e:
            logger.warning(f"[TRIAGE] Reply JSON did not match an outcome: {e.error_count()} error(s)")
            return Unparseable(raw=content)

    if READY_SENTINEL in content:
        return Ready()

    tail = section_after(content, CLARIFY_SENTINEL)
    if tail is not None:
        questions = list_items(tail) or ([tail] if tail else [])
        if questions:
            return NeedsClarification(questions=questions)

    return Unparseable(raw=content)


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------

class TriageAgent(BaseAgent):
    role = "triage"
    temperature = 0.3
    max_tokens = 600

    system_prompt = """You are the triage step of an autonomous development agent.

Decide whether a tracker issue is specific enough to implement without guessing.

You MUST respond with a single JSON object ONLY, in exactly one of these shapes:
  {"status": "ready"}
  {"status": "needs_clarification", "questions": ["...", "..."]}
  {"status": "reconsider", "reasons": ["..."], "recommendations": ["..."]}

Rules:
- "ready" only if scope, expected behavior and acceptance are clear.
- Questions must be concrete and answerable by the author in one reply.
- Use "reconsider" when the request should not be built as written.
- Take earlier comments into account; never re-ask something already answered.
"""

    def run(self, context: AgentContext, **kwargs) -> Assessment:
        kwargs["response_format"] = {"type": "json_object"}
        return super().run(context, **kwargs)

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        user_content = f"""Issue #{context.issue_number} in {context.repo_full_name}
Title: {context.title}
Author: {context.author}
Labels: {context.labels_text()}

Description:
{context.body or 'No description provided'}

Conversation so far:
{context.comments_text()}

Respond with your triage decision as JSON."""

        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> Assessment:
        assessment = parse_assessment(response.content)
        logger.info(
            f"[TRIAGE] {context.repo_full_name}#{context.issue_number} → {assessment.status}"
        )
        if isinstance(assessment, Unparseable):
            logger.debug(f"[TRIAGE] Raw response: {response.content[:500]}")
        return assessment
