"""
Responder: does the author's reply answer our clarification questions?
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


class FullyAnswered(BaseModel):
    status: Literal["answered"] = "answered"
    summary: str = ""


class PartiallyAnswered(BaseModel):
    status: Literal["partial"] = "partial"
    follow_up_questions: list[str] = Field(min_length=1)

    def render(self) -> str:
        return numbered(self.follow_up_questions)


class Ambiguous(BaseModel):
    status: Literal["ambiguous"] = "ambiguous"
    request: str = Field(min_length=1)

    def render(self) -> str:
        return self.request


class Unparseable(BaseModel):
    status: Literal["unparseable"] = "unparseable"
    raw: str


ResponseVerdict = Union[FullyAnswered, PartiallyAnswered, Ambiguous, Unparseable]

_MODEL_VERDICTS = TypeAdapter(
    Annotated[Union[FullyAnswered, PartiallyAnswered, Ambiguous], Field(discriminator="status")]
)

ANSWERED_SENTINEL = "✅ Clarification received."
SUMMARY_MARKER = "Summary of answers:"
FOLLOW_UP_SENTINEL = "❓ Need follow-up clarification on:"
AMBIGUOUS_SENTINEL = "🔄 Please clarify your previous response:"


def parse_verdict(content: str) -> ResponseVerdict:
    """Parse a responder reply: JSON first, then the plain-text sentinels."""
    data = load_json_object(content)
    if data is not None:
        try:
            return _MODEL_VERDICTS.validate_python(data)
        except ValidationError as e:
            logger.warning(f"[RESPONDER] Reply JSON did not match a verdict: {e.error_count()} error(s)")
            return Unparseable(raw=content)

    if ANSWERED_SENTINEL in content:
        summary = section_after(content, SUMMARY_MARKER)
        if summary is None:
            summary = section_after(content, ANSWERED_SENTINEL) or ""
        return FullyAnswered(summary=summary)

    tail = section_after(content, FOLLOW_UP_SENTINEL)
    if tail:
        return PartiallyAnswered(follow_up_questions=list_items(tail) or [tail])

    tail = section_after(content, AMBIGUOUS_SENTINEL)
    if tail:
        return Ambiguous(request=tail)

    return Unparseable(raw=content)


class ResponseAgent(BaseAgent):
    role = "responder"
    temperature = 0.2
    max_tokens = 600

    system_prompt = """You review an issue author's reply to clarification questions.

You MUST respond with a single JSON object ONLY, in exactly one of these shapes:
  {"status": "answered", "summary": "short summary of the answers"}
  {"status": "partial", "follow_up_questions": ["...", "..."]}
  {"status": "ambiguous", "request": "what exactly needs restating"}

Rules:
- "answered" only if every question now has a usable answer.
- "partial" lists ONLY the questions still open.
- "ambiguous" when the reply contradicts itself or cannot be interpreted.
"""

    def run(self, context: AgentContext, **kwargs) -> ResponseVerdict:
        kwargs["response_format"] = {"type": "json_object"}
        return super().run(context, **kwargs)

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        questions = context.extra.get("questions", "")
        responses = context.extra.get("responses", [])
        reply_text = "\n\n".join(responses) or "(no reply)"

        user_content = f"""Issue #{context.issue_number} in {context.repo_full_name}
Title: {context.title}

Original description:
{context.body or 'No description provided'}

Questions we asked:
{questions}

Replies since we asked:
{reply_text}

Classify the replies as JSON."""

        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> ResponseVerdict:
        verdict = parse_verdict(response.content)
        logger.info(
            f"[RESPONDER] {context.repo_full_name}#{context.issue_number} → {verdict.status}"
        )
        return verdict
