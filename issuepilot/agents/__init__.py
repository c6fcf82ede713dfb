"""
IssuePilot Agent Roster

Each agent is:
  - A system prompt
  - A structured input template
  - A tagged-variant output with an explicit "unparseable" case

Agents are stateless between runs. State lives in the State Store.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from issuepilot.router import Router, RouterResponse


class AgentContext(BaseModel):
    """Shared context passed to every agent invocation."""
    repo_full_name: str
    issue_number: int
    title: str
    body: str = ""
    author: str = ""
    labels: list[str] = []
    comments: list[str] = []  # "login: body" lines, oldest first
    extra: dict[str, Any] = {}

    def labels_text(self) -> str:
        return ", ".join(self.labels) or "No labels"

    def comments_text(self) -> str:
        if not self.comments:
            return "No comments yet"
        return "\n\n".join(f"Comment {i + 1} by {c}" for i, c in enumerate(self.comments))


class BaseAgent(ABC):
    """
    Base class for all IssuePilot agents.

    Subclasses define:
      - role: str — maps to router model
      - system_prompt: str — agent constraints + output contract
      - build_messages() — constructs the chat messages
      - parse_response() — extracts the tagged result
    """

    role: str = "unknown"
    system_prompt: str = "You are a helpful assistant."
    temperature: float = 0.3
    max_tokens: int = 800

    def __init__(self, router: Router):
        self.router = router

    def run(self, context: AgentContext, **kwargs) -> Any:
        """Execute the agent: build messages → call model → parse."""
        messages = self.build_messages(context)
        kwargs.setdefault("temperature", self.temperature)
        kwargs.setdefault("max_tokens", self.max_tokens)
        response = self.router.complete(
            role=self.role,
            messages=messages,
            **kwargs,
        )
        return self.parse_response(response, context)

    @abstractmethod
    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        """Build the message list for the LLM call."""
        ...

    @abstractmethod
    def parse_response(self, response: RouterResponse, context: AgentContext) -> Any:
        """Parse the LLM response into structured output."""
        ...

    def _system_msg(self) -> dict[str, str]:
        return {"role": "system", "content": self.system_prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}


# ---------------------------------------------------------------------------
# Parsing helpers shared by the agents
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_LIST_ITEM_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s+(.*\S)\s*$")


def load_json_object(content: str) -> dict[str, Any] | None:
    """Return the JSON object in content (optionally fenced), or None."""
    text = content.strip()
    match = _FENCE_RE.search(text)
    if match:
        text = match.group(1).strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def list_items(text: str) -> list[str]:
    """Extract numbered or bulleted list entries from free text."""
    items = []
    for line in text.splitlines():
        match = _LIST_ITEM_RE.match(line)
        if match:
            items.append(match.group(1))
    return items


def section_after(content: str, marker: str) -> str | None:
    """Text following a sentinel marker, or None when the marker is absent."""
    index = content.find(marker)
    if index == -1:
        return None
    return content[index + len(marker):].strip()


def numbered(items: list[str]) -> str:
    return "\n".join(f"{i + 1}. {item}" for i, item in enumerate(items))
