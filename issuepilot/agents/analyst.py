"""
Analyst: a readable implementation analysis for the simple_comment workflow.
"""

from __future__ import annotations

from loguru import logger

from issuepilot.agents import AgentContext, BaseAgent
from issuepilot.router import RouterResponse


class AnalystAgent(BaseAgent):
    role = "analyst"
    temperature = 0.5
    max_tokens = 800

    system_prompt = """You are a senior engineer reviewing a tracker issue that is ready for work.

Write a short Markdown comment for the issue with:
- A one-paragraph restatement of what will be built
- The likely areas of the codebase affected
- A numbered implementation outline
- Risks or open edge cases worth watching

Do not ask questions. Do not include code."""

    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        user_content = f"""Issue #{context.issue_number} in {context.repo_full_name}
Title: {context.title}
Author: {context.author}
Labels: {context.labels_text()}

Description:
{context.body or 'No description provided'}

Conversation:
{context.comments_text()}"""
        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> str:
        text = response.content.strip()
        if not text:
            logger.warning(f"[ANALYST] Empty analysis for {context.repo_full_name}#{context.issue_number}")
        return text
