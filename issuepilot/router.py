"""
IssuePilot Router: vendor-agnostic reasoning calls.

Routes agent calls through LiteLLM so the clarification agents never
know which vendor backs them. Prompt in, text out, with retries.
"""

from __future__ import annotations

import time
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import retry, stop_after_attempt, wait_exponential

from issuepilot.config_loader import RoutingConfig


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _is_restricted_sampling_model(model: str) -> bool:
    """GPT-5 and o-series models reject a custom temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith(("gpt-5", "o1", "o3", "o4"))


def _build_kwargs(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
    response_format: dict | None,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
    }
    if not _is_restricted_sampling_model(model):
        kwargs["temperature"] = temperature
    if response_format:
        kwargs["response_format"] = response_format
    return kwargs


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RouterResponse(BaseModel):
    content: str
    model: str
    tokens_used: int = 0
    latency_ms: int = 0


class Router:
    """
    Agents call `router.complete(role, messages)`.
    The router resolves the model for the role and returns the raw text.
    """

    def __init__(self, routing: RoutingConfig):
        self.routing = routing
        self._role_model_map = {
            "triage": routing.triage,
            "responder": routing.responder,
            "analyst": routing.analyst,
        }
        litellm.suppress_debug_info = True

    def resolve_model(self, role: str) -> str:
        model = self._role_model_map.get(role)
        if not model:
            raise ValueError(f"Unknown agent role: {role}. Known: {list(self._role_model_map)}")
        return model

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=10), reraise=True)
    def complete(
        self,
        role: str,
        messages: list[dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int = 2048,
        response_format: dict | None = None,
    ) -> RouterResponse:
        """Send a completion request through LiteLLM.

        Args:
            role (str): Agent role name (triage, responder, analyst).
            messages (list[dict[str, str]]): Standard chat messages.
            temperature (float, optional): Sampling temperature. Dropped for
                models that don't support it. Defaults to 0.2.
            max_tokens (int, optional): Max response tokens. Defaults to 2048.
            response_format (dict | None, optional): Structured output hint.

        Returns:
            RouterResponse: The text content plus model and timing metadata.
        """
        model = self.resolve_model(role)
        start = time.monotonic()
        logger.debug(f"[ROUTER] {role} → {model} ({len(messages)} messages)")

        response = litellm.completion(**_build_kwargs(model, messages, temperature, max_tokens, response_format))
        elapsed_ms = int((time.monotonic() - start) * 1000)
        content = response.choices[0].message.content or ""
        tokens = getattr(getattr(response, "usage", None), "total_tokens", 0) or 0

        logger.debug(f"[ROUTER] {role} complete — {tokens} tokens, {elapsed_ms}ms")

        return RouterResponse(
            content=content,
            model=model,
            tokens_used=tokens,
            latency_ms=elapsed_ms,
        )
