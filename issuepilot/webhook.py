"""
Inbound GitHub webhooks and the health endpoint.

Only `issues` events with action `labeled` and the trigger label start
work; everything else is acknowledged and ignored. Work runs as a
background task so the webhook returns immediately.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

from issuepilot.identity import __version__
from issuepilot.orchestrator import Orchestrator

SIGNATURE_HEADER = "x-hub-signature-256"
EVENT_HEADER = "x-github-event"


class IssueEvent(BaseModel):
    repo_full_name: str
    issue_number: int
    label: str
    sender: str = ""


def verify_signature(secret: str | None, body: bytes, header: str | None) -> bool:
    """HMAC-SHA256 over the raw body, compared in constant time."""
    if not secret:
        logger.warning("[WEBHOOK] No webhook secret configured; accepting unsigned payload")
        return True
    if not header or not header.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header)


def parse_event(event_name: str | None, payload: dict[str, Any], trigger_label: str) -> IssueEvent | None:
    if event_name != "issues" or payload.get("action") != "labeled":
        return None
    label = (payload.get("label") or {}).get("name")
    if label != trigger_label:
        return None
    issue = payload.get("issue") or {}
    repo = payload.get("repository") or {}
    if "number" not in issue or "full_name" not in repo:
        return None
    return IssueEvent(
        repo_full_name=repo["full_name"],
        issue_number=issue["number"],
        label=label,
        sender=(payload.get("sender") or {}).get("login", ""),
    )


def create_app(orchestrator: Orchestrator, secret: str | None, trigger_label: str) -> FastAPI:
    app = FastAPI(title="IssuePilot", version=__version__)

    def _handle(event: IssueEvent) -> None:
        try:
            outcome = orchestrator.handle_item(event.repo_full_name, event.issue_number)
            logger.info(f"[WEBHOOK] {event.repo_full_name}#{event.issue_number} → {outcome}")
        except Exception as e:
            logger.exception(f"[WEBHOOK] Handling {event.repo_full_name}#{event.issue_number} failed: {e}")

    @app.get("/")
    async def root():
        return {"service": "IssuePilot", "status": "running", "version": __version__}

    @app.get("/health")
    def health():
        status = orchestrator.status()
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "agent": status.model_dump(mode="json"),
            "recent_events": [
                {"type": e.event_type, "source": e.source, "at": e.timestamp}
                for e in orchestrator.bus.recent(10)
            ],
        }

    @app.post("/webhooks/github", status_code=202)
    async def github_webhook(request: Request, background: BackgroundTasks):
        body = await request.body()
        if not verify_signature(secret, body, request.headers.get(SIGNATURE_HEADER)):
            logger.warning("[WEBHOOK] Rejected payload with a bad signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            payload = json.loads(body or b"{}")
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Body is not JSON")

        event = parse_event(request.headers.get(EVENT_HEADER), payload, trigger_label)
        if event is None:
            return JSONResponse({"status": "ignored"}, status_code=200)

        logger.info(f"[WEBHOOK] {event.repo_full_name}#{event.issue_number} labeled {event.label!r}")
        background.add_task(_handle, event)
        return {"status": "accepted", "issue": event.issue_number}

    return app
