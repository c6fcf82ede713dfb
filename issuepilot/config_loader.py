"""
Configuration loader for IssuePilot.
Merges built-in defaults with an operator config file; secrets come from the environment.
"""

from __future__ import annotations

import base64
import binascii
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError


class ConfigError(Exception):
    pass


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class AgentConfig(BaseModel):
    assignee_username: str = "issuepilot-agent"
    max_concurrent_tasks: int = Field(default=3, ge=1)
    stale_task_minutes: int = 180
    poll_interval_seconds: int = 120
    require_assignment: bool = False
    default_repo: str | None = None

    @property
    def own_logins(self) -> set[str]:
        """Logins whose comments count as the agent's own."""
        name = self.assignee_username
        return {name, f"{name}[bot]"}


class LabelsConfig(BaseModel):
    trigger: str = "for-issuepilot"
    needs_human: str = "needs-human"
    in_progress: str = "agent-in-progress"
    implementing: str = "agent-implementing"
    completed: str = "agent-completed"
    failed: str = "agent-failed"


class RoutingConfig(BaseModel):
    triage: str = "anthropic/claude-sonnet-4-20250514"
    responder: str = "anthropic/claude-sonnet-4-20250514"
    analyst: str = "anthropic/claude-sonnet-4-20250514"


class VMConfig(BaseModel):
    api_url: str = "https://api.digitalocean.com/v2"
    region: str = "nyc3"
    size: str = "s-2vcpu-2gb"
    image: str = "ubuntu-22-04-x64"
    tag: str = "issuepilot"
    ssh_user: str = "root"
    ssh_key_ids: list[str | int] = Field(default_factory=list)
    ssh_private_key_path: str = "~/.ssh/id_ed25519"
    ssh_public_key_path: str = "~/.ssh/id_ed25519.pub"
    ready_timeout_minutes: float = 5
    poll_interval_seconds: float = 10
    settle_seconds: float = 30
    ssh_wait_minutes: float = 5
    setup_timeout_seconds: int = 1200
    artifact_dir: str = "/tmp"


class PhaseConfig(BaseModel):
    timeout_seconds: int
    allowed_tools: list[str] = Field(default_factory=list)
    optional: bool = False


def _default_phases() -> dict[str, PhaseConfig]:
    return {
        "analyze": PhaseConfig(timeout_seconds=300, allowed_tools=["Bash", "Edit", "Read"]),
        "implement": PhaseConfig(timeout_seconds=900, allowed_tools=["Edit", "Bash"]),
        "test": PhaseConfig(timeout_seconds=600, allowed_tools=["PlaywrightMCP"], optional=True),
        "validate": PhaseConfig(timeout_seconds=300, allowed_tools=["Bash"]),
        "publish": PhaseConfig(timeout_seconds=300),
    }


class ExecutorConfig(BaseModel):
    agent_command: str = "claude"
    output_format: str = "text"
    workdir: str = "/root/workspace"
    max_output_bytes: int = 10 * 1024 * 1024
    connect_timeout_seconds: int = 15
    branch_prefix: str = "issuepilot/issue-"
    phases: dict[str, PhaseConfig] = Field(default_factory=_default_phases)


class StateConfig(BaseModel):
    path: str = ".issuepilot/agent-state.json"
    audit_log: str = ".issuepilot/logs/audit.jsonl"


class WebhookConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000


class IssuePilotConfig(BaseModel):
    agent: AgentConfig = Field(default_factory=AgentConfig)
    labels: LabelsConfig = Field(default_factory=LabelsConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    vm: VMConfig = Field(default_factory=VMConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)


# ---------------------------------------------------------------------------
# Credentials (environment only)
# ---------------------------------------------------------------------------

class Credentials(BaseModel):
    github_token: str | None = None
    digitalocean_token: str | None = None
    webhook_secret: str | None = None
    ssh_private_key: str | None = None  # decoded PEM text
    ssh_public_key: str | None = None

    @classmethod
    def from_env(cls) -> "Credentials":
        encoded = os.environ.get("ISSUEPILOT_SSH_PRIVATE_KEY")
        private_key = None
        if encoded:
            try:
                private_key = base64.b64decode(encoded).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as e:
                raise ConfigError(f"ISSUEPILOT_SSH_PRIVATE_KEY is not valid base64: {e}")

        return cls(
            github_token=os.environ.get("GH_TOKEN") or os.environ.get("GITHUB_TOKEN"),
            digitalocean_token=os.environ.get("DIGITALOCEAN_TOKEN"),
            webhook_secret=os.environ.get("GITHUB_WEBHOOK_SECRET"),
            ssh_private_key=private_key,
            ssh_public_key=os.environ.get("ISSUEPILOT_SSH_PUBLIC_KEY"),
        )


# ---------------------------------------------------------------------------
# Per-repository workflow config (.github/issuepilot.yml)
# ---------------------------------------------------------------------------

REPO_CONFIG_PATH = ".github/issuepilot.yml"

KNOWN_WORKFLOWS = ("simple_comment", "vm_development", "github_actions")


class GitHubActionsWorkflow(BaseModel):
    workflow_file: str = "issuepilot-implement.yml"
    ref: str = "main"


class VMDevelopmentWorkflow(BaseModel):
    vm_size: str | None = None
    setup_script: str | None = None
    browser_tests: bool = False


class ProjectInfo(BaseModel):
    name: str = ""
    description: str = ""
    tech_stack: list[str] = Field(default_factory=list)
    key_directories: list[str] = Field(default_factory=list)


class RepoWorkflowConfig(BaseModel):
    # Kept as a plain string so an unknown value reaches the orchestrator
    # and gets reported on the item instead of failing validation here.
    workflow_type: str = "simple_comment"
    github_actions: GitHubActionsWorkflow = Field(default_factory=GitHubActionsWorkflow)
    vm_development: VMDevelopmentWorkflow = Field(default_factory=VMDevelopmentWorkflow)
    project: ProjectInfo = Field(default_factory=ProjectInfo)

    @property
    def is_known(self) -> bool:
        return self.workflow_type in KNOWN_WORKFLOWS


def parse_repo_config(text: str | None) -> RepoWorkflowConfig:
    """Parse the contents of a repository's issuepilot.yml (None → defaults)."""
    if not text:
        return RepoWorkflowConfig()
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{REPO_CONFIG_PATH} is not valid YAML: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{REPO_CONFIG_PATH} must contain a mapping")

    section = data.get("issuepilot", data)
    try:
        return RepoWorkflowConfig(**section)
    except ValidationError as e:
        raise ConfigError(f"{REPO_CONFIG_PATH} is invalid: {e}")


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"
_USER_CONFIG_PATH = Path.home() / ".issuepilot" / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")


def load_config(config_path: Path | None = None) -> IssuePilotConfig:
    """
    Load config by merging:
      1. Built-in defaults (issuepilot/config.yaml)
      2. Operator overrides (--config path, else ~/.issuepilot/config.yaml)
      3. Environment overrides for a few operational knobs
    """
    # 1. Built-in defaults
    base = _read_yaml(_DEFAULT_CONFIG_PATH)

    # 2. Operator overrides
    override_path = config_path or _USER_CONFIG_PATH
    if config_path and not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    if override_path.exists():
        base = _deep_merge(base, _read_yaml(override_path))

    # 3. Env overrides
    env_overrides: dict[str, Any] = {}
    if os.environ.get("ISSUEPILOT_ASSIGNEE"):
        env_overrides.setdefault("agent", {})["assignee_username"] = os.environ["ISSUEPILOT_ASSIGNEE"]
    if os.environ.get("ISSUEPILOT_MAX_CONCURRENT_TASKS"):
        env_overrides.setdefault("agent", {})["max_concurrent_tasks"] = os.environ["ISSUEPILOT_MAX_CONCURRENT_TASKS"]
    if os.environ.get("ISSUEPILOT_STATE_PATH"):
        env_overrides.setdefault("state", {})["path"] = os.environ["ISSUEPILOT_STATE_PATH"]
    base = _deep_merge(base, env_overrides)

    try:
        return IssuePilotConfig(**base)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}")


WorkflowNeed = Literal["tracker", "vm"]


def validate_credentials(credentials: Credentials | None = None) -> dict[str, bool]:
    """Check which credentials are available."""
    creds = credentials or Credentials.from_env()
    return {
        "GH_TOKEN / GITHUB_TOKEN":     bool(creds.github_token),
        "DIGITALOCEAN_TOKEN":          bool(creds.digitalocean_token),
        "GITHUB_WEBHOOK_SECRET":       bool(creds.webhook_secret),
        "ISSUEPILOT_SSH_PRIVATE_KEY":  bool(creds.ssh_private_key),
        "ANTHROPIC_API_KEY":           bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":              bool(os.environ.get("OPENAI_API_KEY")),
    }


def missing_credentials(needs: list[WorkflowNeed], credentials: Credentials | None = None) -> list[str]:
    """Names of required credentials that are absent for the given needs."""
    creds = credentials or Credentials.from_env()
    missing: list[str] = []
    if "tracker" in needs and not creds.github_token:
        missing.append("GH_TOKEN")
    if "vm" in needs:
        if not creds.digitalocean_token:
            missing.append("DIGITALOCEAN_TOKEN")
    return missing
