"""
VM Lifecycle Manager

    PROVISIONING → READY → SETUP → RUNNING → DESTROYING
          └──────────┴───────┴────────┴──▶ FAILED

Leases one disposable DigitalOcean droplet per task. Teardown runs on
every exit path of a lease; orphaned instances are surfaced by
reconcile() rather than hidden.

The boot-time cloud-config only guarantees SSH access. Everything else
(runtimes, clone, agent CLI) happens in a post-boot script over SSH.
"""

from __future__ import annotations

import dataclasses
import os
import re
import shlex
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Literal, Protocol, TypeVar

import httpx
import yaml
from loguru import logger
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from issuepilot.config_loader import Credentials, VMConfig
from issuepilot.event_bus import EventBus
from issuepilot.remote import RemoteShell, RemoteTransportError


class ProvisioningError(Exception):
    pass


class ProvisioningTimeout(ProvisioningError):
    pass


VMStatus = Literal["provisioning", "ready", "setup", "running", "failed", "destroying"]

SETUP_SCRIPT = Path(__file__).parent / "templates" / "setup.sh"
REMOTE_ENV_PATH = "/root/.issuepilot.env"
REMOTE_SETUP_PATH = "/root/issuepilot-setup.sh"

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Poll policy
# ---------------------------------------------------------------------------

@dataclass
class PollPolicy:
    """Fixed-interval polling with a deadline; clock and sleep are injectable."""
    interval: float = 10.0
    timeout: float = 300.0
    settle_delay: float = 30.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def with_timeout(self, timeout: float) -> "PollPolicy":
        return dataclasses.replace(self, timeout=timeout)

    def wait_for(self, probe: Callable[[], T | None], what: str) -> T:
        deadline = self.clock() + self.timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                result = probe()
            except httpx.HTTPError as e:
                logger.debug(f"[VM] Poll {attempt} for {what} hit a transient error: {e}")
                result = None
            if result:
                return result
            if self.clock() + self.interval > deadline:
                raise ProvisioningTimeout(
                    f"{what} not ready after {self.timeout:.0f}s ({attempt} polls)"
                )
            self.sleep(self.interval)

    def settle(self) -> None:
        if self.settle_delay > 0:
            self.sleep(self.settle_delay)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Droplet(BaseModel):
    id: int
    name: str = ""
    status: str = "new"
    public_ip: str | None = None
    tags: list[str] = Field(default_factory=list)
    size_slug: str = ""
    price_hourly: float = 0.0
    created_at: datetime | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Droplet":
        v4 = (data.get("networks") or {}).get("v4") or []
        public = next((n["ip_address"] for n in v4 if n.get("type") == "public"), None)
        size = data.get("size") or {}
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            status=data.get("status", "new"),
            public_ip=public,
            tags=data.get("tags") or [],
            size_slug=data.get("size_slug") or size.get("slug", ""),
            price_hourly=float(size.get("price_hourly") or 0.0),
            created_at=data.get("created_at"),
        )


class VMInstance(BaseModel):
    id: int | None = None
    name: str
    ip: str | None = None
    status: VMStatus = "provisioning"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    ticket_id: str
    ssh_key: str
    size: str = ""
    hourly_cost: float = 0.0
    artifacts: list[str] = Field(default_factory=list)  # local files removed at teardown
    released: bool = False


class FleetReport(BaseModel):
    managed: list[Droplet] = Field(default_factory=list)
    unmanaged: list[Droplet] = Field(default_factory=list)

    @property
    def hourly_cost(self) -> float:
        return round(sum(d.price_hourly for d in self.managed), 5)

    @property
    def total_hourly_cost(self) -> float:
        return round(self.hourly_cost + sum(d.price_hourly for d in self.unmanaged), 5)


def ticket_slug(ticket_id: str) -> str:
    return re.sub(r"[^a-z0-9-]+", "-", ticket_id.lower()).strip("-")


def build_user_data(public_key: str, user: str = "root") -> str:
    """Minimal cloud-config: an authorised key and nothing that can delay sshd."""
    if user == "root":
        doc: dict[str, Any] = {
            "disable_root": False,
            "ssh_authorized_keys": [public_key.strip()],
        }
    else:
        doc = {
            "users": [{
                "name": user,
                "groups": "sudo",
                "shell": "/bin/bash",
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "ssh_authorized_keys": [public_key.strip()],
            }],
        }
    return "#cloud-config\n" + yaml.safe_dump(doc, sort_keys=False)


# ---------------------------------------------------------------------------
# Compute provider
# ---------------------------------------------------------------------------

class ComputeProvider(Protocol):
    def create_instance(self, name: str, region: str, size: str, image: str,
                        ssh_keys: list[str | int], tags: list[str], user_data: str) -> Droplet: ...
    def get_instance(self, instance_id: int) -> Droplet | None: ...
    def delete_instance(self, instance_id: int) -> None: ...
    def list_instances(self, tag: str | None = None) -> list[Droplet]: ...


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return False


_transient_retry = retry(
    retry=retry_if_exception(_is_transient),
    stop=stop_after_attempt(3),
    wait=wait_exponential(min=1, max=10),
    reraise=True,
)


class DigitalOceanProvider:
    """DigitalOcean v2 droplets API. Creates are never retried (no double spend)."""

    def __init__(self, token: str, api_url: str = "https://api.digitalocean.com/v2",
                 client: httpx.Client | None = None):
        self.client = client or httpx.Client(
            base_url=api_url,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            timeout=30.0,
        )

    def create_instance(self, name: str, region: str, size: str, image: str,
                        ssh_keys: list[str | int], tags: list[str], user_data: str) -> Droplet:
        resp = self.client.post("/droplets", json={
            "name": name,
            "region": region,
            "size": size,
            "image": image,
            "ssh_keys": ssh_keys,
            "tags": tags,
            "user_data": user_data,
            "backups": False,
            "ipv6": False,
            "monitoring": True,
        })
        resp.raise_for_status()
        return Droplet.from_api(resp.json()["droplet"])

    @_transient_retry
    def get_instance(self, instance_id: int) -> Droplet | None:
        resp = self.client.get(f"/droplets/{instance_id}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return Droplet.from_api(resp.json()["droplet"])

    @_transient_retry
    def delete_instance(self, instance_id: int) -> None:
        resp = self.client.delete(f"/droplets/{instance_id}")
        if resp.status_code == 404:
            logger.debug(f"[VM] Droplet {instance_id} already gone")
            return
        resp.raise_for_status()

    @_transient_retry
    def list_instances(self, tag: str | None = None) -> list[Droplet]:
        params: dict[str, Any] = {"per_page": 200}
        if tag:
            params["tag_name"] = tag
        resp = self.client.get("/droplets", params=params)
        resp.raise_for_status()
        return [Droplet.from_api(d) for d in resp.json().get("droplets", [])]


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class VMManager:
    def __init__(
        self,
        provider: ComputeProvider,
        shell: RemoteShell,
        config: VMConfig,
        credentials: Credentials,
        poll: PollPolicy | None = None,
        bus: EventBus | None = None,
    ):
        self.provider = provider
        self.shell = shell
        self.config = config
        self.credentials = credentials
        self.poll = poll or PollPolicy(
            interval=config.poll_interval_seconds,
            timeout=config.ready_timeout_minutes * 60,
            settle_delay=config.settle_seconds,
        )
        self.bus = bus or EventBus()

    # -- keys and local artifacts -------------------------------------------

    def _artifact(self, ticket_id: str, suffix: str) -> Path:
        return Path(self.config.artifact_dir) / f"issuepilot-{ticket_slug(ticket_id)}.{suffix}"

    @staticmethod
    def _write_private(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(content if content.endswith("\n") else content + "\n")
        os.chmod(path, 0o600)

    def _public_key(self) -> str:
        if self.credentials.ssh_public_key:
            return self.credentials.ssh_public_key
        path = Path(self.config.ssh_public_key_path).expanduser()
        if not path.exists():
            raise ProvisioningError(
                f"No SSH public key: set ISSUEPILOT_SSH_PUBLIC_KEY or create {path}"
            )
        return path.read_text().strip()

    def _private_key(self, ticket_id: str, artifacts: list[str]) -> str:
        if self.credentials.ssh_private_key:
            path = self._artifact(ticket_id, "key")
            self._write_private(path, self.credentials.ssh_private_key)
            artifacts.append(str(path))
            return str(path)
        path = Path(self.config.ssh_private_key_path).expanduser()
        if not path.exists():
            raise ProvisioningError(
                f"No SSH private key: set ISSUEPILOT_SSH_PRIVATE_KEY or create {path}"
            )
        return str(path)

    @staticmethod
    def _remove_artifacts(paths: list[str]) -> None:
        for p in paths:
            try:
                os.remove(p)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"[VM] Could not remove local artifact {p}: {e}")

    # -- lifecycle ----------------------------------------------------------

    def provision(self, ticket_id: str, size: str | None = None) -> VMInstance:
        """Create a tagged instance and wait for an address; tears down on failure."""
        slug = ticket_slug(ticket_id)
        size = size or self.config.size
        name = f"{self.config.tag}-{slug}-{int(time.time())}"[:63]
        artifacts: list[str] = []

        try:
            key_path = self._private_key(ticket_id, artifacts)
            user_data = build_user_data(self._public_key(), self.config.ssh_user)
            logger.info(f"[VM] Creating {name} ({size}, {self.config.region})")
            droplet = self.provider.create_instance(
                name=name,
                region=self.config.region,
                size=size,
                image=self.config.image,
                ssh_keys=self.config.ssh_key_ids,
                tags=[self.config.tag, f"ticket-{slug}"],
                user_data=user_data,
            )
        except httpx.HTTPError as e:
            self._remove_artifacts(artifacts)
            raise ProvisioningError(f"Instance create failed for {ticket_id}: {e}") from e
        except ProvisioningError:
            self._remove_artifacts(artifacts)
            raise

        vm = VMInstance(
            id=droplet.id,
            name=name,
            ticket_id=ticket_id,
            ssh_key=key_path,
            size=size,
            hourly_cost=droplet.price_hourly,
            artifacts=artifacts,
        )
        self.bus.emit("vm_provisioning", "vm", {"ticket": ticket_id, "id": vm.id, "name": name})

        try:
            ready = self.await_ready(vm.id, self.config.ready_timeout_minutes)
            vm.ip = ready.public_ip
            vm.hourly_cost = ready.price_hourly or vm.hourly_cost
            logger.info(f"[VM] {name} active at {vm.ip}; settling {self.poll.settle_delay:.0f}s")
            self.poll.settle()
        except BaseException:
            vm.status = "failed"
            self.teardown(vm)
            raise

        vm.status = "ready"
        self.bus.emit("vm_ready", "vm", {"ticket": ticket_id, "id": vm.id, "ip": vm.ip})
        return vm

    def await_ready(self, instance_id: int, timeout_minutes: float) -> Droplet:
        """Poll until active with a public address. Raises ProvisioningTimeout."""
        def probe() -> Droplet | None:
            droplet = self.provider.get_instance(instance_id)
            if droplet is None:
                raise ProvisioningError(f"Instance {instance_id} disappeared while provisioning")
            if droplet.status == "active" and droplet.public_ip:
                return droplet
            logger.debug(f"[VM] {instance_id} status={droplet.status} ip={droplet.public_ip}")
            return None

        return self.poll.with_timeout(timeout_minutes * 60).wait_for(probe, f"instance {instance_id}")

    def bootstrap(
        self,
        vm: VMInstance,
        repo_full_name: str,
        workdir: str,
        repo_setup_script: str | None = None,
        browser_tests: bool = False,
    ) -> None:
        """Confirm SSH, then upload and run the post-boot setup script."""
        vm.status = "setup"
        ssh_poll = self.poll.with_timeout(self.config.ssh_wait_minutes * 60)
        try:
            self.shell.wait_for_ssh(vm, ssh_poll)

            env = {
                "ISSUEPILOT_REPO": repo_full_name,
                "ISSUEPILOT_WORKDIR": workdir,
                "ISSUEPILOT_REPO_SETUP": repo_setup_script or "",
                "ISSUEPILOT_BROWSER_TESTS": "1" if browser_tests else "",
                "GH_TOKEN": self.credentials.github_token or "",
                "ANTHROPIC_API_KEY": os.environ.get("ANTHROPIC_API_KEY", ""),
            }
            env_path = self._artifact(vm.ticket_id, "env")
            self._write_private(env_path, "\n".join(
                f"export {k}={shlex.quote(v)}" for k, v in env.items()
            ))
            vm.artifacts.append(str(env_path))

            self.shell.upload(vm, env_path, REMOTE_ENV_PATH)
            self.shell.upload(vm, SETUP_SCRIPT, REMOTE_SETUP_PATH)
            result = self.shell.run(
                vm,
                f"chmod 600 {REMOTE_ENV_PATH} && bash {REMOTE_SETUP_PATH}",
                timeout=self.config.setup_timeout_seconds,
            )
        except (RemoteTransportError, ProvisioningError):
            vm.status = "failed"
            raise

        if not result.ok:
            vm.status = "failed"
            tail = (result.stderr or result.stdout)[-1000:]
            raise ProvisioningError(f"Setup script failed on {vm.ip} (exit {result.exit_code}):\n{tail}")

        vm.status = "ready"
        logger.info(f"[VM] {vm.name} set up for {repo_full_name}")
        self.bus.emit("vm_setup_complete", "vm", {"ticket": vm.ticket_id, "id": vm.id})

    def teardown(self, vm: VMInstance) -> bool:
        """
        Delete the instance (idempotent) and remove local artifacts.

        Returns False when the delete failed; the instance then shows up
        in reconcile() as a managed leftover.
        """
        if vm.released:
            logger.debug(f"[VM] {vm.name} already released")
            return True

        vm.status = "destroying"
        deleted = True
        if vm.id is not None:
            try:
                self.provider.delete_instance(vm.id)
                logger.info(f"[VM] Destroyed {vm.name} ({vm.id})")
            except httpx.HTTPError as e:
                deleted = False
                logger.error(f"[VM] Failed to destroy {vm.name} ({vm.id}): {e}")
                self.bus.emit("vm_teardown_failed", "vm", {"ticket": vm.ticket_id, "id": vm.id, "error": str(e)})

        self._remove_artifacts(vm.artifacts)
        vm.released = deleted
        if deleted:
            self.bus.emit("vm_destroyed", "vm", {"ticket": vm.ticket_id, "id": vm.id})
        return deleted

    @contextmanager
    def lease(self, ticket_id: str, size: str | None = None) -> Iterator[VMInstance]:
        """Provision, yield, and always tear down."""
        vm = self.provision(ticket_id, size)
        try:
            yield vm
        finally:
            self.teardown(vm)

    # -- audit ---------------------------------------------------------------

    def list_managed(self) -> list[Droplet]:
        return self.provider.list_instances(tag=self.config.tag)

    def reconcile(self) -> FleetReport:
        report = FleetReport()
        for droplet in self.provider.list_instances():
            if self.config.tag in droplet.tags:
                report.managed.append(droplet)
            else:
                report.unmanaged.append(droplet)
        logger.info(
            f"[VM] Fleet: {len(report.managed)} managed (${report.hourly_cost}/h), "
            f"{len(report.unmanaged)} other"
        )
        return report

    def emergency_cleanup(self) -> list[int]:
        """Destroy every managed instance. Keeps going past individual failures."""
        destroyed: list[int] = []
        for droplet in self.list_managed():
            try:
                self.provider.delete_instance(droplet.id)
                destroyed.append(droplet.id)
                logger.warning(f"[VM] Emergency cleanup destroyed {droplet.name} ({droplet.id})")
            except httpx.HTTPError as e:
                logger.error(f"[VM] Emergency cleanup could not destroy {droplet.id}: {e}")
        self.bus.emit("vm_emergency_cleanup", "vm", {"destroyed": destroyed})
        return destroyed
