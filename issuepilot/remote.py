"""
Remote shell over the system ssh/scp binaries.

Every call is bounded by a timeout and a maximum captured output size.
Transport failures (timeouts, unreachable host, missing binary) raise
RemoteTransportError subclasses; a non-zero exit from the remote command
itself is returned, not raised.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from issuepilot.vm import PollPolicy, VMInstance


class RemoteTransportError(Exception):
    pass


class RemoteTimeoutError(RemoteTransportError):
    pass


class RemoteConnectionError(RemoteTransportError):
    pass


SSH_CONNECTION_FAILURE = 255


@dataclass
class RemoteResult:
    exit_code: int
    stdout: str
    stderr: str
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _tail(text: str, limit: int) -> tuple[str, bool]:
    data = text.encode("utf-8", errors="replace")
    if len(data) <= limit:
        return text, False
    return data[-limit:].decode("utf-8", errors="ignore"), True


class RemoteShell:
    def __init__(
        self,
        user: str = "root",
        connect_timeout: int = 15,
        max_output_bytes: int = 10 * 1024 * 1024,
        ssh_binary: str = "ssh",
        scp_binary: str = "scp",
    ):
        self.user = user
        self.connect_timeout = connect_timeout
        self.max_output_bytes = max_output_bytes
        self.ssh_binary = ssh_binary
        self.scp_binary = scp_binary

    def _options(self, vm: VMInstance) -> list[str]:
        return [
            "-i", str(vm.ssh_key),
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "LogLevel=ERROR",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
        ]

    def _exec(self, cmd: list[str], timeout: float, label: str) -> RemoteResult:
        try:
            proc = subprocess.run(
                cmd, capture_output=True, text=True, encoding="utf-8", errors="replace", timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise RemoteTimeoutError(f"{label} timed out after {timeout:.0f}s") from e
        except FileNotFoundError as e:
            raise RemoteConnectionError(f"{cmd[0]} not found on PATH") from e

        if proc.returncode == SSH_CONNECTION_FAILURE:
            raise RemoteConnectionError(f"{label} failed to connect: {proc.stderr.strip()[-500:]}")

        stdout, cut_out = _tail(proc.stdout or "", self.max_output_bytes)
        stderr, cut_err = _tail(proc.stderr or "", self.max_output_bytes)
        if cut_out or cut_err:
            logger.warning(f"[SSH] {label} output truncated to the last {self.max_output_bytes} bytes")
        return RemoteResult(proc.returncode, stdout, stderr, truncated=cut_out or cut_err)

    def run(self, vm: VMInstance, command: str, timeout: float) -> RemoteResult:
        logger.debug(f"[SSH] {vm.ip} $ {command[:200]}")
        cmd = [self.ssh_binary, *self._options(vm), f"{self.user}@{vm.ip}", command]
        return self._exec(cmd, timeout, f"ssh {vm.ip}")

    def upload(self, vm: VMInstance, local: Path, remote: str, timeout: float = 120) -> None:
        cmd = [self.scp_binary, *self._options(vm), str(local), f"{self.user}@{vm.ip}:{remote}"]
        result = self._exec(cmd, timeout, f"scp {local.name} → {vm.ip}")
        if not result.ok:
            raise RemoteConnectionError(f"scp {local} failed: {result.stderr.strip()}")
        logger.debug(f"[SSH] Uploaded {local} → {vm.ip}:{remote}")

    def wait_for_ssh(self, vm: VMInstance, poll: PollPolicy) -> None:
        """Block until `true` runs over SSH or the poll policy times out."""
        def probe() -> bool:
            try:
                return self.run(vm, "true", timeout=self.connect_timeout + 5).ok
            except RemoteTransportError as e:
                logger.debug(f"[SSH] {vm.ip} not reachable yet: {e}")
                return False

        poll.wait_for(probe, f"SSH on {vm.ip}")
        logger.info(f"[SSH] {vm.ip} reachable")
