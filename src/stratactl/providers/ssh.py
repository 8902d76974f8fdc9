"""SSH collaborator used by the provisioner step.

The OpenSSH client shells out to ``ssh`` and ``scp`` with ``BatchMode`` so a
missing or rejected key fails fast instead of prompting. The identity file is
the private key path the key pair was persisted to; the key is never copied
anywhere else.
"""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from ..errors import ProvisionerError, SSHConnectionError, TransferError

if TYPE_CHECKING:
    from ..credentials import Credential


class SSHSession(Protocol):
    """An established session on a remote host."""

    def put_file(self, local_path: Path, remote_path: str) -> None:
        """Copy *local_path* to *remote_path* or raise :class:`TransferError`."""

    def close(self) -> None:
        """Release the session."""


class SSHClient(Protocol):
    """Factory for SSH sessions."""

    def connect(self, host: str, port: int, user: str, credential: Credential) -> SSHSession:
        """Open a session or raise :class:`SSHConnectionError`."""


def _format_detail(command: list[str], result: subprocess.CompletedProcess[str]) -> str:
    stderr = (result.stderr or "").strip()
    detail = f"{command[0]} rc={result.returncode}"
    if stderr:
        detail += f" stderr={stderr}"
    return detail


@dataclass(slots=True)
class OpenSSHSession:
    """Session backed by the OpenSSH command line tools."""

    client: OpenSSHClient
    host: str
    port: int
    user: str
    identity: Path

    def put_file(self, local_path: Path, remote_path: str) -> None:
        """Copy *local_path* to the remote host with ``scp``."""
        source = Path(local_path).expanduser()
        if not source.is_file():
            raise TransferError(f"Provisioner source {source} does not exist.")
        host = f"[{self.host}]" if ":" in self.host else self.host
        command = [
            self.client.scp_bin,
            *self.client.options(self.identity),
            "-P",
            str(self.port),
            str(source),
            f"{self.user}@{host}:{remote_path}",
        ]
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.client.transfer_timeout,
            )
        except FileNotFoundError as exc:
            raise ProvisionerError(f"scp binary not found: {self.client.scp_bin}") from exc
        except subprocess.TimeoutExpired as exc:
            raise TransferError(f"Copy to {self.host}:{remote_path} timed out.") from exc
        if result.returncode != 0:
            raise TransferError(
                f"Copy to {self.host}:{remote_path} failed: {_format_detail(command, result)}"
            )

    def close(self) -> None:
        """Nothing to release; each command opens its own connection."""


@dataclass(slots=True)
class OpenSSHClient:
    """Open sessions by running ``ssh`` against the target host."""

    ssh_bin: str = "ssh"
    scp_bin: str = "scp"
    connect_timeout: float = 10.0
    transfer_timeout: float = 120.0
    known_hosts_file: Path | None = None

    def options(self, identity: Path) -> list[str]:
        """Return the common ``-o`` options for ssh and scp."""
        known_hosts = str(self.known_hosts_file) if self.known_hosts_file else "/dev/null"
        return [
            "-i",
            str(identity),
            "-o",
            "BatchMode=yes",
            "-o",
            "IdentitiesOnly=yes",
            "-o",
            "StrictHostKeyChecking=accept-new",
            "-o",
            f"UserKnownHostsFile={known_hosts}",
            "-o",
            f"ConnectTimeout={max(int(self.connect_timeout), 1)}",
        ]

    def connect(self, host: str, port: int, user: str, credential: Credential) -> OpenSSHSession:
        """Verify the host accepts the key and return a session for it."""
        identity = credential.private_path
        if identity is None:
            raise ProvisionerError(
                f"Key pair {credential.fingerprint} has no persisted private key to connect with."
            )
        command = [
            self.ssh_bin,
            *self.options(identity),
            "-p",
            str(port),
            f"{user}@{host}",
            "true",
        ]
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.connect_timeout + 5,
            )
        except FileNotFoundError as exc:
            raise ProvisionerError(f"ssh binary not found: {self.ssh_bin}") from exc
        except subprocess.TimeoutExpired as exc:
            raise SSHConnectionError(f"Connection to {host}:{port} timed out.") from exc
        if result.returncode != 0:
            raise SSHConnectionError(
                f"Connection to {host}:{port} failed: {_format_detail(command, result)}"
            )
        return OpenSSHSession(client=self, host=host, port=port, user=user, identity=identity)


__all__ = [
    "OpenSSHClient",
    "OpenSSHSession",
    "SSHClient",
    "SSHSession",
]
