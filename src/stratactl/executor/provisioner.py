"""File provisioner: push files onto a freshly created instance over SSH.

A new instance usually refuses connections for a while after the provider
reports it created, so the connect step retries with exponential backoff up
to ``max_attempts`` before giving up with
:class:`~stratactl.errors.ProvisionerTimeoutError`. Transfer failures on an
established session are not retried.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..credentials import Credential
from ..errors import ProvisionerTimeoutError, SSHConnectionError
from ..providers.ssh import SSHClient, SSHSession
from .backoff import ExponentialBackoff

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ProvisionerOptions:
    """Tunables for the connect retry loop."""

    max_attempts: int = 5
    base_delay: float = 2.0
    max_delay: float = 30.0
    multiplier: float = 2.0


@dataclass(slots=True, frozen=True)
class FileTransfer:
    """A resolved ``file`` provisioner step."""

    host: str
    port: int
    user: str
    credential: Credential
    source: Path
    destination: str


class Provisioner:
    """Run file transfers against a target instance."""

    def __init__(
        self,
        client: SSHClient,
        options: ProvisionerOptions | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Bind the SSH client and retry policy."""
        self._client = client
        self._options = options or ProvisionerOptions()
        self._sleep = sleep

    @property
    def options(self) -> ProvisionerOptions:
        """Return the retry policy in use."""
        return self._options

    def connect(self, host: str, port: int, user: str, credential: Credential) -> tuple[SSHSession, int]:
        """Open a session, retrying refused or timed-out connections.

        Returns the session and the number of attempts it took.
        """
        max_attempts = max(1, self._options.max_attempts)
        backoff = ExponentialBackoff(
            initial_interval=self._options.base_delay,
            multiplier=self._options.multiplier,
            max_interval=self._options.max_delay,
        )
        last_error: SSHConnectionError | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                return self._client.connect(host, port, user, credential), attempt
            except SSHConnectionError as exc:
                last_error = exc
                LOGGER.info(
                    "SSH connect to %s:%s failed (attempt %d/%d): %s",
                    host,
                    port,
                    attempt,
                    max_attempts,
                    exc,
                )
            if attempt < max_attempts:
                self._sleep(backoff.next_backoff())
        raise ProvisionerTimeoutError(
            host, max_attempts, str(last_error) if last_error is not None else None
        )

    def run(self, transfers: Sequence[FileTransfer]) -> int:
        """Execute *transfers* in order and return the total connect attempts."""
        attempts = 0
        for transfer in transfers:
            session, used = self.connect(
                transfer.host, transfer.port, transfer.user, transfer.credential
            )
            attempts += used
            try:
                session.put_file(transfer.source, transfer.destination)
            finally:
                session.close()
            LOGGER.info(
                "Copied %s to %s:%s", transfer.source, transfer.host, transfer.destination
            )
        return attempts


__all__ = ["FileTransfer", "Provisioner", "ProvisionerOptions"]
