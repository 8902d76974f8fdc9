"""Provider collaborators: cloud API, local file sink and SSH client."""
from __future__ import annotations

from .base import CloudAPI, CloudResourceAdapter, ProviderResource
from .local import LocalFileSink, sha256_hex
from .memory import MemoryCloudAPI
from .ssh import OpenSSHClient, OpenSSHSession, SSHClient, SSHSession

__all__ = [
    "CloudAPI",
    "CloudResourceAdapter",
    "LocalFileSink",
    "MemoryCloudAPI",
    "OpenSSHClient",
    "OpenSSHSession",
    "ProviderResource",
    "SSHClient",
    "SSHSession",
    "sha256_hex",
]
