"""SSH credential generation, persistence and custody.

Private key material lives in exactly three places: the :class:`Credential`
object returned by :func:`generate_keypair`, the private key file written by
:func:`persist_credential`, and the ``ssh``/``scp`` process that reads that
file during a provisioner step. It is never recorded in state, logs or
reports.
"""
from __future__ import annotations

import base64
import hashlib
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa

from .errors import ProvisionerError
from .providers.local import LocalFileSink

SUPPORTED_ALGORITHMS = ("rsa", "ed25519")
MIN_RSA_BITS = 2048
DEFAULT_RSA_BITS = 4096
PRIVATE_KEY_MODE = 0o600
PUBLIC_KEY_MODE = 0o644


@dataclass(frozen=True)
class Credential:
    """An asymmetric SSH keypair."""

    algorithm: str
    public_openssh: str
    private_pem: bytes = field(repr=False)
    fingerprint: str
    private_path: Path | None = None
    public_path: Path | None = None

    def __repr__(self) -> str:
        """Describe the credential without exposing private material."""
        return (
            f"Credential(algorithm={self.algorithm!r}, fingerprint={self.fingerprint!r}, "
            f"private_path={self.private_path!r})"
        )

    __str__ = __repr__


def fingerprint_of(public_openssh: str) -> str:
    """Return the OpenSSH ``SHA256:`` fingerprint of a public key line."""
    parts = public_openssh.split()
    if len(parts) < 2:
        raise ValueError("Public key must be in OpenSSH '<type> <base64>' form.")
    blob = base64.b64decode(parts[1])
    digest = base64.b64encode(hashlib.sha256(blob).digest()).decode("ascii").rstrip("=")
    return f"SHA256:{digest}"


def generate_keypair(algorithm: str = "rsa", bits: int | None = None) -> Credential:
    """Generate a new SSH keypair.

    Parameters
    ----------
    algorithm:
        ``rsa`` or ``ed25519``.
    bits:
        RSA modulus size; ignored for Ed25519. Defaults to 4096.
    """
    normalized = algorithm.strip().lower()
    if normalized == "rsa":
        key_size = DEFAULT_RSA_BITS if bits is None else int(bits)
        if key_size < MIN_RSA_BITS:
            raise ValueError(f"RSA keys must be at least {MIN_RSA_BITS} bits.")
        rsa_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        private_pem = rsa_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = rsa_key.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        )
    elif normalized == "ed25519":
        ed_key = ed25519.Ed25519PrivateKey.generate()
        private_pem = ed_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = ed_key.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        )
    else:
        allowed = ", ".join(SUPPORTED_ALGORITHMS)
        raise ValueError(f"Unsupported key algorithm '{algorithm}'. Allowed: {allowed}.")

    public_openssh = public_bytes.decode("ascii")
    return Credential(
        algorithm=normalized,
        public_openssh=public_openssh,
        private_pem=private_pem,
        fingerprint=fingerprint_of(public_openssh),
    )


def persist_credential(
    credential: Credential,
    private_path: Path,
    public_path: Path,
    sink: LocalFileSink,
) -> tuple[Credential, list[str]]:
    """Write both halves of *credential* and return it with the paths set.

    The private half is written ``0600`` and the public half ``0644``.
    Permission failures come back as warnings; write failures raise
    :class:`~stratactl.errors.CredentialPersistenceError`.
    """
    warnings = sink.write(Path(private_path), credential.private_pem, PRIVATE_KEY_MODE)
    warnings += sink.write(
        Path(public_path), (credential.public_openssh + "\n").encode("ascii"), PUBLIC_KEY_MODE
    )
    return replace(credential, private_path=Path(private_path), public_path=Path(public_path)), warnings


def load_credential(private_path: Path) -> Credential:
    """Load a previously persisted private key."""
    path = Path(private_path).expanduser()
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ProvisionerError(f"Cannot read private key {path}: {exc}") from exc
    try:
        if b"OPENSSH PRIVATE KEY" in data:
            key = serialization.load_ssh_private_key(data, password=None)
        else:
            key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as exc:
        raise ProvisionerError(f"Private key {path} could not be parsed: {exc}") from exc

    if isinstance(key, rsa.RSAPrivateKey):
        algorithm = "rsa"
    elif isinstance(key, ed25519.Ed25519PrivateKey):
        algorithm = "ed25519"
    else:
        raise ProvisionerError(f"Private key {path} uses an unsupported algorithm.")
    public_openssh = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode("ascii")
    return Credential(
        algorithm=algorithm,
        public_openssh=public_openssh,
        private_pem=data,
        fingerprint=fingerprint_of(public_openssh),
        private_path=path,
    )


class CredentialVault:
    """Holds credentials for the duration of an apply cycle."""

    def __init__(self) -> None:
        """Start with no credentials."""
        self._lock = threading.Lock()
        self._credentials: dict[str, Credential] = {}

    def put(self, address: str, credential: Credential) -> None:
        """Keep *credential* for the key pair at *address*."""
        with self._lock:
            self._credentials[address] = credential

    def discard(self, address: str) -> None:
        """Forget the credential for *address*."""
        with self._lock:
            self._credentials.pop(address, None)

    def get(self, address: str, *, private_path: str | Path | None = None) -> Credential:
        """Return the credential for *address*, loading it from disk if needed."""
        with self._lock:
            credential = self._credentials.get(address)
        if credential is not None:
            return credential
        if not private_path:
            raise ProvisionerError(f"No private key is available for {address}.")
        credential = load_credential(Path(private_path))
        with self._lock:
            self._credentials.setdefault(address, credential)
        return credential

    def __contains__(self, address: object) -> bool:
        """Return ``True`` when a credential for *address* is held."""
        with self._lock:
            return address in self._credentials


__all__ = [
    "Credential",
    "CredentialVault",
    "PRIVATE_KEY_MODE",
    "PUBLIC_KEY_MODE",
    "fingerprint_of",
    "generate_keypair",
    "load_credential",
    "persist_credential",
]
