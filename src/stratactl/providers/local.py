"""Local persistence sink for credential material and ``LocalFile`` resources."""
from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from ..errors import CredentialPersistenceError

LOGGER = logging.getLogger(__name__)


def sha256_hex(data: bytes) -> str:
    """Return the hex SHA-256 digest of *data*."""
    return hashlib.sha256(data).hexdigest()


@dataclass(slots=True)
class LocalFileSink:
    """Write files atomically with explicit permissions.

    Permission failures are returned as warnings instead of raised; write
    failures raise :class:`~stratactl.errors.CredentialPersistenceError`.
    """

    def write(self, path: Path, data: bytes, mode: int) -> list[str]:
        """Atomically write *data* to *path* and apply *mode*."""
        target = Path(path).expanduser()
        warnings: list[str] = []
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # mkstemp creates the file 0600, so content is never world-readable.
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
        except OSError as exc:
            raise CredentialPersistenceError(
                exc.errno, f"Cannot write {target}: {exc.strerror or exc}"
            ) from exc

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_path, target)
        except OSError as exc:
            raise CredentialPersistenceError(
                exc.errno, f"Cannot write {target}: {exc.strerror or exc}"
            ) from exc
        finally:
            tmp_path.unlink(missing_ok=True)

        try:
            os.chmod(target, mode)
        except OSError as exc:
            message = f"Could not set permissions {mode:04o} on {target}: {exc}"
            LOGGER.warning(message)
            warnings.append(message)
        return warnings

    def remove(self, path: Path, *, expected_sha256: str | None = None) -> list[str]:
        """Delete *path*, leaving it alone if its content no longer matches."""
        target = Path(path).expanduser()
        try:
            data = target.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as exc:
            return [f"Could not read {target} before removal: {exc}"]
        if expected_sha256 is not None and sha256_hex(data) != expected_sha256:
            return [f"Left {target} in place: content changed since it was written."]
        try:
            target.unlink()
        except OSError as exc:
            raise CredentialPersistenceError(
                exc.errno, f"Cannot remove {target}: {exc.strerror or exc}"
            ) from exc
        return []


__all__ = ["LocalFileSink", "sha256_hex"]
