"""
Secret providers.

Configuration only ever carries the *name* of a secret (for the file
provider, a path). Components resolve the value at startup through a
``SecretProvider`` so tests can substitute an in-memory one.
"""

import logging
from pathlib import Path
from typing import Mapping, Protocol

from practice_web.errors import SecretResolutionError

logger = logging.getLogger(__name__)


class SecretProvider(Protocol):
    def resolve(self, name: str) -> str:
        ...


class FileSecretProvider:
    """Reads secrets from plain-text files, e.g. Docker/Kubernetes secrets."""

    def __init__(self, base_dir: str | Path | None = None):
        self.base_dir = Path(base_dir) if base_dir is not None else None

    def _path(self, name: str) -> Path:
        path = Path(name)
        if self.base_dir is not None and not path.is_absolute():
            path = self.base_dir / path
        return path

    def resolve(self, name: str) -> str:
        """
        Read the secret stored at *name*.

        A single trailing line break (as left by most editors and
        ``echo``) is dropped; anything else is returned untouched.

        Raises:
            SecretResolutionError: If the file is missing or unreadable.
        """
        path = self._path(name)
        try:
            value = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SecretResolutionError(name, exc.strerror or str(exc)) from exc

        logger.info("Secret loaded from %s", path)
        return value.removesuffix("\n").removesuffix("\r")


class InMemorySecretProvider:
    """Dictionary-backed provider, for tests and local tooling."""

    def __init__(self, secrets: Mapping[str, str] | None = None):
        self._secrets = dict(secrets or {})

    def resolve(self, name: str) -> str:
        try:
            return self._secrets[name]
        except KeyError:
            raise SecretResolutionError(name, "no such secret") from None
