"""Secret resolution and masking.

The engine never stores secrets. It asks a :class:`SecretResolver` for
already-decrypted values at job start, hands them to the StepRunner at
invocation time, and replaces every occurrence in logs and outputs with a
fixed mask token before anything is persisted.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from typing import Protocol

from conduit.errors import SecretNotFound

logger = logging.getLogger(__name__)

DEFAULT_MASK = "***"
REPOSITORY_SCOPE = "repository"


class SecretResolver(Protocol):
    """Returns the clear value of a secret, or raises SecretNotFound."""

    async def resolve(self, scope: str, name: str) -> str: ...


class StaticSecretResolver:
    """Dict-backed resolver: ``{scope: {name: value}}``."""

    def __init__(self, secrets: dict[str, dict[str, str]] | None = None):
        self._secrets = secrets or {}

    async def resolve(self, scope: str, name: str) -> str:
        try:
            return self._secrets[scope][name]
        except KeyError:
            raise SecretNotFound(scope, name) from None


class EnvSecretResolver:
    """Reads secrets from the process environment.

    Looks up ``<PREFIX><SCOPE>_<NAME>`` first, then ``<PREFIX><NAME>`` for the
    repository scope. Scope and name are upper-cased, ``-`` becomes ``_``.
    """

    def __init__(self, prefix: str = "CONDUIT_SECRET_", environ: dict[str, str] | None = None):
        self._prefix = prefix
        self._environ = environ if environ is not None else os.environ

    async def resolve(self, scope: str, name: str) -> str:
        key = _env_name(name)
        candidates = [f"{self._prefix}{_env_name(scope)}_{key}"]
        if scope == REPOSITORY_SCOPE:
            candidates.append(f"{self._prefix}{key}")
        for var in candidates:
            value = self._environ.get(var)
            if value is not None:
                return value
        raise SecretNotFound(scope, name)


def _env_name(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", text).upper()


class SecretMasker:
    """Substring-replaces registered secret values with a mask token.

    Shared by every job of a run and by the logging filter, so registration
    is guarded by a lock. Longer values are replaced first so a secret that
    contains another is masked whole.
    """

    def __init__(self, mask: str = DEFAULT_MASK):
        self.mask_token = mask
        self._values: set[str] = set()
        self._ordered: list[str] = []
        self._lock = threading.Lock()

    def add(self, value: str | None) -> None:
        if not value:
            return
        with self._lock:
            candidates = {value, *(line for line in value.splitlines() if line.strip())}
            if candidates <= self._values:
                return
            self._values.update(candidates)
            self._ordered = sorted(self._values, key=len, reverse=True)

    def mask(self, text: str) -> str:
        if not text:
            return text
        for value in self._ordered:
            if value in text:
                text = text.replace(value, self.mask_token)
        return text

    def mask_mapping(self, data: dict[str, str]) -> dict[str, str]:
        return {k: self.mask(v) for k, v in data.items()}

    def clear(self) -> None:
        with self._lock:
            self._values.clear()
            self._ordered = []

    def __len__(self) -> int:
        return len(self._values)
