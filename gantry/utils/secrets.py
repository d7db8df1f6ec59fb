"""Secret lookup and allow-list filtering."""

from __future__ import annotations

import os
import re
from typing import Iterable, Mapping, Protocol

from gantry.errors import InputValidationError

_WHITESPACE = re.compile(r"\s+")


class SecretStore(Protocol):
    """Source of secret key/value pairs."""

    def items(self) -> Iterable[tuple[str, str]]: ...

    def get(self, name: str) -> str | None: ...


class EnvironmentSecretStore:
    """Expose the process environment as a secret store."""

    def items(self) -> Iterable[tuple[str, str]]:
        return list(os.environ.items())

    def get(self, name: str) -> str | None:
        return os.environ.get(name)


class MappingSecretStore:
    """Secret store backed by an in-memory mapping."""

    def __init__(self, secrets: Mapping[str, str]) -> None:
        self._secrets = dict(secrets)

    def items(self) -> Iterable[tuple[str, str]]:
        return list(self._secrets.items())

    def get(self, name: str) -> str | None:
        return self._secrets.get(name)


def parse_allow_list(allow_list: str | None) -> tuple[re.Pattern[str], ...]:
    """Compile a comma separated list of secret names or regular expressions."""

    if not allow_list:
        return ()

    compact = _WHITESPACE.sub("", allow_list)
    patterns: list[re.Pattern[str]] = []
    for raw in compact.split(","):
        if not raw:
            continue
        try:
            patterns.append(re.compile(raw))
        except re.error as exc:
            raise InputValidationError(
                message=f"Secret allow-list entry '{raw}' is not a valid regular expression.",
                remediation="Escape special characters or list secret names explicitly.",
            ) from exc
    return tuple(patterns)


def filter_secrets(allow_list: str | None, store: SecretStore) -> dict[str, str]:
    """Return the secrets whose names match any allow-list pattern.

    Patterns match anywhere in the name, so ``DEPLOY_.*`` keeps ``DEPLOY_KEY``
    and ``KEY`` would keep it as well. An absent allow-list exposes nothing.
    """

    patterns = parse_allow_list(allow_list)
    if not patterns:
        return {}
    return {
        key: value
        for key, value in store.items()
        if any(pattern.search(key) for pattern in patterns)
    }


__all__ = [
    "EnvironmentSecretStore",
    "MappingSecretStore",
    "SecretStore",
    "filter_secrets",
    "parse_allow_list",
]
