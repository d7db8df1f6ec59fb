"""Utility helpers for Gantry."""

from __future__ import annotations

from .secrets import (
    EnvironmentSecretStore,
    MappingSecretStore,
    SecretStore,
    filter_secrets,
    parse_allow_list,
)

__all__ = [
    "EnvironmentSecretStore",
    "MappingSecretStore",
    "SecretStore",
    "filter_secrets",
    "parse_allow_list",
]
