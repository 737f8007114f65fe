"""Credential lookup for the upstream usage API."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from typing import Optional


DEFAULT_CREDENTIAL_ENV = "OPENAI_ADMIN_KEY"


class SecretStore(ABC):
    """Interface for pluggable credential storage."""

    @abstractmethod
    def get_credential(self) -> Optional[str]:
        """Return the credential, or None when nothing is configured."""

    def has_credential(self) -> bool:
        return bool(self.get_credential())


class EnvSecretStore(SecretStore):
    """Read the credential from an environment variable on every lookup."""

    def __init__(self, variable: str = DEFAULT_CREDENTIAL_ENV):
        self.variable = variable

    def get_credential(self) -> Optional[str]:
        value = os.getenv(self.variable, "").strip()
        return value or None

    def __repr__(self) -> str:
        return f"EnvSecretStore(variable={self.variable!r})"


class StaticSecretStore(SecretStore):
    """Fixed credential, mainly for tests and embedding callers."""

    def __init__(self, credential: Optional[str]):
        self._credential = credential.strip() if credential else None

    def get_credential(self) -> Optional[str]:
        return self._credential or None

    def __repr__(self) -> str:
        state = "set" if self._credential else "empty"
        return f"StaticSecretStore(<{state}>)"
