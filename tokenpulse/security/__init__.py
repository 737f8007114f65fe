"""Security helpers."""

from .secrets import (
    DEFAULT_CREDENTIAL_ENV,
    EnvSecretStore,
    SecretStore,
    StaticSecretStore,
)

__all__ = [
    "DEFAULT_CREDENTIAL_ENV",
    "EnvSecretStore",
    "SecretStore",
    "StaticSecretStore",
]
