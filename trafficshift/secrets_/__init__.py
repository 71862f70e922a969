"""Secret lookup with HashiCorp Vault integration."""

from trafficshift.secrets_.vault_client import (
    SecretNotFoundError,
    SecretSource,
    StaticSecretSource,
    VaultConfig,
    VaultSecretSource,
)

__all__ = [
    "SecretNotFoundError",
    "SecretSource",
    "StaticSecretSource",
    "VaultConfig",
    "VaultSecretSource",
]
