"""Secrets holding the HTTP headers sent when downloading plugins."""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import aiohttp

SERVICE_ACCOUNT_TOKEN = "/var/run/secrets/kubernetes.io/serviceaccount/token"


class SecretNotFoundError(Exception):
    """Raised when a named header secret does not exist."""
    pass


class SecretSource(ABC):
    """Resolves a secret name to header name/value pairs."""

    @abstractmethod
    async def get_secret(self, name: str) -> dict[str, str]:
        """Return the secret's key/value data or raise SecretNotFoundError."""


class StaticSecretSource(SecretSource):
    """Header secrets held in memory, for tests and local runs."""

    def __init__(self, secrets: Optional[dict[str, dict[str, Any]]] = None):
        self._secrets = {name: {k: str(v) for k, v in data.items()} for name, data in (secrets or {}).items()}

    async def get_secret(self, name: str) -> dict[str, str]:
        try:
            return dict(self._secrets[name])
        except KeyError:
            raise SecretNotFoundError(f"no header secret named {name}") from None


@dataclass
class VaultConfig:
    """
    Where header secrets live in Vault.

    Secret ``name`` is read from ``<kv_mount>/data/<path_prefix>/<name>``
    in a KV v2 engine. With ``role`` set, the controller logs in with its
    Kubernetes service account instead of a static token.
    """

    address: str = ""
    token: str = ""
    namespace: str = ""
    kv_mount: str = "secret"
    path_prefix: str = "trafficshift/plugin-headers"
    role: str = ""
    service_account_token_file: str = SERVICE_ACCOUNT_TOKEN
    request_timeout: float = 10.0

    def __post_init__(self) -> None:
        self.address = (self.address or os.environ.get("VAULT_ADDR", "http://127.0.0.1:8200")).rstrip("/")
        self.token = self.token or os.environ.get("VAULT_TOKEN", "")


class VaultSecretSource(SecretSource):
    """
    Reads header secrets from HashiCorp Vault.

    Secrets are cached for the lifetime of the source; plugin downloads
    happen at controller start, so a restart picks up rotated values.
    """

    def __init__(self, config: Optional[VaultConfig] = None, session: Optional[aiohttp.ClientSession] = None):
        self.config = config or VaultConfig()
        self._session = session
        self._owns_session = session is None
        self._client_token = self.config.token
        self._cache: dict[str, dict[str, str]] = {}

    async def __aenter__(self) -> "VaultSecretSource":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def secret_url(self, name: str) -> str:
        path = "/".join(p for p in (self.config.path_prefix.strip("/"), name) if p)
        return f"{self.config.address}/v1/{self.config.kv_mount}/data/{path}"

    async def _ready_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )
            self._owns_session = True
        if not self._client_token and self.config.role:
            await self._kubernetes_login(self._session)
        return self._session

    async def _kubernetes_login(self, session: aiohttp.ClientSession) -> None:
        jwt = Path(self.config.service_account_token_file).read_text().strip()
        async with session.post(
            f"{self.config.address}/v1/auth/kubernetes/login",
            json={"role": self.config.role, "jwt": jwt},
        ) as resp:
            resp.raise_for_status()
            body = await resp.json()
        self._client_token = body["auth"]["client_token"]

    def _vault_headers(self) -> dict[str, str]:
        headers = {}
        if self._client_token:
            headers["X-Vault-Token"] = self._client_token
        if self.config.namespace:
            headers["X-Vault-Namespace"] = self.config.namespace
        return headers

    async def get_secret(self, name: str) -> dict[str, str]:
        if name not in self._cache:
            session = await self._ready_session()
            async with session.get(self.secret_url(name), headers=self._vault_headers()) as resp:
                if resp.status == 404:
                    raise SecretNotFoundError(f"no header secret named {name} in vault")
                resp.raise_for_status()
                body = await resp.json()
            self._cache[name] = {k: str(v) for k, v in body["data"]["data"].items()}
        return dict(self._cache[name])

    def forget(self, name: Optional[str] = None) -> None:
        """Drop one cached secret, or all of them."""
        if name is None:
            self._cache.clear()
        else:
            self._cache.pop(name, None)
