"""Tests for header secret sources."""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from trafficshift.secrets_.vault_client import (
    SecretNotFoundError,
    StaticSecretSource,
    VaultConfig,
    VaultSecretSource,
)


@pytest.fixture
async def vault_server(tmp_path):
    """Fake Vault serving one KV v2 secret and the kubernetes login endpoint."""
    seen = []

    async def read_secret(request):
        seen.append((request.path, dict(request.headers)))
        if request.match_info["name"] != "download-token":
            return web.json_response({"errors": []}, status=404)
        return web.json_response({"data": {"data": {"Authorization": "Bearer s3cr3t"}, "metadata": {}}})

    async def login(request):
        body = await request.json()
        seen.append((request.path, body))
        return web.json_response({"auth": {"client_token": f"k8s-{body['role']}"}})

    app = web.Application()
    app.router.add_get("/v1/secret/data/trafficshift/plugin-headers/{name}", read_secret)
    app.router.add_post("/v1/auth/kubernetes/login", login)
    async with TestServer(app) as server:
        server.seen = seen
        yield server


def vault_address(server):
    return f"http://{server.host}:{server.port}"


@pytest.mark.unit
class TestVaultSecretSource:
    """KV v2 reads against a local HTTP server."""

    async def test_get_secret(self, vault_server):
        config = VaultConfig(address=vault_address(vault_server), token="root-token", namespace="team-a")

        async with VaultSecretSource(config) as vault:
            data = await vault.get_secret("download-token")

        path, headers = vault_server.seen[0]
        assert data == {"Authorization": "Bearer s3cr3t"}
        assert path == "/v1/secret/data/trafficshift/plugin-headers/download-token"
        assert headers["X-Vault-Token"] == "root-token"
        assert headers["X-Vault-Namespace"] == "team-a"

    async def test_secret_is_cached(self, vault_server):
        config = VaultConfig(address=vault_address(vault_server), token="root-token")

        async with VaultSecretSource(config) as vault:
            await vault.get_secret("download-token")
            await vault.get_secret("download-token")
            vault.forget("download-token")
            await vault.get_secret("download-token")

        assert len(vault_server.seen) == 2

    async def test_missing_secret(self, vault_server):
        config = VaultConfig(address=vault_address(vault_server), token="root-token")

        async with VaultSecretSource(config) as vault:
            with pytest.raises(SecretNotFoundError):
                await vault.get_secret("unknown")

    async def test_kubernetes_login(self, vault_server, tmp_path, monkeypatch):
        monkeypatch.delenv("VAULT_TOKEN", raising=False)
        jwt = tmp_path / "token"
        jwt.write_text("service-account-jwt\n")
        config = VaultConfig(
            address=vault_address(vault_server),
            role="trafficshift",
            service_account_token_file=str(jwt),
        )

        async with VaultSecretSource(config) as vault:
            await vault.get_secret("download-token")

        (login_path, login_body), (_, read_headers) = vault_server.seen
        assert login_path == "/v1/auth/kubernetes/login"
        assert login_body == {"role": "trafficshift", "jwt": "service-account-jwt"}
        assert read_headers["X-Vault-Token"] == "k8s-trafficshift"


@pytest.mark.unit
class TestVaultConfig:
    """Environment defaults."""

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("VAULT_ADDR", "https://vault.example.com/")
        monkeypatch.setenv("VAULT_TOKEN", "env-token")

        config = VaultConfig()

        assert config.address == "https://vault.example.com"
        assert config.token == "env-token"

    def test_explicit_values_win(self, monkeypatch):
        monkeypatch.setenv("VAULT_ADDR", "https://vault.example.com")
        monkeypatch.setenv("VAULT_TOKEN", "env-token")

        config = VaultConfig(address="http://127.0.0.1:8200", token="explicit")

        assert config.address == "http://127.0.0.1:8200"
        assert config.token == "explicit"


@pytest.mark.unit
async def test_static_source():
    source = StaticSecretSource({"download-token": {"Authorization": "Bearer x", "X-Retry": 3}})

    assert await source.get_secret("download-token") == {"Authorization": "Bearer x", "X-Retry": "3"}
    with pytest.raises(SecretNotFoundError):
        await source.get_secret("other")
