"""Fetch plugin binaries into the plugin directory."""

import hashlib
import logging
import os
import shutil
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import aiohttp

from trafficshift.config import ControllerConfig
from trafficshift.plugins.plugin_manager import (
    ChecksumMismatchError,
    PluginDescriptor,
    PluginError,
    PluginNotFoundError,
    plugin_path,
)
from trafficshift.secrets_.vault_client import SecretSource

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def sha256_of(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(path: Path, expected: str) -> None:
    """Raise ChecksumMismatchError unless the file hashes to ``expected``."""
    if not expected:
        return
    actual = sha256_of(path)
    if actual.lower() != expected.lower():
        raise ChecksumMismatchError(
            f"checksum mismatch for {path}: expected {expected}, got {actual}"
        )


class PluginDownloader:
    """
    Places plugin binaries at ``<plugin_dir>/<namespace>/<name>``.

    ``file://`` locations are copied, ``http(s)://`` locations downloaded.
    Headers named by a descriptor's headers_from are read from the secret
    source and sent with the download request.
    """

    def __init__(
        self,
        config: ControllerConfig | None = None,
        secrets: SecretSource | None = None,
        timeout: float = 300.0,
    ):
        self.config = config or ControllerConfig()
        self.secrets = secrets
        self.timeout = timeout

    async def _headers(self, descriptor: PluginDescriptor) -> dict[str, str]:
        headers: dict[str, str] = {}
        if not descriptor.headers_from:
            return headers
        if self.secrets is None:
            raise PluginError(f"plugin {descriptor.name} needs headers but no secret source is configured")
        for secret_name in descriptor.headers_from:
            data: dict[str, Any] = await self.secrets.get_secret(secret_name)
            headers.update({k: str(v) for k, v in data.items()})
        return headers

    async def fetch(self, descriptor: PluginDescriptor) -> Path:
        """Fetch one plugin and return its on-disk path."""
        target = plugin_path(self.config.plugin_dir, descriptor.name)
        target.parent.mkdir(parents=True, exist_ok=True)
        location = urlparse(descriptor.location)

        if location.scheme == "file":
            source = Path(location.netloc + location.path)
            if not source.is_file():
                raise PluginNotFoundError(f"plugin {descriptor.name} not found at {source}")
            if source.resolve() != target.resolve():
                shutil.copyfile(source, target)
        elif location.scheme in ("http", "https"):
            await self._download(descriptor, target)
        else:
            raise PluginError(
                f"plugin {descriptor.name}: unsupported location scheme '{location.scheme}'"
            )

        try:
            verify_checksum(target, descriptor.sha256)
        except ChecksumMismatchError:
            target.unlink(missing_ok=True)
            raise
        os.chmod(target, 0o755)
        logger.info("Fetched plugin %s to %s", descriptor.name, target)
        return target

    async def _download(self, descriptor: PluginDescriptor, target: Path) -> None:
        headers = await self._headers(descriptor)
        partial = target.with_name(target.name + ".part")
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(descriptor.location, headers=headers) as resp:
                if resp.status == 404:
                    raise PluginNotFoundError(f"plugin {descriptor.name} not found at {descriptor.location}")
                resp.raise_for_status()
                with open(partial, "wb") as f:
                    async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                        f.write(chunk)
        os.replace(partial, target)

    async def fetch_all(self, descriptors: list[PluginDescriptor]) -> dict[str, Path]:
        """Fetch every enabled plugin, stopping at the first failure."""
        fetched = {}
        for descriptor in descriptors:
            if descriptor.disabled:
                logger.info("Skipping disabled plugin %s", descriptor.name)
                continue
            fetched[descriptor.name] = await self.fetch(descriptor)
        return fetched
