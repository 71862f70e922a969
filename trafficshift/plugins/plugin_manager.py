"""Plugin manifest loading and plugin process lifecycle."""

import logging
import os
import queue
import subprocess
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import grpc
import yaml

from trafficshift.canary.rollout import RolloutSnapshot
from trafficshift.config import ControllerConfig
from trafficshift.plugins.rpc import RpcTrafficRouterClient, parse_handshake

logger = logging.getLogger(__name__)


class PluginType(Enum):
    """Kinds of plugin the controller can load."""
    TRAFFIC_ROUTER = "TrafficRouter"
    METRIC_PROVIDER = "MetricProvider"
    STEP = "Step"


MANIFEST_KEYS = {
    "trafficRouterPlugins": PluginType.TRAFFIC_ROUTER,
    "metricProviderPlugins": PluginType.METRIC_PROVIDER,
    "stepPlugins": PluginType.STEP,
}


class PluginError(Exception):
    """Raised when a plugin cannot be loaded or started."""
    pass


class PluginNotFoundError(PluginError):
    """Raised when a plugin is not declared or its binary is missing."""
    pass


class ChecksumMismatchError(PluginError):
    """Raised when a downloaded plugin does not match its sha256."""
    pass


@dataclass(frozen=True)
class PluginDescriptor:
    """One plugin entry of the controller's plugin manifest."""

    name: str
    location: str
    plugin_type: PluginType
    sha256: str = ""
    disabled: bool = False
    args: tuple[str, ...] = ()
    headers_from: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any], plugin_type: PluginType) -> "PluginDescriptor":
        return cls(
            name=data.get("name", ""),
            location=data.get("location", ""),
            plugin_type=plugin_type,
            sha256=data.get("sha256", "") or "",
            disabled=bool(data.get("disabled", False)),
            args=tuple(data.get("args") or ()),
            headers_from=tuple(
                h["secretRef"]["name"] for h in data.get("headersFrom") or []
            ),
        )


def plugin_path(plugin_dir: Path | str, name: str) -> Path:
    """Where the binary for ``namespace/name`` lives on disk."""
    return Path(plugin_dir) / name


def validate_descriptors(descriptors: list[PluginDescriptor]) -> None:
    """Reject malformed names, duplicates and misplaced disabled flags."""
    seen = set()
    for descriptor in descriptors:
        parts = descriptor.name.split("/")
        if len(parts) != 2 or not all(parts):
            raise PluginError(
                f"plugin name '{descriptor.name}' must be in the format of <namespace>/<name>"
            )
        if descriptor.name in seen:
            raise PluginError(f"plugin '{descriptor.name}' is declared more than once")
        seen.add(descriptor.name)
        if descriptor.disabled and descriptor.plugin_type != PluginType.STEP:
            raise PluginError(
                f"plugin '{descriptor.name}': disabled is only valid for Step plugins"
            )
        if not descriptor.location:
            raise PluginError(f"plugin '{descriptor.name}' has no location")


def load_plugin_manifest(source: Path | str) -> list[PluginDescriptor]:
    """
    Parse the plugin manifest.

    Args:
        source: Path to a YAML file, or the YAML text itself

    Returns:
        Validated descriptors, traffic routers first
    """
    if isinstance(source, Path) or ("\n" not in source and os.path.isfile(source)):
        with open(source) as f:
            text = f.read()
    else:
        text = source

    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise PluginError("plugin manifest must be a mapping")

    descriptors = []
    for key, plugin_type in MANIFEST_KEYS.items():
        for item in data.get(key) or []:
            descriptors.append(PluginDescriptor.from_dict(item, plugin_type))
    validate_descriptors(descriptors)
    return descriptors


@dataclass
class PluginProcess:
    """A started plugin and the channel to reach it."""

    descriptor: PluginDescriptor
    address: str
    channel: Any
    process: Optional[subprocess.Popen] = None
    initialized: bool = False
    started_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def exited(self) -> bool:
        return self.process is not None and self.process.poll() is not None

    def stop(self, timeout: float = 5.0) -> None:
        if self.channel is not None and hasattr(self.channel, "close"):
            self.channel.close()
        if self.process is not None and self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                self.process.kill()


Launcher = Callable[[PluginDescriptor, Path, float], PluginProcess]


def _relay_output(process: subprocess.Popen, name: str, handshake: queue.Queue) -> None:
    """Hand the first stdout line to the launcher, then keep draining into the log."""
    first = True
    for line in iter(process.stdout.readline, ""):
        if first:
            handshake.put(line)
            first = False
        else:
            logger.debug("plugin %s: %s", name, line.rstrip())
    if first:
        handshake.put("")


def _abandon(process: subprocess.Popen) -> None:
    process.kill()
    process.wait()


def launch_plugin_process(descriptor: PluginDescriptor, path: Path, timeout: float) -> PluginProcess:
    """Start the plugin binary and wait for its handshake line."""
    if not path.exists():
        raise PluginNotFoundError(f"plugin binary not found: {path}")

    try:
        process = subprocess.Popen(
            [str(path), *descriptor.args],
            stdout=subprocess.PIPE,
            text=True,
        )
    except OSError as e:
        raise PluginError(f"plugin {descriptor.name} could not be started: {e}") from e

    handshake: queue.Queue = queue.Queue()
    threading.Thread(
        target=_relay_output,
        args=(process, descriptor.name, handshake),
        name=f"plugin-output-{descriptor.name}",
        daemon=True,
    ).start()

    try:
        line = handshake.get(timeout=timeout)
    except queue.Empty:
        _abandon(process)
        raise PluginError(f"plugin {descriptor.name} did not complete its handshake in {timeout}s")
    if not line:
        _abandon(process)
        raise PluginError(f"plugin {descriptor.name} exited before its handshake")

    try:
        address = parse_handshake(line)
    except ValueError as e:
        _abandon(process)
        raise PluginError(f"plugin {descriptor.name}: {e}") from e

    logger.info("Started plugin %s at %s (pid %d)", descriptor.name, address, process.pid)
    return PluginProcess(
        descriptor=descriptor,
        address=address,
        channel=grpc.insecure_channel(address),
        process=process,
    )


class PluginRegistry:
    """
    Starts plugins on first use and hands out their connections.

    Each plugin runs at most once at a time; one that has exited is started
    again on its next use. A per-name lock serializes the
    start so concurrent callers wait for the in-flight launch instead of
    spawning a second process.
    """

    def __init__(
        self,
        descriptors: list[PluginDescriptor],
        config: ControllerConfig | None = None,
        launcher: Launcher | None = None,
    ):
        self.config = config or ControllerConfig()
        self._descriptors = {d.name: d for d in descriptors}
        self._launcher = launcher or launch_plugin_process
        self._processes: dict[str, PluginProcess] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: ControllerConfig, launcher: Launcher | None = None) -> "PluginRegistry":
        descriptors = load_plugin_manifest(config.plugin_manifest) if config.plugin_manifest else []
        return cls(descriptors, config=config, launcher=launcher)

    def descriptor(self, name: str) -> PluginDescriptor:
        if name not in self._descriptors:
            raise PluginNotFoundError(f"plugin '{name}' is not declared in the plugin manifest")
        return self._descriptors[name]

    def _lock_for(self, name: str) -> threading.Lock:
        with self._registry_lock:
            if name not in self._locks:
                self._locks[name] = threading.Lock()
            return self._locks[name]

    def get(self, name: str) -> PluginProcess:
        """Return the running plugin, starting it if needed."""
        descriptor = self.descriptor(name)
        if descriptor.disabled:
            raise PluginError(f"plugin '{name}' is disabled")

        with self._lock_for(name):
            running = self._processes.get(name)
            if running is not None:
                if not running.exited():
                    return running
                logger.warning(
                    "Plugin %s exited with code %s, restarting", name, running.process.returncode
                )
                running.stop()
                del self._processes[name]
            path = plugin_path(self.config.plugin_dir, name)
            process = self._launcher(descriptor, path, self.config.plugin_start_timeout)
            self._processes[name] = process
            return process

    def traffic_router(self, name: str, rollout: RolloutSnapshot) -> RpcTrafficRouterClient:
        """Connect a rollout to a traffic router plugin, initializing it once."""
        descriptor = self.descriptor(name)
        if descriptor.plugin_type != PluginType.TRAFFIC_ROUTER:
            raise PluginError(f"plugin '{name}' is a {descriptor.plugin_type.value} plugin")

        process = self.get(name)
        client = RpcTrafficRouterClient(process.channel, name, rollout)
        with process.started_lock:
            if not process.initialized:
                client.init_plugin()
                process.initialized = True
        return client

    def running(self) -> list[str]:
        with self._registry_lock:
            return list(self._processes)

    def shutdown(self) -> None:
        """Stop every started plugin."""
        with self._registry_lock:
            processes = list(self._processes.values())
            self._processes.clear()
        for process in processes:
            logger.info("Stopping plugin %s", process.descriptor.name)
            process.stop()
