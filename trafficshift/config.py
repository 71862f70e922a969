"""Controller configuration for traffic routing."""

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_VERIFY_RETRY_SECONDS = 10.0
DEFAULT_PLUGIN_DIR = "/home/trafficshift/plugin-bin"
DEFAULT_PLUGIN_START_TIMEOUT = 10.0


@dataclass
class ControllerConfig:
    """
    Settings shared by every rollout reconciliation.

    Unset fields are read from the environment:
    TRAFFICSHIFT_VERIFY_RETRY_SECONDS, TRAFFICSHIFT_PLUGIN_DIR,
    TRAFFICSHIFT_PLUGIN_MANIFEST and TRAFFICSHIFT_PLUGIN_START_TIMEOUT.
    """

    verify_retry_interval: float | None = None
    plugin_dir: Path | str | None = None
    plugin_manifest: Path | str | None = None
    plugin_start_timeout: float | None = None
    namespace: str = "argo-rollouts"

    def __post_init__(self) -> None:
        if self.verify_retry_interval is None:
            self.verify_retry_interval = float(
                os.environ.get("TRAFFICSHIFT_VERIFY_RETRY_SECONDS", DEFAULT_VERIFY_RETRY_SECONDS)
            )
        if self.plugin_dir is None:
            self.plugin_dir = os.environ.get("TRAFFICSHIFT_PLUGIN_DIR", DEFAULT_PLUGIN_DIR)
        self.plugin_dir = Path(self.plugin_dir)
        if self.plugin_manifest is None:
            self.plugin_manifest = os.environ.get("TRAFFICSHIFT_PLUGIN_MANIFEST")
        if self.plugin_manifest:
            self.plugin_manifest = Path(self.plugin_manifest)
        if self.plugin_start_timeout is None:
            self.plugin_start_timeout = float(
                os.environ.get("TRAFFICSHIFT_PLUGIN_START_TIMEOUT", DEFAULT_PLUGIN_START_TIMEOUT)
            )
        if self.verify_retry_interval <= 0:
            raise ValueError("verify_retry_interval must be positive")
