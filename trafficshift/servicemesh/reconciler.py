"""Traffic routing reconciler contract shared by every routing backend."""

import copy
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional, Sequence

from trafficshift.canary.rollout import RolloutSnapshot, SetHeaderRoute, SetMirrorRoute
from trafficshift.canary.weights import MAX_WEIGHT, WeightDestination


class BackendType(str, Enum):
    """Built-in routing backends, in dispatch priority order."""
    ISTIO = "istio"
    NGINX = "nginx"
    ALB = "alb"
    SMI = "smi"
    APPMESH = "appmesh"
    TRAEFIK = "traefik"
    APISIX = "apisix"


class TrafficRoutingError(Exception):
    """Raised when a backend fails to apply or read routing state."""

    def __init__(self, message: str, backend: str | None = None):
        super().__init__(message)
        self.backend = backend


class BackendNotAvailableError(TrafficRoutingError):
    """Raised when an object a backend depends on does not exist."""
    pass


class ResourceClient(ABC):
    """
    Minimal access to the routing objects a backend manages.

    Objects are plain manifest dicts. The real implementation talks to the
    cluster API and is supplied by the caller.
    """

    @abstractmethod
    def get(self, api_version: str, kind: str, namespace: str, name: str) -> Optional[dict[str, Any]]:
        """Return the object or None when it does not exist."""

    @abstractmethod
    def apply(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Create or replace an object."""

    @abstractmethod
    def delete(self, api_version: str, kind: str, namespace: str, name: str) -> bool:
        """Delete an object; False when it did not exist."""


class InMemoryResourceClient(ResourceClient):
    """Dict-backed client used for dry runs and local testing."""

    def __init__(self, objects: Sequence[dict[str, Any]] = ()):
        self._objects: dict[tuple[str, str, str, str], dict[str, Any]] = {}
        self.applied: list[dict[str, Any]] = []
        for obj in objects:
            self._objects[self._key(obj)] = copy.deepcopy(obj)

    @staticmethod
    def _key(manifest: dict[str, Any]) -> tuple[str, str, str, str]:
        metadata = manifest.get("metadata", {})
        return (
            manifest["apiVersion"],
            manifest["kind"],
            metadata.get("namespace", "default"),
            metadata["name"],
        )

    def get(self, api_version: str, kind: str, namespace: str, name: str) -> Optional[dict[str, Any]]:
        obj = self._objects.get((api_version, kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def apply(self, manifest: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(manifest)
        self._objects[self._key(stored)] = stored
        self.applied.append(copy.deepcopy(stored))
        return copy.deepcopy(stored)

    def delete(self, api_version: str, kind: str, namespace: str, name: str) -> bool:
        return self._objects.pop((api_version, kind, namespace, name), None) is not None


class TrafficRoutingReconciler(ABC):
    """
    Operations every routing backend implements.

    Calls for one rollout are made sequentially: update_hash, set_weight,
    header/mirror routes or managed route removal, then verify_weight.
    Failures are raised as TrafficRoutingError.
    """

    @abstractmethod
    def update_hash(
        self,
        canary_hash: str,
        stable_hash: str,
        additional_destinations: Sequence[WeightDestination] = (),
    ) -> None:
        """Tell the backend which pod template hashes back canary and stable."""

    @abstractmethod
    def set_weight(
        self,
        desired_weight: int,
        additional_destinations: Sequence[WeightDestination] = (),
    ) -> None:
        """Route desired_weight percent of traffic to the canary."""

    @abstractmethod
    def set_header_route(self, header_route: Optional[SetHeaderRoute]) -> None:
        """Create or update a header route; None is a no-op."""

    @abstractmethod
    def set_mirror_route(self, mirror_route: Optional[SetMirrorRoute]) -> None:
        """Create or update a mirror route; None is a no-op."""

    @abstractmethod
    def verify_weight(
        self,
        desired_weight: int,
        additional_destinations: Sequence[WeightDestination] = (),
    ) -> Optional[bool]:
        """
        Check the live split against the desired one.

        Returns None when the backend cannot verify.
        """

    @abstractmethod
    def remove_managed_routes(self) -> None:
        """Delete every route listed under the rollout's managed routes."""

    @abstractmethod
    def type(self) -> str:
        """Backend identity used for logging and ordering."""


class ManifestReconciler(TrafficRoutingReconciler):
    """Base for native backends that edit routing objects via a ResourceClient."""

    backend_type: BackendType

    def __init__(self, rollout: RolloutSnapshot, client: ResourceClient, config: dict[str, Any]):
        self.rollout = rollout
        self.client = client
        self.config = config or {}

    def type(self) -> str:
        return self.backend_type.value

    def _error(self, message: str) -> TrafficRoutingError:
        return TrafficRoutingError(message, backend=self.type())

    def _require(self, api_version: str, kind: str, name: str) -> dict[str, Any]:
        obj = self.client.get(api_version, kind, self.rollout.namespace, name)
        if obj is None:
            raise BackendNotAvailableError(
                f"{kind} {self.rollout.namespace}/{name} not found", backend=self.type()
            )
        return obj

    @property
    def managed_route_names(self) -> list[str]:
        return [route.name for route in self.rollout.managed_routes]

    def _check_managed(self, name: str) -> None:
        if name not in self.managed_route_names:
            raise self._error(f"route '{name}' is not listed in managedRoutes")

    # Most backends trust set_weight and cannot read back the applied split.
    def update_hash(self, canary_hash, stable_hash, additional_destinations=()) -> None:
        return None

    def set_header_route(self, header_route) -> None:
        return None

    def set_mirror_route(self, mirror_route) -> None:
        return None

    def verify_weight(self, desired_weight, additional_destinations=()) -> Optional[bool]:
        return None

    def remove_managed_routes(self) -> None:
        return None


def stable_weight(desired_weight: int, additional_destinations: Sequence[WeightDestination]) -> int:
    """Weight left for stable after canary and additional destinations."""
    remaining = MAX_WEIGHT - desired_weight - sum(d.weight for d in additional_destinations)
    return max(remaining, 0)
