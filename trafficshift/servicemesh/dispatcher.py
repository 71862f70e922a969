"""Select the routing backends a rollout is configured for."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from trafficshift.canary.rollout import RolloutSnapshot
from trafficshift.plugins.plugin_manager import PluginError, PluginRegistry
from trafficshift.plugins.rpc import PluginRpcError
from trafficshift.servicemesh.ingress_backends import (
    ALBReconciler,
    ApisixReconciler,
    NginxReconciler,
    TraefikReconciler,
)
from trafficshift.servicemesh.mesh_backends import AppMeshReconciler, IstioReconciler, SMIReconciler
from trafficshift.servicemesh.reconciler import (
    BackendNotAvailableError,
    BackendType,
    ResourceClient,
    TrafficRoutingReconciler,
)

logger = logging.getLogger(__name__)

# Dispatch priority; plugins always come after the built-in backends.
BACKENDS = (
    (BackendType.ISTIO, "istio", IstioReconciler),
    (BackendType.NGINX, "nginx", NginxReconciler),
    (BackendType.ALB, "alb", ALBReconciler),
    (BackendType.SMI, "smi", SMIReconciler),
    (BackendType.APPMESH, "appmesh", AppMeshReconciler),
    (BackendType.TRAEFIK, "traefik", TraefikReconciler),
    (BackendType.APISIX, "apisix", ApisixReconciler),
)

Lookup = Callable[[RolloutSnapshot], Optional[Any]]


@dataclass
class DispatchContext:
    """
    Collaborators the dispatcher hands to backends.

    ``lookups`` maps a backend type to a callable that returns the object
    the backend depends on (an informer, an API group, a client) or None
    when it is unavailable in this cluster.
    """

    client: ResourceClient
    plugin_registry: Optional[PluginRegistry] = None
    lookups: dict[str, Lookup] = field(default_factory=dict)


def select_backends(snapshot: RolloutSnapshot, context: DispatchContext) -> list[TrafficRoutingReconciler]:
    """
    Build the reconcilers for every backend the rollout configures.

    Raises:
        TrafficRoutingError: a configured backend is missing required fields
        BackendNotAvailableError: the only configured backend is unavailable
    """
    routing = snapshot.traffic_routing
    if routing is None:
        return []

    configured = [(bt, getattr(routing, attr), cls) for bt, attr, cls in BACKENDS if getattr(routing, attr) is not None]
    sole_backend = len(configured) + len(routing.plugins) == 1

    backends: list[TrafficRoutingReconciler] = []
    for backend_type, config, reconciler_cls in configured:
        lookup = context.lookups.get(backend_type.value)
        if lookup is not None and lookup(snapshot) is None:
            if sole_backend:
                raise BackendNotAvailableError(
                    f"{backend_type.value} is not available for rollout {snapshot.key}",
                    backend=backend_type.value,
                )
            logger.warning("Skipping %s for %s: backend not available", backend_type.value, snapshot.key)
            continue
        backends.append(reconciler_cls(snapshot, context.client, config))

    for name, _ in routing.plugins:
        if context.plugin_registry is None:
            logger.warning("Skipping plugin %s for %s: no plugin registry", name, snapshot.key)
            continue
        try:
            backends.append(context.plugin_registry.traffic_router(name, snapshot))
        except (PluginError, PluginRpcError) as e:
            logger.error("Skipping plugin %s for %s: %s", name, snapshot.key, e)

    return backends
