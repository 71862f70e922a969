"""
Routing backends for service meshes and ingress controllers.

Backend selection lives in ``trafficshift.servicemesh.dispatcher`` and is
imported from there directly, since it also pulls in the plugin layer.
"""

from trafficshift.servicemesh.reconciler import (
    BackendNotAvailableError,
    BackendType,
    InMemoryResourceClient,
    ManifestReconciler,
    ResourceClient,
    TrafficRoutingError,
    TrafficRoutingReconciler,
)
from trafficshift.servicemesh.mesh_backends import AppMeshReconciler, IstioReconciler, SMIReconciler
from trafficshift.servicemesh.ingress_backends import (
    ALBReconciler,
    ApisixReconciler,
    NginxReconciler,
    TraefikReconciler,
)

__all__ = [
    "BackendNotAvailableError",
    "BackendType",
    "InMemoryResourceClient",
    "ManifestReconciler",
    "ResourceClient",
    "TrafficRoutingError",
    "TrafficRoutingReconciler",
    "AppMeshReconciler",
    "IstioReconciler",
    "SMIReconciler",
    "ALBReconciler",
    "ApisixReconciler",
    "NginxReconciler",
    "TraefikReconciler",
]
