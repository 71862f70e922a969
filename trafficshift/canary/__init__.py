# Canary Traffic Module
"""
Canary rollout state and traffic weight calculation.

The orchestration step lives in ``trafficshift.canary.traffic_router`` and
is imported from there directly.
"""

from .weights import WeightDestination, TrafficWeights, MAX_WEIGHT
from .rollout import (
    CanaryStep,
    ManagedRoute,
    ReplicaSetView,
    RolloutSnapshot,
    RolloutStatus,
    SetHeaderRoute,
    SetMirrorRoute,
    TrafficRoutingConfig,
)
from .weight_calculator import WeightCalculation, compute_weights

__all__ = [
    "WeightDestination",
    "TrafficWeights",
    "MAX_WEIGHT",
    "CanaryStep",
    "ManagedRoute",
    "ReplicaSetView",
    "RolloutSnapshot",
    "RolloutStatus",
    "SetHeaderRoute",
    "SetMirrorRoute",
    "TrafficRoutingConfig",
    "WeightCalculation",
    "compute_weights",
]
