"""
Weight Calculator - desired canary weight for the current rollout state.

Pure functions only: no I/O, no logging, nothing here can fail. The
orchestration step feeds in the snapshot and gets back the split it should
push to every routing backend.

Rules, first match wins:

1. Fully promoted: canary weight is 0. With dynamic stable scale, a rollback
   to stable keeps draining the previous canary according to stable
   availability instead of dropping straight to 0.
2. Aborted: 0, or with dynamic stable scale
   ``100 - floor(100 * stable_available / replicas)``, never above the weight
   persisted by the previous reconciliation.
3. Canary unavailable (interrupted update): 0, experiment destinations are
   zeroed and pointed at the latest canary hash.
4. Promote full: canary availability with dynamic stable scale, otherwise
   the previous weight.
5. Steps: previous setWeight while the canary is still scaling, the current
   setWeight while inside the steps, 100 once past the last step.
"""

import math
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from .rollout import RolloutSnapshot
from .weights import MAX_WEIGHT, TrafficWeights, WeightDestination, build_traffic_weights


@dataclass(frozen=True)
class WeightCalculation:
    """Result of one weight computation."""
    desired_weight: int
    weights: TrafficWeights
    canary_hash: str
    stable_hash: str
    additional: tuple[WeightDestination, ...] = ()
    interrupted: bool = False


def compute_weights(
    snapshot: RolloutSnapshot,
    canary_hash: str,
    stable_hash: str,
    experiment_destinations: Optional[Iterable[WeightDestination]] = None,
) -> WeightCalculation:
    """
    Compute the desired canary weight and the full traffic split.

    Args:
        snapshot: Rollout state for this reconciliation
        canary_hash: Pod template hash of the newest replica set
        stable_hash: Pod template hash of the stable replica set
        experiment_destinations: Destinations contributed by a running
            experiment; None is treated as no destinations

    Returns:
        WeightCalculation with the desired weight and TrafficWeights. The
        canary hash may differ from the one passed in when a rollback to
        stable is still draining the previous canary.
    """
    experiment_destinations = tuple(experiment_destinations or ())
    prior = snapshot.status.weights
    desired = 0
    additional: tuple[WeightDestination, ...] = ()
    interrupted = False

    if snapshot.is_fully_promoted:
        if _draining_previous_canary(snapshot, stable_hash):
            desired = stable_availability_weight(snapshot)
            canary_hash = prior.canary.pod_template_hash
    elif snapshot.is_aborted:
        if snapshot.dynamic_stable_scale:
            desired = stable_availability_weight(snapshot)
    elif not canary_available(snapshot):
        interrupted = True
        additional = tuple(
            replace(d, weight=0, pod_template_hash=canary_hash) for d in experiment_destinations
        )
    elif snapshot.status.promote_full:
        if snapshot.dynamic_stable_scale:
            desired = _ratio_weight(snapshot.new_rs.available_replicas, snapshot.replicas)
        elif prior is not None:
            desired = prior.canary.weight
    else:
        _, index = snapshot.current_step()
        if index is not None:
            if not at_desired_replica_counts(snapshot):
                # canary is not ready for the new weight yet, hold the previous one
                desired = snapshot.previous_set_weight()
                additional = experiment_destinations
            elif index < len(snapshot.steps):
                desired = snapshot.current_set_weight()
                additional = experiment_destinations
            else:
                desired = MAX_WEIGHT

    weights = build_traffic_weights(
        canary_service=snapshot.canary_service,
        stable_service=snapshot.stable_service,
        canary_hash=canary_hash,
        stable_hash=stable_hash,
        desired_weight=desired,
        additional=additional,
    )
    return WeightCalculation(
        desired_weight=desired,
        weights=weights,
        canary_hash=canary_hash,
        stable_hash=stable_hash,
        additional=additional,
        interrupted=interrupted,
    )


def stable_availability_weight(snapshot: RolloutSnapshot) -> int:
    """
    Canary weight the stable replica set can currently absorb the rest of.

    Never exceeds the previously persisted canary weight, so flapping stable
    pods cannot push traffic back onto a failing canary.
    """
    if snapshot.replicas <= 0:
        return 0
    available = snapshot.stable_rs.available_replicas if snapshot.stable_rs else 0
    desired = MAX_WEIGHT - _ratio_weight(available, snapshot.replicas)
    desired = max(desired, 0)
    if snapshot.status.weights is not None:
        desired = min(desired, snapshot.status.weights.canary.weight)
    return desired


def canary_available(snapshot: RolloutSnapshot) -> bool:
    return snapshot.new_rs is not None and snapshot.new_rs.available_replicas > 0


def desired_canary_replicas(snapshot: RolloutSnapshot) -> int:
    """Canary replicas the current step asks for."""
    scale = snapshot.current_canary_scale()
    if scale is not None and not scale.match_traffic_weight:
        if scale.replicas is not None:
            return scale.replicas
        if scale.weight is not None:
            return math.ceil(snapshot.replicas * scale.weight / MAX_WEIGHT)
    return math.ceil(snapshot.replicas * snapshot.current_set_weight() / MAX_WEIGHT)


def at_desired_replica_counts(snapshot: RolloutSnapshot) -> bool:
    """
    True when the canary (and, without dynamic stable scale, the stable)
    replica set is available at the counts the current step needs.
    """
    if snapshot.new_rs is None:
        return False
    canary_needed = min(desired_canary_replicas(snapshot), snapshot.replicas)
    # Lower bounds only: a replica set scaling down from an earlier step
    # still has surplus pods available, and that surplus can carry the weight.
    if snapshot.new_rs.available_replicas < canary_needed:
        return False

    if snapshot.stable_rs is None or snapshot.stable_rs.pod_template_hash == snapshot.new_rs.pod_template_hash:
        return True
    if snapshot.dynamic_stable_scale:
        stable_needed = max(snapshot.replicas - canary_needed, 0)
    else:
        stable_needed = snapshot.replicas
    return snapshot.stable_rs.available_replicas >= stable_needed


def _draining_previous_canary(snapshot: RolloutSnapshot, stable_hash: str) -> bool:
    prior = snapshot.status.weights
    return (
        snapshot.dynamic_stable_scale
        and prior is not None
        and prior.canary.weight > 0
        and bool(prior.canary.pod_template_hash)
        and prior.canary.pod_template_hash != stable_hash
    )


def _ratio_weight(available: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(MAX_WEIGHT * available // total, MAX_WEIGHT)
