"""
Shared pytest fixtures for trafficshift tests.

Provides a rollout snapshot factory and a reconciler that records every
call made to it, so routing behaviour can be asserted without a cluster.
"""

from typing import Any, Optional

import pytest

from trafficshift.canary.rollout import (
    CanaryStep,
    ReplicaSetView,
    RolloutSnapshot,
    RolloutStatus,
    TrafficRoutingConfig,
)
from trafficshift.canary.weights import TrafficWeights
from trafficshift.config import ControllerConfig
from trafficshift.servicemesh.reconciler import InMemoryResourceClient, TrafficRoutingReconciler

CANARY_HASH = "canary-7d9f"
STABLE_HASH = "stable-5c4b"


class RecordingReconciler(TrafficRoutingReconciler):
    """Backend double that records calls and can be told to fail."""

    def __init__(self, name: str = "fake"):
        self.name = name
        self.verify_result: Optional[bool] = True
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, tuple]] = []

    def _record(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        if operation in self.errors:
            raise self.errors[operation]

    def update_hash(self, canary_hash, stable_hash, additional_destinations=()):
        self._record("update_hash", canary_hash, stable_hash, tuple(additional_destinations))

    def set_weight(self, desired_weight, additional_destinations=()):
        self._record("set_weight", desired_weight, tuple(additional_destinations))

    def set_header_route(self, header_route):
        self._record("set_header_route", header_route)

    def set_mirror_route(self, mirror_route):
        self._record("set_mirror_route", mirror_route)

    def verify_weight(self, desired_weight, additional_destinations=()):
        self._record("verify_weight", desired_weight, tuple(additional_destinations))
        return self.verify_result

    def remove_managed_routes(self):
        self._record("remove_managed_routes")

    def type(self):
        return self.name

    @property
    def operations(self) -> list[str]:
        return [op for op, _ in self.calls]

    def args_of(self, operation: str) -> list[tuple]:
        return [args for op, args in self.calls if op == operation]


@pytest.fixture
def fake_backend() -> RecordingReconciler:
    return RecordingReconciler()


@pytest.fixture
def resource_client() -> InMemoryResourceClient:
    return InMemoryResourceClient()


@pytest.fixture
def controller_config(tmp_path) -> ControllerConfig:
    return ControllerConfig(
        verify_retry_interval=5.0,
        plugin_dir=tmp_path / "plugin-bin",
        plugin_start_timeout=2.0,
    )


@pytest.fixture
def make_rollout():
    """Factory for rollout snapshots; defaults describe a healthy 10-replica canary."""

    def _make(
        steps: tuple[CanaryStep, ...] = (CanaryStep(set_weight=10), CanaryStep(pause={})),
        step_index: Optional[int] = 0,
        replicas: int = 10,
        canary_available: Optional[int] = None,
        stable_available: Optional[int] = None,
        canary_hash: str = CANARY_HASH,
        stable_hash: str = STABLE_HASH,
        current_pod_hash: Optional[str] = None,
        dynamic_stable_scale: bool = False,
        abort: bool = False,
        promote_full: bool = False,
        prior_weights: Optional[TrafficWeights] = None,
        revision: int = 2,
        traffic_routing: Optional[TrafficRoutingConfig] = None,
        with_new_rs: bool = True,
        with_stable_rs: bool = True,
    ) -> RolloutSnapshot:
        new_rs = ReplicaSetView(
            canary_hash,
            replicas,
            replicas if canary_available is None else canary_available,
        ) if with_new_rs else None
        stable_rs = ReplicaSetView(
            stable_hash,
            replicas,
            replicas if stable_available is None else stable_available,
        ) if with_stable_rs else None
        return RolloutSnapshot(
            name="guestbook",
            namespace="default",
            revision=revision,
            replicas=replicas,
            steps=steps,
            canary_service="guestbook-canary",
            stable_service="guestbook-stable",
            dynamic_stable_scale=dynamic_stable_scale,
            traffic_routing=traffic_routing or TrafficRoutingConfig(smi={}),
            status=RolloutStatus(
                abort=abort,
                current_pod_hash=current_pod_hash or canary_hash,
                stable_rs=stable_hash,
                current_step_index=step_index,
                promote_full=promote_full,
                weights=prior_weights,
            ),
            new_rs=new_rs,
            stable_rs=stable_rs,
        )

    return _make


@pytest.fixture
def backend_factory():
    """Build extra named RecordingReconcilers in a test."""
    return RecordingReconciler
