"""
Rollout snapshot - read-only view of a canary rollout for one reconciliation.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .weights import TrafficWeights


@dataclass(frozen=True)
class StringMatch:
    """Exactly one of exact, prefix or regex is expected to be set."""
    exact: str = ""
    prefix: str = ""
    regex: str = ""

    def to_dict(self) -> dict[str, str]:
        return {k: v for k, v in (("exact", self.exact), ("prefix", self.prefix), ("regex", self.regex)) if v}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional["StringMatch"]:
        if not data:
            return None
        return cls(
            exact=data.get("exact", ""),
            prefix=data.get("prefix", ""),
            regex=data.get("regex", ""),
        )


@dataclass(frozen=True)
class HeaderRoutingMatch:
    header_name: str
    header_value: StringMatch


@dataclass(frozen=True)
class SetHeaderRoute:
    """Header-based route to the canary. An empty match removes the route."""
    name: str
    match: tuple[HeaderRoutingMatch, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "match": [{"headerName": m.header_name, "headerValue": m.header_value.to_dict()} for m in self.match],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SetHeaderRoute":
        return cls(
            name=data["name"],
            match=tuple(
                HeaderRoutingMatch(m["headerName"], StringMatch.from_dict(m.get("headerValue")) or StringMatch())
                for m in data.get("match") or []
            ),
        )


@dataclass(frozen=True)
class RouteMatch:
    method: Optional[StringMatch] = None
    path: Optional[StringMatch] = None
    headers: tuple[tuple[str, StringMatch], ...] = ()


@dataclass(frozen=True)
class SetMirrorRoute:
    """Mirror a share of matching traffic to the canary. An empty match removes it."""
    name: str
    match: tuple[RouteMatch, ...] = ()
    percentage: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        matches = []
        for m in self.match:
            entry: dict[str, Any] = {}
            if m.method is not None:
                entry["method"] = m.method.to_dict()
            if m.path is not None:
                entry["path"] = m.path.to_dict()
            if m.headers:
                entry["headers"] = {name: value.to_dict() for name, value in m.headers}
            matches.append(entry)
        data: dict[str, Any] = {"name": self.name, "match": matches}
        if self.percentage is not None:
            data["percentage"] = self.percentage
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SetMirrorRoute":
        matches = []
        for m in data.get("match") or []:
            headers = tuple(
                (name, StringMatch.from_dict(value) or StringMatch())
                for name, value in (m.get("headers") or {}).items()
            )
            matches.append(RouteMatch(
                method=StringMatch.from_dict(m.get("method")),
                path=StringMatch.from_dict(m.get("path")),
                headers=headers,
            ))
        return cls(name=data["name"], match=tuple(matches), percentage=data.get("percentage"))


@dataclass(frozen=True)
class SetCanaryScale:
    replicas: Optional[int] = None
    weight: Optional[int] = None
    match_traffic_weight: bool = False


@dataclass(frozen=True)
class ExperimentTemplate:
    name: str
    spec_ref: str = "canary"
    replicas: int = 1
    weight: Optional[int] = None


@dataclass(frozen=True)
class CanaryStep:
    """One canary step; the populated field is the step kind."""
    set_weight: Optional[int] = None
    set_canary_scale: Optional[SetCanaryScale] = None
    pause: Optional[dict[str, Any]] = None
    experiment: tuple[ExperimentTemplate, ...] = ()
    set_header_route: Optional[SetHeaderRoute] = None
    set_mirror_route: Optional[SetMirrorRoute] = None

    @property
    def sets_route(self) -> bool:
        return self.set_header_route is not None or self.set_mirror_route is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CanaryStep":
        scale = data.get("setCanaryScale")
        experiment = data.get("experiment") or {}
        return cls(
            set_weight=data.get("setWeight"),
            set_canary_scale=SetCanaryScale(
                replicas=scale.get("replicas"),
                weight=scale.get("weight"),
                match_traffic_weight=scale.get("matchTrafficWeight", False),
            ) if scale is not None else None,
            pause=data.get("pause"),
            experiment=tuple(
                ExperimentTemplate(
                    name=t["name"],
                    spec_ref=t.get("specRef", "canary"),
                    replicas=t.get("replicas", 1),
                    weight=t.get("weight"),
                )
                for t in experiment.get("templates") or []
            ),
            set_header_route=SetHeaderRoute.from_dict(data["setHeaderRoute"]) if data.get("setHeaderRoute") else None,
            set_mirror_route=SetMirrorRoute.from_dict(data["setMirrorRoute"]) if data.get("setMirrorRoute") else None,
        )


@dataclass(frozen=True)
class ManagedRoute:
    name: str


@dataclass(frozen=True)
class TrafficRoutingConfig:
    """
    Routing backends enabled for a rollout.

    Each backend section is the raw mapping from the rollout spec, or None
    when that backend is not configured. Several may be set at once.
    """
    istio: Optional[dict[str, Any]] = None
    nginx: Optional[dict[str, Any]] = None
    alb: Optional[dict[str, Any]] = None
    smi: Optional[dict[str, Any]] = None
    appmesh: Optional[dict[str, Any]] = None
    traefik: Optional[dict[str, Any]] = None
    apisix: Optional[dict[str, Any]] = None
    plugins: tuple[tuple[str, dict[str, Any]], ...] = ()
    managed_routes: tuple[ManagedRoute, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional["TrafficRoutingConfig"]:
        if data is None:
            return None
        return cls(
            istio=data.get("istio"),
            nginx=data.get("nginx"),
            alb=data.get("alb"),
            smi=data.get("smi"),
            appmesh=data.get("appMesh"),
            traefik=data.get("traefik"),
            apisix=data.get("apisix"),
            plugins=tuple((data.get("plugins") or {}).items()),
            managed_routes=tuple(ManagedRoute(r["name"]) for r in data.get("managedRoutes") or []),
        )


@dataclass(frozen=True)
class ReplicaSetView:
    """Replica counts of one pod-template revision."""
    pod_template_hash: str
    replicas: int = 0
    available_replicas: int = 0


@dataclass(frozen=True)
class RolloutStatus:
    abort: bool = False
    aborted_at: Optional[datetime] = None
    current_pod_hash: str = ""
    stable_rs: str = ""
    current_step_index: Optional[int] = None
    promote_full: bool = False
    weights: Optional[TrafficWeights] = None
    current_experiment: str = ""


@dataclass(frozen=True)
class RolloutSnapshot:
    """
    Everything the traffic-routing core needs to know about a rollout.

    Built by the caller each reconciliation and never mutated here.
    """
    name: str
    namespace: str = "default"
    revision: int = 1
    replicas: int = 1
    steps: tuple[CanaryStep, ...] = ()
    canary_service: str = ""
    stable_service: str = ""
    dynamic_stable_scale: bool = False
    traffic_routing: Optional[TrafficRoutingConfig] = None
    status: RolloutStatus = field(default_factory=RolloutStatus)
    new_rs: Optional[ReplicaSetView] = None
    stable_rs: Optional[ReplicaSetView] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def current_step(self) -> tuple[Optional[CanaryStep], Optional[int]]:
        """
        Return the current step and its index.

        Past the last step the step is None but the index is still returned,
        which is how callers tell "finished the steps" from "no steps".
        """
        if not self.steps:
            return None, None
        index = self.status.current_step_index or 0
        if index >= len(self.steps):
            return None, index
        return self.steps[index], index

    def current_set_weight(self) -> int:
        """Weight of the last setWeight step at or before the current step."""
        step, index = self.current_step()
        if step is None:
            return 100
        for i in range(index, -1, -1):
            if self.steps[i].set_weight is not None:
                return self.steps[i].set_weight
        return 0

    def previous_set_weight(self) -> int:
        """Weight of the last setWeight step strictly before the current step."""
        _, index = self.current_step()
        if index is None:
            return 0
        for i in range(min(index, len(self.steps)) - 1, -1, -1):
            if self.steps[i].set_weight is not None:
                return self.steps[i].set_weight
        return 0

    def current_canary_scale(self) -> Optional[SetCanaryScale]:
        """Last setCanaryScale step at or before the current step, if any."""
        _, index = self.current_step()
        if index is None:
            return None
        for i in range(min(index, len(self.steps) - 1), -1, -1):
            if self.steps[i].set_canary_scale is not None:
                return self.steps[i].set_canary_scale
        return None

    def current_experiment_step(self) -> tuple[ExperimentTemplate, ...]:
        step, _ = self.current_step()
        return step.experiment if step else ()

    @property
    def is_fully_promoted(self) -> bool:
        return bool(self.status.stable_rs) and self.status.stable_rs == self.status.current_pod_hash

    @property
    def is_aborted(self) -> bool:
        return self.status.abort

    @property
    def managed_routes(self) -> tuple[ManagedRoute, ...]:
        if self.traffic_routing is None:
            return ()
        return self.traffic_routing.managed_routes

    @classmethod
    def from_manifest(
        cls,
        rollout: dict[str, Any],
        new_rs: Optional[ReplicaSetView] = None,
        stable_rs: Optional[ReplicaSetView] = None,
    ) -> "RolloutSnapshot":
        """Build a snapshot from a Rollout object in its API (camelCase) form."""
        metadata = rollout.get("metadata", {})
        spec = rollout.get("spec", {})
        canary = spec.get("strategy", {}).get("canary", {})
        status = rollout.get("status", {})
        canary_status = status.get("canary", {})
        revision = metadata.get("annotations", {}).get("rollout.argoproj.io/revision", "1")
        aborted_at = status.get("abortedAt")

        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", "default"),
            revision=int(revision),
            replicas=spec.get("replicas", 1),
            steps=tuple(CanaryStep.from_dict(s) for s in canary.get("steps") or []),
            canary_service=canary.get("canaryService", ""),
            stable_service=canary.get("stableService", ""),
            dynamic_stable_scale=canary.get("dynamicStableScale", False),
            traffic_routing=TrafficRoutingConfig.from_dict(canary.get("trafficRouting")),
            status=RolloutStatus(
                abort=status.get("abort", False),
                aborted_at=datetime.fromisoformat(aborted_at.replace("Z", "+00:00")) if aborted_at else None,
                current_pod_hash=status.get("currentPodHash", ""),
                stable_rs=status.get("stableRS", ""),
                current_step_index=status.get("currentStepIndex"),
                promote_full=status.get("promoteFull", False),
                weights=TrafficWeights.from_dict(canary_status.get("weights")),
                current_experiment=canary_status.get("currentExperiment", ""),
            ),
            new_rs=new_rs,
            stable_rs=stable_rs,
        )
