"""Service mesh routing backends: Istio, SMI and App Mesh."""

import logging
from typing import Any, Optional, Sequence

from trafficshift.canary.rollout import RouteMatch, SetHeaderRoute, SetMirrorRoute
from trafficshift.canary.weights import MAX_WEIGHT, WeightDestination
from trafficshift.servicemesh.reconciler import BackendType, ManifestReconciler, stable_weight

logger = logging.getLogger(__name__)

ISTIO_API_VERSION = "networking.istio.io/v1beta1"
SMI_API_VERSION = "split.smi-spec.io/v1alpha3"
APPMESH_API_VERSION = "appmesh.k8s.aws/v1beta2"
POD_TEMPLATE_HASH_LABEL = "rollouts-pod-template-hash"
MANAGED_BY_LABEL = "trafficshift/managed-by"


def _short_host(host: str) -> str:
    return host.split(".", 1)[0]


class IstioReconciler(ManifestReconciler):
    """
    Rewrites weighted destinations in Istio VirtualService HTTP routes.

    With a DestinationRule configured, canary and stable are subsets of one
    host and update_hash moves the subset labels; otherwise they are two
    hosts named after the canary and stable services.
    """

    backend_type = BackendType.ISTIO

    def __init__(self, rollout, client, config):
        super().__init__(rollout, client, config)
        self.virtual_services = list(self.config.get("virtualServices") or [])
        if self.config.get("virtualService"):
            self.virtual_services.insert(0, self.config["virtualService"])
        if not self.virtual_services:
            raise self._error("istio traffic routing requires a virtualService")
        self.destination_rule = self.config.get("destinationRule")

    def _is_canary(self, destination: dict[str, Any]) -> bool:
        if self.destination_rule:
            return destination.get("subset") == self.destination_rule.get("canarySubsetName")
        return _short_host(destination.get("host", "")) == self.rollout.canary_service

    def _is_stable(self, destination: dict[str, Any]) -> bool:
        if self.destination_rule:
            return destination.get("subset") == self.destination_rule.get("stableSubsetName")
        return _short_host(destination.get("host", "")) == self.rollout.stable_service

    def update_hash(self, canary_hash, stable_hash, additional_destinations=()) -> None:
        if not self.destination_rule:
            return
        rule = self._require(ISTIO_API_VERSION, "DestinationRule", self.destination_rule["name"])
        hashes = {
            self.destination_rule.get("canarySubsetName"): canary_hash,
            self.destination_rule.get("stableSubsetName"): stable_hash,
        }
        for subset in rule.get("spec", {}).get("subsets", []):
            pod_hash = hashes.get(subset.get("name"))
            if pod_hash:
                subset.setdefault("labels", {})[POD_TEMPLATE_HASH_LABEL] = pod_hash
        self.client.apply(rule)

    def set_weight(self, desired_weight, additional_destinations=()) -> None:
        for vsvc in self.virtual_services:
            service = self._require(ISTIO_API_VERSION, "VirtualService", vsvc["name"])
            http_routes = service.get("spec", {}).get("http", [])
            for route in self._select_routes(http_routes, vsvc.get("routes") or []):
                self._set_route_weights(route, desired_weight, additional_destinations)
            self.client.apply(service)
            logger.debug("VirtualService %s canary weight set to %d", vsvc["name"], desired_weight)

    def _select_routes(self, http_routes: list[dict[str, Any]], names: Sequence[str]) -> list[dict[str, Any]]:
        if not names:
            unmanaged = [r for r in http_routes if r.get("name") not in self.managed_route_names]
            if len(unmanaged) != 1:
                raise self._error("virtual service must name its routes when it has more than one")
            return unmanaged
        selected = [r for r in http_routes if r.get("name") in names]
        missing = set(names) - {r.get("name") for r in selected}
        if missing:
            raise self._error(f"http routes not found in virtual service: {sorted(missing)}")
        return selected

    def _set_route_weights(
        self,
        route: dict[str, Any],
        desired_weight: int,
        additional_destinations: Sequence[WeightDestination],
    ) -> None:
        destinations = route.get("route", [])
        canary = next((d for d in destinations if self._is_canary(d.get("destination", {}))), None)
        stable = next((d for d in destinations if self._is_stable(d.get("destination", {}))), None)
        if canary is None or stable is None:
            raise self._error(f"http route '{route.get('name', '')}' lacks canary or stable destination")

        entries = [
            {**canary, "weight": desired_weight},
            {**stable, "weight": stable_weight(desired_weight, additional_destinations)},
        ]
        for extra in additional_destinations:
            existing = next(
                (d for d in destinations if _short_host(d.get("destination", {}).get("host", "")) == extra.service_name),
                {"destination": {"host": extra.service_name}},
            )
            entries.append({**existing, "weight": extra.weight})
        route["route"] = entries

    def _canary_destination(self, http_routes: list[dict[str, Any]]) -> dict[str, Any]:
        for route in http_routes:
            if route.get("name") in self.managed_route_names:
                continue
            for dest in route.get("route", []):
                if self._is_canary(dest.get("destination", {})):
                    return dict(dest["destination"])
        return {"host": self.rollout.canary_service}

    def _primary_route(self, http_routes: list[dict[str, Any]], vsvc: dict[str, Any]) -> list[dict[str, Any]]:
        names = vsvc.get("routes") or []
        for route in http_routes:
            if route.get("name") in self.managed_route_names:
                continue
            if not names or route.get("name") in names:
                return [dict(d) for d in route.get("route", [])]
        return []

    def _order_routes(self, http_routes: list[dict[str, Any]]) -> list[dict[str, Any]]:
        # managed routes go first, in managedRoutes order
        names = self.managed_route_names
        managed = sorted((r for r in http_routes if r.get("name") in names), key=lambda r: names.index(r["name"]))
        return managed + [r for r in http_routes if r.get("name") not in names]

    def _replace_route(self, name: str, new_route: Optional[dict[str, Any]]) -> None:
        for vsvc in self.virtual_services:
            service = self._require(ISTIO_API_VERSION, "VirtualService", vsvc["name"])
            spec = service.setdefault("spec", {})
            http_routes = [r for r in spec.get("http", []) if r.get("name") != name]
            if new_route is not None:
                route = dict(new_route)
                if "mirror" in route:
                    route["route"] = self._primary_route(spec.get("http", []), vsvc)
                else:
                    route["route"] = [{"destination": self._canary_destination(spec.get("http", [])), "weight": MAX_WEIGHT}]
                http_routes.append(route)
            spec["http"] = self._order_routes(http_routes)
            self.client.apply(service)

    def set_header_route(self, header_route: Optional[SetHeaderRoute]) -> None:
        if header_route is None:
            return
        self._check_managed(header_route.name)
        if not header_route.match:
            self._replace_route(header_route.name, None)
            return
        headers = {m.header_name: m.header_value.to_dict() for m in header_route.match}
        self._replace_route(header_route.name, {"name": header_route.name, "match": [{"headers": headers}]})

    def set_mirror_route(self, mirror_route: Optional[SetMirrorRoute]) -> None:
        if mirror_route is None:
            return
        self._check_managed(mirror_route.name)
        if not mirror_route.match:
            self._replace_route(mirror_route.name, None)
            return
        percentage = mirror_route.percentage if mirror_route.percentage is not None else MAX_WEIGHT
        self._replace_route(mirror_route.name, {
            "name": mirror_route.name,
            "match": [_istio_match(m) for m in mirror_route.match],
            "mirror": {"host": self.rollout.canary_service},
            "mirrorPercentage": {"value": float(percentage)},
        })

    def remove_managed_routes(self) -> None:
        names = set(self.managed_route_names)
        if not names:
            return
        for vsvc in self.virtual_services:
            service = self._require(ISTIO_API_VERSION, "VirtualService", vsvc["name"])
            spec = service.setdefault("spec", {})
            http_routes = spec.get("http", [])
            kept = [r for r in http_routes if r.get("name") not in names]
            if len(kept) != len(http_routes):
                spec["http"] = kept
                self.client.apply(service)


def _istio_match(match: RouteMatch) -> dict[str, Any]:
    result: dict[str, Any] = {}
    if match.method is not None:
        result["method"] = match.method.to_dict()
    if match.path is not None:
        result["uri"] = match.path.to_dict()
    if match.headers:
        result["headers"] = {name: value.to_dict() for name, value in match.headers}
    return result


class SMIReconciler(ManifestReconciler):
    """Maintains an SMI TrafficSplit owned by the rollout."""

    backend_type = BackendType.SMI

    @property
    def split_name(self) -> str:
        return self.config.get("trafficSplitName") or self.rollout.name

    @property
    def root_service(self) -> str:
        return self.config.get("rootService") or self.rollout.stable_service

    def set_weight(self, desired_weight, additional_destinations=()) -> None:
        existing = self.client.get(SMI_API_VERSION, "TrafficSplit", self.rollout.namespace, self.split_name)
        if existing is not None:
            owner = existing.get("metadata", {}).get("labels", {}).get(MANAGED_BY_LABEL)
            if owner != self.rollout.name:
                raise self._error(f"TrafficSplit {self.split_name} is not managed by rollout {self.rollout.name}")

        backends = [
            {"service": self.rollout.canary_service, "weight": desired_weight},
            {"service": self.rollout.stable_service, "weight": stable_weight(desired_weight, additional_destinations)},
        ]
        backends.extend({"service": d.service_name, "weight": d.weight} for d in additional_destinations)
        self.client.apply({
            "apiVersion": SMI_API_VERSION,
            "kind": "TrafficSplit",
            "metadata": {
                "name": self.split_name,
                "namespace": self.rollout.namespace,
                "labels": {MANAGED_BY_LABEL: self.rollout.name},
            },
            "spec": {"service": self.root_service, "backends": backends},
        })


class AppMeshReconciler(ManifestReconciler):
    """
    Updates weighted targets on the App Mesh virtual router behind a
    virtual service. Additional destinations are not supported by App Mesh
    routes and are ignored.
    """

    backend_type = BackendType.APPMESH
    route_kinds = ("httpRoute", "http2Route", "grpcRoute", "tcpRoute")

    def __init__(self, rollout, client, config):
        super().__init__(rollout, client, config)
        self.virtual_service = self.config.get("virtualService") or {}
        node_group = self.config.get("virtualNodeGroup") or {}
        self.canary_node = (node_group.get("canaryVirtualNodeRef") or {}).get("name")
        self.stable_node = (node_group.get("stableVirtualNodeRef") or {}).get("name")
        if not self.virtual_service.get("name") or not self.canary_node or not self.stable_node:
            raise self._error("appmesh traffic routing requires virtualService and virtualNodeGroup")

    def update_hash(self, canary_hash, stable_hash, additional_destinations=()) -> None:
        for node_name, pod_hash in ((self.canary_node, canary_hash), (self.stable_node, stable_hash)):
            if not pod_hash:
                continue
            node = self._require(APPMESH_API_VERSION, "VirtualNode", node_name)
            selector = node.setdefault("spec", {}).setdefault("podSelector", {}).setdefault("matchLabels", {})
            if selector.get(POD_TEMPLATE_HASH_LABEL) != pod_hash:
                selector[POD_TEMPLATE_HASH_LABEL] = pod_hash
                self.client.apply(node)

    def set_weight(self, desired_weight, additional_destinations=()) -> None:
        vsvc = self._require(APPMESH_API_VERSION, "VirtualService", self.virtual_service["name"])
        router_ref = vsvc.get("spec", {}).get("provider", {}).get("virtualRouter", {}).get("virtualRouterRef", {})
        if not router_ref.get("name"):
            raise self._error(f"virtual service {self.virtual_service['name']} has no virtual router provider")
        router = self._require(APPMESH_API_VERSION, "VirtualRouter", router_ref["name"])

        names = self.virtual_service.get("routes") or []
        targets = [
            {"virtualNodeRef": {"name": self.canary_node}, "weight": desired_weight},
            {"virtualNodeRef": {"name": self.stable_node}, "weight": MAX_WEIGHT - desired_weight},
        ]
        updated = 0
        for route in router.get("spec", {}).get("routes", []):
            if names and route.get("name") not in names:
                continue
            for kind in self.route_kinds:
                if kind in route:
                    route[kind].setdefault("action", {})["weightedTargets"] = [dict(t) for t in targets]
                    updated += 1
        if updated == 0:
            raise self._error(f"no matching routes on virtual router {router_ref['name']}")
        self.client.apply(router)
