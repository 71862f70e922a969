"""Ingress controller routing backends: NGINX, AWS ALB, Traefik and Apache APISIX."""

import copy
import json
import logging
from typing import Any, Optional

from trafficshift.canary.rollout import SetHeaderRoute
from trafficshift.canary.weights import MAX_WEIGHT
from trafficshift.servicemesh.reconciler import BackendType, ManifestReconciler, stable_weight

logger = logging.getLogger(__name__)

INGRESS_API_VERSION = "networking.k8s.io/v1"
TRAEFIK_API_VERSION = "traefik.io/v1alpha1"
APISIX_API_VERSION = "apisix.apache.org/v2"
DEFAULT_NGINX_PREFIX = "nginx.ingress.kubernetes.io"
DEFAULT_ALB_PREFIX = "alb.ingress.kubernetes.io"


def _ingress_backends(ingress: dict[str, Any]):
    """Yield every service backend dict of an Ingress."""
    for rule in ingress.get("spec", {}).get("rules", []):
        for path in rule.get("http", {}).get("paths", []):
            service = path.get("backend", {}).get("service")
            if service is not None:
                yield service


class NginxReconciler(ManifestReconciler):
    """
    Maintains a canary Ingress next to each stable Ingress.

    The canary Ingress copies the stable rules, points them at the canary
    service and carries the nginx canary-weight annotations. A header route
    maps onto the single canary-by-header annotation set nginx offers;
    mirror routes are not supported and are ignored.
    """

    header_annotations = ("canary-by-header", "canary-by-header-value", "canary-by-header-pattern")

    backend_type = BackendType.NGINX

    def __init__(self, rollout, client, config):
        super().__init__(rollout, client, config)
        self.stable_ingresses = []
        if self.config.get("stableIngress"):
            self.stable_ingresses.append(self.config["stableIngress"])
        self.stable_ingresses.extend(self.config.get("additionalStableIngresses") or [])
        if not self.stable_ingresses:
            raise self._error("nginx traffic routing requires stableIngress")
        self.prefix = self.config.get("annotationPrefix") or DEFAULT_NGINX_PREFIX

    def canary_ingress_name(self, stable_ingress: str) -> str:
        return f"{self.rollout.name}-{stable_ingress}-canary"[:253]

    def _canary_ingress(
        self,
        stable: dict[str, Any],
        desired_weight: int,
        existing: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        stable_name = stable["metadata"]["name"]
        canary = {
            "apiVersion": INGRESS_API_VERSION,
            "kind": "Ingress",
            "metadata": {
                "name": self.canary_ingress_name(stable_name),
                "namespace": self.rollout.namespace,
                "annotations": {},
            },
            "spec": copy.deepcopy(stable.get("spec", {})),
        }
        matched = False
        for service in _ingress_backends(canary):
            if service.get("name") == self.rollout.stable_service:
                service["name"] = self.rollout.canary_service
                matched = True
        if not matched:
            raise self._error(f"ingress {stable_name} has no backend for service {self.rollout.stable_service}")

        annotations = canary["metadata"]["annotations"]
        if existing is not None:
            current = existing.get("metadata", {}).get("annotations") or {}
            for name in self.header_annotations:
                key = f"{self.prefix}/{name}"
                if key in current:
                    annotations[key] = current[key]
        for key, value in (stable.get("metadata", {}).get("annotations") or {}).items():
            if key.startswith(self.prefix) and "canary" not in key:
                annotations[key] = value
        for key, value in (self.config.get("additionalIngressAnnotations") or {}).items():
            annotations[f"{self.prefix}/{key}"] = value
        annotations[f"{self.prefix}/canary"] = "true"
        annotations[f"{self.prefix}/canary-weight"] = str(desired_weight)
        annotations[f"{self.prefix}/canary-weight-total"] = str(MAX_WEIGHT)
        return canary

    def set_weight(self, desired_weight, additional_destinations=()) -> None:
        if additional_destinations:
            logger.warning("nginx ignores %d additional destinations", len(additional_destinations))
        for stable_name in self.stable_ingresses:
            stable = self._require(INGRESS_API_VERSION, "Ingress", stable_name)
            existing = self.client.get(
                INGRESS_API_VERSION, "Ingress", self.rollout.namespace, self.canary_ingress_name(stable_name)
            )
            self.client.apply(self._canary_ingress(stable, desired_weight, existing))

    def _edit_header_annotations(self, values: dict[str, str]) -> None:
        for stable_name in self.stable_ingresses:
            canary = self._require(INGRESS_API_VERSION, "Ingress", self.canary_ingress_name(stable_name))
            annotations = canary.setdefault("metadata", {}).setdefault("annotations", {})
            before = dict(annotations)
            for name in self.header_annotations:
                annotations.pop(f"{self.prefix}/{name}", None)
            annotations.update({f"{self.prefix}/{k}": v for k, v in values.items()})
            if annotations != before:
                self.client.apply(canary)

    def set_header_route(self, header_route: Optional[SetHeaderRoute]) -> None:
        if header_route is None:
            return
        self._check_managed(header_route.name)
        if not header_route.match:
            self._edit_header_annotations({})
            return
        if len(header_route.match) > 1:
            raise self._error("nginx supports a single header match per canary ingress")
        match = header_route.match[0]
        values = {"canary-by-header": match.header_name}
        if match.header_value.exact:
            values["canary-by-header-value"] = match.header_value.exact
        elif match.header_value.prefix:
            values["canary-by-header-pattern"] = f"^{match.header_value.prefix}.*"
        else:
            values["canary-by-header-pattern"] = match.header_value.regex
        self._edit_header_annotations(values)

    def remove_managed_routes(self) -> None:
        if not self.managed_route_names:
            return
        for stable_name in self.stable_ingresses:
            canary = self.client.get(
                INGRESS_API_VERSION, "Ingress", self.rollout.namespace, self.canary_ingress_name(stable_name)
            )
            if canary is None:
                continue
            annotations = canary.setdefault("metadata", {}).setdefault("annotations", {})
            removed = [annotations.pop(f"{self.prefix}/{n}", None) for n in self.header_annotations]
            if any(v is not None for v in removed):
                self.client.apply(canary)

    def verify_weight(self, desired_weight, additional_destinations=()) -> Optional[bool]:
        for stable_name in self.stable_ingresses:
            canary = self.client.get(
                INGRESS_API_VERSION, "Ingress", self.rollout.namespace, self.canary_ingress_name(stable_name)
            )
            if canary is None:
                return False
            annotations = canary.get("metadata", {}).get("annotations") or {}
            if annotations.get(f"{self.prefix}/canary-weight") != str(desired_weight):
                return False
        return True


class ALBReconciler(ManifestReconciler):
    """
    Writes forward-action annotations on the ALB Ingress.

    The action annotation names the service that the Ingress rules point
    to (rootService, or the stable service). Header routes become extra
    action/condition annotation pairs keyed by the route name.
    """

    backend_type = BackendType.ALB

    def __init__(self, rollout, client, config):
        super().__init__(rollout, client, config)
        self.ingresses = []
        if self.config.get("ingress"):
            self.ingresses.append(self.config["ingress"])
        self.ingresses.extend(self.config.get("ingresses") or [])
        if not self.ingresses:
            raise self._error("alb traffic routing requires ingress")
        self.prefix = self.config.get("annotationPrefix") or DEFAULT_ALB_PREFIX
        self.service_port = self.config.get("servicePort")

    @property
    def action_service(self) -> str:
        return self.config.get("rootService") or self.rollout.stable_service

    def _target_group(self, service: str, weight: int) -> dict[str, Any]:
        group: dict[str, Any] = {"serviceName": service, "weight": weight}
        if self.service_port is not None:
            group["servicePort"] = str(self.service_port)
        return group

    def _forward_action(self, desired_weight: int, additional_destinations=()) -> dict[str, Any]:
        groups = [
            self._target_group(self.rollout.canary_service, desired_weight),
            self._target_group(self.rollout.stable_service, stable_weight(desired_weight, additional_destinations)),
        ]
        groups.extend(self._target_group(d.service_name, d.weight) for d in additional_destinations)
        return {"type": "forward", "forwardConfig": {"targetGroups": groups}}

    def _action_key(self, name: str) -> str:
        return f"{self.prefix}/actions.{name}"

    def _condition_key(self, name: str) -> str:
        return f"{self.prefix}/conditions.{name}"

    def set_weight(self, desired_weight, additional_destinations=()) -> None:
        action = json.dumps(self._forward_action(desired_weight, additional_destinations), sort_keys=True)
        for name in self.ingresses:
            ingress = self._require(INGRESS_API_VERSION, "Ingress", name)
            if not any(s.get("name") == self.action_service for s in _ingress_backends(ingress)):
                raise self._error(f"ingress {name} has no rule for service {self.action_service}")
            annotations = ingress.setdefault("metadata", {}).setdefault("annotations", {})
            if annotations.get(self._action_key(self.action_service)) != action:
                annotations[self._action_key(self.action_service)] = action
                self.client.apply(ingress)

    def verify_weight(self, desired_weight, additional_destinations=()) -> Optional[bool]:
        expected = self._forward_action(desired_weight, additional_destinations)
        for name in self.ingresses:
            ingress = self._require(INGRESS_API_VERSION, "Ingress", name)
            raw = (ingress.get("metadata", {}).get("annotations") or {}).get(self._action_key(self.action_service))
            if raw is None:
                return False
            try:
                if json.loads(raw) != expected:
                    return False
            except ValueError as e:
                raise self._error(f"ingress {name} has an unreadable action annotation: {e}") from e
        return True

    def set_header_route(self, header_route: Optional[SetHeaderRoute]) -> None:
        if header_route is None:
            return
        self._check_managed(header_route.name)
        for match in header_route.match:
            if not match.header_value.exact:
                raise self._error("alb header routes support exact matches only")

        for name in self.ingresses:
            ingress = self._require(INGRESS_API_VERSION, "Ingress", name)
            annotations = ingress.setdefault("metadata", {}).setdefault("annotations", {})
            if header_route.match:
                annotations[self._action_key(header_route.name)] = json.dumps(
                    self._forward_action(MAX_WEIGHT), sort_keys=True
                )
                annotations[self._condition_key(header_route.name)] = json.dumps([
                    {
                        "field": "http-header",
                        "httpHeaderConfig": {
                            "httpHeaderName": m.header_name,
                            "values": [m.header_value.exact],
                        },
                    }
                    for m in header_route.match
                ], sort_keys=True)
            else:
                annotations.pop(self._action_key(header_route.name), None)
                annotations.pop(self._condition_key(header_route.name), None)
            self.client.apply(ingress)

    def remove_managed_routes(self) -> None:
        if not self.managed_route_names:
            return
        for name in self.ingresses:
            ingress = self._require(INGRESS_API_VERSION, "Ingress", name)
            annotations = ingress.setdefault("metadata", {}).setdefault("annotations", {})
            removed = False
            for route in self.managed_route_names:
                for key in (self._action_key(route), self._condition_key(route)):
                    if annotations.pop(key, None) is not None:
                        removed = True
            if removed:
                self.client.apply(ingress)


class TraefikReconciler(ManifestReconciler):
    """Sets weights on a weighted TraefikService."""

    backend_type = BackendType.TRAEFIK

    def __init__(self, rollout, client, config):
        super().__init__(rollout, client, config)
        self.weighted_service = self.config.get("weightedTraefikServiceName")
        if not self.weighted_service:
            raise self._error("traefik traffic routing requires weightedTraefikServiceName")

    def set_weight(self, desired_weight, additional_destinations=()) -> None:
        service = self._require(TRAEFIK_API_VERSION, "TraefikService", self.weighted_service)
        weighted = service.get("spec", {}).get("weighted", {}).get("services")
        if not weighted:
            raise self._error(f"TraefikService {self.weighted_service} has no weighted services")

        weights = {
            self.rollout.canary_service: desired_weight,
            self.rollout.stable_service: stable_weight(desired_weight, additional_destinations),
        }
        weights.update({d.service_name: d.weight for d in additional_destinations})
        found = set()
        for entry in weighted:
            if entry.get("name") in weights:
                entry["weight"] = weights[entry["name"]]
                found.add(entry["name"])
        for name in weights.keys() - found:
            if name in (self.rollout.canary_service, self.rollout.stable_service):
                raise self._error(f"TraefikService {self.weighted_service} has no entry for {name}")
            weighted.append({"name": name, "weight": weights[name]})
        self.client.apply(service)


class ApisixReconciler(ManifestReconciler):
    """
    Updates backend weights of an ApisixRoute http rule.

    Header routes are added as extra rules, cloned from the weighted rule,
    that match on request headers and send everything to the canary.
    """

    backend_type = BackendType.APISIX

    def __init__(self, rollout, client, config):
        super().__init__(rollout, client, config)
        route = self.config.get("route") or {}
        self.route_name = route.get("name")
        self.rules = list(route.get("rules") or [])
        if not self.route_name:
            raise self._error("apisix traffic routing requires route.name")

    def _weighted_rules(self, http_rules: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not self.rules:
            if not http_rules:
                raise self._error(f"ApisixRoute {self.route_name} has no http rules")
            return http_rules[:1]
        selected = [r for r in http_rules if r.get("name") in self.rules]
        if len(selected) != len(self.rules):
            raise self._error(f"ApisixRoute {self.route_name} is missing rules {self.rules}")
        return selected

    def set_weight(self, desired_weight, additional_destinations=()) -> None:
        route = self._require(APISIX_API_VERSION, "ApisixRoute", self.route_name)
        http_rules = route.get("spec", {}).get("http", [])
        weights = {
            self.rollout.canary_service: desired_weight,
            self.rollout.stable_service: stable_weight(desired_weight, additional_destinations),
        }
        for rule in self._weighted_rules(http_rules):
            backends = rule.get("backends", [])
            names = {b.get("serviceName") for b in backends}
            if not {self.rollout.canary_service, self.rollout.stable_service} <= names:
                raise self._error(f"rule {rule.get('name', '')} lacks canary or stable backend")
            for backend in backends:
                if backend.get("serviceName") in weights:
                    backend["weight"] = weights[backend["serviceName"]]
        self.client.apply(route)

    def set_header_route(self, header_route: Optional[SetHeaderRoute]) -> None:
        if header_route is None:
            return
        self._check_managed(header_route.name)
        route = self._require(APISIX_API_VERSION, "ApisixRoute", self.route_name)
        spec = route.setdefault("spec", {})
        http_rules = [r for r in spec.get("http", []) if r.get("name") != header_route.name]
        if header_route.match:
            base = self._weighted_rules(http_rules)[0]
            rule = copy.deepcopy(base)
            rule["name"] = header_route.name
            rule["priority"] = base.get("priority", 0) + 1
            rule.setdefault("match", {})["exprs"] = [_apisix_expr(m) for m in header_route.match]
            rule["backends"] = [
                {**b, "weight": MAX_WEIGHT}
                for b in base.get("backends", [])
                if b.get("serviceName") == self.rollout.canary_service
            ]
            http_rules.append(rule)
        spec["http"] = http_rules
        self.client.apply(route)

    def remove_managed_routes(self) -> None:
        names = set(self.managed_route_names)
        if not names:
            return
        route = self._require(APISIX_API_VERSION, "ApisixRoute", self.route_name)
        spec = route.setdefault("spec", {})
        http_rules = spec.get("http", [])
        kept = [r for r in http_rules if r.get("name") not in names]
        if len(kept) != len(http_rules):
            spec["http"] = kept
            self.client.apply(route)


def _apisix_expr(match) -> dict[str, Any]:
    value = match.header_value
    subject = {"scope": "Header", "name": match.header_name}
    if value.exact:
        return {"subject": subject, "op": "Equal", "value": value.exact}
    if value.prefix:
        return {"subject": subject, "op": "RegexMatch", "value": f"^{value.prefix}.*"}
    return {"subject": subject, "op": "RegexMatch", "value": value.regex}
