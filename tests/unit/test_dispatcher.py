"""Tests for routing backend selection."""

from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from trafficshift.canary.rollout import TrafficRoutingConfig
from trafficshift.plugins.plugin_manager import (
    ChecksumMismatchError,
    PluginDescriptor,
    PluginRegistry,
    PluginType,
)
from trafficshift.servicemesh.dispatcher import DispatchContext, select_backends
from trafficshift.servicemesh.reconciler import BackendNotAvailableError, TrafficRoutingError

ISTIO = {"virtualService": {"name": "guestbook-vs", "routes": ["primary"]}}
NGINX = {"stableIngress": "guestbook-ingress"}


@pytest.fixture
def context(resource_client):
    return DispatchContext(client=resource_client)


@pytest.mark.unit
class TestSelectBackends:
    """Priority order, availability and plugin activation."""

    def test_no_traffic_routing(self, make_rollout, context):
        snapshot = replace(make_rollout(), traffic_routing=None)

        assert select_backends(snapshot, context) == []

    def test_fixed_priority_order(self, make_rollout, context):
        routing = TrafficRoutingConfig(smi={}, nginx=NGINX, istio=ISTIO, apisix={"route": {"name": "gb"}})

        backends = select_backends(make_rollout(traffic_routing=routing), context)

        assert [b.type() for b in backends] == ["istio", "nginx", "smi", "apisix"]

    def test_unavailable_backend_is_skipped(self, make_rollout, context):
        context.lookups["nginx"] = lambda snapshot: None
        routing = TrafficRoutingConfig(istio=ISTIO, nginx=NGINX)

        backends = select_backends(make_rollout(traffic_routing=routing), context)

        assert [b.type() for b in backends] == ["istio"]

    def test_sole_unavailable_backend_fails(self, make_rollout, context):
        context.lookups["nginx"] = lambda snapshot: None
        routing = TrafficRoutingConfig(nginx=NGINX)

        with pytest.raises(BackendNotAvailableError):
            select_backends(make_rollout(traffic_routing=routing), context)

    def test_available_lookup_keeps_backend(self, make_rollout, context):
        context.lookups["istio"] = lambda snapshot: object()
        routing = TrafficRoutingConfig(istio=ISTIO)

        assert len(select_backends(make_rollout(traffic_routing=routing), context)) == 1

    def test_missing_required_field_fails(self, make_rollout, context):
        routing = TrafficRoutingConfig(istio={})

        with pytest.raises(TrafficRoutingError) as exc_info:
            select_backends(make_rollout(traffic_routing=routing), context)

        assert exc_info.value.backend == "istio"

    def test_plugins_follow_builtin_backends(self, make_rollout, context, backend_factory):
        registry = MagicMock(spec=PluginRegistry)
        registry.traffic_router.side_effect = lambda name, snapshot: backend_factory(name)
        context.plugin_registry = registry
        routing = TrafficRoutingConfig(smi={}, plugins=(("acme/router", {"mode": "fast"}),))

        backends = select_backends(make_rollout(traffic_routing=routing), context)

        assert [b.type() for b in backends] == ["smi", "acme/router"]

    def test_failing_plugin_is_skipped(self, make_rollout, context, backend_factory):
        def activate(name, snapshot):
            if name == "acme/broken":
                raise ChecksumMismatchError("checksum mismatch")
            return backend_factory(name)

        registry = MagicMock(spec=PluginRegistry)
        registry.traffic_router.side_effect = activate
        context.plugin_registry = registry
        routing = TrafficRoutingConfig(plugins=(("acme/broken", {}), ("acme/router", {})))

        backends = select_backends(make_rollout(traffic_routing=routing), context)

        assert [b.type() for b in backends] == ["acme/router"]

    def test_plugins_without_registry_are_skipped(self, make_rollout, context):
        routing = TrafficRoutingConfig(plugins=(("acme/router", {}),))

        assert select_backends(make_rollout(traffic_routing=routing), context) == []

    def test_non_executable_plugin_is_skipped(self, make_rollout, context, controller_config):
        binary = controller_config.plugin_dir / "acme" / "router"
        binary.parent.mkdir(parents=True)
        binary.write_text("#!/bin/sh\nexec sleep 30\n")
        binary.chmod(0o644)
        descriptor = PluginDescriptor("acme/router", "file:///plugins/router", PluginType.TRAFFIC_ROUTER)
        context.plugin_registry = PluginRegistry([descriptor], config=controller_config)
        routing = TrafficRoutingConfig(smi={}, plugins=(("acme/router", {}),))

        backends = select_backends(make_rollout(traffic_routing=routing), context)

        assert [b.type() for b in backends] == ["smi"]
