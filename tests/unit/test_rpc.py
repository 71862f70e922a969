"""Tests for the traffic router plugin wire protocol."""

import grpc
import pytest

from trafficshift.canary.rollout import (
    HeaderRoutingMatch,
    RouteMatch,
    SetHeaderRoute,
    SetMirrorRoute,
    StringMatch,
    TrafficRoutingConfig,
)
from trafficshift.canary.weights import WeightDestination
from trafficshift.plugins.rpc import (
    PluginRpcError,
    RpcError,
    RpcTrafficRouter,
    RpcTrafficRouterClient,
    RpcVerified,
    format_handshake,
    is_verified,
    parse_handshake,
    rollout_payload,
    serve_traffic_router,
)


class FakePlugin(RpcTrafficRouter):
    """Plugin implementation that records requests."""

    def __init__(self):
        self.calls = []
        self.verified = RpcVerified.VERIFIED
        self.fail_with = ""

    def _result(self, *call):
        self.calls.append(call)
        return RpcError(self.fail_with)

    def init_plugin(self):
        return self._result("init")

    def update_hash(self, rollout, canary_hash, stable_hash, additional_destinations):
        return self._result("update_hash", canary_hash, stable_hash, list(additional_destinations))

    def set_weight(self, rollout, desired_weight, additional_destinations):
        return self._result("set_weight", rollout["metadata"]["name"], desired_weight, list(additional_destinations))

    def set_header_route(self, rollout, header_route):
        return self._result("set_header_route", header_route)

    def set_mirror_route(self, rollout, mirror_route):
        return self._result("set_mirror_route", mirror_route)

    def verify_weight(self, rollout, desired_weight, additional_destinations):
        return self.verified, self._result("verify_weight", desired_weight)

    def remove_managed_routes(self, rollout):
        if self.fail_with == "raise":
            raise RuntimeError("route table locked")
        return self._result("remove_managed_routes")

    def type(self):
        return "acme/router"


@pytest.fixture
def plugin():
    return FakePlugin()


@pytest.fixture
def client(plugin, make_rollout):
    server, address = serve_traffic_router(plugin, "127.0.0.1:0")
    channel = grpc.insecure_channel(address)
    routing = TrafficRoutingConfig(plugins=(("acme/router", {"mode": "fast"}),))
    yield RpcTrafficRouterClient(channel, "acme/router", make_rollout(traffic_routing=routing), timeout=5.0)
    channel.close()
    server.stop(grace=None)


@pytest.mark.unit
class TestWireValues:
    """Verification enum, error objects and handshake lines."""

    @pytest.mark.parametrize(
        "verified,wire",
        [(True, RpcVerified.VERIFIED), (False, RpcVerified.NOT_VERIFIED), (None, RpcVerified.NOT_IMPLEMENTED)],
    )
    def test_verified_mapping(self, verified, wire):
        assert RpcVerified.from_optional(verified) == wire
        assert wire.is_verified() is verified

    def test_unknown_verified_value_is_false(self):
        assert is_verified(7) is False

    def test_empty_error_string_is_success(self):
        assert RpcError().to_exception() is None
        assert RpcError.from_dict({"errorString": ""}).has_error() is False

    def test_error_becomes_exception(self):
        error = RpcError.from_dict({"errorString": "no such route"}).to_exception(backend="acme/router")

        assert isinstance(error, PluginRpcError)
        assert error.backend == "acme/router"
        assert "no such route" in str(error)

    def test_handshake(self):
        line = format_handshake("127.0.0.1:50051")

        assert line == "1|1|tcp|127.0.0.1:50051|grpc"
        assert parse_handshake(line + "\n") == "127.0.0.1:50051"

    @pytest.mark.parametrize("line", ["", "1|1|tcp", "2|1|tcp|127.0.0.1:1|grpc", "1|1|unix|/tmp/s|grpc"])
    def test_bad_handshake(self, line):
        with pytest.raises(ValueError):
            parse_handshake(line)

    def test_rollout_payload_carries_only_own_plugin_config(self, make_rollout):
        routing = TrafficRoutingConfig(plugins=(("acme/router", {"mode": "fast"}), ("other/router", {})))

        payload = rollout_payload(make_rollout(traffic_routing=routing), "acme/router")

        canary = payload["spec"]["strategy"]["canary"]
        assert canary["trafficRouting"]["plugins"] == {"acme/router": {"mode": "fast"}}
        assert canary["canaryService"] == "guestbook-canary"
        assert payload["metadata"]["annotations"]["rollout.argoproj.io/revision"] == "2"


@pytest.mark.unit
class TestRoundTrip:
    """Client and server talking over a real local gRPC channel."""

    def test_set_weight(self, client, plugin):
        extra = WeightDestination("guestbook-exp", "e1", 5)

        client.set_weight(30, [extra])

        assert plugin.calls == [("set_weight", "guestbook", 30, [extra])]

    def test_update_hash(self, client, plugin):
        client.update_hash("canary-7d9f", "stable-5c4b")

        assert plugin.calls == [("update_hash", "canary-7d9f", "stable-5c4b", [])]

    def test_header_and_mirror_routes(self, client, plugin):
        header = SetHeaderRoute("header-route", (HeaderRoutingMatch("x-canary", StringMatch(exact="yes")),))
        mirror = SetMirrorRoute(
            "mirror-route",
            (RouteMatch(method=StringMatch(exact="GET"), headers=(("x-user", StringMatch(prefix="beta")),)),),
            percentage=40,
        )

        client.set_header_route(header)
        client.set_mirror_route(mirror)
        client.set_header_route(None)

        assert plugin.calls == [("set_header_route", header), ("set_mirror_route", mirror)]

    @pytest.mark.parametrize(
        "wire,expected",
        [(RpcVerified.VERIFIED, True), (RpcVerified.NOT_VERIFIED, False), (RpcVerified.NOT_IMPLEMENTED, None)],
    )
    def test_verify_weight(self, client, plugin, wire, expected):
        plugin.verified = wire

        assert client.verify_weight(30) is expected

    def test_plugin_error_is_raised(self, client, plugin):
        plugin.fail_with = "virtual router not found"

        with pytest.raises(PluginRpcError) as exc_info:
            client.set_weight(10)

        assert exc_info.value.backend == "acme/router"
        assert "virtual router not found" in str(exc_info.value)

    def test_plugin_exception_crosses_as_error(self, client, plugin):
        plugin.fail_with = "raise"

        with pytest.raises(PluginRpcError, match="route table locked"):
            client.remove_managed_routes()

    def test_type_is_plugin_name(self, client):
        assert client.type() == "acme/router"


@pytest.mark.unit
def test_unreachable_plugin_raises(make_rollout):
    channel = grpc.insecure_channel("127.0.0.1:1")
    client = RpcTrafficRouterClient(channel, "acme/router", make_rollout(), timeout=0.5)

    with pytest.raises(PluginRpcError) as exc_info:
        client.init_plugin()

    assert exc_info.value.backend == "acme/router"
    channel.close()
