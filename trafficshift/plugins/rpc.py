"""
Out-of-process traffic router plugins.

A plugin is a separate executable that serves the TrafficRouter service
over gRPC. Messages are JSON objects; every response carries an ``error``
object whose ``errorString`` is empty on success. On start the plugin
prints a single handshake line to stdout::

    1|1|tcp|127.0.0.1:50051|grpc

which tells the controller where to connect.
"""

import json
import logging
from abc import ABC, abstractmethod
from concurrent import futures
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional, Sequence

import grpc

from trafficshift.canary.rollout import RolloutSnapshot, SetHeaderRoute, SetMirrorRoute
from trafficshift.canary.weights import WeightDestination
from trafficshift.servicemesh.reconciler import TrafficRoutingError, TrafficRoutingReconciler

logger = logging.getLogger(__name__)

SERVICE_NAME = "trafficrouter.TrafficRouter"
CORE_PROTOCOL_VERSION = 1
APP_PROTOCOL_VERSION = 1
METHODS = (
    "InitPlugin",
    "UpdateHash",
    "SetWeight",
    "SetHeaderRoute",
    "SetMirrorRoute",
    "VerifyWeight",
    "RemoveManagedRoutes",
    "Type",
)


class PluginRpcError(TrafficRoutingError):
    """Error returned by a plugin or raised by its transport."""
    pass


@dataclass(frozen=True)
class RpcError:
    """Error carried in a plugin response; an empty string means no error."""
    error_string: str = ""

    def has_error(self) -> bool:
        return self.error_string != ""

    def to_exception(self, backend: Optional[str] = None) -> Optional[PluginRpcError]:
        if not self.has_error():
            return None
        return PluginRpcError(self.error_string, backend=backend)

    def to_dict(self) -> dict[str, str]:
        return {"errorString": self.error_string}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "RpcError":
        return cls((data or {}).get("errorString", ""))

    @classmethod
    def from_exception(cls, error: Optional[BaseException]) -> "RpcError":
        return cls(str(error)) if error is not None else cls()


class RpcVerified(IntEnum):
    """Wire form of the optional verification result."""
    NOT_VERIFIED = 0
    VERIFIED = 1
    NOT_IMPLEMENTED = 2

    @classmethod
    def from_optional(cls, verified: Optional[bool]) -> "RpcVerified":
        if verified is None:
            return cls.NOT_IMPLEMENTED
        return cls.VERIFIED if verified else cls.NOT_VERIFIED

    def is_verified(self) -> Optional[bool]:
        return is_verified(int(self))


def is_verified(value: int) -> Optional[bool]:
    """Map a wire value back to True/False/None; unknown values are False."""
    if value == RpcVerified.VERIFIED:
        return True
    if value == RpcVerified.NOT_IMPLEMENTED:
        return None
    return False


def encode(message: dict[str, Any]) -> bytes:
    return json.dumps(message, sort_keys=True).encode("utf-8")


def decode(payload: bytes) -> dict[str, Any]:
    if not payload:
        return {}
    return json.loads(payload.decode("utf-8"))


def rollout_payload(snapshot: RolloutSnapshot, plugin_name: str = "") -> dict[str, Any]:
    """The slice of a rollout a traffic router plugin gets to see."""
    routing = snapshot.traffic_routing
    plugins = dict(routing.plugins) if routing else {}
    if plugin_name:
        plugins = {plugin_name: plugins.get(plugin_name, {})}
    return {
        "metadata": {
            "name": snapshot.name,
            "namespace": snapshot.namespace,
            "annotations": {"rollout.argoproj.io/revision": str(snapshot.revision)},
        },
        "spec": {
            "replicas": snapshot.replicas,
            "strategy": {
                "canary": {
                    "canaryService": snapshot.canary_service,
                    "stableService": snapshot.stable_service,
                    "trafficRouting": {
                        "plugins": plugins,
                        "managedRoutes": [{"name": r.name} for r in snapshot.managed_routes],
                    },
                },
            },
        },
    }


def format_handshake(address: str) -> str:
    return f"{CORE_PROTOCOL_VERSION}|{APP_PROTOCOL_VERSION}|tcp|{address}|grpc"


def parse_handshake(line: str) -> str:
    """Return the plugin address from its handshake line."""
    parts = line.strip().split("|")
    if len(parts) < 5:
        raise ValueError(f"malformed plugin handshake: {line.strip()!r}")
    core, app, network, address, protocol = parts[:5]
    if core != str(CORE_PROTOCOL_VERSION) or app != str(APP_PROTOCOL_VERSION):
        raise ValueError(f"unsupported plugin protocol version {core}/{app}")
    if network != "tcp" or protocol != "grpc":
        raise ValueError(f"unsupported plugin transport {network}/{protocol}")
    return address


class RpcTrafficRouterClient(TrafficRoutingReconciler):
    """Calls a traffic router plugin over an open gRPC channel."""

    def __init__(
        self,
        channel: grpc.Channel,
        plugin_name: str,
        rollout: RolloutSnapshot,
        timeout: float = 30.0,
    ):
        self.channel = channel
        self.plugin_name = plugin_name
        self.rollout = rollout
        self.timeout = timeout
        self._stubs = {
            method: channel.unary_unary(
                f"/{SERVICE_NAME}/{method}",
                request_serializer=encode,
                response_deserializer=decode,
            )
            for method in METHODS
        }

    def _call(self, method: str, **fields: Any) -> dict[str, Any]:
        request = {"rollout": rollout_payload(self.rollout, self.plugin_name), **fields}
        try:
            response = self._stubs[method](request, timeout=self.timeout)
        except grpc.RpcError as e:
            raise PluginRpcError(
                f"plugin {self.plugin_name} {method} failed: {e}", backend=self.plugin_name
            ) from e
        error = RpcError.from_dict(response.get("error")).to_exception(backend=self.plugin_name)
        if error is not None:
            raise error
        return response

    def init_plugin(self) -> None:
        self._call("InitPlugin")

    def update_hash(self, canary_hash, stable_hash, additional_destinations=()) -> None:
        self._call(
            "UpdateHash",
            canaryHash=canary_hash,
            stableHash=stable_hash,
            additionalDestinations=[d.to_dict() for d in additional_destinations],
        )

    def set_weight(self, desired_weight, additional_destinations=()) -> None:
        self._call(
            "SetWeight",
            desiredWeight=desired_weight,
            additionalDestinations=[d.to_dict() for d in additional_destinations],
        )

    def set_header_route(self, header_route: Optional[SetHeaderRoute]) -> None:
        if header_route is None:
            return
        self._call("SetHeaderRoute", setHeaderRoute=header_route.to_dict())

    def set_mirror_route(self, mirror_route: Optional[SetMirrorRoute]) -> None:
        if mirror_route is None:
            return
        self._call("SetMirrorRoute", setMirrorRoute=mirror_route.to_dict())

    def verify_weight(self, desired_weight, additional_destinations=()) -> Optional[bool]:
        response = self._call(
            "VerifyWeight",
            desiredWeight=desired_weight,
            additionalDestinations=[d.to_dict() for d in additional_destinations],
        )
        return is_verified(int(response.get("verified", RpcVerified.NOT_VERIFIED)))

    def remove_managed_routes(self) -> None:
        self._call("RemoveManagedRoutes")

    def type(self) -> str:
        return self.plugin_name


class RpcTrafficRouter(ABC):
    """
    Plugin-author side of the protocol.

    Methods receive the rollout payload as a dict and return an RpcError
    (VerifyWeight returns a tuple of RpcVerified and RpcError).
    """

    def init_plugin(self) -> RpcError:
        return RpcError()

    @abstractmethod
    def update_hash(
        self,
        rollout: dict[str, Any],
        canary_hash: str,
        stable_hash: str,
        additional_destinations: Sequence[WeightDestination],
    ) -> RpcError:
        pass

    @abstractmethod
    def set_weight(
        self,
        rollout: dict[str, Any],
        desired_weight: int,
        additional_destinations: Sequence[WeightDestination],
    ) -> RpcError:
        pass

    @abstractmethod
    def set_header_route(self, rollout: dict[str, Any], header_route: SetHeaderRoute) -> RpcError:
        pass

    @abstractmethod
    def set_mirror_route(self, rollout: dict[str, Any], mirror_route: SetMirrorRoute) -> RpcError:
        pass

    @abstractmethod
    def verify_weight(
        self,
        rollout: dict[str, Any],
        desired_weight: int,
        additional_destinations: Sequence[WeightDestination],
    ) -> tuple[RpcVerified, RpcError]:
        pass

    @abstractmethod
    def remove_managed_routes(self, rollout: dict[str, Any]) -> RpcError:
        pass

    @abstractmethod
    def type(self) -> str:
        pass


def _destinations(request: dict[str, Any]) -> list[WeightDestination]:
    return [WeightDestination.from_dict(d) for d in request.get("additionalDestinations") or []]


def _dispatch(impl: RpcTrafficRouter, method: str, request: dict[str, Any]) -> dict[str, Any]:
    rollout = request.get("rollout") or {}
    if method == "InitPlugin":
        error = impl.init_plugin()
    elif method == "UpdateHash":
        error = impl.update_hash(
            rollout, request.get("canaryHash", ""), request.get("stableHash", ""), _destinations(request)
        )
    elif method == "SetWeight":
        error = impl.set_weight(rollout, int(request.get("desiredWeight", 0)), _destinations(request))
    elif method == "SetHeaderRoute":
        error = impl.set_header_route(rollout, SetHeaderRoute.from_dict(request["setHeaderRoute"]))
    elif method == "SetMirrorRoute":
        error = impl.set_mirror_route(rollout, SetMirrorRoute.from_dict(request["setMirrorRoute"]))
    elif method == "VerifyWeight":
        verified, error = impl.verify_weight(
            rollout, int(request.get("desiredWeight", 0)), _destinations(request)
        )
        return {"verified": int(verified), "error": error.to_dict()}
    elif method == "RemoveManagedRoutes":
        error = impl.remove_managed_routes(rollout)
    elif method == "Type":
        return {"type": impl.type(), "error": RpcError().to_dict()}
    else:
        error = RpcError(f"unknown method {method}")
    return {"error": error.to_dict()}


def _handler(impl: RpcTrafficRouter, method: str):
    def handle(request: dict[str, Any], context: grpc.ServicerContext) -> dict[str, Any]:
        try:
            return _dispatch(impl, method, request)
        except Exception as e:
            # errors cross the wire as RpcError, never as a dropped call
            logger.exception("plugin %s %s failed", impl.type(), method)
            return {"error": RpcError.from_exception(e).to_dict()}

    return grpc.unary_unary_rpc_method_handler(
        handle,
        request_deserializer=decode,
        response_serializer=encode,
    )


def serve_traffic_router(
    impl: RpcTrafficRouter,
    address: str = "127.0.0.1:0",
    max_workers: int = 4,
) -> tuple[grpc.Server, str]:
    """
    Start a gRPC server for a plugin implementation.

    Returns the started server and the bound address; pass the address to
    format_handshake() and print it for the controller.
    """
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=max_workers))
    handlers = {method: _handler(impl, method) for method in METHODS}
    server.add_generic_rpc_handlers((grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),))
    port = server.add_insecure_port(address)
    if port == 0:
        raise RuntimeError(f"could not bind plugin server to {address}")
    server.start()
    host = address.rsplit(":", 1)[0]
    return server, f"{host}:{port}"
