"""Out-of-process plugins: wire protocol, manifest, download and process registry."""

from trafficshift.plugins.rpc import (
    PluginRpcError,
    RpcError,
    RpcTrafficRouter,
    RpcTrafficRouterClient,
    RpcVerified,
    format_handshake,
    parse_handshake,
    serve_traffic_router,
)
from trafficshift.plugins.plugin_manager import (
    ChecksumMismatchError,
    PluginDescriptor,
    PluginError,
    PluginNotFoundError,
    PluginProcess,
    PluginRegistry,
    PluginType,
    load_plugin_manifest,
)
from trafficshift.plugins.downloader import PluginDownloader, verify_checksum

__all__ = [
    "PluginRpcError",
    "RpcError",
    "RpcTrafficRouter",
    "RpcTrafficRouterClient",
    "RpcVerified",
    "format_handshake",
    "parse_handshake",
    "serve_traffic_router",
    "ChecksumMismatchError",
    "PluginDescriptor",
    "PluginError",
    "PluginNotFoundError",
    "PluginProcess",
    "PluginRegistry",
    "PluginType",
    "load_plugin_manifest",
    "PluginDownloader",
    "verify_checksum",
]
