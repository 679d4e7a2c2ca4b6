"""Build the inbound handler config for a node."""

from __future__ import annotations

import ipaddress
import uuid
from collections.abc import Sequence
from typing import Any

from nodectl.config import CertConfig, Config, FallBackConfig
from nodectl.panel import CertProvider, NodeInfo

_NETWORKS = {
    "tcp": "tcp",
    "kcp": "mkcp",
    "mkcp": "mkcp",
    "ws": "websocket",
    "websocket": "websocket",
    "h2": "http",
    "http": "http",
    "ds": "domainsocket",
    "domainsocket": "domainsocket",
    "quic": "quic",
    "grpc": "grpc",
    "gun": "grpc",
}


class ConfigBuildError(ValueError):
    """The node's settings cannot be turned into a handler config."""


def _parse_address(text: str) -> str:
    try:
        return str(ipaddress.ip_address(text))
    except ValueError:
        return text


def network_type(transport_protocol: str) -> str:
    """Normalise a transport protocol name to the core's network name."""
    try:
        return _NETWORKS[transport_protocol.lower()]
    except KeyError:
        raise ConfigBuildError(f"unknown transport protocol: {transport_protocol}") from None


def build_fallbacks(fallback_configs: Sequence[FallBackConfig] | None) -> list[dict[str, Any]]:
    """Build VLESS/Trojan fallback entries; every entry needs a destination."""
    if fallback_configs is None:
        raise ConfigBuildError("You must provide FallBackConfigs")
    fallbacks = []
    for fallback in fallback_configs:
        if not fallback.dest:
            raise ConfigBuildError("Dest is required for fallback")
        fallbacks.append(
            {
                "name": fallback.sni,
                "alpn": fallback.alpn,
                "path": fallback.path,
                "dest": fallback.dest,
                "xver": fallback.proxy_protocol_ver,
            }
        )
    return fallbacks


def get_cert_file(cert_config: CertConfig, cert_provider: CertProvider | None = None) -> tuple[str, str]:
    """Return (certificate path, key path) according to the cert mode."""
    mode = cert_config.cert_mode
    if mode == "file":
        if not cert_config.cert_file or not cert_config.key_file:
            raise ConfigBuildError("Cert file path or key file path not exist")
        return cert_config.cert_file, cert_config.key_file
    if mode in ("dns", "http"):
        if cert_provider is None:
            raise ConfigBuildError(f"cert mode {mode} needs a certificate provider")
        if mode == "dns":
            return cert_provider.dns_cert(
                cert_config.cert_domain, cert_config.email, cert_config.provider, cert_config.dns_env
            )
        return cert_provider.http_cert(cert_config.cert_domain, cert_config.email)
    raise ConfigBuildError(f"Unsupported certmode: {mode}")


def _proxy_settings(config: Config, node_info: NodeInfo) -> tuple[str, dict[str, Any]]:
    node_type = node_info.node_type
    if node_type == "V2ray":
        if node_info.enable_vless:
            settings: dict[str, Any] = {"decryption": "none"}
            if config.enable_fallback:
                settings["fallbacks"] = build_fallbacks(config.fallback_configs)
            return "vless", settings
        return "vmess", {}
    if node_type == "Trojan":
        settings = {}
        if config.enable_fallback:
            settings["fallbacks"] = build_fallbacks(config.fallback_configs)
        return "trojan", settings
    if node_type in ("Shadowsocks", "Shadowsocks-Plugin"):
        return "shadowsocks", {
            "clients": [{"method": "aes-128-gcm", "password": str(uuid.uuid4())}],
            "network": ["tcp", "udp"],
            "ivCheck": not config.disable_iv_check,
        }
    if node_type == "dokodemo-door":
        return "dokodemo-door", {"address": "v1.mux.cool", "network": ["tcp", "udp"]}
    raise ConfigBuildError(
        f"Unsupported node type: {node_type}, Only support: V2ray, Trojan, "
        "Shadowsocks, and Shadowsocks-Plugin"
    )


def build_inbound(
    config: Config,
    node_info: NodeInfo,
    tag: str,
    cert_provider: CertProvider | None = None,
) -> dict[str, Any]:
    """Return the inbound handler config for a node."""
    inbound: dict[str, Any] = {"tag": tag, "port": node_info.port}
    if node_info.node_type == "Shadowsocks-Plugin":
        # The plain Shadowsocks side only listens locally.
        inbound["listen"] = "127.0.0.1"
    elif config.listen_ip:
        inbound["listen"] = _parse_address(config.listen_ip)

    inbound["sniffing"] = {
        "enabled": not config.disable_sniffing,
        "destOverride": ["http", "tls"],
    }

    protocol, settings = _proxy_settings(config, node_info)

    network = network_type(node_info.transport_protocol)
    stream: dict[str, Any] = {"network": node_info.transport_protocol}
    if network == "tcp":
        tcp: dict[str, Any] = {"acceptProxyProtocol": config.enable_proxy_protocol}
        if node_info.header is not None:
            tcp["header"] = node_info.header
        stream["tcpSettings"] = tcp
    elif network == "websocket":
        stream["wsSettings"] = {
            "acceptProxyProtocol": config.enable_proxy_protocol,
            "path": node_info.path,
            "headers": {"Host": node_info.host},
        }
    elif network == "http":
        stream["httpSettings"] = {"host": [node_info.host], "path": node_info.path}
    elif network == "grpc":
        stream["grpcSettings"] = {"serviceName": node_info.service_name}

    if node_info.enable_tls:
        cert_config = config.cert_config
        if cert_config is None:
            raise ConfigBuildError("CertConfig is required when TLS is enabled")
        if cert_config.cert_mode != "none":
            stream["security"] = node_info.tls_type
            cert_file, key_file = get_cert_file(cert_config, cert_provider)
            tls = {
                "rejectUnknownSni": cert_config.reject_unknown_sni,
                "certificates": [
                    {"certificateFile": cert_file, "keyFile": key_file, "ocspStapling": 3600}
                ],
            }
            if node_info.tls_type == "tls":
                stream["tlsSettings"] = tls
            elif node_info.tls_type == "xtls":
                stream["xtlsSettings"] = tls

    if network not in ("tcp", "ws") and config.enable_proxy_protocol:
        stream["sockopt"] = {"acceptProxyProtocol": True}

    inbound["protocol"] = protocol
    inbound["settings"] = settings
    inbound["streamSettings"] = stream
    return inbound