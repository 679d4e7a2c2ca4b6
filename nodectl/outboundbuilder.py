"""Build the freedom outbound that accompanies each inbound."""

from __future__ import annotations

import ipaddress
from typing import Any

from nodectl.config import Config
from nodectl.panel import NodeInfo


def _parse_address(text: str) -> str:
    try:
        return str(ipaddress.ip_address(text))
    except ValueError:
        return text


def build_outbound(config: Config, node_info: NodeInfo, tag: str) -> dict[str, Any]:
    """Return the outbound handler config for a node."""
    domain_strategy = "Asis"
    if config.enable_dns:
        domain_strategy = config.dns_type or "UseIP"

    settings: dict[str, Any] = {"domainStrategy": domain_strategy}
    if node_info.node_type == "dokodemo-door":
        settings["redirect"] = f"127.0.0.1:{node_info.port - 1}"

    outbound: dict[str, Any] = {"protocol": "freedom", "tag": tag, "settings": settings}
    if config.send_ip:
        outbound["sendThrough"] = _parse_address(config.send_ip)
    return outbound