"""Controller configuration and its decoding from plain mappings."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any, Callable

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}
_OCTAL = re.compile(r"[+-]?0[0-7]+")


def _to_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    raise TypeError(f"expected a string, got {type(value).__name__}")


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        if value == "":
            return 0
        try:
            if _OCTAL.fullmatch(value):
                return int(value, 8)
            return int(value, 0)
        except ValueError:
            raise ValueError(f"cannot parse {value!r} as an integer") from None
    raise TypeError(f"expected an integer, got {type(value).__name__}")


def _to_uint(value: Any) -> int:
    number = _to_int(value)
    if number < 0:
        raise ValueError(f"expected a non-negative integer, got {number}")
    return number


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        if value == "" or value in _FALSE:
            return False
        if value in _TRUE:
            return True
        raise ValueError(f"cannot parse {value!r} as a boolean")
    raise TypeError(f"expected a boolean, got {type(value).__name__}")


def _to_str_map(value: Any) -> dict[str, str]:
    if not isinstance(value, Mapping):
        raise TypeError(f"expected a mapping, got {type(value).__name__}")
    return {str(key): _to_str(item) for key, item in value.items()}


def _option(key: str, convert: Callable[[Any], Any], **kwargs: Any) -> Any:
    return field(metadata={"key": key, "convert": convert}, **kwargs)


def _decode(cls: type, data: Any) -> Any:
    if not isinstance(data, Mapping):
        raise TypeError(f"expected a mapping for {cls.__name__}, got {type(data).__name__}")
    lowered = {str(key).lower(): value for key, value in data.items()}
    kwargs = {}
    for spec in fields(cls):
        key = spec.metadata["key"]
        raw = lowered.get(key.lower())
        if raw is None:
            continue
        try:
            kwargs[spec.name] = spec.metadata["convert"](raw)
        except (TypeError, ValueError) as exc:
            raise type(exc)(f"{key}: {exc}") from exc
    return cls(**kwargs)


def _decode_fallbacks(value: Any) -> list["FallBackConfig"]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        raise TypeError(f"expected a list, got {type(value).__name__}")
    return [_decode(FallBackConfig, item) for item in value]


@dataclass
class FallBackConfig:
    """Where to send connections that fail the proxy handshake."""

    sni: str = _option("SNI", _to_str, default="")
    alpn: str = _option("Alpn", _to_str, default="")
    path: str = _option("Path", _to_str, default="")
    dest: str = _option("Dest", _to_str, default="")
    proxy_protocol_ver: int = _option("ProxyProtocolVer", _to_uint, default=0)


@dataclass
class CertConfig:
    """How the TLS certificate is obtained: none, file, http or dns."""

    cert_mode: str = _option("CertMode", _to_str, default="")
    reject_unknown_sni: bool = _option("RejectUnknownSni", _to_bool, default=False)
    cert_domain: str = _option("CertDomain", _to_str, default="")
    cert_file: str = _option("CertFile", _to_str, default="")
    key_file: str = _option("KeyFile", _to_str, default="")
    provider: str = _option("Provider", _to_str, default="")
    email: str = _option("Email", _to_str, default="")
    dns_env: dict[str, str] = _option("DNSEnv", _to_str_map, default_factory=dict)


@dataclass
class Config:
    """Settings of one node controller."""

    listen_ip: str = _option("ListenIP", _to_str, default="")
    send_ip: str = _option("SendIP", _to_str, default="")
    update_periodic: int = _option("UpdatePeriodic", _to_int, default=0)
    cert_config: CertConfig | None = _option(
        "CertConfig", lambda value: _decode(CertConfig, value), default=None
    )
    enable_dns: bool = _option("EnableDNS", _to_bool, default=False)
    dns_type: str = _option("DNSType", _to_str, default="")
    iplc_check_duration: int = _option("IPLCCheckDuration", _to_int, default=0)  # minutes
    iplc_speed_limit: int = _option("IPLCSpeedLimit", _to_int, default=0)  # Mbps
    iplc_silent_speed_limit: int = _option("IPLCSilentSpeedLimit", _to_int, default=0)  # Mbps
    iplc_silent_duration: int = _option("IPLCSilentDuration", _to_int, default=0)  # minutes
    disable_upload_traffic: bool = _option("DisableUploadTraffic", _to_bool, default=False)
    disable_get_rule: bool = _option("DisableGetRule", _to_bool, default=False)
    enable_proxy_protocol: bool = _option("EnableProxyProtocol", _to_bool, default=False)
    enable_fallback: bool = _option("EnableFallback", _to_bool, default=False)
    disable_iv_check: bool = _option("DisableIVCheck", _to_bool, default=False)
    disable_sniffing: bool = _option("DisableSniffing", _to_bool, default=False)
    fallback_configs: list[FallBackConfig] | None = _option(
        "FallBackConfigs", _decode_fallbacks, default=None
    )


def config_from_mapping(data: Mapping[str, Any]) -> Config:
    """Build a Config from a mapping keyed by the configuration file's names.

    Keys match case-insensitively, unknown keys are ignored, and scalar values
    are coerced loosely (for example "true" to True, "30" to 30).
    """
    return _decode(Config, data)