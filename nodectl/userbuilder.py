"""Turn panel users into proxy users for each supported protocol."""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from nodectl.panel import UserInfo

_XTLS_FLOW = "xtls-rprx-direct"


class CipherType(enum.Enum):
    """Shadowsocks ciphers understood by the proxy core."""

    UNKNOWN = "unknown"
    AES_128_GCM = "aes-128-gcm"
    AES_256_GCM = "aes-256-gcm"
    CHACHA20_POLY1305 = "chacha20-poly1305"
    XCHACHA20_POLY1305 = "xchacha20-poly1305"
    NONE = "none"


AEAD_METHODS = frozenset(
    {
        CipherType.AES_128_GCM,
        CipherType.AES_256_GCM,
        CipherType.CHACHA20_POLY1305,
        CipherType.XCHACHA20_POLY1305,
    }
)

_CIPHER_NAMES = {
    "aes-128-gcm": CipherType.AES_128_GCM,
    "aead_aes_128_gcm": CipherType.AES_128_GCM,
    "aes-256-gcm": CipherType.AES_256_GCM,
    "aead_aes_256_gcm": CipherType.AES_256_GCM,
    "chacha20-poly1305": CipherType.CHACHA20_POLY1305,
    "aead_chacha20_poly1305": CipherType.CHACHA20_POLY1305,
    "chacha20-ietf-poly1305": CipherType.CHACHA20_POLY1305,
    "none": CipherType.NONE,
    "plain": CipherType.NONE,
}


@dataclass
class ProxyUser:
    """A user as handed to an inbound handler."""

    protocol: str
    email: str
    account: Mapping[str, Any] = field(default_factory=dict)
    level: int = 0


def cipher_from_string(name: str) -> CipherType:
    """Map a panel cipher name, case-insensitively, to a CipherType."""
    return _CIPHER_NAMES.get(name.lower(), CipherType.UNKNOWN)


def build_user_tag(tag: str, user: UserInfo) -> str:
    """Return the user's stats tag: inbound tag, e-mail and uid joined by '|'."""
    return f"{tag}|{user.email}|{user.uid}"


def build_vmess_users(tag: str, users: Iterable[UserInfo], alter_id: int) -> list[ProxyUser]:
    """Build VMess users sharing the given alter id."""
    return [
        ProxyUser(
            protocol="vmess",
            email=build_user_tag(tag, user),
            account={"id": user.uuid, "alterId": alter_id, "security": "auto"},
        )
        for user in users
    ]


def build_vless_users(tag: str, users: Iterable[UserInfo]) -> list[ProxyUser]:
    """Build VLESS users with the XTLS direct flow."""
    return [
        ProxyUser(
            protocol="vless",
            email=build_user_tag(tag, user),
            account={"id": user.uuid, "flow": _XTLS_FLOW},
        )
        for user in users
    ]


def build_trojan_users(tag: str, users: Iterable[UserInfo]) -> list[ProxyUser]:
    """Build Trojan users whose password is their UUID."""
    return [
        ProxyUser(
            protocol="trojan",
            email=build_user_tag(tag, user),
            account={"password": user.uuid, "flow": _XTLS_FLOW},
        )
        for user in users
    ]


def _ss_user(tag: str, user: UserInfo, cipher: CipherType) -> ProxyUser:
    return ProxyUser(
        protocol="shadowsocks",
        email=build_user_tag(tag, user),
        account={"password": user.passwd, "cipher_type": cipher},
    )


def build_ss_users(tag: str, users: Iterable[UserInfo], method: str) -> list[ProxyUser]:
    """Build Shadowsocks users that all use the node's cipher."""
    cipher = cipher_from_string(method)
    return [_ss_user(tag, user, cipher) for user in users]


def build_ss_plugin_users(tag: str, users: Iterable[UserInfo]) -> list[ProxyUser]:
    """Build Shadowsocks users with their own cipher, keeping only AEAD ones."""
    result = []
    for user in users:
        cipher = cipher_from_string(user.method)
        if cipher in AEAD_METHODS:
            result.append(_ss_user(tag, user, cipher))
    return result