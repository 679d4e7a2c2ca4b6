"""Panel records, runtime interfaces and handler/traffic helpers."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


class HandlerError(Exception):
    """A proxy handler could not be found, added, removed or managed."""


@dataclass(frozen=True)
class NodeInfo:
    """What the panel says about this node."""

    node_type: str = ""
    node_id: int = 0
    port: int = 0
    speed_limit: int = 0
    alter_id: int = 0
    transport_protocol: str = ""
    fake_type: str = ""
    host: str = ""
    path: str = ""
    enable_tls: bool = False
    tls_type: str = ""
    enable_vless: bool = False
    cypher_method: str = ""
    service_name: str = ""
    header: Any = None


@dataclass(frozen=True)
class UserInfo:
    """One user of the node; hashable so it can key tracking tables."""

    uid: int = 0
    email: str = ""
    uuid: str = ""
    passwd: str = ""
    port: int = 0
    alter_id: int = 0
    method: str = ""
    speed_limit: int = 0
    device_limit: int = 0


@dataclass(frozen=True)
class UserTraffic:
    uid: int
    email: str
    upload: int
    download: int


@dataclass(frozen=True)
class NodeStatus:
    cpu: float
    mem: float
    disk: float
    uptime: int


@dataclass(frozen=True)
class OnlineUser:
    uid: int
    ip: str


@dataclass(frozen=True)
class DetectRule:
    id: int
    pattern: str


@dataclass(frozen=True)
class DetectResult:
    uid: int
    rule_id: int


@dataclass(frozen=True)
class ClientInfo:
    api_host: str = ""
    node_id: int = 0
    key: str = ""
    node_type: str = ""


class PanelAPI(Protocol):
    """The management panel the controller talks to."""

    def describe(self) -> ClientInfo:
        """Describe the client connection."""

    def get_node_info(self) -> NodeInfo:
        """Fetch the node description."""

    def get_user_list(self) -> list[UserInfo]:
        """Fetch the users allowed on the node."""

    def report_node_status(self, status: NodeStatus) -> None:
        """Report CPU, memory, disk and uptime."""

    def report_node_online_users(self, users: Sequence[OnlineUser]) -> None:
        """Report users currently online."""

    def report_user_traffic(self, traffic: Sequence[UserTraffic]) -> None:
        """Report traffic used since the last report."""

    def get_node_rule(self) -> list[DetectRule]:
        """Fetch audit rules."""

    def report_illegal(self, results: Sequence[DetectResult]) -> None:
        """Report users that broke an audit rule."""


class Counter:
    """A thread-safe integer counter."""

    def __init__(self, value: int = 0) -> None:
        self._value = value
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def set(self, value: int) -> int:
        """Store a new value and return the previous one."""
        with self._lock:
            previous, self._value = self._value, value
            return previous

    def add(self, delta: int) -> int:
        """Add to the counter and return the new value."""
        with self._lock:
            self._value += delta
            return self._value


class StatsManager:
    """Named traffic counters."""

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}
        self._lock = threading.Lock()

    def register_counter(self, name: str) -> Counter:
        with self._lock:
            if name in self._counters:
                raise ValueError(f"counter {name} already registered")
            counter = self._counters[name] = Counter()
            return counter

    def get_counter(self, name: str) -> Counter | None:
        with self._lock:
            return self._counters.get(name)

    def unregister_counter(self, name: str) -> None:
        with self._lock:
            self._counters.pop(name, None)


@runtime_checkable
class UserManager(Protocol):
    """A handler whose users can be changed while it runs."""

    def add_user(self, user: Any) -> None:
        """Add a user to the handler."""

    def remove_user(self, email: str) -> None:
        """Remove the user with this e-mail tag."""


class _HandlerRegistry:
    _kind = "handler"

    def __init__(self) -> None:
        self._handlers: dict[str, Any] = {}
        self._lock = threading.Lock()

    def add_handler(self, tag: str, handler: Any) -> None:
        with self._lock:
            if tag in self._handlers:
                raise HandlerError(f"existing {self._kind} tag found: {tag}")
            self._handlers[tag] = handler

    def get_handler(self, tag: str) -> Any:
        with self._lock:
            try:
                return self._handlers[tag]
            except KeyError:
                raise HandlerError(f"{self._kind} not found: {tag}") from None

    def remove_handler(self, tag: str) -> None:
        with self._lock:
            try:
                handler = self._handlers.pop(tag)
            except KeyError:
                raise HandlerError(f"{self._kind} not found: {tag}") from None
        closer = getattr(handler, "close", None)
        if callable(closer):
            closer()

    @property
    def tags(self) -> list[str]:
        with self._lock:
            return list(self._handlers)

    def __contains__(self, tag: object) -> bool:
        with self._lock:
            return tag in self._handlers

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)


class InboundManager(_HandlerRegistry):
    """Inbound handlers by tag."""

    _kind = "inbound"


class OutboundManager(_HandlerRegistry):
    """Outbound handlers by tag."""

    _kind = "outbound"


class Limiter(Protocol):
    """Per-inbound speed and device limits."""

    def add_inbound_limiter(self, tag: str, node_speed_limit: int, users: Sequence[UserInfo]) -> None:
        """Start limiting an inbound."""

    def update_inbound_limiter(self, tag: str, users: Sequence[UserInfo]) -> None:
        """Update limits for some users of an inbound."""

    def delete_inbound_limiter(self, tag: str) -> None:
        """Stop limiting an inbound."""

    def get_online_device(self, tag: str) -> list[OnlineUser]:
        """Return users seen online on an inbound."""


class RuleManager(Protocol):
    """Audit rules and what they caught."""

    def update_rule(self, tag: str, rules: Sequence[DetectRule]) -> None:
        """Replace the rules of an inbound."""

    def get_detect_result(self, tag: str) -> list[DetectResult]:
        """Return and clear the violations found on an inbound."""


class CertProvider(Protocol):
    """Obtains and renews TLS certificates."""

    def dns_cert(self, domain: str, email: str, provider: str, dns_env: Mapping[str, str]) -> tuple[str, str]:
        """Obtain a certificate by DNS challenge; return (cert path, key path)."""

    def http_cert(self, domain: str, email: str) -> tuple[str, str]:
        """Obtain a certificate by HTTP challenge; return (cert path, key path)."""

    def renew_cert(
        self, domain: str, email: str, mode: str, provider: str, dns_env: Mapping[str, str]
    ) -> tuple[str, str]:
        """Renew a certificate; return (cert path, key path)."""


@dataclass
class Server:
    """The running proxy core: its handler factory and feature managers."""

    handler_factory: Callable[[Mapping[str, Any]], Any]
    limiter: Limiter
    rule_manager: RuleManager
    inbounds: InboundManager = field(default_factory=InboundManager)
    outbounds: OutboundManager = field(default_factory=OutboundManager)
    stats: StatsManager = field(default_factory=StatsManager)

    def create_handler(self, config: Mapping[str, Any]) -> Any:
        """Instantiate a handler from a built inbound or outbound config."""
        return self.handler_factory(config)


def traffic_counter_names(email: str) -> tuple[str, str]:
    """Return the uplink and downlink counter names for a user tag."""
    return (
        f"user>>>{email}>>>traffic>>>uplink",
        f"user>>>{email}>>>traffic>>>downlink",
    )


def get_traffic(
    stats: StatsManager, email: str
) -> tuple[int, int, Counter | None, Counter | None]:
    """Return (up, down, up counter, down counter) for a user tag.

    A counter that is missing or reads zero is returned as None.
    """
    up_name, down_name = traffic_counter_names(email)
    up, down = 0, 0
    up_counter = stats.get_counter(up_name)
    down_counter = stats.get_counter(down_name)
    if up_counter is not None and up_counter.value != 0:
        up = up_counter.value
    else:
        up_counter = None
    if down_counter is not None and down_counter.value != 0:
        down = down_counter.value
    else:
        down_counter = None
    return up, down, up_counter, down_counter


def reset_traffic(counters: Iterable[Counter]) -> None:
    """Set every counter back to zero."""
    for counter in counters:
        counter.set(0)


def _user_manager(inbound_manager: InboundManager, tag: str) -> UserManager:
    try:
        handler = inbound_manager.get_handler(tag)
    except HandlerError as exc:
        raise HandlerError(f"No such inbound tag: {exc}") from exc
    if not isinstance(handler, UserManager):
        raise HandlerError(f"handler {tag} does not support user management")
    return handler


def add_users(inbound_manager: InboundManager, users: Iterable[Any], tag: str) -> None:
    """Add users to the inbound with this tag."""
    manager = _user_manager(inbound_manager, tag)
    for user in users:
        manager.add_user(user)


def remove_users(inbound_manager: InboundManager, emails: Iterable[str], tag: str) -> None:
    """Remove users, by e-mail tag, from the inbound with this tag."""
    manager = _user_manager(inbound_manager, tag)
    for email in emails:
        manager.remove_user(email)