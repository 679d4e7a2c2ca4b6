"""The node controller: keeps the proxy core in step with the panel."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace

from nodectl.config import Config
from nodectl.inboundbuilder import ConfigBuildError, build_inbound
from nodectl.outboundbuilder import build_outbound
from nodectl.panel import (
    CertProvider,
    ClientInfo,
    Counter,
    NodeInfo,
    NodeStatus,
    PanelAPI,
    Server,
    UserInfo,
    UserTraffic,
    add_users,
    get_traffic,
    remove_users,
    reset_traffic,
)
from nodectl.service import Service
from nodectl.userbuilder import (
    ProxyUser,
    build_ss_plugin_users,
    build_ss_users,
    build_trojan_users,
    build_user_tag,
    build_vless_users,
    build_vmess_users,
)

logger = logging.getLogger(__name__)

SystemInfo = Callable[[], "tuple[float, float, float, int]"]

_SS_PLUGIN = "Shadowsocks-Plugin"


@dataclass(frozen=True)
class LimitInfo:
    """When a throttled user is released, and the limit to restore then."""

    end: int
    origin_speed_limit: int


def compare_user_list(
    old: Iterable[UserInfo], new: Iterable[UserInfo]
) -> tuple[list[UserInfo], list[UserInfo]]:
    """Return (deleted, added): users only in ``old`` and users only in ``new``."""
    old_unique = list(dict.fromkeys(old))
    new_unique = list(dict.fromkeys(new))
    old_set, new_set = set(old_unique), set(new_unique)
    deleted = [user for user in old_unique if user not in new_set]
    added = [user for user in new_unique if user not in old_set]
    return deleted, added


class _Periodic:
    """Run a task every ``interval`` seconds on a background thread."""

    def __init__(self, interval: float, task: Callable[[], None], name: str) -> None:
        self._interval = interval
        self._task = task
        self._name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._task()
            except Exception:
                logger.exception("%s failed", self._name)

    def close(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None


class Controller(Service):
    """Fetches node and users from the panel, and reports traffic and status back."""

    def __init__(
        self,
        server: Server,
        api_client: PanelAPI,
        config: Config,
        panel_type: str,
        cert_provider: CertProvider | None = None,
        system_info: SystemInfo | None = None,
    ) -> None:
        self._server = server
        self._api = api_client
        self._config = config
        self._panel_type = panel_type
        self._cert_provider = cert_provider
        self._system_info = system_info
        self._lock = threading.RLock()
        self._periodics: list[_Periodic] = []
        self.client_info: ClientInfo | None = None
        self.node_info: NodeInfo | None = None
        self.tag = ""
        self.user_list: list[UserInfo] = []
        self.limited_users: dict[UserInfo, LimitInfo] = {}
        self.warned_users: dict[UserInfo, int] = {}

    # Lifecycle

    def start(self) -> None:
        """Build the node's handlers and users, then start the monitors."""
        with self._lock:
            self.client_info = self._api.describe()
            node_info = self._api.get_node_info()
            self.node_info = node_info
            self.tag = self.build_node_tag()
            self._add_new_tag(node_info)

            users = list(self._api.get_user_list())
            self._add_new_users(users, node_info)
            self.user_list = users

            try:
                self._server.limiter.add_inbound_limiter(self.tag, node_info.speed_limit, users)
            except Exception as exc:
                logger.warning("%s", exc)
            self._check_rules()

            self.limited_users = {}
            self.warned_users = {}

        interval = self._config.update_periodic
        if interval > 0:
            self._periodics = [
                _Periodic(interval, self.node_info_monitor, "node-info-monitor"),
                _Periodic(interval, self.user_info_monitor, "user-report"),
            ]
            logger.info("[%s: %d] Start monitor node status", node_info.node_type, node_info.node_id)
            logger.info("[%s: %d] Start report node status", node_info.node_type, node_info.node_id)
            for periodic in self._periodics:
                periodic.start()

    def close(self) -> None:
        """Stop the monitors."""
        periodics, self._periodics = self._periodics, []
        for periodic in periodics:
            periodic.close()

    def build_node_tag(self) -> str:
        """Return the tag of this node's handlers: type, listen IP and port."""
        node = self.node_info
        if node is None:
            raise RuntimeError("node info has not been fetched")
        return f"{node.node_type}_{self._config.listen_ip}_{node.port}"

    # Monitors

    def node_info_monitor(self) -> None:
        """Apply changes of node and users, refresh rules and renew certificates."""
        with self._lock:
            self._node_info_monitor()

    def _node_info_monitor(self) -> None:
        try:
            new_node = self._api.get_node_info()
            new_users = list(self._api.get_user_list())
        except Exception as exc:
            logger.warning("%s", exc)
            return

        changed = False
        if new_node != self.node_info:
            old_tag = self.tag
            try:
                self._remove_old_tag(old_tag)
                if self.node_info is not None and self.node_info.node_type == _SS_PLUGIN:
                    self._remove_old_tag(f"dokodemo-door_{old_tag}+1")
                self.node_info = new_node
                self.tag = self.build_node_tag()
                self._add_new_tag(new_node)
                changed = True
                self._server.limiter.delete_inbound_limiter(old_tag)
            except Exception as exc:
                logger.warning("%s", exc)
                return

        self._check_rules()
        self._renew_cert()

        node = self.node_info
        if changed:
            try:
                self._add_new_users(new_users, new_node)
                self._server.limiter.add_inbound_limiter(self.tag, new_node.speed_limit, new_users)
            except Exception as exc:
                logger.warning("%s", exc)
                return
        else:
            deleted, added = compare_user_list(self.user_list, new_users)
            if deleted:
                emails = [build_user_tag(self.tag, user) for user in deleted]
                try:
                    remove_users(self._server.inbounds, emails, self.tag)
                except Exception as exc:
                    logger.warning("%s", exc)
            if added:
                try:
                    self._add_new_users(added, node)
                except Exception as exc:
                    logger.warning("%s", exc)
                try:
                    self._server.limiter.update_inbound_limiter(self.tag, added)
                except Exception as exc:
                    logger.warning("%s", exc)
            logger.info(
                "[%s: %d] %d user deleted, %d user added",
                node.node_type, node.node_id, len(deleted), len(added),
            )
        self.user_list = new_users

    def user_info_monitor(self) -> None:
        """Report status, traffic, online users and violations; apply speed limits."""
        with self._lock:
            self._user_info_monitor()

    def _user_info_monitor(self) -> None:
        self._report_status()
        limiter = self._server.limiter
        config = self._config

        if config.iplc_speed_limit > 0 and self.limited_users:
            to_release = []
            now = int(time.time())
            for user, info in list(self.limited_users.items()):
                if now > info.end:
                    to_release.append(replace(user, speed_limit=info.origin_speed_limit))
                    logger.info("%s has been set to %d at %d", user.email, info.origin_speed_limit, info.end)
                    del self.limited_users[user]
                else:
                    logger.info("%s will be set to %d at %d", user.email, info.origin_speed_limit, info.end)
            if to_release:
                try:
                    limiter.update_inbound_limiter(self.tag, to_release)
                except Exception as exc:
                    logger.warning("%s", exc)

        traffic: list[UserTraffic] = []
        counters: list[Counter] = []
        silent: list[UserInfo] = []
        threshold = config.iplc_speed_limit * 1024 * 1024 * config.update_periodic // 8
        for user in self.user_list:
            up, down, up_counter, down_counter = get_traffic(
                self._server.stats, build_user_tag(self.tag, user)
            )
            if up <= 0 and down <= 0:
                continue
            if config.iplc_speed_limit > 0:
                if down > threshold:
                    if user not in self.limited_users:
                        if config.iplc_check_duration == 1:
                            silent.append(self._silence(user))
                        else:
                            self.warned_users[user] = self.warned_users.get(user, 0) + 1
                            if self.warned_users[user] >= config.iplc_check_duration:
                                silent.append(self._silence(user))
                else:
                    self.warned_users.pop(user, None)
            traffic.append(UserTraffic(uid=user.uid, email=user.email, upload=up, download=down))
            counters.extend(c for c in (up_counter, down_counter) if c is not None)

        if silent:
            try:
                limiter.update_inbound_limiter(self.tag, silent)
            except Exception as exc:
                logger.warning("%s", exc)

        if traffic:
            try:
                if not config.disable_upload_traffic:
                    self._api.report_user_traffic(traffic)
            except Exception as exc:
                # Keep the counters so the traffic is reported next time.
                logger.warning("%s", exc)
            else:
                reset_traffic(counters)

        node = self.node_info
        try:
            online = limiter.get_online_device(self.tag)
        except Exception as exc:
            logger.warning("%s", exc)
        else:
            if online:
                try:
                    self._api.report_node_online_users(online)
                except Exception as exc:
                    logger.warning("%s", exc)
                else:
                    logger.info("[%s: %d] Report %d online users", node.node_type, node.node_id, len(online))

        try:
            results = self._server.rule_manager.get_detect_result(self.tag)
        except Exception as exc:
            logger.warning("%s", exc)
        else:
            if results:
                try:
                    self._api.report_illegal(results)
                except Exception as exc:
                    logger.warning("%s", exc)
                else:
                    logger.info(
                        "[%s: %d] Report %d illegal behaviors", node.node_type, node.node_id, len(results)
                    )

    # Helpers

    def _silence(self, user: UserInfo) -> UserInfo:
        end = int(time.time()) + self._config.iplc_silent_duration * 60
        self.limited_users[user] = LimitInfo(end=end, origin_speed_limit=user.speed_limit)
        logger.info("%s will be limited to %d until %d", user.email, user.speed_limit, end)
        return replace(user, speed_limit=self._config.iplc_silent_speed_limit * 1024 * 1024 // 8)

    def _report_status(self) -> None:
        if self._system_info is None:
            return
        try:
            cpu, mem, disk, uptime = self._system_info()
        except Exception as exc:
            logger.warning("%s", exc)
            cpu, mem, disk, uptime = 0.0, 0.0, 0.0, 0
        try:
            self._api.report_node_status(NodeStatus(cpu=cpu, mem=mem, disk=disk, uptime=uptime))
        except Exception as exc:
            logger.warning("%s", exc)

    def _check_rules(self) -> None:
        if self._config.disable_get_rule:
            return
        try:
            rules = self._api.get_node_rule()
        except Exception as exc:
            logger.warning("Get rule list failed: %s", exc)
            return
        if rules:
            try:
                self._server.rule_manager.update_rule(self.tag, rules)
            except Exception as exc:
                logger.warning("%s", exc)

    def _renew_cert(self) -> None:
        cert = self._config.cert_config
        if not self.node_info.enable_tls or cert is None or cert.cert_mode not in ("dns", "http"):
            return
        if self._cert_provider is None:
            logger.warning("cert mode %s needs a certificate provider", cert.cert_mode)
            return
        try:
            self._cert_provider.renew_cert(
                cert.cert_domain, cert.email, cert.cert_mode, cert.provider, cert.dns_env
            )
        except Exception as exc:
            logger.warning("%s", exc)

    def _add_handlers(self, node_info: NodeInfo, tag: str) -> None:
        inbound = build_inbound(self._config, node_info, tag, self._cert_provider)
        self._server.inbounds.add_handler(tag, self._server.create_handler(inbound))
        outbound = build_outbound(self._config, node_info, tag)
        self._server.outbounds.add_handler(tag, self._server.create_handler(outbound))

    def _add_new_tag(self, node_info: NodeInfo) -> None:
        if node_info.node_type != _SS_PLUGIN:
            self._add_handlers(node_info, self.tag)
            return
        # The plugin transport needs its own inbound in front of plain Shadowsocks.
        plain = replace(node_info, transport_protocol="tcp", enable_tls=False)
        self._add_handlers(plain, self.tag)
        front = replace(node_info, port=node_info.port + 1, node_type="dokodemo-door")
        self._add_handlers(front, f"dokodemo-door_{self.tag}+1")

    def _remove_old_tag(self, tag: str) -> None:
        self._server.inbounds.remove_handler(tag)
        self._server.outbounds.remove_handler(tag)

    def _add_new_users(self, users: Sequence[UserInfo], node_info: NodeInfo) -> None:
        node_type = node_info.node_type
        proxy_users: list[ProxyUser]
        if node_type == "V2ray":
            if node_info.enable_vless:
                proxy_users = build_vless_users(self.tag, users)
            else:
                if self._panel_type in ("V2board", "V2RaySocks") and users:
                    alter_id = users[0].alter_id
                else:
                    alter_id = node_info.alter_id
                proxy_users = build_vmess_users(self.tag, users, alter_id)
        elif node_type == "Trojan":
            proxy_users = build_trojan_users(self.tag, users)
        elif node_type == "Shadowsocks":
            proxy_users = build_ss_users(self.tag, users, node_info.cypher_method)
        elif node_type == _SS_PLUGIN:
            proxy_users = build_ss_plugin_users(self.tag, users)
        else:
            raise ConfigBuildError(f"unsupported node type: {node_type}")
        add_users(self._server.inbounds, proxy_users, self.tag)
        logger.info(
            "[%s: %d] Added %d new users", self.node_info.node_type, self.node_info.node_id, len(users)
        )