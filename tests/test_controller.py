import threading
from unittest.mock import patch

import pytest

from nodectl.config import CertConfig, Config
from nodectl.controller import Controller, LimitInfo, compare_user_list
from nodectl.inboundbuilder import ConfigBuildError
from nodectl.panel import (
    ClientInfo,
    DetectResult,
    DetectRule,
    NodeInfo,
    NodeStatus,
    OnlineUser,
    Server,
    UserInfo,
    traffic_counter_names,
)
from nodectl.userbuilder import build_user_tag


class FakePanel:
    def __init__(self, node, users, rules=()):
        self.node = node
        self.users = list(users)
        self.rules = list(rules)
        self.statuses = []
        self.traffic = []
        self.online = []
        self.illegal = []
        self.fail_traffic = False
        self.status_event = threading.Event()

    def describe(self):
        return ClientInfo(api_host="http://127.0.0.1:667", node_id=41, key="placeholder", node_type="V2ray")

    def get_node_info(self):
        return self.node

    def get_user_list(self):
        return list(self.users)

    def report_node_status(self, status):
        self.statuses.append(status)
        self.status_event.set()

    def report_node_online_users(self, users):
        self.online.append(list(users))

    def report_user_traffic(self, traffic):
        if self.fail_traffic:
            raise ConnectionError("panel unreachable")
        self.traffic.append(list(traffic))

    def get_node_rule(self):
        return list(self.rules)

    def report_illegal(self, results):
        self.illegal.append(list(results))


class FakeLimiter:
    def __init__(self):
        self.added = {}
        self.updates = []
        self.deleted = []
        self.online = {}

    def add_inbound_limiter(self, tag, node_speed_limit, users):
        self.added[tag] = (node_speed_limit, list(users))

    def update_inbound_limiter(self, tag, users):
        self.updates.append((tag, list(users)))

    def delete_inbound_limiter(self, tag):
        self.deleted.append(tag)

    def get_online_device(self, tag):
        return self.online.get(tag, [])


class FakeRuleManager:
    def __init__(self):
        self.rules = {}
        self.results = {}

    def update_rule(self, tag, rules):
        self.rules[tag] = list(rules)

    def get_detect_result(self, tag):
        return self.results.pop(tag, [])


class FakeHandler:
    def __init__(self, config):
        self.config = config
        self.users = {}

    def add_user(self, user):
        self.users[user.email] = user

    def remove_user(self, email):
        del self.users[email]


ALICE = UserInfo(uid=1, email="alice@example.com", uuid="uuid-1", passwd="password", speed_limit=100)
BOB = UserInfo(uid=2, email="bob@example.com", uuid="uuid-2", passwd="password", speed_limit=200)
V2RAY = NodeInfo(node_type="V2ray", node_id=41, port=1145, alter_id=2, transport_protocol="tcp")


def make(node=V2RAY, users=(ALICE,), rules=(), system_info=None, **config_kwargs):
    config_kwargs.setdefault("update_periodic", 0)
    config = Config(**config_kwargs)
    server = Server(handler_factory=FakeHandler, limiter=FakeLimiter(), rule_manager=FakeRuleManager())
    panel = FakePanel(node, users, rules)
    controller = Controller(server, panel, config, "SSpanel", None, system_info)
    return controller, server, panel


def set_traffic(server, tag, user, up, down):
    up_name, down_name = traffic_counter_names(build_user_tag(tag, user))
    for name, value in ((up_name, up), (down_name, down)):
        counter = server.stats.get_counter(name) or server.stats.register_counter(name)
        counter.set(value)


def test_compare_user_list_finds_deleted_and_added():
    deleted, added = compare_user_list([ALICE, BOB], [BOB, ALICE.__class__(uid=3, email="carol@example.com")])
    assert deleted == [ALICE]
    assert added == [UserInfo(uid=3, email="carol@example.com")]


def test_compare_user_list_identical_lists():
    assert compare_user_list([ALICE, BOB], [BOB, ALICE]) == ([], [])


def test_compare_user_list_changed_field_counts_as_both():
    changed = UserInfo(uid=1, email="alice@example.com", uuid="uuid-1", passwd="password", speed_limit=5)
    assert compare_user_list([ALICE], [changed]) == ([ALICE], [changed])


def test_controller_start_and_close_like_source():
    cert = CertConfig(cert_mode="http", cert_domain="test.ss.example.com", provider="alidns", email="admin@example.com")
    controller, server, _ = make(update_periodic=5, cert_config=cert)
    controller.start()
    controller.close()
    assert controller.tag == "V2ray__1145"
    assert server.inbounds.tags == ["V2ray__1145"]


def test_start_registers_handlers_users_limiter_and_rules():
    rules = [DetectRule(id=1, pattern="bad")]
    controller, server, panel = make(users=[ALICE, BOB], rules=rules, listen_ip="0.0.0.0")
    controller.start()
    tag = "V2ray_0.0.0.0_1145"
    assert controller.tag == tag
    assert controller.client_info.node_id == 41
    assert tag in server.inbounds and tag in server.outbounds
    handler = server.inbounds.get_handler(tag)
    assert set(handler.users) == {f"{tag}|alice@example.com|1", f"{tag}|bob@example.com|2"}
    assert handler.users[f"{tag}|alice@example.com|1"].account["alterId"] == 2
    assert server.limiter.added[tag] == (0, [ALICE, BOB])
    assert server.rule_manager.rules[tag] == rules
    assert controller.user_list == [ALICE, BOB]


def test_start_skips_rules_when_disabled():
    controller, server, _ = make(rules=[DetectRule(id=1, pattern="bad")], disable_get_rule=True)
    controller.start()
    assert server.rule_manager.rules == {}


def test_start_unsupported_node_type_raises():
    controller, _, _ = make(node=NodeInfo(node_type="Unknown", port=1, transport_protocol="tcp"))
    with pytest.raises(ConfigBuildError):
        controller.start()


def test_v2board_uses_first_user_alter_id():
    users = [UserInfo(uid=1, email="alice@example.com", uuid="u", alter_id=7)]
    config = Config()
    server = Server(handler_factory=FakeHandler, limiter=FakeLimiter(), rule_manager=FakeRuleManager())
    controller = Controller(server, FakePanel(V2RAY, users), config, "V2board", None, None)
    controller.start()
    handler = server.inbounds.get_handler(controller.tag)
    assert handler.users["V2ray__1145|alice@example.com|1"].account["alterId"] == 7


def test_ss_plugin_registers_two_inbounds():
    node = NodeInfo(node_type="Shadowsocks-Plugin", port=2000, transport_protocol="ws")
    users = [UserInfo(uid=1, email="alice@example.com", passwd="password", method="aes-256-gcm"),
             UserInfo(uid=2, email="bob@example.com", passwd="password", method="rc4-md5")]
    controller, server, _ = make(node=node, users=users)
    controller.start()
    tag = "Shadowsocks-Plugin__2000"
    assert sorted(server.inbounds.tags) == sorted([tag, f"dokodemo-door_{tag}+1"])
    front = server.inbounds.get_handler(f"dokodemo-door_{tag}+1")
    assert front.config["port"] == 2001
    assert front.config["protocol"] == "dokodemo-door"
    assert list(server.inbounds.get_handler(tag).users) == [f"{tag}|alice@example.com|1"]


def test_node_info_monitor_applies_user_changes():
    controller, server, panel = make(users=[ALICE, BOB])
    controller.start()
    carol = UserInfo(uid=3, email="carol@example.com", uuid="uuid-3")
    panel.users = [BOB, carol]
    controller.node_info_monitor()
    handler = server.inbounds.get_handler(controller.tag)
    assert set(handler.users) == {"V2ray__1145|bob@example.com|2", "V2ray__1145|carol@example.com|3"}
    assert server.limiter.updates == [("V2ray__1145", [carol])]
    assert controller.user_list == [BOB, carol]


def test_node_info_monitor_rebuilds_on_node_change():
    controller, server, panel = make(users=[ALICE])
    controller.start()
    panel.node = NodeInfo(node_type="Trojan", node_id=41, port=443, transport_protocol="tcp")
    controller.node_info_monitor()
    assert controller.tag == "Trojan__443"
    assert server.inbounds.tags == ["Trojan__443"]
    assert server.outbounds.tags == ["Trojan__443"]
    assert server.limiter.deleted == ["V2ray__1145"]
    assert "Trojan__443" in server.limiter.added
    assert list(server.inbounds.get_handler("Trojan__443").users) == ["Trojan__443|alice@example.com|1"]


def test_user_info_monitor_reports_and_resets_traffic():
    controller, server, panel = make(users=[ALICE, BOB])
    controller.start()
    set_traffic(server, controller.tag, ALICE, 10, 20)
    controller.user_info_monitor()
    assert panel.traffic == [[UserTraffic_for(ALICE, 10, 20)]]
    up_name, down_name = traffic_counter_names(build_user_tag(controller.tag, ALICE))
    assert server.stats.get_counter(up_name).value == 0
    assert server.stats.get_counter(down_name).value == 0


def UserTraffic_for(user, up, down):
    from nodectl.panel import UserTraffic

    return UserTraffic(uid=user.uid, email=user.email, upload=up, download=down)


def test_failed_traffic_report_keeps_counters():
    controller, server, panel = make()
    controller.start()
    panel.fail_traffic = True
    set_traffic(server, controller.tag, ALICE, 5, 6)
    controller.user_info_monitor()
    up_name, _ = traffic_counter_names(build_user_tag(controller.tag, ALICE))
    assert server.stats.get_counter(up_name).value == 5


def test_disabled_upload_resets_without_reporting():
    controller, server, panel = make(disable_upload_traffic=True)
    controller.start()
    set_traffic(server, controller.tag, ALICE, 5, 6)
    controller.user_info_monitor()
    up_name, _ = traffic_counter_names(build_user_tag(controller.tag, ALICE))
    assert panel.traffic == []
    assert server.stats.get_counter(up_name).value == 0


def test_status_online_and_illegal_reports():
    controller, server, panel = make(system_info=lambda: (1.5, 2.5, 3.5, 100))
    controller.start()
    server.limiter.online[controller.tag] = [OnlineUser(uid=1, ip="192.0.2.1")]
    server.rule_manager.results[controller.tag] = [DetectResult(uid=1, rule_id=9)]
    controller.user_info_monitor()
    assert panel.statuses == [NodeStatus(cpu=1.5, mem=2.5, disk=3.5, uptime=100)]
    assert panel.online == [[OnlineUser(uid=1, ip="192.0.2.1")]]
    assert panel.illegal == [[DetectResult(uid=1, rule_id=9)]]


def test_iplc_silences_and_releases_user():
    controller, server, panel = make(
        update_periodic=60, iplc_speed_limit=1, iplc_check_duration=1,
        iplc_silent_speed_limit=2, iplc_silent_duration=10,
    )
    controller.start()
    controller.close()
    set_traffic(server, controller.tag, ALICE, 1, 8_000_000)
    with patch("time.time", return_value=1000):
        controller.user_info_monitor()
    assert controller.limited_users == {ALICE: LimitInfo(end=1600, origin_speed_limit=100)}
    assert server.limiter.updates[-1][1][0].speed_limit == 262144

    with patch("time.time", return_value=2000):
        controller.user_info_monitor()
    assert controller.limited_users == {}
    assert server.limiter.updates[-1] == (controller.tag, [ALICE])


def test_iplc_warns_before_silencing():
    controller, server, _ = make(
        update_periodic=60, iplc_speed_limit=1, iplc_check_duration=2,
        iplc_silent_speed_limit=2, iplc_silent_duration=10,
    )
    controller.start()
    controller.close()
    set_traffic(server, controller.tag, ALICE, 1, 8_000_000)
    controller.user_info_monitor()
    assert controller.warned_users == {ALICE: 1}
    assert controller.limited_users == {}
    set_traffic(server, controller.tag, ALICE, 1, 8_000_000)
    controller.user_info_monitor()
    assert ALICE in controller.limited_users


def test_periodic_monitor_runs_in_background():
    controller, _, panel = make(system_info=lambda: (0.0, 0.0, 0.0, 1), update_periodic=0.05)
    with controller:
        assert panel.status_event.wait(2.0)
    count = len(panel.statuses)
    assert count >= 1
    assert panel.statuses[0].uptime == 1


def test_build_node_tag_requires_node_info():
    controller, _, _ = make()
    with pytest.raises(RuntimeError):
        controller.build_node_tag()