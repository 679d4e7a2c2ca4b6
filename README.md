# nodectl

`nodectl` runs one proxy node for a management panel. It fetches the node's
settings and user list from the panel and turns them into inbound and outbound
handler configurations. It adds and removes users as the panel changes them,
and applies speed policing. It reports traffic, online devices, detected rule
violations and server status back to the panel.

The package has no dependencies beyond the standard library and needs
Python 3.10 or later. Tests use pytest (`pip install nodectl[test]`).

## What you supply

`nodectl` works only through small interfaces. It opens no sockets and moves
no traffic itself. You provide:

- a panel client that follows `nodectl.panel.PanelAPI`: `describe`,
  `get_node_info`, `get_user_list`, `get_node_rule`, `report_node_status`,
  `report_user_traffic`, `report_node_online_users` and `report_illegal`;
- a `nodectl.panel.Server`, built from:
  - `handler_factory`, a callable that receives a built inbound or outbound
    configuration (a plain `dict`) and returns a handler. An inbound handler
    must have `add_user(user)` and `remove_user(email)` (the `UserManager`
    protocol) to accept users. A handler that has a `close()` method is closed
    when it is removed.
  - `limiter`, an object that follows `nodectl.panel.Limiter`;
  - `rule_manager`, an object that follows `nodectl.panel.RuleManager`;
  - optionally, your own `inbounds` (`InboundManager`), `outbounds`
    (`OutboundManager`) and `stats` (`StatsManager`). Fresh ones are created
    by default.
- optionally, a certificate provider that follows `nodectl.panel.CertProvider`
  (`dns_cert`, `http_cert`, `renew_cert`). It is needed when `CertMode` is
  `dns` or `http`.
- optionally, a callable that returns `(cpu, mem, disk, uptime)` for status
  reports. Without it, no status is reported.

## What it does not do

The package has no panel client, no proxy core, no ACME certificate client
and no collector of system statistics. You supply all of these through the
interfaces above. It has no command-line program, and it does not read
configuration files: give `config_from_mapping` a mapping you have loaded
yourself.

## Modules

- `nodectl.service`: `Service`, an abstract base with `start`, `close`,
  `restart`, and use as a context manager (`start` on entry, `close` on exit).
- `nodectl.config`: `Config`, `CertConfig` and `FallBackConfig`.
  `config_from_mapping` builds a `Config` from a mapping keyed by the usual
  configuration names (`ListenIP`, `UpdatePeriodic`, `CertConfig`,
  `FallBackConfigs`, ...). Keys match case-insensitively and unknown keys are
  ignored. Values are coerced loosely, so `"true"` becomes `True` and `"30"`
  becomes `30`. A value that cannot be coerced raises `TypeError` or
  `ValueError`, and the message names the key.
- `nodectl.panel`: the records exchanged with the panel (`NodeInfo`,
  `UserInfo`, `UserTraffic`, `NodeStatus`, `OnlineUser`, `DetectRule`,
  `DetectResult`, `ClientInfo`). It also holds:
  - the interfaces above, plus the thread-safe `Counter`, `StatsManager`,
    `InboundManager` and `OutboundManager`;
  - the helpers `traffic_counter_names`, `get_traffic`, `reset_traffic`,
    `add_users` and `remove_users`.

  A handler that is missing, a duplicate handler tag, or a handler that cannot
  manage users raises `HandlerError`.
- `nodectl.userbuilder`: turns panel users into `ProxyUser` objects with
  `build_vmess_users`, `build_vless_users`, `build_trojan_users`,
  `build_ss_users` and `build_ss_plugin_users`. The plugin builder keeps only
  users whose cipher is AEAD. `cipher_from_string` maps panel cipher names
  (for example `aes-128-gcm`, `aead_aes_256_gcm`, `chacha20-ietf-poly1305`) to
  `CipherType`. `build_user_tag` gives `<tag>|<email>|<uid>`.
- `nodectl.inboundbuilder`: `build_inbound` returns the inbound configuration
  for a node: listen address, port, sniffing, protocol settings, transport
  (tcp, ws, http/h2, grpc, ...), TLS/XTLS, fallbacks and proxy protocol. It
  works with `network_type`, `get_cert_file` and `build_fallbacks`. An
  unsupported node type, an unknown transport, missing fallbacks or missing
  certificate files raise `ConfigBuildError`.
- `nodectl.outboundbuilder`: `build_outbound` returns the matching `freedom`
  outbound. Its domain strategy is `Asis`, or with `EnableDNS` it is
  `DNSType` (default `UseIP`).
- `nodectl.controller`: the `Controller` service, `LimitInfo`, and
  `compare_user_list(old, new)`, which returns `(deleted, added)`.

## Configuration

```python
from nodectl.config import config_from_mapping

config = config_from_mapping({
    "ListenIP": "0.0.0.0",
    "SendIP": "0.0.0.0",
    "UpdatePeriodic": 60,
    "EnableDNS": False,
    "DisableUploadTraffic": False,
    "DisableGetRule": False,
    "EnableFallback": False,
    "CertConfig": {
        "CertMode": "file",
        "CertDomain": "node.example.com",
        "CertFile": "/etc/node/cert.pem",
        "KeyFile": "/etc/node/key.pem",
        "Email": "admin@example.com",
    },
})
```

`CertMode` is one of `none`, `file`, `http` or `dns`.

## Running a controller

```python
from nodectl.controller import Controller

controller = Controller(server, api_client, config, "SSpanel", cert_provider, system_info)
with controller:
    ...  # runs until the block ends, then close() stops the monitors
```

`start` does the following in order:

1. Fetches the node and its users.
2. Builds and adds the inbound and outbound handlers under the node tag
   `<NodeType>_<ListenIP>_<Port>`.
3. Adds the users.
4. Registers the users with the limiter.
5. Loads the audit rules, unless `DisableGetRule` is set.

If `UpdatePeriodic` is greater than zero, it then starts two background
threads. Each one first runs `UpdatePeriodic` seconds after start and then
every `UpdatePeriodic` seconds after that:

- `node_info_monitor` follows changes to the node and its users. When the
  node changes, it rebuilds the handlers under the new tag. It refreshes the
  rules and, for `dns`/`http` cert modes with TLS enabled, renews the
  certificate.
- `user_info_monitor` reports status, traffic, online users and detected
  violations, and applies or lifts speed limits. Traffic counters are reset
  after a successful report, or when `DisableUploadTraffic` is set. They are
  kept if the report fails.

Both methods can also be called directly, for example from your own
scheduler. Failures inside them are logged through the `nodectl.controller`
logger and do not stop the controller.

For the `V2ray` node type the controller uses VLESS when the node enables it,
and VMess otherwise. For the panel types `V2board` and `V2RaySocks`, the VMess
alter id is taken from the first user. A `Shadowsocks-Plugin` node gets a
local plain Shadowsocks inbound and a `dokodemo-door` inbound on the next port
that forwards to it.

### Speed policing

Policing is on when `IPLCSpeedLimit` (Mbps) is greater than zero. At each
report, a user's download is compared with `IPLCSpeedLimit` ×
`UpdatePeriodic` seconds.

- A user who exceeds it is limited straight away if `IPLCCheckDuration` is 1.
  Otherwise the user is limited after `IPLCCheckDuration` reports over the
  limit. The count resets whenever a report is under the limit.
- A limited user is held at `IPLCSilentSpeedLimit` (Mbps) for
  `IPLCSilentDuration` minutes. After that, the original limit is restored.