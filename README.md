# multusconf

Reading and preparing multi-network CNI configuration: the top-level
network configuration, the delegate plugin configurations it carries,
and the runtime configuration handed to each delegate.

The package has three modules:

- `multusconf.types` – the configuration dataclasses (`NetConf`,
  `DelegateNetConf`, `NetworkSelectionElement`, `RuntimeConfig`,
  `PortMapEntry`, `BandwidthEntry`, `LogOptions`, `PluginConf`,
  `PluginConfList`, `K8sArgs`, `ResourceInfo`) and `ConfigError`.
- `multusconf.delegate` – loading delegate configurations and injecting
  device IDs and CNI args into their raw JSON.
- `multusconf.conf` – loading the top-level configuration, building
  runtime configurations, gateway checks and readiness-file helpers.

## Installation

```
pip install multusconf
```

## Loading a network configuration

```python
from multusconf.conf import load_net_conf

netconf = load_net_conf(b"""{
    "name": "node-cni-network",
    "type": "multus",
    "globalNamespaces": " foo,bar ,default",
    "delegates": [{"type": "weave-net"}, {"type": "foobar"}]
}""")

print(netconf.delegates[0].conf.type)       # weave-net
print(netconf.delegates[0].master_plugin)   # True
print(netconf.delegates[1].master_plugin)   # False
print(netconf.non_isolated_namespaces)      # ['foo', 'bar', 'default']
```

Unset fields take the values of `get_default_net_conf()`: binary directory
`/opt/cni/bin`, configuration directory `/etc/cni/multus/net.d`, CNI
directory `/var/lib/cni/multus`, namespace `kube-system`, non-isolated
namespaces `['default']` and system namespaces `['kube-system']`.

A `prevResult` is parsed into a `multusconf.conf.Result`. Malformed JSON,
a configuration with neither `delegates` nor `clusterNetwork`, or a
delegate without a `type` or `plugins` field raises
`multusconf.types.ConfigError` (a `ValueError`).

## Delegates

```python
from multusconf.delegate import load_delegate_net_conf
from multusconf.types import NetworkSelectionElement

element = NetworkSelectionElement.from_dict(
    {"name": "second", "namespace": "test", "cni-args": {"args1": "val1"}}
)
delegate = load_delegate_net_conf(
    b'{"name": "second-network", "type": "bridge"}', element, "", ""
)
print(delegate.name)   # test/second
print(delegate.raw)    # config bytes with "args": {"cni": {"args1": "val1"}}
```

The selection element's interface, MAC, IP, bandwidth, port-mapping,
Infiniband GUID, gateway and device ID requests are copied onto the
delegate. Supplying a device ID injects `deviceID` and `pciBusID` into the
plugin configuration, or into every plugin of a configuration list. CNI
args are merged into any existing `args.cni` object.

## Runtime configuration

`multusconf.conf.create_cni_runtime_conf(args, k8s_args, if_name, rc, delegate)`
returns a `RuntimeConf` and the path of the device-info file (empty when
there is none). The `RuntimeConf` carries the Kubernetes pod arguments,
extra `CNI_ARGS` from the environment, and capability arguments (port
mappings, bandwidth, IPs, MAC, Infiniband GUID, device ID, device-info
file). A delegate's requests are merged into the runtime configuration
unless it is the master plugin; the runtime configuration passed in is
never changed.

## Gateways and namespaces

`check_gateway_config(delegates)` raises `ConfigError` when more than one
IPv4 or more than one IPv6 default route is requested across delegates,
and otherwise sets each delegate's `is_filter_v4_gateway` and
`is_filter_v6_gateway`. `get_gateway_from_result(result)` lists the
gateways of a result's default routes. `check_system_namespaces(namespace,
system_namespaces)` tells whether a namespace is a system namespace.

## Readiness indicator

`readiness_indicator_exists_now(path)` reports whether the file exists.
`get_readiness_indicator_file(path)` polls once a second for up to 45
seconds and raises `TimeoutError` if the file does not appear.

## What it does not do

The package only reads and prepares configuration. It does not run CNI
plugins, talk to the Kubernetes API, look up pod resources or provide a
command-line program.

## Running the tests

```
pip install multusconf[test]
pytest
```