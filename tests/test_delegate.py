import ipaddress
import json

import pytest

from multusconf.delegate import (
    add_cni_args_in_conf_list,
    add_cni_args_in_config,
    add_device_id_in_conf_list,
    delegate_add_device_id,
    inject_cni_args,
    load_delegate_net_conf,
    load_delegate_net_conf_list,
)
from multusconf.types import (
    BandwidthEntry,
    ConfigError,
    DelegateNetConf,
    NetworkSelectionElement,
    PortMapEntry,
)

BAD_JSON = """{
  "name": "node-cni-network",
  "type": "multus",
  "kubeconfig": "/etc/kubernetes/node-kubeconfig.yaml",
  "delegates": [{
      "type": "weave-net"
  }],
"runtimeConfig": {
    "portMappings": [
      {"hostPort": 8080, "containerPort": 80, "protocol": "tcp"}
    ]
	}"""

MULTUS_CONF = """{
    "name": "node-cni-network",
    "type": "multus",
    "kubeconfig": "/etc/kubernetes/node-kubeconfig.yaml",
    "delegates": [{
        "name": "weave-list",
        "plugins": [ {"type" :"weave"} ]
    }]
}"""

MAC = "02:00:00:00:00:01"
GUID = "02:00:00:00:00:00:00:01"


def test_bad_json_fails_everywhere():
    with pytest.raises(ConfigError):
        load_delegate_net_conf(BAD_JSON.encode(), None, "", "")
    with pytest.raises(ConfigError):
        load_delegate_net_conf_list(BAD_JSON.encode(), DelegateNetConf())
    with pytest.raises(ConfigError):
        add_device_id_in_conf_list(BAD_JSON.encode(), "")
    with pytest.raises(ConfigError):
        delegate_add_device_id(BAD_JSON.encode(), "")


def test_assigns_device_id_in_conf():
    conf = b'{"name": "second-network", "type": "sriov"}'
    delegate = load_delegate_net_conf(conf, None, "0000:00:00.0", "")
    parsed = json.loads(delegate.raw)
    assert parsed["deviceID"] == "0000:00:00.0"
    assert delegate.device_id == "0000:00:00.0"


def test_assigns_device_id_in_conf_list():
    conf = b'{"name": "second-network", "plugins": [{"type": "sriov"}]}'
    delegate = load_delegate_net_conf(conf, None, "0000:00:00.1", "")
    parsed = json.loads(delegate.raw)
    assert parsed["plugins"][0]["deviceID"] == "0000:00:00.1"
    assert delegate.conf_list_plugin is True


def test_assigns_device_id_in_conf_list_multiple_plugins():
    conf = b'{"name": "second-network", "plugins": [{"type": "sriov"}, {"type": "other-cni"}]}'
    delegate = load_delegate_net_conf(conf, None, "0000:00:00.1", "")
    plugins = json.loads(delegate.raw)["plugins"]
    assert [p["deviceID"] for p in plugins] == ["0000:00:00.1", "0000:00:00.1"]


def test_assigns_pci_bus_id_in_conf():
    conf = b'{"name": "second-network", "type": "host-device"}'
    delegate = load_delegate_net_conf(conf, None, "0000:00:00.2", "")
    assert json.loads(delegate.raw)["pciBusID"] == "0000:00:00.2"


def test_assigns_pci_bus_id_in_conf_list():
    conf = b'{"name": "second-network", "plugins": [{"type": "host-device"}]}'
    delegate = load_delegate_net_conf(conf, None, "0000:00:00.3", "")
    assert json.loads(delegate.raw)["plugins"][0]["pciBusID"] == "0000:00:00.3"


def test_assigns_pci_bus_id_in_conf_list_multiple_plugins():
    conf = b'{"name": "second-network", "plugins": [{"type": "host-device"}, {"type": "other-cni"}]}'
    delegate = load_delegate_net_conf(conf, None, "0000:00:00.3", "")
    plugins = json.loads(delegate.raw)["plugins"]
    assert [p["pciBusID"] for p in plugins] == ["0000:00:00.3", "0000:00:00.3"]


def test_resource_name_saved_with_device_id():
    conf = b'{"name": "n", "type": "sriov"}'
    delegate = load_delegate_net_conf(conf, None, "0000:00:00.0", "example.com/sriov")
    assert delegate.resource_name == "example.com/sriov"


def test_add_cni_args_in_config():
    conf = b'{"name": "second-network", "type": "bridge"}'
    net = NetworkSelectionElement(name="test-elem", cni_args={"args1": "val1"})
    delegate = load_delegate_net_conf(conf, net, "", "")
    assert json.loads(delegate.raw)["args"]["cni"]["args1"] == "val1"


def test_add_cni_args_in_config_merge():
    conf = b"""{
        "name": "second-network",
        "type": "bridge",
        "args": {"cni": {"args0": "val0", "args1": "val1"}}
    }"""
    net = NetworkSelectionElement(name="test-elem", cni_args={"args1": "val1a"})
    delegate = load_delegate_net_conf(conf, net, "", "")
    cni = json.loads(delegate.raw)["args"]["cni"]
    assert cni == {"args0": "val0", "args1": "val1a"}


def test_add_cni_args_in_conf_list():
    conf = b'{"name": "second-network", "plugins": [{"type": "bridge"}]}'
    net = NetworkSelectionElement(name="test-elem", cni_args={"args1": "val1"})
    delegate = load_delegate_net_conf(conf, net, "", "")
    assert json.loads(delegate.raw)["plugins"][0]["args"]["cni"]["args1"] == "val1"


def test_load_delegate_for_multus_conf_with_device_id():
    conf = b"""{
        "name": "node-cni-network",
        "type": "multus",
        "delegates": [{"type": "weave-net"}]
    }"""
    delegate = load_delegate_net_conf(conf, None, "0000:00:00.0", "")
    assert delegate.conf.name == "node-cni-network"
    assert delegate.master_plugin is False
    assert json.loads(delegate.raw)["deviceID"] == "0000:00:00.0"


def test_network_selection_elements_go_into_delegate_conf():
    cni_config = b'{"name": "weave1", "cniVersion": "0.2.0", "type": "weave-net"}'
    bandwidth = BandwidthEntry(100, 200, 100, 200)
    port_map = PortMapEntry(8080, 80, "tcp", "10.0.0.1")
    selection = NetworkSelectionElement(
        name="testname",
        interface_request="testIF1",
        mac_request=MAC,
        infiniband_guid_request=GUID,
        ip_request=["10.0.0.1/24"],
        bandwidth_request=bandwidth,
        port_mappings_request=[port_map],
    )
    delegate = load_delegate_net_conf(cni_config, selection, "", "")
    assert delegate.ifname_request == "testIF1"
    assert delegate.mac_request == MAC
    assert delegate.infiniband_guid_request == GUID
    assert delegate.ip_request == ["10.0.0.1/24"]
    assert delegate.bandwidth_request == bandwidth
    assert delegate.port_mappings_request == [port_map]
    assert delegate.name == "/testname"


def test_name_is_namespace_and_element_name():
    selection = NetworkSelectionElement(name="net1", namespace="ns1")
    delegate = load_delegate_net_conf(b'{"name": "x", "type": "bridge"}', selection, "", "")
    assert delegate.name == "ns1/net1"


def test_name_from_conf_without_element():
    delegate = load_delegate_net_conf(b'{"name": "weave", "type": "weave-net"}', None, "", "")
    assert delegate.name == "weave"
    assert delegate.conf.type == "weave-net"


def test_conf_list_name_is_delivered():
    conf = b'{"name": "weave-list", "plugins": [{"type": "weave"}]}'
    delegate = load_delegate_net_conf(conf, None, "", "")
    assert delegate.name == "weave-list"
    assert delegate.conf_list.plugins[0].type == "weave"


def test_element_device_id_used_when_none_given():
    selection = NetworkSelectionElement(device_id="0000:00:00.5")
    delegate = load_delegate_net_conf(b'{"name": "x", "type": "sriov"}', selection, "", "")
    assert delegate.device_id == "0000:00:00.5"


def test_explicit_device_id_wins_over_element():
    selection = NetworkSelectionElement(device_id="0000:00:00.5")
    delegate = load_delegate_net_conf(
        b'{"name": "x", "type": "sriov"}', selection, "0000:00:00.6", ""
    )
    assert delegate.device_id == "0000:00:00.6"


def test_keeps_without_gateway_request():
    selection = NetworkSelectionElement.from_dict(json.loads('{ "name": "foobar" }'))
    delegate = load_delegate_net_conf(MULTUS_CONF, selection, "", "")
    assert delegate.gateway_request is None


def test_keeps_empty_gateway_request():
    selection = NetworkSelectionElement.from_dict(
        json.loads('{ "name": "foobar", "default-route": [] }')
    )
    delegate = load_delegate_net_conf(MULTUS_CONF, selection, "", "")
    assert delegate.gateway_request == []


def test_keeps_gateway_request():
    selection = NetworkSelectionElement.from_dict(
        json.loads('{ "name": "foobar", "default-route": [ "10.1.1.1" ] }')
    )
    delegate = load_delegate_net_conf(MULTUS_CONF, selection, "", "")
    assert delegate.gateway_request == [ipaddress.ip_address("10.1.1.1")]


def test_keeps_dual_gateway_request():
    selection = NetworkSelectionElement.from_dict(
        json.loads('{ "name": "foobar", "default-route": [ "10.1.1.1", "fc00::1" ] }')
    )
    delegate = load_delegate_net_conf(MULTUS_CONF, selection, "", "")
    assert delegate.gateway_request == [
        ipaddress.ip_address("10.1.1.1"),
        ipaddress.ip_address("fc00::1"),
    ]


def test_missing_type_and_plugins_fails():
    with pytest.raises(ConfigError, match="'type' or 'plugin'"):
        load_delegate_net_conf(b'{"_not_type": "weave-net"}', None, "", "")


def test_conf_list_first_plugin_needs_type():
    with pytest.raises(ConfigError, match="'type' field"):
        load_delegate_net_conf_list(b'{"name": "l", "plugins": [{"name": "p"}]}', DelegateNetConf())


def test_load_delegate_net_conf_list_fills_delegate():
    delegate = DelegateNetConf()
    load_delegate_net_conf_list(b'{"name": "l", "plugins": [{"type": "bridge"}]}', delegate)
    assert delegate.conf_list_plugin is True
    assert delegate.name == "l"


def test_add_device_id_in_conf_list_requires_plugins():
    with pytest.raises(ConfigError, match="unable to get plugin list"):
        add_device_id_in_conf_list(b'{"name": "x"}', "0000:00:00.0")


def test_add_device_id_in_conf_list_requires_list():
    with pytest.raises(ConfigError, match="typecast plugin list"):
        add_device_id_in_conf_list(b'{"plugins": {}}', "0000:00:00.0")


def test_add_device_id_in_conf_list_requires_object_plugins():
    with pytest.raises(ConfigError, match="plugin #1"):
        add_device_id_in_conf_list(b'{"plugins": [{}, 3]}', "0000:00:00.0")


def test_delegate_add_device_id_keeps_other_fields():
    out = json.loads(delegate_add_device_id(b'{"name": "n", "type": "t"}', "0000:00:00.9"))
    assert out == {
        "name": "n",
        "type": "t",
        "deviceID": "0000:00:00.9",
        "pciBusID": "0000:00:00.9",
    }


def test_inject_cni_args_without_args():
    config = {"type": "bridge"}
    inject_cni_args(config, {"a": 1})
    assert config == {"type": "bridge", "args": {"cni": {"a": 1}}}


def test_inject_cni_args_with_args_but_no_cni():
    config = {"args": {"other": True}}
    inject_cni_args(config, {"a": 1})
    assert config == {"args": {"other": True, "cni": {"a": 1}}}


def test_inject_cni_args_rejects_non_object_args():
    with pytest.raises(ConfigError):
        inject_cni_args({"args": "text"}, {"a": 1})


def test_add_cni_args_in_config_round_trip():
    out = json.loads(add_cni_args_in_config(b'{"type": "bridge"}', {"k": "v"}))
    assert out == {"type": "bridge", "args": {"cni": {"k": "v"}}}


def test_add_cni_args_in_conf_list_all_plugins():
    out = json.loads(
        add_cni_args_in_conf_list(b'{"plugins": [{"type": "a"}, {"type": "b"}]}', {"k": "v"})
    )
    assert [p["args"]["cni"] for p in out["plugins"]] == [{"k": "v"}, {"k": "v"}]


def test_add_cni_args_in_conf_list_requires_plugins():
    with pytest.raises(ConfigError):
        add_cni_args_in_conf_list(b'{"name": "x"}', {"k": "v"})