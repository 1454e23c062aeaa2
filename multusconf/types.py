"""Common configuration types: the multus network configuration, delegate
configurations, runtime configuration and network selection elements."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_MISSING = object()


class ConfigError(ValueError):
    """Raised when a configuration cannot be loaded or is invalid."""


def _require_mapping(data: Any, what: str) -> dict:
    if not isinstance(data, dict):
        raise ConfigError(f"{what}: expected a JSON object, got {type(data).__name__}")
    return data


def _value(data: dict, key: str, kind: type, default: Any = None) -> Any:
    """Return ``data[key]`` checked against ``kind``; null or absent gives ``default``."""
    value = data.get(key, _MISSING)
    if value is _MISSING or value is None:
        return default
    if kind is int:
        valid = isinstance(value, int) and not isinstance(value, bool)
    else:
        valid = isinstance(value, kind)
    if not valid:
        raise ConfigError(
            f"field {key!r}: expected {kind.__name__}, got {type(value).__name__}"
        )
    return value


def _str_list(data: dict, key: str) -> list[str] | None:
    values = _value(data, key, list)
    if values is None:
        return None
    if not all(isinstance(item, str) for item in values):
        raise ConfigError(f"field {key!r}: expected a list of strings")
    return list(values)


def _ip_list(data: dict, key: str) -> list[IPAddress] | None:
    values = _value(data, key, list)
    if values is None:
        return None
    addresses = []
    for item in values:
        if not isinstance(item, str):
            raise ConfigError(f"field {key!r}: expected a list of IP address strings")
        try:
            addresses.append(ipaddress.ip_address(item))
        except ValueError as exc:
            raise ConfigError(f"field {key!r}: invalid IP address {item!r}") from exc
    return addresses


@dataclass
class LogOptions:
    """Options for rotating the log file."""

    max_age: int | None = None
    max_size: int | None = None
    max_backups: int | None = None
    compress: bool | None = None

    @classmethod
    def from_dict(cls, data: Any) -> LogOptions:
        data = _require_mapping(data, "logOptions")
        return cls(
            max_age=_value(data, "maxAge", int),
            max_size=_value(data, "maxSize", int),
            max_backups=_value(data, "maxBackups", int),
            compress=_value(data, "compress", bool),
        )


@dataclass
class PortMapEntry:
    """A CNI port mapping."""

    host_port: int = 0
    container_port: int = 0
    protocol: str = ""
    host_ip: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> PortMapEntry:
        data = _require_mapping(data, "portMappings entry")
        return cls(
            host_port=_value(data, "hostPort", int, 0),
            container_port=_value(data, "containerPort", int, 0),
            protocol=_value(data, "protocol", str, ""),
            host_ip=_value(data, "hostIP", str, ""),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "hostPort": self.host_port,
            "containerPort": self.container_port,
        }
        if self.protocol:
            result["protocol"] = self.protocol
        if self.host_ip:
            result["hostIP"] = self.host_ip
        return result


@dataclass
class BandwidthEntry:
    """A CNI bandwidth limit."""

    ingress_rate: int = 0
    ingress_burst: int = 0
    egress_rate: int = 0
    egress_burst: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> BandwidthEntry:
        data = _require_mapping(data, "bandwidth")
        return cls(
            ingress_rate=_value(data, "ingressRate", int, 0),
            ingress_burst=_value(data, "ingressBurst", int, 0),
            egress_rate=_value(data, "egressRate", int, 0),
            egress_burst=_value(data, "egressBurst", int, 0),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "ingressRate": self.ingress_rate,
            "ingressBurst": self.ingress_burst,
            "egressRate": self.egress_rate,
            "egressBurst": self.egress_burst,
        }


def _port_maps(data: dict, key: str) -> list[PortMapEntry] | None:
    entries = _value(data, key, list)
    if entries is None:
        return None
    return [PortMapEntry.from_dict(entry) for entry in entries]


def _bandwidth(data: dict, key: str) -> BandwidthEntry | None:
    entry = data.get(key)
    return None if entry is None else BandwidthEntry.from_dict(entry)


@dataclass
class RuntimeConfig:
    """CNI runtime configuration passed to plugins as capability arguments."""

    port_maps: list[PortMapEntry] | None = None
    bandwidth: BandwidthEntry | None = None
    ips: list[str] | None = None
    mac: str = ""
    infiniband_guid: str = ""
    device_id: str = ""
    cni_device_info_file: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> RuntimeConfig:
        data = _require_mapping(data, "runtimeConfig")
        return cls(
            port_maps=_port_maps(data, "portMappings"),
            bandwidth=_bandwidth(data, "bandwidth"),
            ips=_str_list(data, "ips"),
            mac=_value(data, "mac", str, ""),
            infiniband_guid=_value(data, "infinibandGUID", str, ""),
            device_id=_value(data, "deviceID", str, ""),
            cni_device_info_file=_value(data, "CNIDeviceInfoFile", str, ""),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.port_maps:
            result["portMappings"] = [entry.to_dict() for entry in self.port_maps]
        if self.bandwidth is not None:
            result["bandwidth"] = self.bandwidth.to_dict()
        if self.ips:
            result["ips"] = list(self.ips)
        if self.mac:
            result["mac"] = self.mac
        if self.infiniband_guid:
            result["infinibandGUID"] = self.infiniband_guid
        if self.device_id:
            result["deviceID"] = self.device_id
        if self.cni_device_info_file:
            result["CNIDeviceInfoFile"] = self.cni_device_info_file
        return result


@dataclass
class PluginConf:
    """The common fields of a single CNI plugin configuration."""

    cni_version: str = ""
    name: str = ""
    type: str = ""
    capabilities: dict[str, bool] | None = None
    ipam: dict[str, Any] | None = None
    dns: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: Any) -> PluginConf:
        data = _require_mapping(data, "plugin configuration")
        capabilities = _value(data, "capabilities", dict)
        if capabilities is not None and not all(
            isinstance(flag, bool) for flag in capabilities.values()
        ):
            raise ConfigError("field 'capabilities': expected boolean values")
        return cls(
            cni_version=_value(data, "cniVersion", str, ""),
            name=_value(data, "name", str, ""),
            type=_value(data, "type", str, ""),
            capabilities=capabilities,
            ipam=_value(data, "ipam", dict),
            dns=_value(data, "dns", dict),
        )


@dataclass
class PluginConfList:
    """The common fields of a CNI configuration list."""

    cni_version: str = ""
    name: str = ""
    disable_check: bool = False
    plugins: list[PluginConf] | None = None

    @classmethod
    def from_dict(cls, data: Any) -> PluginConfList:
        data = _require_mapping(data, "plugin configuration list")
        plugins = _value(data, "plugins", list)
        return cls(
            cni_version=_value(data, "cniVersion", str, ""),
            name=_value(data, "name", str, ""),
            disable_check=_value(data, "disableCheck", bool, False),
            plugins=None if plugins is None else [PluginConf.from_dict(p) for p in plugins],
        )


@dataclass
class DelegateNetConf:
    """A delegate network configuration attached to a pod."""

    conf: PluginConf = field(default_factory=PluginConf)
    conf_list: PluginConfList = field(default_factory=PluginConfList)
    name: str = ""
    ifname_request: str = ""
    mac_request: str = ""
    infiniband_guid_request: str = ""
    ip_request: list[str] | None = None
    port_mappings_request: list[PortMapEntry] | None = None
    bandwidth_request: BandwidthEntry | None = None
    gateway_request: list[IPAddress] | None = None
    is_filter_v4_gateway: bool = False
    is_filter_v6_gateway: bool = False
    master_plugin: bool = False
    conf_list_plugin: bool = False
    device_id: str = ""
    resource_name: str = ""
    raw: bytes = b""


@dataclass
class NetworkSelectionElement:
    """One element of the network attachment selection annotation."""

    name: str = ""
    namespace: str = ""
    ip_request: list[str] | None = None
    mac_request: str = ""
    infiniband_guid_request: str = ""
    interface_request: str = ""
    deprecated_interface_request: str = ""
    port_mappings_request: list[PortMapEntry] | None = None
    bandwidth_request: BandwidthEntry | None = None
    device_id: str = ""
    cni_args: dict[str, Any] | None = None
    gateway_request: list[IPAddress] | None = None

    @classmethod
    def from_dict(cls, data: Any) -> NetworkSelectionElement:
        data = _require_mapping(data, "network selection element")
        return cls(
            name=_value(data, "name", str, ""),
            namespace=_value(data, "namespace", str, ""),
            ip_request=_str_list(data, "ips"),
            mac_request=_value(data, "mac", str, ""),
            infiniband_guid_request=_value(data, "infiniband-guid", str, ""),
            interface_request=_value(data, "interface", str, ""),
            deprecated_interface_request=_value(data, "interfaceRequest", str, ""),
            port_mappings_request=_port_maps(data, "portMappings"),
            bandwidth_request=_bandwidth(data, "bandwidth"),
            device_id=_value(data, "deviceID", str, ""),
            cni_args=_value(data, "cni-args", dict),
            gateway_request=_ip_list(data, "default-route"),
        )


@dataclass
class K8sArgs:
    """The CNI_ARGS values used for Kubernetes."""

    ignore_unknown: bool = False
    ip: IPAddress | None = None
    k8s_pod_name: str = ""
    k8s_pod_namespace: str = ""
    k8s_pod_infra_container_id: str = ""
    k8s_pod_uid: str = ""


@dataclass
class ResourceInfo:
    """Device allocation information for a pod resource."""

    index: int = 0
    device_ids: list[str] = field(default_factory=list)


@dataclass
class NetConf:
    """The multus network configuration."""

    cni_version: str = ""
    name: str = ""
    type: str = ""
    capabilities: dict[str, bool] | None = None
    ipam: dict[str, Any] | None = None
    dns: dict[str, Any] | None = None
    raw_prev_result: dict[str, Any] | None = None
    prev_result: Any = None
    conf_dir: str = ""
    cni_dir: str = ""
    bin_dir: str = ""
    raw_delegates: list[dict[str, Any]] | None = None
    delegates: list[DelegateNetConf] = field(default_factory=list)
    cluster_network: str = ""
    default_networks: list[str] | None = None
    kubeconfig: str = ""
    log_file: str = ""
    log_level: str = ""
    log_to_stderr: bool = False
    log_options: LogOptions | None = None
    runtime_config: RuntimeConfig | None = None
    readiness_indicator_file: str = ""
    namespace_isolation: bool = False
    raw_non_isolated_namespaces: str = ""
    non_isolated_namespaces: list[str] | None = None
    system_namespaces: list[str] | None = None
    multus_namespace: str = ""
    retry_delete_on_error: bool = False

    def add_delegates(self, new_delegates: list[DelegateNetConf]) -> None:
        """Append new delegates to the delegate list."""
        self.delegates.extend(new_delegates)