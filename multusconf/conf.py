"""Loading the multus network configuration and building CNI runtime
configurations for delegate plugins."""

from __future__ import annotations

import dataclasses
import ipaddress
import json
import logging
import os
from dataclasses import dataclass, field
from time import monotonic, sleep
from typing import Any, Union

from multusconf.delegate import load_delegate_net_conf
from multusconf.types import (
    ConfigError,
    DelegateNetConf,
    K8sArgs,
    LogOptions,
    NetConf,
    RuntimeConfig,
)

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

DEFAULT_CNI_DIR = "/var/lib/cni/multus"
DEFAULT_CONF_DIR = "/etc/cni/multus/net.d"
DEFAULT_BIN_DIR = "/opt/cni/bin"
DEFAULT_READINESS_INDICATOR_FILE = ""
DEFAULT_MULTUS_NAMESPACE = "kube-system"
DEFAULT_NON_ISOLATED_NAMESPACE = "default"

DEVICE_INFO_BASE_PATH = "/var/run/k8s.cni.cncf.io/devinfo"

_POLL_INTERVAL = 1.0
_POLL_TIMEOUT = 45.0

_SUPPORTED_RESULT_VERSIONS = frozenset(
    {"0.1.0", "0.2.0", "0.3.0", "0.3.1", "0.4.0", "1.0.0"}
)
_CURRENT_RESULT_VERSION = "1.0.0"


@dataclass
class CmdArgs:
    """The arguments a CNI command is invoked with."""

    container_id: str = ""
    netns: str = ""
    if_name: str = ""
    args: str = ""
    path: str = ""
    stdin_data: bytes = b""


@dataclass
class RuntimeConf:
    """The runtime configuration handed to a CNI plugin invocation."""

    container_id: str = ""
    net_ns: str = ""
    if_name: str = ""
    args: list[tuple[str, str]] = field(default_factory=list)
    capability_args: dict[str, Any] = field(default_factory=dict)


@dataclass
class Route:
    """A route from a CNI result."""

    dst: IPNetwork
    gw: IPAddress | None = None


def _parse_ip(value: Any, what: str) -> IPAddress:
    if not isinstance(value, str):
        raise ConfigError(f"{what}: expected an IP address string")
    try:
        return ipaddress.ip_address(value)
    except ValueError as exc:
        raise ConfigError(f"{what}: invalid IP address {value!r}") from exc


def _parse_cidr(value: Any, what: str) -> ipaddress.IPv4Interface | ipaddress.IPv6Interface:
    if not isinstance(value, str):
        raise ConfigError(f"{what}: expected a CIDR string")
    try:
        return ipaddress.ip_interface(value)
    except ValueError as exc:
        raise ConfigError(f"{what}: invalid CIDR {value!r}") from exc


def _route_from_dict(data: Any) -> Route:
    if not isinstance(data, dict):
        raise ConfigError("route: expected a JSON object")
    dst = _parse_cidr(data.get("dst"), "route dst").network
    gw = data.get("gw")
    return Route(dst=dst, gw=None if gw is None else _parse_ip(gw, "route gw"))


def _object_list(data: dict, key: str) -> list:
    values = data.get(key)
    if values is None:
        return []
    if not isinstance(values, list):
        raise ConfigError(f"field {key!r}: expected a list")
    return values


@dataclass
class Result:
    """A CNI result converted to the current result version."""

    cni_version: str = _CURRENT_RESULT_VERSION
    interfaces: list[dict[str, Any]] = field(default_factory=list)
    ips: list[dict[str, Any]] = field(default_factory=list)
    routes: list[Route] = field(default_factory=list)
    dns: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> Result:
        """Parse a result of any supported version into the current one."""
        if not isinstance(data, dict):
            raise ConfigError("result: expected a JSON object")
        version = data.get("cniVersion") or ""
        if not isinstance(version, str):
            raise ConfigError("result: 'cniVersion' must be a string")
        if version and version not in _SUPPORTED_RESULT_VERSIONS:
            raise ConfigError(f"result: unsupported CNI result version {version!r}")

        ips: list[dict[str, Any]] = []
        routes: list[Route] = []
        for key in ("ip4", "ip6"):
            legacy = data.get(key)
            if legacy is None:
                continue
            if not isinstance(legacy, dict):
                raise ConfigError(f"result: {key!r} must be a JSON object")
            entry: dict[str, Any] = {
                "address": str(_parse_cidr(legacy.get("ip"), f"result {key} ip"))
            }
            if legacy.get("gateway") is not None:
                entry["gateway"] = str(_parse_ip(legacy["gateway"], f"result {key} gateway"))
            ips.append(entry)
            routes.extend(_route_from_dict(r) for r in _object_list(legacy, "routes"))

        for ip in _object_list(data, "ips"):
            if not isinstance(ip, dict):
                raise ConfigError("result: 'ips' entries must be JSON objects")
            _parse_cidr(ip.get("address"), "result ips address")
            if ip.get("gateway") is not None:
                _parse_ip(ip["gateway"], "result ips gateway")
            ips.append(dict(ip))
        routes.extend(_route_from_dict(r) for r in _object_list(data, "routes"))

        dns = data.get("dns") or {}
        if not isinstance(dns, dict):
            raise ConfigError("result: 'dns' must be a JSON object")
        return cls(
            cni_version=_CURRENT_RESULT_VERSION,
            interfaces=[dict(i) for i in _object_list(data, "interfaces")],
            ips=ips,
            routes=routes,
            dns=dict(dns),
        )


def get_cni_device_info_path(name: str) -> str:
    """Return the path of the CNI device-info file for ``name``."""
    return os.path.join(DEVICE_INFO_BASE_PATH, "cni", name.replace("/", "-"))


def merge_cni_runtime_config(
    runtime_config: RuntimeConfig | None, delegate: DelegateNetConf
) -> RuntimeConfig:
    """Return a copy of ``runtime_config`` with the delegate's requests applied."""
    logger.debug("merge_cni_runtime_config: %r %r", runtime_config, delegate)
    merged = RuntimeConfig() if runtime_config is None else dataclasses.replace(runtime_config)

    # The master plugin gets the runtime config as it is.
    if not delegate.master_plugin:
        if delegate.port_mappings_request is not None:
            merged.port_maps = delegate.port_mappings_request
        if delegate.bandwidth_request is not None:
            merged.bandwidth = delegate.bandwidth_request
        if delegate.ip_request is not None:
            merged.ips = delegate.ip_request
        if delegate.mac_request:
            merged.mac = delegate.mac_request
        if delegate.infiniband_guid_request:
            merged.infiniband_guid = delegate.infiniband_guid_request
        if delegate.device_id:
            merged.device_id = delegate.device_id
        logger.debug("merge_cni_runtime_config: merged %r", merged)
    return merged


def create_cni_runtime_conf(
    args: CmdArgs,
    k8s_args: K8sArgs,
    if_name: str,
    rc: RuntimeConfig | None,
    delegate: DelegateNetConf | None,
) -> tuple[RuntimeConf, str]:
    """Build the runtime configuration for a delegate and its device-info file path."""
    return new_cni_runtime_conf(
        args.container_id,
        k8s_args.k8s_pod_infra_container_id,
        k8s_args.k8s_pod_name,
        k8s_args.k8s_pod_namespace,
        k8s_args.k8s_pod_uid,
        args.netns,
        if_name,
        rc,
        delegate,
    )


def new_cni_runtime_conf(
    container_id: str,
    sandbox_id: str,
    pod_name: str,
    pod_namespace: str,
    pod_uid: str,
    net_ns: str,
    if_name: str,
    rc: RuntimeConfig | None,
    delegate: DelegateNetConf | None,
) -> tuple[RuntimeConf, str]:
    """Build the runtime configuration for an ADD or DEL request."""
    logger.debug("new_cni_runtime_conf: %s, %r %r", if_name, rc, delegate)
    delegate_rc = delegate_runtime_config(container_id, delegate, rc, if_name)
    rt = create_runtime_conf(
        net_ns, pod_namespace, pod_name, container_id, sandbox_id, pod_uid, if_name
    )

    cni_args = os.environ.get("CNI_ARGS", "")
    if cni_args:
        logger.debug("CNI_ARGS: %s", cni_args)
        for arg in cni_args.split(";"):
            key, sep, value = arg.partition("=")
            if not sep:
                logger.error("CNI_ARGS entry %r is not recognized as a CNI arg, skipped", arg)
                continue
            for position, (existing_key, existing_value) in enumerate(rt.args):
                # Only fill in keys whose value is still empty.
                if existing_key == key and not existing_value and value:
                    rt.args[position] = (key, value)
                    break
            else:
                rt.args.append((key, value))

    device_info_file = ""
    if delegate_rc is not None:
        device_info_file = delegate_rc.cni_device_info_file
        capability_args: dict[str, Any] = {}
        if delegate_rc.port_maps:
            capability_args["portMappings"] = delegate_rc.port_maps
        if delegate_rc.bandwidth is not None:
            capability_args["bandwidth"] = delegate_rc.bandwidth
        if delegate_rc.ips:
            capability_args["ips"] = delegate_rc.ips
        if delegate_rc.mac:
            capability_args["mac"] = delegate_rc.mac
        if delegate_rc.infiniband_guid:
            capability_args["infinibandGUID"] = delegate_rc.infiniband_guid
        if delegate_rc.device_id:
            capability_args["deviceID"] = delegate_rc.device_id
        if delegate_rc.cni_device_info_file:
            capability_args["CNIDeviceInfoFile"] = delegate_rc.cni_device_info_file
        rt.capability_args = capability_args
    return rt, device_info_file


def create_runtime_conf(
    net_ns: str,
    pod_namespace: str,
    pod_name: str,
    container_id: str,
    sandbox_id: str,
    pod_uid: str,
    if_name: str,
) -> RuntimeConf:
    """Build the base runtime configuration with the Kubernetes arguments."""
    # The order of the arguments is relied on by verbose logging.
    return RuntimeConf(
        container_id=container_id,
        net_ns=net_ns,
        if_name=if_name,
        args=[
            ("IgnoreUnknown", "true"),
            ("K8S_POD_NAMESPACE", pod_namespace),
            ("K8S_POD_NAME", pod_name),
            ("K8S_POD_INFRA_CONTAINER_ID", sandbox_id),
            ("K8S_POD_UID", pod_uid),
        ],
    )


def delegate_runtime_config(
    container_id: str,
    delegate: DelegateNetConf | None,
    rc: RuntimeConfig | None,
    if_name: str,
) -> RuntimeConfig | None:
    """Return the runtime config for ``delegate``, or ``rc`` when there is none."""
    if delegate is None:
        return rc
    delegate_rc = merge_cni_runtime_config(rc, delegate)
    if delegate_rc.device_id:
        if delegate_rc.cni_device_info_file:
            logger.debug(
                "Existing CNIDeviceInfoFile %s will be overwritten",
                delegate_rc.cni_device_info_file,
            )
        delegate_rc.cni_device_info_file = get_cni_device_info_path(
            f"{delegate.name}-{container_id}_{if_name}"
        )
        logger.debug("Adding CNIDeviceInfoFile: %s", delegate_rc.cni_device_info_file)
    return delegate_rc


def get_gateway_from_result(result: Result) -> list[IPAddress | None]:
    """Return the gateways of the default routes in ``result``."""
    return [route.gw for route in result.routes if route.dst.prefixlen == 0]


def get_default_net_conf() -> NetConf:
    """Return a :class:`NetConf` holding the default settings."""
    return NetConf(
        bin_dir=DEFAULT_BIN_DIR,
        conf_dir=DEFAULT_CONF_DIR,
        cni_dir=DEFAULT_CNI_DIR,
        log_to_stderr=True,
        multus_namespace=DEFAULT_MULTUS_NAMESPACE,
        non_isolated_namespaces=[DEFAULT_NON_ISOLATED_NAMESPACE],
        readiness_indicator_file=DEFAULT_READINESS_INDICATOR_FILE,
        system_namespaces=["kube-system"],
    )


_STR_FIELDS = {
    "cniVersion": "cni_version",
    "name": "name",
    "type": "type",
    "confDir": "conf_dir",
    "cniDir": "cni_dir",
    "binDir": "bin_dir",
    "clusterNetwork": "cluster_network",
    "kubeconfig": "kubeconfig",
    "logFile": "log_file",
    "logLevel": "log_level",
    "readinessindicatorfile": "readiness_indicator_file",
    "globalNamespaces": "raw_non_isolated_namespaces",
    "multusNamespace": "multus_namespace",
}
_BOOL_FIELDS = {
    "logToStderr": "log_to_stderr",
    "namespaceIsolation": "namespace_isolation",
    "retryDeleteOnError": "retry_delete_on_error",
}
_STR_LIST_FIELDS = {
    "defaultNetworks": "default_networks",
    "systemNamespaces": "system_namespaces",
}
_OBJECT_FIELDS = {
    "capabilities": "capabilities",
    "ipam": "ipam",
    "dns": "dns",
    "prevResult": "raw_prev_result",
}


def _lookup(data: dict[str, Any], key: str) -> tuple[bool, Any]:
    """Find ``key`` exactly or, failing that, without regard to case."""
    if key in data:
        return True, data[key]
    folded = key.casefold()
    for name, value in data.items():
        if name.casefold() == folded:
            return True, value
    return False, None


def _apply_fields(netconf: NetConf, data: dict[str, Any]) -> None:
    for key, attr in _STR_FIELDS.items():
        found, value = _lookup(data, key)
        if not found or value is None:
            continue
        if not isinstance(value, str):
            raise ConfigError(f"field {key!r}: expected a string")
        setattr(netconf, attr, value)

    for key, attr in _BOOL_FIELDS.items():
        found, value = _lookup(data, key)
        if not found or value is None:
            continue
        if not isinstance(value, bool):
            raise ConfigError(f"field {key!r}: expected a boolean")
        setattr(netconf, attr, value)

    for key, attr in _STR_LIST_FIELDS.items():
        found, value = _lookup(data, key)
        if not found:
            continue
        if value is not None and not (
            isinstance(value, list) and all(isinstance(v, str) for v in value)
        ):
            raise ConfigError(f"field {key!r}: expected a list of strings")
        setattr(netconf, attr, None if value is None else list(value))

    for key, attr in _OBJECT_FIELDS.items():
        found, value = _lookup(data, key)
        if not found:
            continue
        if value is not None and not isinstance(value, dict):
            raise ConfigError(f"field {key!r}: expected a JSON object")
        setattr(netconf, attr, value)
    if netconf.capabilities is not None and not all(
        isinstance(flag, bool) for flag in netconf.capabilities.values()
    ):
        raise ConfigError("field 'capabilities': expected boolean values")

    found, value = _lookup(data, "delegates")
    if found:
        if value is not None and not (
            isinstance(value, list) and all(isinstance(v, dict) for v in value)
        ):
            raise ConfigError("field 'delegates': expected a list of JSON objects")
        netconf.raw_delegates = value

    found, value = _lookup(data, "logOptions")
    if found:
        netconf.log_options = None if value is None else LogOptions.from_dict(value)

    found, value = _lookup(data, "runtimeConfig")
    if found:
        netconf.runtime_config = None if value is None else RuntimeConfig.from_dict(value)


def load_net_conf(data: bytes | str) -> NetConf:
    """Parse the multus configuration (the plugin's stdin) into a :class:`NetConf`."""
    netconf = get_default_net_conf()
    logger.debug("load_net_conf: %r", data)
    try:
        raw = json.loads(data)
        if not isinstance(raw, dict):
            raise ConfigError(f"expected a JSON object, got {type(raw).__name__}")
        _apply_fields(netconf, raw)
    except (ValueError, TypeError) as exc:
        raise ConfigError(f"load_net_conf: failed to load netconf: {exc}") from exc

    if netconf.raw_prev_result is not None:
        try:
            netconf.prev_result = Result.from_dict(
                {**netconf.raw_prev_result, "cniVersion": netconf.cni_version}
            )
        except ConfigError as exc:
            raise ConfigError(f"load_net_conf: could not parse prevResult: {exc}") from exc
        netconf.raw_prev_result = None

    # Without a cluster network the delegates run in order, and the first
    # one is the master plugin.
    if not netconf.raw_delegates and not netconf.cluster_network:
        raise ConfigError(
            "load_net_conf: at least one delegate/clusterNetwork must be specified"
        )

    if netconf.raw_non_isolated_namespaces:
        netconf.non_isolated_namespaces = [
            namespace.strip() for namespace in netconf.raw_non_isolated_namespaces.split(",")
        ]

    if not netconf.cluster_network:
        if not netconf.raw_delegates:
            raise ConfigError("load_net_conf: at least one delegate must be specified")
        for idx, raw_conf in enumerate(netconf.raw_delegates):
            try:
                delegate_conf = load_delegate_net_conf(json.dumps(raw_conf), None, "", "")
            except ConfigError as exc:
                raise ConfigError(
                    f"load_net_conf: failed to load delegate {idx} config: {exc}"
                ) from exc
            netconf.delegates.append(delegate_conf)
        netconf.raw_delegates = None
        netconf.delegates[0].master_plugin = True

    return netconf


def _is_ipv4(address: IPAddress) -> bool:
    if isinstance(address, ipaddress.IPv4Address):
        return True
    return address.ipv4_mapped is not None


def check_gateway_config(delegates: list[DelegateNetConf]) -> None:
    """Reject more than one default gateway per family and set the filter flags."""
    gateways = [gw for delegate in delegates for gw in (delegate.gateway_request or [])]
    v4_gateways = sum(1 for gw in gateways if _is_ipv4(gw))
    v6_gateways = len(gateways) - v4_gateways
    if v4_gateways > 1 or v6_gateways > 1:
        raise ConfigError("multus does not support ECMP for default-route")

    for delegate in delegates:
        requested = delegate.gateway_request or []
        delegate.is_filter_v4_gateway = not any(_is_ipv4(gw) for gw in requested)
        delegate.is_filter_v6_gateway = all(_is_ipv4(gw) for gw in requested)


def check_system_namespaces(namespace: str, system_namespaces: list[str]) -> bool:
    """Return whether ``namespace`` is one of ``system_namespaces``."""
    return namespace in system_namespaces


def _absolute(path: str) -> str:
    return os.path.abspath(os.path.normpath(path))


def get_readiness_indicator_file(path: str) -> None:
    """Wait until the readiness indicator file exists.

    Raises :class:`TimeoutError` when it does not appear in time.
    """
    indicator = _absolute(path)
    deadline = monotonic() + _POLL_TIMEOUT
    while True:
        if os.path.exists(indicator):
            return
        if monotonic() >= deadline:
            raise TimeoutError(f"timed out waiting for readiness indicator file {indicator}")
        sleep(_POLL_INTERVAL)


def readiness_indicator_exists_now(path: str) -> bool:
    """Report whether the readiness indicator file exists right now."""
    try:
        os.stat(_absolute(path))
    except FileNotFoundError:
        return False
    return True