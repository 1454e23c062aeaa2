"""Loading delegate network configurations and injecting per-attachment
settings (device IDs, CNI args) into their raw JSON."""

from __future__ import annotations

import json
import logging
from typing import Any

from multusconf.types import (
    ConfigError,
    DelegateNetConf,
    NetworkSelectionElement,
    PluginConf,
    PluginConfList,
)

logger = logging.getLogger(__name__)


def _load_object(data: bytes | str, where: str) -> dict[str, Any]:
    """Parse ``data`` as a JSON object or raise :class:`ConfigError`."""
    try:
        obj = json.loads(data)
    except (ValueError, TypeError) as exc:
        raise ConfigError(f"{where}: failed to unmarshal: {exc}") from exc
    if not isinstance(obj, dict):
        raise ConfigError(f"{where}: expected a JSON object, got {type(obj).__name__}")
    return obj


def _dump(obj: dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode()


def _plugin_list(raw_config: dict[str, Any], where: str) -> list[dict[str, Any]]:
    if "plugins" not in raw_config:
        raise ConfigError(f"{where}: unable to get plugin list")
    plugins = raw_config["plugins"]
    if not isinstance(plugins, list):
        raise ConfigError(f"{where}: unable to typecast plugin list")
    for idx, plugin in enumerate(plugins):
        if not isinstance(plugin, dict):
            raise ConfigError(f"{where}: unable to typecast plugin #{idx}")
    return plugins


def load_delegate_net_conf_list(data: bytes | str, delegate_conf: DelegateNetConf) -> None:
    """Fill ``delegate_conf`` from a CNI configuration list in ``data``."""
    logger.debug("load_delegate_net_conf_list: %r, %r", data, delegate_conf)
    raw = _load_object(data, "load_delegate_net_conf_list")
    try:
        conf_list = PluginConfList.from_dict(raw)
    except ConfigError as exc:
        raise ConfigError(
            f"load_delegate_net_conf_list: error unmarshalling delegate conflist: {exc}"
        ) from exc

    if conf_list.plugins is None:
        raise ConfigError(
            "load_delegate_net_conf_list: delegate must have the 'type' or 'plugin' field"
        )
    if not conf_list.plugins or not conf_list.plugins[0].type:
        raise ConfigError(
            "load_delegate_net_conf_list: a plugin delegate must have the 'type' field"
        )

    delegate_conf.conf_list = conf_list
    delegate_conf.conf_list_plugin = True
    delegate_conf.name = conf_list.name


def load_delegate_net_conf(
    data: bytes | str,
    net_element: NetworkSelectionElement | None,
    device_id: str,
    resource_name: str,
) -> DelegateNetConf:
    """Build a :class:`DelegateNetConf` from raw CNI JSON and a selection element."""
    logger.debug("load_delegate_net_conf: %r, %r, %s", data, net_element, device_id)
    if isinstance(data, str):
        data = data.encode()

    raw = _load_object(data, "load_delegate_net_conf")
    try:
        conf = PluginConf.from_dict(raw)
    except ConfigError as exc:
        raise ConfigError(
            f"load_delegate_net_conf: error unmarshalling delegate config: {exc}"
        ) from exc

    delegate_conf = DelegateNetConf(conf=conf, name=conf.name)
    cni_args = net_element.cni_args if net_element is not None else None

    if not conf.type:
        try:
            load_delegate_net_conf_list(data, delegate_conf)
        except ConfigError as exc:
            raise ConfigError(f"load_delegate_net_conf: failed with: {exc}") from exc
        if device_id:
            data = add_device_id_in_conf_list(data, device_id)
            delegate_conf.resource_name = resource_name
            delegate_conf.device_id = device_id
        if cni_args is not None:
            data = add_cni_args_in_conf_list(data, cni_args)
    else:
        if device_id:
            data = delegate_add_device_id(data, device_id)
            delegate_conf.resource_name = resource_name
            delegate_conf.device_id = device_id
        if cni_args is not None:
            data = add_cni_args_in_config(data, cni_args)

    if net_element is not None:
        if net_element.name:
            # The net-attach-def name replaces the CNI config name.
            delegate_conf.name = f"{net_element.namespace}/{net_element.name}"
        if net_element.interface_request:
            delegate_conf.ifname_request = net_element.interface_request
        if net_element.mac_request:
            delegate_conf.mac_request = net_element.mac_request
        if net_element.ip_request is not None:
            delegate_conf.ip_request = net_element.ip_request
        if net_element.bandwidth_request is not None:
            delegate_conf.bandwidth_request = net_element.bandwidth_request
        if net_element.port_mappings_request is not None:
            delegate_conf.port_mappings_request = net_element.port_mappings_request
        if net_element.gateway_request is not None:
            delegate_conf.gateway_request = [
                *(delegate_conf.gateway_request or []),
                *net_element.gateway_request,
            ]
        if net_element.infiniband_guid_request:
            delegate_conf.infiniband_guid_request = net_element.infiniband_guid_request
        if net_element.device_id:
            if device_id:
                logger.debug(
                    "Both RuntimeConfig and ResourceMap provide deviceID; "
                    "ignoring RuntimeConfig"
                )
            else:
                delegate_conf.device_id = net_element.device_id

    delegate_conf.raw = data
    return delegate_conf


def delegate_add_device_id(data: bytes | str, device_id: str) -> bytes:
    """Return ``data`` with ``deviceID`` and ``pciBusID`` set to ``device_id``."""
    raw_config = _load_object(data, "delegate_add_device_id")
    raw_config["deviceID"] = device_id
    raw_config["pciBusID"] = device_id
    result = _dump(raw_config)
    logger.debug("delegate_add_device_id updated config %s", result)
    return result


def add_device_id_in_conf_list(data: bytes | str, device_id: str) -> bytes:
    """Return the conflist ``data`` with the device ID set on every plugin."""
    raw_config = _load_object(data, "add_device_id_in_conf_list")
    for plugin in _plugin_list(raw_config, "add_device_id_in_conf_list"):
        plugin["deviceID"] = device_id
        plugin["pciBusID"] = device_id
    result = _dump(raw_config)
    logger.debug("add_device_id_in_conf_list updated config %s", result)
    return result


def inject_cni_args(cni_config: dict[str, Any], args: dict[str, Any]) -> None:
    """Merge ``args`` into ``cni_config["args"]["cni"]`` in place."""
    if "args" not in cni_config:
        cni_config["args"] = {"cni": dict(args)}
        return
    args_value = cni_config["args"]
    if not isinstance(args_value, dict):
        raise ConfigError("inject_cni_args: 'args' is not a JSON object")
    if "cni" not in args_value:
        args_value["cni"] = dict(args)
        return
    cni_value = args_value["cni"]
    if not isinstance(cni_value, dict):
        raise ConfigError("inject_cni_args: 'args.cni' is not a JSON object")
    cni_value.update(args)


def add_cni_args_in_config(data: bytes | str, cni_args: dict[str, Any]) -> bytes:
    """Return the CNI config ``data`` with ``cni_args`` injected."""
    raw_config = _load_object(data, "add_cni_args_in_config")
    inject_cni_args(raw_config, cni_args)
    return _dump(raw_config)


def add_cni_args_in_conf_list(data: bytes | str, cni_args: dict[str, Any]) -> bytes:
    """Return the CNI conflist ``data`` with ``cni_args`` injected into every plugin."""
    raw_config = _load_object(data, "add_cni_args_in_conf_list")
    for plugin in _plugin_list(raw_config, "add_cni_args_in_conf_list"):
        inject_cni_args(plugin, cni_args)
    return _dump(raw_config)