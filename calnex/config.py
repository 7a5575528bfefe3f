"""Device configuration: settings edits and the apply workflow."""

from __future__ import annotations

import ipaddress
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from .api import API, NO, OFF, ON, YES, Channel, Probe
from .inifile import Section

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
CalnexConfig = dict[Channel, "MeasureConfig"]


def _lookup(data: Any, name: str, default: Any = None) -> Any:
    if not isinstance(data, Mapping):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    wanted = name.lower()
    for key, value in data.items():
        if isinstance(key, str) and key.lower() == wanted:
            return value
    return default


@dataclass
class MeasureConfig:
    """What one channel measures: a target server and a probe protocol."""

    target: str = ""
    probe: Probe = Probe.PTP

    @classmethod
    def from_json(cls, data: Any) -> MeasureConfig:
        target = _lookup(data, "target")
        if target is None:
            target = ""
        if not isinstance(target, str):
            raise ValueError(f"invalid target: {target!r}")

        raw = _lookup(data, "probe")
        if raw is None:
            probe = Probe.PTP
        elif isinstance(raw, str):
            probe = Probe.from_string(raw)
        elif isinstance(raw, int) and not isinstance(raw, bool):
            probe = Probe(raw)
        else:
            raise ValueError(f"invalid probe: {raw!r}")
        return cls(target=target, probe=probe)

    def to_json(self) -> dict[str, Any]:
        return {"target": self.target, "probe": int(self.probe)}


def _parse_ip(raw: Any) -> IPAddress | None:
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise ValueError(f"invalid IP address: {raw!r}")
    return ipaddress.ip_address(raw)


@dataclass
class NetworkConfig:
    """Addresses and gateways of the device's two network ports."""

    eth1: IPAddress | None = None
    gw1: IPAddress | None = None
    eth2: IPAddress | None = None
    gw2: IPAddress | None = None

    @classmethod
    def from_json(cls, data: Any) -> NetworkConfig:
        return cls(
            eth1=_parse_ip(_lookup(data, "eth1")),
            gw1=_parse_ip(_lookup(data, "gw1")),
            eth2=_parse_ip(_lookup(data, "eth2")),
            gw2=_parse_ip(_lookup(data, "gw2")),
        )


def _ip_text(address: IPAddress | None) -> str:
    return "<nil>" if address is None else str(address)


def calnex_config_from_json(data: Any) -> CalnexConfig:
    """Build a per-channel config from a JSON object keyed by channel name."""
    if not isinstance(data, Mapping):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return {
        Channel.from_string(key): MeasureConfig.from_json(value)
        for key, value in data.items()
    }


def calnex_config_to_json(calnex_config: Mapping[Channel, MeasureConfig]) -> str:
    """Serialise a per-channel config keyed by the numeric channel id."""
    payload = {
        key: value.to_json()
        for key, value in sorted(
            (str(int(ch)), mc) for ch, mc in calnex_config.items()
        )
    }
    return json.dumps(payload, separators=(",", ":"))


@dataclass
class SettingsEditor:
    """Applies settings to a section and records whether anything changed."""

    changed: bool = False

    def set(self, section: Section, name: str, value: str) -> None:
        """Set one key, noting a change when its value differs."""
        if section.get(name, "") != value:
            section[name] = value
            log.info("setting %s to %s", name, value)
            self.changed = True
        elif name not in section:
            section[name] = value

    def ch_set(
        self, section: Section, start: Channel, end: Channel, keyf: str, value: str
    ) -> None:
        """Set a ``%s``-formatted key on every channel from ``start`` to ``end``."""
        for number in range(int(start), int(end) + 1):
            self.set(section, keyf % Channel(number).calnex_api(), value)

    def measure_config(
        self, section: Section, calnex_config: Mapping[Channel, MeasureConfig]
    ) -> None:
        """Configure probes and targets, enabling only the configured channels."""
        for ch, measure in calnex_config.items():
            prefix = f"{ch.calnex_api()}\\ptp_synce"
            self.set(section, f"{prefix}\\mode\\probe_type", measure.probe.calnex_name())
            if measure.probe is Probe.NTP:
                self.set(section, f"{prefix}\\ntp\\server_ip", measure.target)
                self.set(section, f"{prefix}\\ntp\\server_ip_ipv6", measure.target)
            elif measure.probe is Probe.PTP:
                self.set(section, f"{prefix}\\ptp\\master_ip", measure.target)
                self.set(section, f"{prefix}\\ptp\\master_ip_ipv6", measure.target)

        for ch in Channel:
            enabled = ch in calnex_config
            self.set(section, f"{ch.calnex_api()}\\used", YES if enabled else NO)
            self.set(
                section,
                f"{ch.calnex_api()}\\protocol_enabled",
                ON if enabled else OFF,
            )

    def nic_config(self, section: Section, network: NetworkConfig) -> None:
        """Configure addresses, gateways and masks of both network ports."""
        ports = (
            (Channel.ONE, network.eth1, network.gw1),
            (Channel.TWO, network.eth2, network.gw2),
        )
        for ch, address, gateway in ports:
            prefix = f"{ch.calnex_api()}\\ptp_synce\\ethernet"
            self.set(section, f"{prefix}\\gateway", _ip_text(gateway))
            self.set(section, f"{prefix}\\gateway_ipv6", _ip_text(gateway))
            self.set(section, f"{prefix}\\ip_address", _ip_text(address))
            self.set(section, f"{prefix}\\ip_address_ipv6", _ip_text(address))
            self.set(section, f"{prefix}\\mask", "64")

    def base_config(self, section: Section) -> None:
        """Apply the static settings shared by every device."""
        one, two = Channel.ONE, Channel.TWO
        self.ch_set(section, one, two, "%s\\synce_enabled", OFF)
        self.ch_set(section, one, two, "%s\\ptp_synce\\ethernet\\dhcp", OFF)
        self.ch_set(section, one, two, "%s\\ptp_synce\\ntp\\normalize_delays", OFF)
        self.ch_set(section, one, two, "%s\\ptp_synce\\ntp\\protocol_level", "UDP/IPv6")
        self.ch_set(section, one, two, "%s\\ptp_synce\\ptp\\protocol_level", "UDP/IPv6")
        self.ch_set(
            section, one, two, "%s\\ptp_synce\\ntp\\poll_log_interval", "1 packet/16 s"
        )
        self.ch_set(
            section, one, two, "%s\\ptp_synce\\ptp\\log_announce_int", "1 packet/16 s"
        )
        self.ch_set(
            section, one, two, "%s\\ptp_synce\\ptp\\log_delay_req_int", "1 packet/16 s"
        )
        self.ch_set(section, one, two, "%s\\ptp_synce\\ptp\\log_sync_int", "1 packet/16 s")
        self.ch_set(section, one, two, "%s\\ptp_synce\\ptp\\stack_mode", "Unicast")
        self.ch_set(section, one, two, "%s\\ptp_synce\\ptp\\domain", "0")
        self.ch_set(section, one, two, "%s\\ptp_synce\\ptp\\dscp", "0")
        self.set(section, "continuous", ON)
        self.set(section, "meas_time", "1 days 1 hours")
        self.set(section, "tie_mode", "TIE + 1 PPS TE")


def configure(
    target: str,
    insecure_tls: bool,
    network: NetworkConfig,
    calnex_config: Mapping[Channel, MeasureConfig],
    apply: bool,
) -> None:
    """Bring the device's settings in line with the given configs when ``apply`` is set."""
    device = API(target, insecure_tls)
    settings = device.fetch_settings()
    section = settings.section("measure")

    editor = SettingsEditor()
    editor.base_config(section)
    editor.nic_config(section, network)
    editor.measure_config(section, calnex_config)

    if not apply:
        log.info("dry run. Exiting")
        return

    status = device.fetch_status()

    if editor.changed:
        if status.measurement_active:
            log.info("stopping measurement")
            device.stop_measure()
        log.info("pushing the config")
        device.push_settings(settings)
    else:
        log.info("no change needs to be applied")

    if editor.changed or not status.measurement_active:
        log.info("starting measurement")
        device.start_measure()