"""Command line interface for managing measurement appliances."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TextIO

from . import cert
from .api import API, APIError, Channel
from .cert import CertError
from .config import (
    CalnexConfig,
    NetworkConfig,
    calnex_config_from_json,
    configure,
)
from .export import ExportError, export
from .firmware import OSSFirmware, update_firmware

log = logging.getLogger(__name__)


def _lookup(data: Mapping[str, Any], name: str) -> Any:
    wanted = name.lower()
    for key, value in data.items():
        if isinstance(key, str) and key.lower() == wanted:
            return value
    return None


@dataclass
class DeviceConfig:
    """The desired measurement and network setup of one device."""

    calnex: CalnexConfig = field(default_factory=dict)
    network: NetworkConfig | None = None


def parse_devices(data: str | bytes) -> dict[str, DeviceConfig]:
    """Parse a JSON document mapping device names to their configs."""
    document = json.loads(data)
    if not isinstance(document, Mapping):
        raise ValueError("device config must be a JSON object")

    devices: dict[str, DeviceConfig] = {}
    for name, raw in document.items():
        if not isinstance(raw, Mapping):
            raise ValueError(f"config for {name} must be a JSON object")
        calnex_raw = _lookup(raw, "calnex")
        network_raw = _lookup(raw, "network")
        devices[name] = DeviceConfig(
            calnex=calnex_config_from_json(calnex_raw) if calnex_raw is not None else {},
            network=NetworkConfig.from_json(network_raw) if network_raw is not None else None,
        )
    return devices


def run_cert(
    target: str, path: str | os.PathLike[str], apply: bool, insecure_tls: bool
) -> None:
    """Validate a certificate bundle and install it on the device."""
    device = API(target, insecure_tls)
    with open(path, "rb") as handle:
        cert_data = handle.read()

    bundle = cert.parse(cert_data)
    bundle.verify(target, datetime.now(timezone.utc))

    host = f"[{target}]" if ":" in target else target
    remote = cert.fetch(f"{host}:443")
    if bundle.equals(remote):
        raise CertError("new certificate matches existing certificate")

    if not apply:
        log.info("dry run. Exiting")
        return

    result = device.push_cert(cert_data)
    log.info("%s", result.message)


def run_clear(target: str, apply: bool, insecure_tls: bool) -> None:
    """Clear the device data."""
    if not apply:
        log.info("dry run. Exiting")
        return
    API(target, insecure_tls).clear_device()
    log.info("Device data cleared. The device will now reboot.")


def run_config(
    target: str, path: str | os.PathLike[str], apply: bool, insecure_tls: bool
) -> None:
    """Configure the device from the entry for ``target`` in the config file."""
    with open(path, "rb") as handle:
        devices = parse_devices(handle.read())

    try:
        device = devices[target]
    except KeyError:
        raise ValueError(f"Failed to find config for {target} in {path}") from None
    if device.network is None:
        raise ValueError(f"Failed to find network config for {target} in {path}")

    configure(target, insecure_tls, device.network, device.calnex, apply)


def run_export(
    source: str,
    channels: Iterable[str],
    insecure_tls: bool,
    output: TextIO | None = None,
) -> None:
    """Export measurement data of the named channels (all used ones if none)."""
    selected = [Channel.from_string(name) for name in channels]
    export(source, insecure_tls, selected, sys.stdout if output is None else output)


def run_firmware(
    target: str, path: str | os.PathLike[str], apply: bool, insecure_tls: bool
) -> None:
    """Upgrade the device firmware from the file at ``path`` if it is newer."""
    update_firmware(target, insecure_tls, OSSFirmware(filepath=os.fspath(path)), apply)


def run_reboot(target: str, apply: bool, insecure_tls: bool) -> None:
    """Reboot the device."""
    if not apply:
        log.info("dry run. Exiting")
        return
    API(target, insecure_tls).reboot()
    log.info("Calnex device will now reboot.")


def run_report(
    target: str, directory: str | os.PathLike[str], insecure_tls: bool
) -> str:
    """Save a problem report from the device and return its path."""
    name = API(target, insecure_tls).fetch_problem_report(directory)
    log.info("Report is captured in: %s", name)
    return name


def _add_tls(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--insecureTLS",
        dest="insecure_tls",
        action="store_true",
        help="Ignore TLS certificate errors",
    )


def _add_apply(parser: argparse.ArgumentParser, text: str) -> None:
    parser.add_argument("--apply", action="store_true", help=text)


def _add_target(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--target", required=True, help="device to configure")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="calnex", description="collection of calnex utilities"
    )
    commands = parser.add_subparsers(dest="command")

    cert_cmd = commands.add_parser("cert", help="install device certificate")
    _add_apply(cert_cmd, "apply the config changes")
    _add_tls(cert_cmd)
    _add_target(cert_cmd)
    cert_cmd.add_argument("--file", required=True, help="certificate file path")

    clear_cmd = commands.add_parser("clear", help="clear device data")
    _add_apply(clear_cmd, "apply the config changes")
    _add_tls(clear_cmd)
    _add_target(clear_cmd)

    config_cmd = commands.add_parser("config", help="configure a calnex appliance")
    _add_apply(config_cmd, "apply the config changes")
    _add_tls(config_cmd)
    _add_target(config_cmd)
    config_cmd.add_argument("--file", required=True, help="configuration file")

    export_cmd = commands.add_parser("export", help="export calnex measurement data")
    export_cmd.add_argument(
        "--channel",
        action="append",
        default=[],
        help="Channel name. Ex: 1, 2, c ,d. Repeat for multiple. Skip for auto-detection",
    )
    _add_tls(export_cmd)
    export_cmd.add_argument(
        "--source",
        required=True,
        help="Source of the data. Ex: calnex01.example.com",
    )

    firmware_cmd = commands.add_parser("firmware", help="update the device firmware")
    _add_apply(firmware_cmd, "apply the firmware upgrade")
    _add_tls(firmware_cmd)
    _add_target(firmware_cmd)
    firmware_cmd.add_argument("--file", required=True, help="firmware file path")

    reboot_cmd = commands.add_parser("reboot", help="reboot the device")
    _add_apply(reboot_cmd, "apply the config changes")
    _add_tls(reboot_cmd)
    _add_target(reboot_cmd)

    report_cmd = commands.add_parser("report", help="get problem report")
    _add_tls(report_cmd)
    _add_target(report_cmd)
    report_cmd.add_argument("--dir", default="/tmp", help="dir to save report")

    return parser


def _dispatch(args: argparse.Namespace) -> None:
    command = args.command
    if command == "cert":
        run_cert(args.target, args.file, args.apply, args.insecure_tls)
    elif command == "clear":
        run_clear(args.target, args.apply, args.insecure_tls)
    elif command == "config":
        run_config(args.target, args.file, args.apply, args.insecure_tls)
    elif command == "export":
        run_export(args.source, args.channel, args.insecure_tls)
    elif command == "firmware":
        run_firmware(args.target, args.file, args.apply, args.insecure_tls)
    elif command == "reboot":
        run_reboot(args.target, args.apply, args.insecure_tls)
    elif command == "report":
        run_report(args.target, args.dir, args.insecure_tls)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command line tool; return the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    try:
        _dispatch(args)
    except (APIError, CertError, ExportError, ValueError, OSError) as exc:
        log.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())