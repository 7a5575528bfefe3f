"""Client for the measurement appliance's HTTPS API."""

from __future__ import annotations

import csv
import os
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from http.client import responses as _HTTP_REASONS
from typing import Any

import requests

from .inifile import IniFile, parse_ini

ON = "On"
OFF = "Off"
YES = "Yes"
NO = "No"

TIMEOUT = 120.0


class APIError(Exception):
    """Raised when the device cannot be reached or answers with an error."""


class Channel(IntEnum):
    """A measurement channel of the device."""

    A = 0
    B = 1
    C = 2
    D = 3
    E = 4
    F = 5
    ONE = 6
    TWO = 7

    @classmethod
    def from_string(cls, value: str) -> Channel:
        """Return the channel named like ``"a"`` or ``"2"``."""
        try:
            return _STRING_TO_CHANNEL[value]
        except KeyError:
            raise APIError("channel is not recognized") from None

    def __str__(self) -> str:
        return _CHANNEL_TO_STRING[self]

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)

    def calnex(self) -> int:
        """Return the device's numeric channel id."""
        return int(self)

    def calnex_api(self) -> str:
        """Return the channel name used by the API, like ``"ch6"``."""
        return f"ch{self.calnex()}"


_CHANNEL_TO_STRING = {
    Channel.A: "a",
    Channel.B: "b",
    Channel.C: "c",
    Channel.D: "d",
    Channel.E: "e",
    Channel.F: "f",
    Channel.ONE: "1",
    Channel.TWO: "2",
}
_STRING_TO_CHANNEL = {name: ch for ch, name in _CHANNEL_TO_STRING.items()}

_CHANNEL_DATATYPES = {
    Channel.A: "tie",
    Channel.B: "tie",
    Channel.C: "tie",
    Channel.D: "tie",
    Channel.E: "tie",
    Channel.F: "tie",
    Channel.ONE: "2wayte",
    Channel.TWO: "2wayte",
}


class Probe(IntEnum):
    """A protocol monitored on a channel."""

    PTP = 0
    NTP = 2

    @classmethod
    def from_string(cls, value: str) -> Probe:
        """Return the probe named ``"ptp"`` or ``"ntp"``."""
        try:
            return _STRING_TO_PROBE[value]
        except KeyError:
            raise APIError("probe protocol is not recognized") from None

    @classmethod
    def from_calnex(cls, value: str) -> Probe:
        """Return the probe from the device's numeric form, like ``"2"``."""
        for probe in cls:
            if value == str(int(probe)):
                return probe
        raise APIError("probe protocol is not recognized")

    def __str__(self) -> str:
        return _PROBE_TO_STRING[self]

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)

    def server_type(self) -> str:
        """Return the settings key naming the monitored server."""
        return _PROBE_SERVER_TYPES[self]

    def calnex_name(self) -> str:
        """Return the device's display name of the probe."""
        return _PROBE_CALNEX_NAMES[self]


_PROBE_TO_STRING = {Probe.PTP: "ptp", Probe.NTP: "ntp"}
_STRING_TO_PROBE = {name: probe for probe, name in _PROBE_TO_STRING.items()}
_PROBE_CALNEX_NAMES = {Probe.PTP: "PTP slave", Probe.NTP: "NTP client"}
_PROBE_SERVER_TYPES = {Probe.PTP: "master_ip", Probe.NTP: "server_ip"}


def _field(data: Any, name: str, default: Any) -> Any:
    """Look a field up the way the device's JSON is matched: ignoring case."""
    if not isinstance(data, dict):
        raise APIError("invalid response from API")
    wanted = name.lower()
    for key, value in data.items():
        if isinstance(key, str) and key.lower() == wanted:
            return value
    return default


@dataclass
class Status:
    """The device's readiness and measurement state."""

    reference_ready: bool = False
    modules_ready: bool = False
    measurement_active: bool = False

    @classmethod
    def from_json(cls, data: Any) -> Status:
        return cls(
            reference_ready=bool(_field(data, "ReferenceReady", False)),
            modules_ready=bool(_field(data, "ModulesReady", False)),
            measurement_active=bool(_field(data, "MeasurementActive", False)),
        )


@dataclass
class Result:
    """The outcome reported by the device for an action."""

    result: bool = False
    message: str = ""

    @classmethod
    def from_json(cls, data: Any) -> Result:
        return cls(
            result=bool(_field(data, "Result", False)),
            message=str(_field(data, "Message", "") or ""),
        )


@dataclass
class DeviceVersion:
    """The firmware version running on the device."""

    firmware: str = ""

    @classmethod
    def from_json(cls, data: Any) -> DeviceVersion:
        return cls(firmware=str(_field(data, "Firmware", "") or ""))


def parse_response(response: str) -> str:
    """Return the value from a ``key=value`` answer."""
    if response.endswith("\n"):
        response = response[:-1]
    parts = response.split("=")
    if len(parts) != 2:
        raise APIError("invalid response from API")
    return parts[1]


def _reason(status_code: int) -> str:
    return _HTTP_REASONS.get(status_code, "") or f"HTTP status {status_code}"


def _decode_json(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError as exc:
        raise APIError(f"invalid JSON from API: {exc}") from exc


class API:
    """Access to one device's HTTPS API."""

    def __init__(self, source: str, insecure_tls: bool = False) -> None:
        self.source = source
        self.session = requests.Session()
        self.session.verify = not insecure_tls
        self.timeout = TIMEOUT

    def _url(self, path: str) -> str:
        return f"https://{self.source}/api/{path}"

    def _measure_url(self, channel: Channel, group: str, key: str) -> str:
        return self._url(f"get/measure/{channel.calnex_api()}/ptp_synce/{group}/{key}")

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise APIError(str(exc)) from exc

    def _get_ok(self, url: str, stream: bool = False) -> requests.Response:
        resp = self._request("GET", url, stream=stream)
        if resp.status_code != 200:
            resp.close()
            raise APIError(_reason(resp.status_code))
        return resp

    def _post(self, url: str, content: bytes) -> Result:
        resp = self._request(
            "POST",
            url,
            data=content,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        with resp:
            result = Result.from_json(_decode_json(resp))
            if resp.status_code != 200:
                raise APIError(_reason(resp.status_code))
        if not result.result:
            raise APIError(result.message)
        return result

    def _action(self, path: str) -> None:
        with self._get_ok(self._url(path)) as resp:
            result = Result.from_json(_decode_json(resp))
        if not result.result:
            raise APIError(result.message)

    def fetch_csv(self, channel: Channel) -> list[list[str]]:
        """Return the measurement rows recorded on ``channel``."""
        url = self._url(
            f"getdata?channel={str(channel)}"
            f"&datatype={_CHANNEL_DATATYPES[channel]}&reset=true"
        )
        with self._get_ok(url) as resp:
            text = resp.text

        lines = (
            line for line in text.splitlines(keepends=True) if not line.startswith("#")
        )
        rows: list[list[str]] = []
        try:
            for row in csv.reader(lines):
                if not row:
                    continue
                if rows and len(row) != len(rows[0]):
                    raise APIError(
                        f"failed to parse csv for data from channel {str(channel)}: "
                        "wrong number of fields"
                    )
                rows.append(row)
        except csv.Error as exc:
            raise APIError(
                f"failed to parse csv for data from channel {str(channel)}: {exc}"
            ) from exc
        return rows

    def fetch_channel_probe(self, channel: Channel) -> Probe:
        """Return the protocol monitored on ``channel``."""
        with self._get_ok(self._measure_url(channel, "mode", "probe_type")) as resp:
            body = resp.text
        return Probe.from_calnex(parse_response(body))

    def fetch_channel_target_ip(self, channel: Channel, probe: Probe) -> str:
        """Return the address of the server monitored on ``channel``."""
        url = self._measure_url(channel, str(probe), probe.server_type())
        with self._get_ok(url) as resp:
            body = resp.text
        return parse_response(body)

    def fetch_used_channels(self) -> list[Channel]:
        """Return the channels marked as used in the settings."""
        measure = self.fetch_settings().section("measure")
        return [ch for ch in Channel if measure.get(f"{ch.calnex_api()}\\used") == YES]

    def fetch_settings(self) -> IniFile:
        """Return the device settings."""
        with self._get_ok(self._url("getsettings")) as resp:
            content = resp.content
        try:
            return parse_ini(content)
        except (ValueError, UnicodeDecodeError) as exc:
            raise APIError(f"invalid settings from API: {exc}") from exc

    def fetch_status(self) -> Status:
        """Return the device status."""
        with self._get_ok(self._url("getstatus")) as resp:
            return Status.from_json(_decode_json(resp))

    def fetch_problem_report(self, directory: str | os.PathLike[str]) -> str:
        """Save a problem report into ``directory`` and return its path."""
        with self._get_ok(self._url("getproblemreport"), stream=True) as resp:
            stamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
            name = os.path.join(directory, f"calnex_problem_report_{stamp}.tar")
            with open(name, "wb") as report:
                for chunk in resp.iter_content(chunk_size=65536):
                    report.write(chunk)
        return name

    def fetch_version(self) -> DeviceVersion:
        """Return the running firmware version."""
        with self._get_ok(self._url("version")) as resp:
            return DeviceVersion.from_json(_decode_json(resp))

    def push_version(self, path: str | os.PathLike[str]) -> Result:
        """Upload the firmware file at ``path``."""
        with open(path, "rb") as firmware:
            content = firmware.read()
        return self._post(self._url("updatefirmware"), content)

    def push_cert(self, cert: bytes) -> Result:
        """Upload a PEM certificate bundle."""
        return self._post(self._url("installcertificate"), bytes(cert))

    def push_settings(self, settings: IniFile) -> None:
        """Upload the device settings."""
        self._post(self._url("setsettings"), settings.to_bytes())

    def start_measure(self) -> None:
        """Start measurement."""
        self._action("startmeasurement")

    def stop_measure(self) -> None:
        """Stop measurement."""
        self._action("stopmeasurement")

    def clear_device(self) -> None:
        """Clear device data."""
        self._action("cleardevice?action=cleardevice")

    def reboot(self) -> None:
        """Reboot the device."""
        self._action("reboot?action=reboot")