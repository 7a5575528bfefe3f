"""Export of measurement data from the device as JSON lines."""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import TextIO

from .api import API, APIError, Channel

log = logging.getLogger(__name__)

ERR_NO_USED_CHANNELS = "no used channels"
ERR_NO_TARGET = "no target succeeds"

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_INTEGER = re.compile(r"[+-]?[0-9]+")


class ExportError(Exception):
    """Raised when no data could be exported."""


@dataclass
class FloatData:
    """The measured value of a sample."""

    value: float


@dataclass
class IntData:
    """The timestamp of a sample, in whole seconds."""

    time: int


@dataclass
class NormalData:
    """Where a sample comes from and what it measures."""

    channel: str
    target: str
    protocol: str
    source: str


def _json_float(value: float) -> str:
    """Format a float the way the export format expects it."""
    if not math.isfinite(value):
        raise ValueError(f"unsupported value: {value!r}")
    magnitude = abs(value)
    if magnitude != 0 and (magnitude < 1e-6 or magnitude >= 1e21):
        mantissa, _, exponent = repr(value).partition("e")
        sign, digits = exponent[0], exponent[1:]
        if sign == "-" and len(digits) == 2 and digits[0] == "0":
            digits = digits[1:]
        return f"{mantissa}e{sign}{digits}"
    return format(Decimal(repr(value)).normalize(), "f")


def _json_string(value: str) -> str:
    return (
        json.dumps(value, ensure_ascii=False)
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


@dataclass
class Entry:
    """One exported sample."""

    float_data: FloatData
    int_data: IntData
    normal: NormalData

    def to_json(self) -> str:
        """Serialise the entry as a compact JSON object."""
        n = self.normal
        normal = ",".join(
            f'"{key}":{_json_string(value)}'
            for key, value in (
                ("channel", n.channel),
                ("target", n.target),
                ("protocol", n.protocol),
                ("source", n.source),
            )
        )
        return (
            f'{{"float":{{"value":{_json_float(self.float_data.value)}}},'
            f'"int":{{"time":{self.int_data.time}}},'
            f'"normal":{{{normal}}}}}'
        )


def _parse_float(text: str) -> float:
    if not text or "_" in text or text != text.strip():
        raise ValueError(f"invalid value: {text!r}")
    value = float(text)
    if math.isinf(value) and "inf" not in text.lower():
        raise ValueError(f"value out of range: {text!r}")
    return value


def entry_from_csv(
    csv_line: Sequence[str], channel: str, target: str, protocol: str, source: str
) -> Entry:
    """Build an entry from a ``timestamp,value`` CSV row."""
    if len(csv_line) < 2:
        raise ValueError(f"csv line needs a timestamp and a value: {list(csv_line)!r}")
    seconds = csv_line[0].split(".")[0]
    if not _INTEGER.fullmatch(seconds):
        raise ValueError(f"invalid timestamp: {csv_line[0]!r}")
    timestamp = int(seconds)
    if not _INT64_MIN <= timestamp <= _INT64_MAX:
        raise ValueError(f"timestamp out of range: {csv_line[0]!r}")
    value = _parse_float(csv_line[1])
    return Entry(
        float_data=FloatData(value=value),
        int_data=IntData(time=timestamp),
        normal=NormalData(
            channel=channel, target=target, protocol=protocol, source=source
        ),
    )


def export(
    source: str,
    insecure_tls: bool,
    channels: Iterable[Channel],
    output: TextIO,
) -> None:
    """Write the data of ``channels`` (or all used channels) to ``output``."""
    device = API(source, insecure_tls)
    selected = list(channels)
    if not selected:
        try:
            selected = device.fetch_used_channels()
        except APIError as exc:
            raise ExportError(ERR_NO_USED_CHANNELS) from exc

    success = False
    for channel in selected:
        try:
            probe = device.fetch_channel_probe(channel)
        except APIError as exc:
            log.error("Failed to fetch protocol from the channel %s: %s", channel, exc)
            continue
        try:
            target = device.fetch_channel_target_ip(channel, probe)
        except APIError as exc:
            log.error("Failed to fetch target from the channel %s: %s", channel, exc)
            continue
        try:
            rows = device.fetch_csv(channel)
        except APIError as exc:
            log.error("Failed to fetch data from channel %s: %s", channel, exc)
            continue

        printed = True
        for row in rows:
            try:
                entry = entry_from_csv(row, str(channel), target, str(probe), source)
            except ValueError as exc:
                printed = False
                log.error(
                    "Failed to generate scribe line for data channel %s: %s",
                    channel,
                    exc,
                )
                break
            try:
                line = entry.to_json()
            except ValueError:
                line = ""
            output.write(line + "\n")
        success = success or printed

    if not success:
        raise ExportError(ERR_NO_TARGET)