"""Firmware version checks and upgrades."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Protocol

from .api import API

log = logging.getLogger(__name__)

_INT64_MAX = 2**63 - 1

_VERSION = re.compile(
    r"v?([0-9]+(\.[0-9]+)*?)"
    r"(-([0-9]+[0-9A-Za-z\-~]*(\.[0-9A-Za-z\-~]+)*)"
    r"|(-?([A-Za-z\-~]+[0-9A-Za-z\-~]*(\.[0-9A-Za-z\-~]+)*)))?"
    r"(\+([0-9A-Za-z\-~]+(\.[0-9A-Za-z\-~]+)*))??"
)

_FIRMWARE_PREFIX = "sentinel_fw_v"


def _compare_part(mine: str, theirs: str) -> int:
    if mine == theirs:
        return 0
    mine_num = _INT_PART.fullmatch(mine) is not None and int(mine) <= _INT64_MAX
    theirs_num = _INT_PART.fullmatch(theirs) is not None and int(theirs) <= _INT64_MAX
    if mine == "":
        return -1 if theirs_num else 1
    if theirs == "":
        return 1 if mine_num else -1
    if mine_num and not theirs_num:
        return -1
    if not mine_num and theirs_num:
        return 1
    if not mine_num and not theirs_num:
        return 1 if mine > theirs else -1
    return 1 if int(mine) > int(theirs) else -1


_INT_PART = re.compile(r"[+-]?[0-9]+")


def _compare_prereleases(mine: str, theirs: str) -> int:
    if mine == theirs:
        return 0
    mine_parts = mine.split(".")
    theirs_parts = theirs.split(".")
    for index in range(max(len(mine_parts), len(theirs_parts))):
        left = mine_parts[index] if index < len(mine_parts) else ""
        right = theirs_parts[index] if index < len(theirs_parts) else ""
        result = _compare_part(left, right)
        if result:
            return result
    return 0


@dataclass(frozen=True)
class FirmwareVersion:
    """A dotted version with optional pre-release and metadata parts."""

    segments: tuple[int, ...]
    pre: str = ""
    metadata: str = ""
    original: str = field(default="", compare=False)

    @classmethod
    def parse(cls, text: str) -> FirmwareVersion:
        """Parse ``text``; raise ValueError if it is not a version."""
        match = _VERSION.fullmatch(text)
        if match is None:
            raise ValueError(f"Malformed version: {text}")
        segments = []
        for part in match.group(1).split("."):
            number = int(part)
            if number > _INT64_MAX:
                raise ValueError(f"Error parsing version: {text}")
            segments.append(number)
        while len(segments) < 3:
            segments.append(0)
        pre = match.group(7) or match.group(4) or ""
        metadata = match.group(10) or ""
        return cls(tuple(segments), pre, metadata, text)

    def __str__(self) -> str:
        text = ".".join(str(s) for s in self.segments)
        if self.pre:
            text += f"-{self.pre}"
        if self.metadata:
            text += f"+{self.metadata}"
        return text

    def compare(self, other: FirmwareVersion) -> int:
        """Return -1, 0 or 1 as this version is lower, equal or higher."""
        if str(self) == str(other):
            return 0
        mine, theirs = self.segments, other.segments
        if mine == theirs:
            if not self.pre and not other.pre:
                return 0
            if not self.pre:
                return 1
            if not other.pre:
                return -1
            return _compare_prereleases(self.pre, other.pre)

        for index in range(max(len(mine), len(theirs))):
            if index >= len(mine):
                return -1 if any(theirs[index:]) else 0
            if index >= len(theirs):
                return 1 if any(mine[index:]) else 0
            if mine[index] != theirs[index]:
                return -1 if mine[index] < theirs[index] else 1
        return 0

    def __lt__(self, other: FirmwareVersion) -> bool:
        return self.compare(other) < 0

    def __le__(self, other: FirmwareVersion) -> bool:
        return self.compare(other) <= 0

    def __gt__(self, other: FirmwareVersion) -> bool:
        return self.compare(other) > 0

    def __ge__(self, other: FirmwareVersion) -> bool:
        return self.compare(other) >= 0


class FirmwareSource(Protocol):
    """Something that knows the latest firmware and where its file is."""

    def version(self) -> FirmwareVersion: ...

    def path(self) -> str: ...


def _base_name(path: str) -> str:
    stripped = path.rstrip(os.sep + (os.altsep or ""))
    if not stripped:
        return os.sep if path else "."
    return os.path.basename(stripped)


@dataclass
class OSSFirmware:
    """A firmware file whose version is encoded in its name."""

    filepath: str

    def version(self) -> FirmwareVersion:
        """Return the version named by the file, like ``sentinel_fw_v2.13.1.0.tar``."""
        base = _base_name(self.filepath)
        dot = base.rfind(".")
        if dot >= 0:
            base = base[:dot]
        return FirmwareVersion.parse(base.replace(_FIRMWARE_PREFIX, "").lower())

    def path(self) -> str:
        """Return the local path of the firmware file."""
        return self.filepath


def update_firmware(
    target: str, insecure_tls: bool, fw: FirmwareSource, apply: bool
) -> None:
    """Upgrade the device firmware if it is older than ``fw`` and ``apply`` is set."""
    device = API(target, insecure_tls)
    running = FirmwareVersion.parse(device.fetch_version().firmware.lower())
    latest = fw.version()
    if running >= latest:
        log.info("no update is required")
        return

    log.info("%s is running %s, latest is %s. Needs an update", target, running, latest)

    if not apply:
        log.info("dry run. Exiting")
        return

    status = device.fetch_status()
    if status.measurement_active:
        log.info("stopping measurement")
        device.stop_measure()
    log.info("updating firmware")
    device.push_version(fw.path())