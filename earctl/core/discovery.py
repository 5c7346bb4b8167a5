"""Bluetooth discovery collaborator backed by the BlueZ command line tools."""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Sequence
from typing import Protocol

from earctl.core.errors import DiscoveryError, DiscoveryTimeoutError, ServiceNotFoundError
from earctl.core.model import BluetoothDevice

NOTHING_SPP_UUID = "aeac4a03-dff5-498f-843a-34487cf133eb"
NOTHING_SERVICE_NAME = "nt link"

_DEVICE_LINE_RE = re.compile(r"^Device\s+([0-9A-F:]{17})\s+(.+)$", re.IGNORECASE)
_MAC_RE = re.compile(r"([0-9A-F]{2}(?::[0-9A-F]{2}){5})", re.IGNORECASE)
_CHANNEL_RE = re.compile(r"^Channel:\s*(\d+)$")
LOGGER = logging.getLogger(__name__)


class Discovery(Protocol):
    def list_connected_devices(self, name_filter: str | None = None) -> list[BluetoothDevice]:
        """Return currently connected peers, optionally filtered by name substring."""

    def resolve_channel(self, address: str, service_hint: str = NOTHING_SPP_UUID) -> int:
        """Return the RFCOMM channel serving the vendor SPP service on ``address``."""


class BluezDiscovery:
    def __init__(self, *, timeout_s: float = 10.0) -> None:
        self.timeout_s = timeout_s

    def list_connected_devices(self, name_filter: str | None = None) -> list[BluetoothDevice]:
        devices = _discover_devices(self.timeout_s)
        if name_filter:
            needle = name_filter.lower()
            devices = [device for device in devices if needle in device.name.lower()]
        return devices

    def resolve_channel(self, address: str, service_hint: str = NOTHING_SPP_UUID) -> int:
        cmd = ["sdptool", "search", "--bdaddr", address, "SP"]
        result = _run_discovery_command(cmd, self.timeout_s)
        if result is None:
            raise DiscoveryError("sdptool is not installed; cannot resolve the RFCOMM channel")
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise DiscoveryError(f"{' '.join(cmd)} failed: {stderr or f'exit status {result.returncode}'}")

        channel = parse_sdp_channel(result.stdout, service_hint)
        if channel is None:
            raise ServiceNotFoundError(
                f"No SPP service record for {address}; pass a channel explicitly "
                "or open the vendor app once to expose the NT LINK service"
            )
        LOGGER.debug("Resolved RFCOMM channel %d for %s", channel, address)
        return channel


def parse_sdp_channel(output: str, service_hint: str = NOTHING_SPP_UUID) -> int | None:
    hint = service_hint.lower()
    tracking_target = False
    for line in output.splitlines():
        trimmed = line.strip()
        if trimmed.startswith("Service Name:"):
            # Each record starts with its name; reset the match state.
            tracking_target = NOTHING_SERVICE_NAME in trimmed.lower()
            continue
        if trimmed.startswith("UUID 128:"):
            if hint in trimmed.lower():
                tracking_target = True
            continue
        match = _CHANNEL_RE.match(trimmed)
        if match and tracking_target:
            return int(match.group(1))
    return None


def _discover_devices(timeout_s: float) -> list[BluetoothDevice]:
    bluetoothctl_commands = [["bluetoothctl", "devices", "Connected"]]
    fallback_commands = [["hcitool", "con"]]

    seen: set[str] = set()
    devices: list[BluetoothDevice] = []
    command_errors: list[str] = []
    timed_out: DiscoveryTimeoutError | None = None

    for cmd in bluetoothctl_commands:
        try:
            result = _run_discovery_command(cmd, timeout_s)
        except DiscoveryTimeoutError as exc:
            LOGGER.warning("%s; trying the next discovery tool", exc)
            command_errors.append(str(exc))
            timed_out = exc
            continue
        if result is None:
            continue
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            if stderr:
                command_errors.append(f"{' '.join(cmd)} -> {stderr}")
            continue

        for line in result.stdout.splitlines():
            match = _DEVICE_LINE_RE.match(line.strip())
            if not match:
                continue
            address, name = match.group(1).upper(), match.group(2).strip()
            if address in seen:
                continue
            seen.add(address)
            devices.append(BluetoothDevice(address=address, name=name))

    if devices:
        return devices

    for cmd in fallback_commands:
        try:
            result = _run_discovery_command(cmd, timeout_s)
        except DiscoveryTimeoutError as exc:
            LOGGER.warning("%s", exc)
            command_errors.append(str(exc))
            timed_out = exc
            continue
        if result is None:
            continue
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            if stderr:
                command_errors.append(f"{' '.join(cmd)} -> {stderr}")
            continue

        for line in result.stdout.splitlines():
            match = _MAC_RE.search(line)
            if not match:
                continue
            address = match.group(1).upper()
            if address in seen:
                continue
            seen.add(address)
            devices.append(BluetoothDevice(address=address, name="<unknown-device>"))

    if devices:
        return devices

    if command_errors:
        joined = " | ".join(command_errors)
        if timed_out is not None:
            raise DiscoveryTimeoutError(f"Bluetooth discovery timed out. Details: {joined}") from timed_out
        raise DiscoveryError(
            f"Bluetooth discovery failed. Ensure a working D-Bus/BlueZ session. Details: {joined}"
        )

    return devices


def _run_discovery_command(cmd: Sequence[str], timeout_s: float) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except FileNotFoundError:
        return None
    except subprocess.TimeoutExpired as exc:
        raise DiscoveryTimeoutError(f"{' '.join(cmd)} did not finish within {timeout_s:g}s") from exc
