"""Telemetry loop — one device snapshot on connect, then heartbeats.

The snapshot itself comes from an external collector. A basic Linux
collector is provided so the agent can run on its own; hosts with richer
telemetry pass their own callable.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import platform
import shutil
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from .protocol import DeviceInfo, Heartbeat

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 60.0

SnapshotCollector = Callable[[], Any]


# ── Snapshot shape ────────────────────────────────────────────────


@dataclass
class NetworkInfo:
    ip_address: Optional[str] = None
    mac_address: Optional[str] = None
    wifi_ssid: Optional[str] = None
    network_type: str = "unknown"


@dataclass
class StorageInfo:
    total: int = 0
    used: int = 0
    available: int = 0
    percentage_used: float = 0.0


@dataclass
class MemoryInfo:
    total: int = 0
    available: int = 0
    used: int = 0
    percentage_used: float = 0.0


@dataclass
class CpuInfo:
    cores: int = 0
    model: str = ""
    usage: float = 0.0


@dataclass
class BatteryInfo:
    level: int = 0
    scale: int = 100
    percentage: float = 0.0
    status: str = "unknown"
    health: str = "unknown"
    temperature: Optional[float] = None


@dataclass
class DeviceSnapshot:
    """Point-in-time description of the device, sent as ``device_info``."""

    id: str
    name: str = ""
    model: str = ""
    manufacturer: str = ""
    os_version: str = ""
    architecture: str = ""
    device_type: str = "linux"
    network_info: NetworkInfo = field(default_factory=NetworkInfo)
    storage_info: StorageInfo = field(default_factory=StorageInfo)
    memory_info: MemoryInfo = field(default_factory=MemoryInfo)
    cpu_info: CpuInfo = field(default_factory=CpuInfo)
    battery_info: Optional[BatteryInfo] = None
    created_at: str = ""

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


# ── Default collector ─────────────────────────────────────────────


def collect_snapshot(device_id: str) -> DeviceSnapshot:
    """Gather a basic snapshot from the local (Linux) host."""
    uname = platform.uname()
    return DeviceSnapshot(
        id=device_id,
        name=socket.gethostname(),
        model=_read_text("/proc/device-tree/model").rstrip("\x00") or uname.machine,
        manufacturer=_read_text("/sys/class/dmi/id/sys_vendor"),
        os_version=f"{uname.system} {uname.release}",
        architecture=uname.machine,
        network_info=_network_info(),
        storage_info=_storage_info(),
        memory_info=_memory_info(),
        cpu_info=CpuInfo(cores=os.cpu_count() or 0, model=_cpu_model()),
        battery_info=_battery_info(),
        created_at=datetime.now(timezone.utc).isoformat(),
    )


def _read_text(path: str) -> str:
    try:
        with open(path) as f:
            return f.read().strip()
    except OSError:
        return ""


def _network_info() -> NetworkInfo:
    info = NetworkInfo()
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            # No packets are sent; connect() only selects the outbound route
            s.connect(("10.255.255.255", 1))
            info.ip_address = s.getsockname()[0]
    except OSError:
        pass
    return info


def _storage_info(path: str = "/") -> StorageInfo:
    try:
        usage = shutil.disk_usage(path)
    except OSError:
        return StorageInfo()
    pct = (usage.used / usage.total * 100) if usage.total else 0.0
    return StorageInfo(
        total=usage.total, used=usage.used, available=usage.free,
        percentage_used=round(pct, 1),
    )


def _memory_info() -> MemoryInfo:
    fields: dict[str, int] = {}
    for line in _read_text("/proc/meminfo").splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1].isdigit():
            fields[parts[0].rstrip(":")] = int(parts[1]) * 1024
    total = fields.get("MemTotal", 0)
    available = fields.get("MemAvailable", 0)
    used = total - available
    pct = (used / total * 100) if total else 0.0
    return MemoryInfo(total=total, available=available, used=used, percentage_used=round(pct, 1))


def _cpu_model() -> str:
    for line in _read_text("/proc/cpuinfo").splitlines():
        if line.lower().startswith(("model name", "hardware")):
            return line.split(":", 1)[-1].strip()
    return platform.processor()


def _battery_info() -> Optional[BatteryInfo]:
    base = "/sys/class/power_supply/BAT0"
    capacity = _read_text(f"{base}/capacity")
    if not capacity.isdigit():
        return None
    level = int(capacity)
    return BatteryInfo(
        level=level,
        percentage=float(level),
        status=_read_text(f"{base}/status").lower() or "unknown",
        health=_read_text(f"{base}/health").lower() or "unknown",
    )


# ── Loop ──────────────────────────────────────────────────────────


class TelemetryLoop:
    """Sends one ``device_info`` on connect, then a ``heartbeat`` per interval.

    *send* is the connection's single send path; *is_connected* is checked
    at every iteration boundary so the loop ends once the connection leaves
    the connected state.
    """

    def __init__(
        self,
        device_id: str,
        send: Callable[[Any], Awaitable[bool]],
        is_connected: Callable[[], bool],
        collector: Optional[SnapshotCollector] = None,
        interval: float = DEFAULT_HEARTBEAT_INTERVAL,
    ) -> None:
        self.device_id = device_id
        self._send = send
        self._is_connected = is_connected
        self.collector = collector
        self.interval = interval

    async def run(self, closed: asyncio.Event) -> None:
        """Run until *closed* is set or the connection drops."""
        await self.send_snapshot(closed)
        while self._is_connected():
            try:
                await asyncio.wait_for(closed.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if closed.is_set() or not self._is_connected():
                break
            await self._send(Heartbeat(self.device_id, int(time.time() * 1000)))
        logger.debug("Telemetry loop stopped")

    async def send_snapshot(self, closed: asyncio.Event | None = None) -> bool:
        """Collect one snapshot and send it; a failing collector is skipped.

        If *closed* is set by the time collection finishes, the connection the
        snapshot was meant for is gone and the snapshot is dropped.
        """
        if self.collector is None:
            return False
        loop = asyncio.get_running_loop()
        try:
            snapshot = await loop.run_in_executor(None, self.collector)
        except Exception:
            logger.exception("Device snapshot collection failed")
            return False
        if closed is not None and closed.is_set():
            logger.debug("Connection closed during collection, dropping snapshot")
            return False
        sent = await self._send(DeviceInfo(self.device_id, snapshot))
        if sent:
            logger.debug("Device info sent")
        return sent
