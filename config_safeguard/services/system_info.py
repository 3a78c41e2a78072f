"""Host and hardware facts recorded in rollback metadata.

Collects kernel, memory, disk and uptime figures with psutil, plus the
GPU list from lspci.
"""

from __future__ import annotations

import getpass
import os
import platform
import re
import socket
import time
from pathlib import Path
from typing import Any, Optional

import psutil

from . import package_manager
from .commands import CommandRunner

GPU_PATTERN = re.compile(r"VGA|3D|Display", re.IGNORECASE)


def operator_user() -> str:
    """The human behind the run, looking through sudo."""
    user = os.environ.get("SUDO_USER") or os.environ.get("USER")
    if user:
        return user
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def hostname() -> str:
    return socket.gethostname()


def kernel_version() -> str:
    return platform.release()


def uptime_seconds() -> int:
    return int(time.time() - psutil.boot_time())


def disk_usage_percent(path: str | Path = "/") -> float:
    return psutil.disk_usage(str(path)).percent


def detect_power_source() -> str:
    """Return "ac", "battery" or "unknown"."""
    try:
        battery = psutil.sensors_battery()
    except (AttributeError, NotImplementedError, OSError):
        return "unknown"
    if battery is None:
        return "ac"
    return "ac" if battery.power_plugged else "battery"


def cpu_model(cpuinfo: Path = Path("/proc/cpuinfo")) -> str:
    try:
        for line in cpuinfo.read_text(encoding="utf-8", errors="replace").splitlines():
            if line.lower().startswith("model name"):
                return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return platform.processor() or "unknown"


def list_gpus(runner: CommandRunner) -> list[str]:
    result = runner.run(["lspci"])
    if not result.ok:
        return []
    return [line.strip() for line in result.stdout.splitlines() if GPU_PATTERN.search(line)]


def collect_system_info(runner: CommandRunner, root: Optional[Path] = None) -> dict[str, Any]:
    """Kernel, hostname, package count, disk usage, architecture and uptime."""
    return {
        "kernel": kernel_version(),
        "hostname": hostname(),
        "package_count": package_manager.count_installed(runner),
        "disk_usage_percent": disk_usage_percent(root or "/"),
        "architecture": platform.machine(),
        "uptime_seconds": uptime_seconds(),
    }


def collect_hardware_info(runner: CommandRunner) -> dict[str, Any]:
    memory = psutil.virtual_memory()
    return {
        "cpu": cpu_model(),
        "gpu": list_gpus(runner),
        "memory_total_mb": memory.total // (1024 * 1024),
    }
