"""Recovery procedures, one class per failure class.

A procedure turns its arguments into an ordered list of :class:`RecoveryStep`.
Corrective steps come first and the list ends with steps that only verify
the result. Each step action returns True on success; the registry runs the
steps, counts successes and scores the run against ``threshold``.
"""

from __future__ import annotations

import os
import re
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from config_safeguard.domain.models import FailureClass
from config_safeguard.logging import LoggerFactory
from config_safeguard.services import kernel_modules, package_manager, service_manager, system_info

from .context import RecoveryContext

log = LoggerFactory.for_recovery("procedures")

DISPLAY_MANAGER = "display-manager"
UNIT_NAME_PATTERN = re.compile(r"[A-Za-z0-9@._:-]+\.(service|target|socket|timer|mount|path)")


@dataclass(frozen=True)
class RecoveryStep:
    name: str
    action: Callable[[], bool]
    verifies: bool = False


class RecoveryProcedure:
    """Base class for a recovery procedure.

    Subclasses set ``failure_class``, ``mechanism``, ``threshold`` and
    ``description`` and implement :meth:`build_steps`.
    """

    failure_class: FailureClass
    mechanism: str
    threshold: int
    description: str = ""

    def build_steps(self, ctx: RecoveryContext, *args: str) -> list[RecoveryStep]:
        raise NotImplementedError

    def subject(self, ctx: RecoveryContext, *args: str) -> str:
        """What the recovery is about, for the log line."""
        return args[0] if args else "system"


def _restart_if_active(ctx: RecoveryContext, unit: str) -> bool:
    if not service_manager.is_active(ctx.runner, unit):
        log.debug(f"{unit} is not active, nothing to restart")
        return True
    return service_manager.restart(ctx.runner, unit).ok


# ==============================================================================
# Packages and services
# ==============================================================================


class PackageInstallRecovery(RecoveryProcedure):
    failure_class = FailureClass.PACKAGE_INSTALL
    mechanism = "package_install"
    threshold = 80
    description = "Refresh package databases, cache and keyring, then retry the install"

    def subject(self, ctx: RecoveryContext, *args: str) -> str:
        return args[0] if args else "unknown"

    def build_steps(self, ctx: RecoveryContext, *args: str) -> list[RecoveryStep]:
        package = args[0] if args else ""
        runner = ctx.runner

        def repair_database() -> bool:
            if package_manager.check_database(runner).ok:
                return True
            broken = package_manager.broken_packages(runner)
            if not broken:
                log.warning("Package database check failed but no broken package was found")
                return False
            log.info(f"Reinstalling broken packages: {' '.join(broken)}")
            return package_manager.reinstall(runner, broken).ok

        steps = [
            RecoveryStep("Update package database", lambda: package_manager.sync_databases(runner).ok),
            RecoveryStep("Clear package cache", lambda: package_manager.clean_cache(runner).ok),
            RecoveryStep("Update keyring", lambda: package_manager.refresh_keyring(runner).ok),
            RecoveryStep("Check for broken packages", repair_database),
        ]
        if package:
            steps.append(
                RecoveryStep(
                    f"Retry installation of {package}",
                    lambda: package_manager.install(runner, [package]).ok,
                )
            )
            steps.append(
                RecoveryStep(
                    f"Verify {package} is installed",
                    lambda: package_manager.is_installed(runner, package),
                    verifies=True,
                )
            )
        else:
            steps.append(
                RecoveryStep(
                    "Verify package database",
                    lambda: package_manager.check_database(runner).ok,
                    verifies=True,
                )
            )
        return steps


class ServiceStartRecovery(RecoveryProcedure):
    failure_class = FailureClass.SERVICE_START
    mechanism = "service_start"
    threshold = 80
    description = "Stop, reset and restart a failed systemd unit"

    def build_steps(self, ctx: RecoveryContext, *args: str) -> list[RecoveryStep]:
        if not args or not args[0]:
            raise ValueError("service_start_failure needs the name of the service")
        unit = args[0]
        runner = ctx.runner

        def stop() -> bool:
            # The unit is usually already dead; a failed stop is expected.
            result = service_manager.stop(runner, unit)
            if not result.ok:
                log.debug(f"Stop of {unit} returned {result.returncode}")
            return True

        def reset_failed() -> bool:
            service_manager.reset_failed(runner, unit)
            return True

        def check_dependencies() -> bool:
            result = service_manager.list_dependencies(runner, unit)
            if not result.ok:
                return False
            dependencies = []
            for line in result.stdout.splitlines()[1:]:
                match = UNIT_NAME_PATTERN.search(line)
                if match:
                    dependencies.append(match.group(0))
            inactive = [
                dep for dep in dependencies[:5] if not service_manager.is_active(runner, dep)
            ]
            for dep in inactive:
                log.warning(f"Dependency {dep} is not active")
            return not inactive

        return [
            RecoveryStep(f"Stop {unit}", stop),
            RecoveryStep(f"Reset failed state of {unit}", reset_failed),
            RecoveryStep("Reload systemd daemon", lambda: service_manager.daemon_reload(runner).ok),
            RecoveryStep(f"Check dependencies of {unit}", check_dependencies),
            RecoveryStep(f"Start {unit}", lambda: service_manager.start(runner, unit).ok),
            RecoveryStep(
                f"Verify {unit} is active",
                lambda: service_manager.is_active(runner, unit),
                verifies=True,
            ),
        ]


# ==============================================================================
# Graphics
# ==============================================================================


GPU_TYPES = ("nvidia", "amd", "both")
NVIDIA_MODULES = ("nvidia", "nvidia_modeset", "nvidia_drm")
AMD_MODULES = ("amdgpu",)
DRM_CARD = "/sys/class/drm/card0"


class GpuDriverRecovery(RecoveryProcedure):
    failure_class = FailureClass.GPU_DRIVER
    mechanism = "gpu_driver"
    threshold = 70
    description = "Reload the GPU kernel modules and restart the display manager"

    def subject(self, ctx: RecoveryContext, *args: str) -> str:
        return args[0] if args else "both"

    def build_steps(self, ctx: RecoveryContext, *args: str) -> list[RecoveryStep]:
        gpu_type = args[0] if args else "both"
        if gpu_type not in GPU_TYPES:
            raise ValueError(f"Unknown GPU type {gpu_type!r}, expected one of {', '.join(GPU_TYPES)}")
        runner = ctx.runner
        modules: tuple[str, ...] = ()
        if gpu_type in ("amd", "both"):
            modules += AMD_MODULES
        if gpu_type in ("nvidia", "both"):
            modules += NVIDIA_MODULES

        def unload() -> bool:
            loaded = kernel_modules.loaded_modules(runner)
            # Dependent modules first: nvidia_drm before nvidia.
            results = [
                kernel_modules.unload(runner, module).ok
                for module in reversed(modules)
                if module in loaded
            ]
            return all(results)

        def settle() -> bool:
            ctx.sleep(3)
            return True

        def load() -> bool:
            return all([kernel_modules.load(runner, module).ok for module in modules])

        def test_nvidia() -> bool:
            if gpu_type not in ("nvidia", "both"):
                return True
            return runner.run(["nvidia-smi"]).ok

        def test_amd() -> bool:
            if gpu_type not in ("amd", "both"):
                return True
            return kernel_modules.is_loaded(runner, "amdgpu") and ctx.path(DRM_CARD).exists()

        return [
            RecoveryStep("Unload GPU kernel modules", unload),
            RecoveryStep("Wait for modules to settle", settle),
            RecoveryStep("Load GPU kernel modules", load),
            RecoveryStep("Restart display manager", lambda: _restart_if_active(ctx, DISPLAY_MANAGER)),
            RecoveryStep("Test NVIDIA driver", test_nvidia, verifies=True),
            RecoveryStep("Test AMD driver", test_amd, verifies=True),
        ]


XORG_CONFIG_DIR = "/etc/X11/xorg.conf.d"
XORG_RECOVERY_DIR = "/etc/X11/xorg.conf.d.recovery"
DEFAULT_XORG_CONFIG = "/etc/X11/xorg.conf.d/10-hybrid.conf"
MINIMAL_XORG_CONFIG = "/etc/X11/xorg.conf.d/10-minimal-recovery.conf"
MINIMAL_XORG_CONTENT = """\
Section "Device"
    Identifier "AMD"
    Driver "amdgpu"
    BusID "PCI:6:0:0"
    Option "TearFree" "true"
EndSection

Section "Screen"
    Identifier "AMD"
    Device "AMD"
EndSection
"""


class DisplayConfigRecovery(RecoveryProcedure):
    failure_class = FailureClass.DISPLAY_CONFIG
    mechanism = "xorg_config"
    threshold = 80
    description = "Replace a broken Xorg configuration with a minimal integrated-GPU one"

    def subject(self, ctx: RecoveryContext, *args: str) -> str:
        return args[0] if args else DEFAULT_XORG_CONFIG

    def build_steps(self, ctx: RecoveryContext, *args: str) -> list[RecoveryStep]:
        config = args[0] if args else DEFAULT_XORG_CONFIG
        runner = ctx.runner
        minimal = ctx.path(MINIMAL_XORG_CONFIG)

        def back_up() -> bool:
            ctx.policy.validate(XORG_RECOVERY_DIR)
            source = ctx.path(XORG_CONFIG_DIR)
            if not source.is_dir() or not any(source.iterdir()):
                log.warning(f"No Xorg configuration to back up in {XORG_CONFIG_DIR}")
                return False
            shutil.copytree(source, ctx.path(XORG_RECOVERY_DIR), dirs_exist_ok=True)
            return True

        def remove_config() -> bool:
            ctx.policy.validate(config)
            target = ctx.path(config)
            if target.exists():
                target.unlink()
                log.info(f"Removed problematic configuration: {config}")
            return True

        def write_minimal() -> bool:
            ctx.policy.validate(MINIMAL_XORG_CONFIG)
            minimal.parent.mkdir(parents=True, exist_ok=True)
            minimal.write_text(MINIMAL_XORG_CONTENT, encoding="utf-8")
            return True

        def display_manager_running() -> bool:
            if not service_manager.is_enabled(runner, DISPLAY_MANAGER):
                return True
            return service_manager.is_active(runner, DISPLAY_MANAGER)

        return [
            RecoveryStep("Back up Xorg configuration", back_up),
            RecoveryStep(f"Remove {config}", remove_config),
            RecoveryStep("Write minimal recovery configuration", write_minimal),
            RecoveryStep(
                "Test configuration syntax",
                lambda: runner.run(["Xorg", "-config", str(minimal), "-configtest"]).ok,
            ),
            RecoveryStep("Restart display manager", lambda: _restart_if_active(ctx, DISPLAY_MANAGER)),
            RecoveryStep("Verify display manager", display_manager_running, verifies=True),
        ]


# ==============================================================================
# Power and vendor tools
# ==============================================================================


CONFLICTING_POWER_SERVICES = ("power-profiles-daemon", "laptop-mode-tools")
CPU_GOVERNOR = "/sys/devices/system/cpu/cpu0/cpufreq/scaling_governor"


class PowerManagementRecovery(RecoveryProcedure):
    failure_class = FailureClass.POWER_MANAGEMENT
    mechanism = "power_management"
    threshold = 80
    description = "Stop conflicting power daemons and restart TLP and auto-cpufreq"

    def subject(self, ctx: RecoveryContext, *args: str) -> str:
        component = args[0] if args else "all"
        return f"{component} (power source: {ctx.power_source})"

    def build_steps(self, ctx: RecoveryContext, *args: str) -> list[RecoveryStep]:
        runner = ctx.runner

        def stop_conflicts() -> bool:
            results = [
                service_manager.stop(runner, unit).ok
                for unit in CONFLICTING_POWER_SERVICES
                if service_manager.is_active(runner, unit)
            ]
            return all(results)

        def check_governor() -> bool:
            governor = ctx.path(CPU_GOVERNOR)
            if not governor.is_file():
                return False
            value = governor.read_text(encoding="utf-8").strip()
            log.info(f"CPU governor: {value}")
            return bool(value)

        return [
            RecoveryStep("Stop conflicting power services", stop_conflicts),
            RecoveryStep("Restart TLP", lambda: service_manager.restart(runner, "tlp").ok),
            RecoveryStep(
                "Restart auto-cpufreq", lambda: service_manager.restart(runner, "auto-cpufreq").ok
            ),
            RecoveryStep("Check CPU governor", check_governor, verifies=True),
            RecoveryStep("Test TLP", lambda: runner.run(["tlp-stat", "-s"]).ok, verifies=True),
        ]


VENDOR_SERVICES = ("asusd.service", "supergfxd.service")
VENDOR_HARDWARE_PATHS = ("/sys/class/leds/asus::kbd_backlight", "/sys/devices/platform/asus-nb-wmi")


class VendorToolsRecovery(RecoveryProcedure):
    failure_class = FailureClass.VENDOR_TOOLS
    mechanism = "asus_tools"
    threshold = 75
    description = "Restart the ASUS daemons and check their command line tools"

    def subject(self, ctx: RecoveryContext, *args: str) -> str:
        return args[0] if args else "all"

    def build_steps(self, ctx: RecoveryContext, *args: str) -> list[RecoveryStep]:
        runner = ctx.runner

        def restart_daemons() -> bool:
            results = [
                service_manager.restart(runner, unit).ok
                for unit in VENDOR_SERVICES
                if service_manager.unit_exists(runner, unit)
            ]
            return all(results)

        def hardware_access() -> bool:
            return any(ctx.path(path).exists() for path in VENDOR_HARDWARE_PATHS)

        return [
            RecoveryStep("Restart ASUS services", restart_daemons),
            RecoveryStep("Test asusctl", lambda: runner.run(["asusctl", "--version"]).ok, verifies=True),
            RecoveryStep(
                "Test supergfxctl", lambda: runner.run(["supergfxctl", "--version"]).ok, verifies=True
            ),
            RecoveryStep("Check ASUS hardware access", hardware_access, verifies=True),
        ]


# ==============================================================================
# Network, disk, files
# ==============================================================================


PING_TARGETS = (("Test connectivity", "8.8.8.8"), ("Test DNS resolution", "archlinux.org"))
NETWORK_SETTLE_SECONDS = 5


class NetworkRecovery(RecoveryProcedure):
    failure_class = FailureClass.NETWORK
    mechanism = "network"
    threshold = 66
    description = "Restart NetworkManager and check connectivity and name resolution"

    def subject(self, ctx: RecoveryContext, *args: str) -> str:
        return args[0] if args else "auto"

    def build_steps(self, ctx: RecoveryContext, *args: str) -> list[RecoveryStep]:
        runner = ctx.runner
        wait = ctx.network_timeout

        def restart() -> bool:
            ok = service_manager.restart(runner, "NetworkManager").ok
            ctx.sleep(NETWORK_SETTLE_SECONDS)
            return ok

        def ping(host: str) -> Callable[[], bool]:
            def check() -> bool:
                result = runner.run(["ping", "-c", "1", "-W", str(wait), host], timeout=wait * 2)
                if result.timed_out:
                    log.warning(f"No reply from {host} within {wait * 2}s")
                return result.ok

            return check

        steps = [RecoveryStep("Restart NetworkManager", restart)]
        steps += [RecoveryStep(name, ping(host), verifies=True) for name, host in PING_TARGETS]
        return steps


class DiskSpaceRecovery(RecoveryProcedure):
    failure_class = FailureClass.DISK_SPACE
    mechanism = "disk_space"
    threshold = 75
    description = "Free space by cleaning caches, old journals and orphaned packages"

    def _limit(self, ctx: RecoveryContext, args: tuple[str, ...]) -> int:
        if not args:
            return ctx.disk_threshold_percent
        try:
            return int(args[0])
        except ValueError:
            raise ValueError(f"Disk usage threshold must be a percentage, got {args[0]!r}") from None

    def subject(self, ctx: RecoveryContext, *args: str) -> str:
        return f"threshold {self._limit(ctx, args)}%"

    def build_steps(self, ctx: RecoveryContext, *args: str) -> list[RecoveryStep]:
        limit = self._limit(ctx, args)
        runner = ctx.runner

        def remove_orphans() -> bool:
            orphans = package_manager.list_orphans(runner)
            if not orphans:
                log.debug("No orphaned packages")
                return True
            log.info(f"Removing {len(orphans)} orphaned package(s)")
            return package_manager.remove(runner, orphans).ok

        def check_usage() -> bool:
            usage = system_info.disk_usage_percent(ctx.system_root)
            log.info(f"Disk usage: {usage:.0f}% (threshold {limit}%)")
            return usage < limit

        return [
            RecoveryStep("Clean package cache", lambda: package_manager.clean_cache(runner).ok),
            RecoveryStep(
                "Vacuum old journal logs", lambda: service_manager.journal_vacuum(runner, "7d").ok
            ),
            RecoveryStep("Remove orphaned packages", remove_orphans),
            RecoveryStep("Check disk usage", check_usage, verifies=True),
        ]


DIRECTORY_MODE = 0o755
FILE_MODE = 0o644


class PermissionRecovery(RecoveryProcedure):
    failure_class = FailureClass.PERMISSION
    mechanism = "permission"
    threshold = 66
    description = "Reset a path to the standard directory or file mode"

    def build_steps(self, ctx: RecoveryContext, *args: str) -> list[RecoveryStep]:
        if not args or not args[0]:
            raise ValueError("permission_failure needs the affected path")
        logical = args[0]
        target = ctx.path(logical)

        def expected_mode() -> Optional[int]:
            if target.is_dir():
                return DIRECTORY_MODE
            if target.is_file():
                return FILE_MODE
            return None

        def inspect() -> bool:
            if target.exists():
                mode = stat.S_IMODE(target.stat().st_mode)
                log.info(f"Current permissions of {logical}: {mode:o}")
            return True

        def fix() -> bool:
            ctx.policy.validate(logical)
            mode = expected_mode()
            if mode is None:
                return True
            os.chmod(target, mode)
            return True

        def verify() -> bool:
            mode = expected_mode()
            return mode is not None and stat.S_IMODE(target.stat().st_mode) == mode

        return [
            RecoveryStep(f"Check {logical} exists", target.exists),
            RecoveryStep("Inspect current permissions", inspect),
            RecoveryStep("Fix permissions", fix),
            RecoveryStep("Verify permissions", verify, verifies=True),
        ]


CORRUPTED_SUFFIX = ".corrupted-"
BACKUP_MARKERS = (".backup", ".pre-restore-")


def latest_backup(target: Path) -> Optional[Path]:
    """Most recently modified ``<name>.backup*`` or ``<name>.pre-restore-*`` sibling."""
    if not target.parent.is_dir():
        return None
    candidates = [
        sibling
        for sibling in target.parent.iterdir()
        if sibling.is_file()
        and any(sibling.name.startswith(target.name + marker) for marker in BACKUP_MARKERS)
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda candidate: candidate.stat().st_mtime)


def accepts_default(logical: str) -> bool:
    return logical.endswith(".conf") or "/xorg.conf.d/" in logical


class ConfigCorruptionRecovery(RecoveryProcedure):
    failure_class = FailureClass.CONFIG_CORRUPTION
    mechanism = "config_corruption"
    threshold = 66
    description = "Set a corrupted file aside and restore the newest backup of it"

    def build_steps(self, ctx: RecoveryContext, *args: str) -> list[RecoveryStep]:
        if not args or not args[0]:
            raise ValueError("config_corruption needs the affected configuration file")
        logical = args[0]
        target = ctx.path(logical)
        found: dict[str, Path] = {}

        def set_aside() -> bool:
            ctx.policy.validate(logical)
            if not target.exists():
                return True
            stamp = ctx.clock().strftime("%Y%m%d_%H%M%S")
            aside = target.with_name(f"{target.name}{CORRUPTED_SUFFIX}{stamp}")
            shutil.copy2(target, aside)
            log.info(f"Corrupted configuration kept as {aside}")
            return True

        def find_backup() -> bool:
            backup = latest_backup(target)
            if backup is None:
                log.warning(f"No backup found for {logical}")
                return False
            found["backup"] = backup
            return True

        def restore() -> bool:
            ctx.policy.validate(logical)
            backup = found.get("backup")
            if backup is not None:
                shutil.copy2(backup, target)
                log.info(f"Restored {logical} from {backup.name}")
                return True
            if accepts_default(logical):
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(
                    f"# Default configuration restored {ctx.clock().isoformat(timespec='seconds')}\n",
                    encoding="utf-8",
                )
                log.info(f"Wrote default configuration to {logical}")
                return True
            return False

        def verify() -> bool:
            return target.is_file() and target.stat().st_size > 0

        return [
            RecoveryStep("Back up corrupted configuration", set_aside),
            RecoveryStep("Look for a configuration backup", find_backup),
            RecoveryStep("Restore configuration", restore),
            RecoveryStep("Verify configuration", verify, verifies=True),
        ]


def default_procedures() -> list[RecoveryProcedure]:
    return [
        PackageInstallRecovery(),
        ServiceStartRecovery(),
        GpuDriverRecovery(),
        DisplayConfigRecovery(),
        PowerManagementRecovery(),
        VendorToolsRecovery(),
        NetworkRecovery(),
        DiskSpaceRecovery(),
        PermissionRecovery(),
        ConfigCorruptionRecovery(),
    ]
