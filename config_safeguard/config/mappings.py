"""The table of system configuration files captured by snapshots.

Each entry pairs a live system file with the provisioning toolset's managed
copy of it (relative to the project directory unless absolute). The table
can be replaced by a plain text file of ``source:target:description`` lines.
"""

from __future__ import annotations

from pathlib import Path

from config_safeguard.domain.models import FileMapping


DEFAULT_FILE_MAPPINGS: tuple[FileMapping, ...] = (
    # Xorg
    FileMapping(
        "/etc/X11/xorg.conf.d/10-hybrid.conf",
        "configs/xorg/10-hybrid.conf",
        "Xorg hybrid GPU configuration",
    ),
    FileMapping("/etc/X11/xorg.conf", "/etc/X11/xorg.conf", "Xorg main configuration"),
    # Power management
    FileMapping("/etc/tlp.conf", "configs/tlp/tlp.conf", "TLP power management configuration"),
    FileMapping(
        "/etc/auto-cpufreq.conf",
        "configs/auto-cpufreq/auto-cpufreq.conf",
        "auto-cpufreq configuration",
    ),
    # Kernel modules
    FileMapping(
        "/etc/modules-load.d/bbswitch.conf",
        "configs/modules/bbswitch.conf",
        "bbswitch module configuration",
    ),
    FileMapping(
        "/etc/modules-load.d/nvidia.conf",
        "configs/modules/nvidia.conf",
        "NVIDIA module configuration",
    ),
    FileMapping(
        "/etc/modules-load.d/amdgpu.conf",
        "configs/modules/amdgpu.conf",
        "AMD GPU module configuration",
    ),
    FileMapping(
        "/etc/modules-load.d/acpi_call.conf",
        "configs/modules/acpi_call.conf",
        "ACPI call module configuration",
    ),
    # Systemd units
    FileMapping(
        "/etc/systemd/system/nvidia-suspend.service",
        "configs/systemd/nvidia-suspend.service",
        "NVIDIA suspend service",
    ),
    FileMapping(
        "/etc/systemd/system/nvidia-resume.service",
        "configs/systemd/nvidia-resume.service",
        "NVIDIA resume service",
    ),
    FileMapping(
        "/etc/systemd/system/power-management.service",
        "configs/systemd/power-management.service",
        "Power management service",
    ),
    FileMapping(
        "/etc/systemd/system/asus-hardware.service",
        "configs/systemd/asus-hardware.service",
        "ASUS hardware service",
    ),
    # Udev rules
    FileMapping(
        "/etc/udev/rules.d/80-nvidia-pm.rules",
        "configs/udev/80-nvidia-pm.rules",
        "NVIDIA power management udev rules",
    ),
    FileMapping(
        "/etc/udev/rules.d/81-nvidia-switching.rules",
        "configs/udev/81-nvidia-switching.rules",
        "NVIDIA switching udev rules",
    ),
    FileMapping(
        "/etc/udev/rules.d/83-asus-hardware.rules",
        "configs/udev/83-asus-hardware.rules",
        "ASUS hardware udev rules",
    ),
    # Vendor tools
    FileMapping("/etc/asusd/asusd.conf", "configs/asus/asusctl.conf", "ASUS daemon configuration"),
    FileMapping(
        "/etc/supergfxd.conf", "configs/asus/supergfxctl.conf", "SuperGFX daemon configuration"
    ),
    # Boot and packages
    FileMapping("/etc/default/grub", "/etc/default/grub", "GRUB bootloader configuration"),
    FileMapping("/etc/pacman.conf", "/etc/pacman.conf", "Pacman package manager configuration"),
)


def parse_mapping_line(line: str) -> FileMapping | None:
    """Parse one ``source:target:description`` line.

    Blank lines and ``#`` comments yield None.

    Raises:
        ValueError: If the line does not have three fields
    """
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    parts = stripped.split(":", 2)
    if len(parts) != 3 or not parts[0] or not parts[1]:
        raise ValueError(f"Malformed file mapping: {line!r}")
    source, target, description = (part.strip() for part in parts)
    return FileMapping(source, target, description)


def load_mappings(path: Path) -> tuple[FileMapping, ...]:
    """Load a mapping table from a text file."""
    mappings = []
    for line in path.read_text(encoding="utf-8").splitlines():
        mapping = parse_mapping_line(line)
        if mapping is not None:
            mappings.append(mapping)
    return tuple(mappings)
