"""
Tests for config_safeguard.storage.rollback_store.

This test suite covers:
- Capture of the four areas and metadata
- The shared index and the last-rollback pointer
- Retention (FIFO eviction with exemptions)
- Restore with an emergency point, integrity gate and service reconciliation
"""

import json
import shutil

import pytest

from config_safeguard.control import OperationOptions
from config_safeguard.domain.models import RollbackKind
from config_safeguard.services.commands import CommandResult
from config_safeguard.storage.exceptions import (
    ConfirmationRequiredError,
    IntegrityMismatchError,
    RollbackNotFoundError,
)
from config_safeguard.storage.rollback_store import RollbackStore


@pytest.fixture
def populated_root(write_system_file):
    """System root with a few tracked configuration files and directories."""
    write_system_file("/etc/tlp.conf", "TLP_ENABLE=1\n")
    write_system_file("/etc/fstab", "UUID=abc / ext4 defaults 0 1\n")
    write_system_file("/etc/X11/xorg.conf.d/10-hybrid.conf", "Section \"Device\"\nEndSection\n")
    write_system_file("/etc/modprobe.d/nvidia.conf", "options nvidia NVreg=1\n")
    write_system_file("/etc/systemd/system/custom.service", "[Service]\nExecStart=/bin/true\n")
    write_system_file("/var/log/pacman.log", "[ALPM] installed tlp\n")


class TestCreate:
    """Tests for RollbackStore.create()."""

    def test_create_captures_all_areas(self, rollback_store, populated_root, fake_runner):
        """Test that configs, packages, services and logs are captured."""
        fake_runner.respond(["pacman", "-Q"], stdout="tlp 1.6-1\nlinux 6.7-1\n")
        fake_runner.respond(["journalctl", "--since"], stdout="nvidia: loaded\ntlp: started\n")

        point = rollback_store.create("pre-gpu", "Before GPU setup")

        for area in ("configs", "packages", "services", "logs"):
            assert (point.path / area).is_dir()
        assert (point.path / "configs" / "etc" / "tlp.conf").read_text() == "TLP_ENABLE=1\n"
        assert (
            point.path / "configs" / "etc" / "X11" / "xorg.conf.d" / "10-hybrid.conf"
        ).exists()
        assert (point.path / "services" / "overrides" / "custom.service").exists()
        assert (point.path / "packages" / "installed_packages.txt").read_text().startswith("tlp")
        assert (point.path / "logs" / "pacman.log").exists()
        assert "nvidia" in (point.path / "logs" / "gpu_logs.log").read_text()
        assert "tlp" in (point.path / "logs" / "power_logs.log").read_text()
        assert point.contents.configs is True

    def test_service_listings_captured(self, rollback_store, populated_root, fake_runner):
        """Test enabled, active and failed unit listings land in the services area."""
        fake_runner.respond(
            ["systemctl", "list-unit-files", "--state=enabled"], stdout="tlp.service enabled\n"
        )
        fake_runner.respond(
            ["systemctl", "list-units", "--state=failed"], stdout="bad.service failed\n"
        )

        point = rollback_store.create("units")

        services = point.path / "services"
        assert (services / "enabled_services.txt").read_text() == "tlp.service enabled\n"
        assert (services / "failed_services.txt").read_text() == "bad.service failed\n"
        assert (services / "active_services.txt").exists()
        assert fake_runner.called(
            "systemctl", "list-units", "--state=active", "--no-legend", "--no-pager"
        )

    def test_metadata_written(self, rollback_store, populated_root):
        """Test metadata.json carries rollback_info and system facts."""
        point = rollback_store.create("meta")

        data = json.loads((point.path / "metadata.json").read_text())

        assert data["rollback_info"]["id"] == point.id
        assert data["rollback_info"]["name"] == "meta"
        assert data["rollback_info"]["kind"] == "standard"
        assert "kernel" in data["system_info"]
        assert "backup_contents" in data

    def test_capture_failure_is_warning(self, rollback_store, populated_root, fake_runner):
        """Test that a failing listing command never aborts the capture."""
        fake_runner.respond(["pacman", "-Qm"], returncode=1, stderr="db locked")

        point = rollback_store.create("warn")

        assert any("pacman -Qm" in warning for warning in point.capture_warnings)
        assert point.path.is_dir()
        assert rollback_store.list()[-1].id == point.id

    def test_create_updates_index_and_pointer(self, rollback_store, populated_root):
        """Test the index lists the point and the pointer names it."""
        point = rollback_store.create("indexed")

        entries = rollback_store.list()

        assert [entry.id for entry in entries] == [point.id]
        assert rollback_store.last_rollback_id() == point.id

    def test_invalid_name_rejected(self, rollback_store):
        """Test that names with a slash are refused."""
        with pytest.raises(ValueError):
            rollback_store.create("../escape")

    def test_dry_run_creates_nothing(self, rollback_store, backup_root):
        """Test that a dry-run create writes no files."""
        rollback_store.options = OperationOptions(dry_run=True)

        point = rollback_store.create("dry")

        assert not point.path.exists()
        assert rollback_store.list() == []


class TestRetention:
    """Tests for retention of rollback points."""

    def test_cap_evicts_oldest(self, rollback_store, populated_root):
        """Test that N+1 creates with cap N keep the newest N."""
        points = [rollback_store.create(f"point{i}") for i in range(4)]

        ids = [entry.id for entry in rollback_store.list()]

        assert len(ids) == 3
        assert points[0].id not in ids
        assert not points[0].path.exists()
        assert all(point.path.exists() for point in points[1:])

    def test_pointer_target_is_exempt(self, rollback_store, populated_root):
        """Test that the last-rollback pointer target survives eviction."""
        first = rollback_store.create("first")
        second = rollback_store.create("second")
        third = rollback_store.create("third")
        rollback_store._write_last_pointer(first.id)
        rollback_store.max_rollbacks = 2

        evicted = rollback_store.enforce_retention()

        ids = [entry.id for entry in rollback_store.list()]
        assert evicted == [second.id]
        assert ids == [first.id, third.id]
        assert first.path.exists()

    def test_cleanup_dry_run_lists_without_removing(self, rollback_store, populated_root):
        """Test that a dry-run cleanup only reports."""
        rollback_store.max_rollbacks = 5
        points = [rollback_store.create(f"p{i}") for i in range(4)]
        rollback_store.max_rollbacks = 2
        rollback_store.options = OperationOptions(dry_run=True)

        doomed = rollback_store.cleanup()

        assert doomed == [points[0].id, points[1].id]
        assert all(point.path.exists() for point in points)

    def test_cap_holds_when_restoring_at_minimum_cap(self, rollback_store, populated_root):
        """Test the pointer target is evicted when only it can make room."""
        rollback_store.max_rollbacks = 2
        older = rollback_store.create("a")
        newer = rollback_store.create("b")

        report = rollback_store.restore(older.id)

        ids = [entry.id for entry in rollback_store.list()]
        assert ids == [older.id, report.emergency_id]
        assert not newer.path.exists()
        assert rollback_store.last_rollback_id() == older.id

    def test_evicted_pointer_moves_to_newest_survivor(self, rollback_store, populated_root):
        """Test the pointer never names an evicted point."""
        first = rollback_store.create("first")
        second = rollback_store.create("second")
        third = rollback_store.create("third")
        rollback_store.max_rollbacks = 2

        evicted = rollback_store.enforce_retention(exempt=(first.id, second.id))

        assert evicted == [third.id]
        assert [entry.id for entry in rollback_store.list()] == [first.id, second.id]
        assert rollback_store.last_rollback_id() == second.id

    @pytest.mark.parametrize("cap", [0, 1])
    def test_max_rollbacks_minimum(self, backup_root, fake_runner, ledger, cap):
        """Test that caps too small to hold a restore are refused."""
        with pytest.raises(ValueError):
            RollbackStore(backup_root, runner=fake_runner, ledger=ledger, max_rollbacks=cap)


class TestRestore:
    """Tests for RollbackStore.restore()."""

    def test_restore_puts_configs_back(self, rollback_store, populated_root, system_root):
        """Test files and directories return to their captured state."""
        point = rollback_store.create("good")
        (system_root / "etc" / "tlp.conf").write_text("TLP_ENABLE=0\n")
        (system_root / "etc" / "modprobe.d" / "nvidia.conf").unlink()
        (system_root / "etc" / "modprobe.d" / "stray.conf").write_text("blacklist x\n")

        report = rollback_store.restore(point.id)

        assert report.status == "success"
        assert (system_root / "etc" / "tlp.conf").read_text() == "TLP_ENABLE=1\n"
        assert (system_root / "etc" / "modprobe.d" / "nvidia.conf").exists()
        assert not (system_root / "etc" / "modprobe.d" / "stray.conf").exists()
        assert "/etc/modprobe.d" in report.replaced

    def test_restore_creates_emergency_point(self, rollback_store, populated_root):
        """Test that an emergency point is captured and indexed first."""
        point = rollback_store.create("base")

        report = rollback_store.restore(point.id)

        assert report.emergency_id is not None
        entries = {entry.id: entry for entry in rollback_store.list()}
        assert entries[report.emergency_id].kind == RollbackKind.EMERGENCY.value
        emergency = rollback_store.get(report.emergency_id)
        assert emergency.contents.packages is False
        assert rollback_store.last_rollback_id() == point.id

    def test_restore_runs_terminal_sequence(
        self, rollback_store, populated_root, write_system_file, fake_runner
    ):
        """Test reloads and boot regeneration after restoring."""
        write_system_file("/etc/mkinitcpio.conf", "HOOKS=(base)\n")
        write_system_file("/etc/default/grub", "GRUB_TIMEOUT=5\n")
        point = rollback_store.create("boot")

        rollback_store.restore(point.id)

        assert fake_runner.called("systemctl", "daemon-reload")
        assert fake_runner.called("udevadm", "trigger")
        assert fake_runner.called("mkinitcpio", "-P")
        assert fake_runner.called("grub-mkconfig", "-o")

    def test_restore_logs_completion(self, rollback_store, populated_root, ledger):
        """Test that the recovery log records the rollback."""
        point = rollback_store.create("logged")

        rollback_store.restore(point.id)

        assert any(f"Rollback completed - {point.id}" in line for line in ledger.tail())

    def test_incomplete_point_changes_nothing(self, rollback_store, populated_root, system_root):
        """Test that a missing area directory aborts before any change."""
        point = rollback_store.create("broken")
        shutil.rmtree(point.path / "services")
        (system_root / "etc" / "tlp.conf").write_text("changed\n")

        with pytest.raises(IntegrityMismatchError):
            rollback_store.restore(point.id)

        assert (system_root / "etc" / "tlp.conf").read_text() == "changed\n"
        assert len(rollback_store.list()) == 1

    def test_unknown_point_raises(self, rollback_store):
        """Test restoring a missing point."""
        with pytest.raises(RollbackNotFoundError):
            rollback_store.restore("ghost_20240101_000000_000000")

    def test_dry_run_plans_only(self, rollback_store, populated_root, system_root):
        """Test that a dry-run restore reports replacements without writing."""
        point = rollback_store.create("plan")
        (system_root / "etc" / "tlp.conf").write_text("changed\n")
        rollback_store.options = OperationOptions(dry_run=True)

        report = rollback_store.restore(point.id)

        assert "/etc/tlp.conf" in report.replaced
        assert report.emergency_id is None
        assert (system_root / "etc" / "tlp.conf").read_text() == "changed\n"

    def test_restore_requires_confirmation(self, rollback_store, populated_root):
        """Test that an unforced restore without a prompt raises."""
        point = rollback_store.create("confirm")
        rollback_store.options = OperationOptions()

        with pytest.raises(ConfirmationRequiredError):
            rollback_store.restore(point.id)

    def test_service_enablement_reconciled(self, rollback_store, populated_root, fake_runner):
        """Test managed services are enabled or disabled to match the capture."""
        fake_runner.respond(
            ["systemctl", "list-unit-files", "--state=enabled"],
            stdout="tlp.service enabled enabled\n",
        )
        point = rollback_store.create("services")

        def unit_listing(argv):
            unit = argv[2]
            known = {"tlp.service", "power-profiles-daemon.service"}
            return CommandResult(argv, 0, f"{unit} enabled\n" if unit in known else "")

        fake_runner.respond_with(["systemctl", "list-unit-files"], unit_listing)
        fake_runner.respond(["systemctl", "is-enabled", "--quiet", "tlp.service"], returncode=1)
        fake_runner.respond(["systemctl", "is-enabled", "--quiet", "power-profiles-daemon.service"])

        rollback_store.restore(point.id)

        assert fake_runner.called("systemctl", "enable", "tlp.service")
        assert fake_runner.called("systemctl", "disable", "power-profiles-daemon.service")


class TestDelete:
    """Tests for RollbackStore.delete()."""

    def test_delete_removes_point_and_pointer(self, rollback_store, populated_root):
        """Test deletion clears the directory, index entry and pointer."""
        point = rollback_store.create("gone")

        assert rollback_store.delete(point.id) is True

        assert not point.path.exists()
        assert rollback_store.list() == []
        assert rollback_store.last_rollback_id() is None

    def test_delete_unknown_raises(self, rollback_store):
        """Test deleting a missing point."""
        with pytest.raises(RollbackNotFoundError):
            rollback_store.delete("nothing")
