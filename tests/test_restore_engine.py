"""Tests for config_safeguard.storage.restore_engine."""

import stat
from datetime import datetime

import pytest

from config_safeguard.storage.exceptions import MissingSourceError
from config_safeguard.storage.restore_engine import PermissionPolicy, RestoreEngine


@pytest.fixture
def engine(fake_runner):
    return RestoreEngine(fake_runner, clock=lambda: datetime(2024, 1, 1, 12, 0, 0))


class TestCopyWithSafetyNet:
    """Tests for RestoreEngine.copy_with_safety_net()."""

    def test_existing_target_is_kept_aside(self, engine, tmp_path):
        """Test the old contents survive as a timestamped safety copy."""
        source = tmp_path / "backup.conf"
        target = tmp_path / "live" / "app.conf"
        source.write_text("new\n")
        target.parent.mkdir()
        target.write_text("old\n")

        safety_copy = engine.copy_with_safety_net(source, target)

        assert safety_copy == target.with_name("app.conf.pre-restore-20240101_120000")
        assert safety_copy.read_text() == "old\n"
        assert target.read_text() == "new\n"

    def test_same_second_copies_do_not_collide(self, engine, tmp_path):
        """Test a second restore within one second gets a numbered copy."""
        source = tmp_path / "backup.conf"
        target = tmp_path / "app.conf"
        source.write_text("new\n")
        target.write_text("old\n")

        first = engine.copy_with_safety_net(source, target)
        second = engine.copy_with_safety_net(source, target)

        assert first != second
        assert second.name == "app.conf.pre-restore-20240101_120000.1"

    def test_missing_target_creates_parents(self, engine, tmp_path):
        """Test restoring to a new location creates directories and no safety copy."""
        source = tmp_path / "backup.conf"
        source.write_text("content\n")
        target = tmp_path / "etc" / "deep" / "app.conf"

        assert engine.copy_with_safety_net(source, target) is None
        assert target.read_text() == "content\n"

    def test_permissions_applied(self, engine, tmp_path):
        """Test restored files get the standard mode."""
        source = tmp_path / "backup.conf"
        source.write_text("x")
        source.chmod(0o600)
        target = tmp_path / "app.conf"

        engine.copy_with_safety_net(source, target)

        assert stat.S_IMODE(target.stat().st_mode) == 0o644

    def test_missing_source_raises(self, engine, tmp_path):
        """Test a vanished backup file is reported."""
        with pytest.raises(MissingSourceError):
            engine.copy_with_safety_net(tmp_path / "gone", tmp_path / "app.conf")


class TestPermissionPolicy:
    """Tests for PermissionPolicy.apply()."""

    def test_chown_only_as_root(self, tmp_path, mocker):
        """Test ownership is only changed when running as root."""
        path = tmp_path / "file"
        path.write_text("x")
        chown = mocker.patch("config_safeguard.storage.restore_engine.shutil.chown")
        mocker.patch("config_safeguard.storage.restore_engine.os.geteuid", return_value=1000)

        PermissionPolicy().apply(path)
        chown.assert_not_called()

        mocker.patch("config_safeguard.storage.restore_engine.os.geteuid", return_value=0)
        PermissionPolicy().apply(path)
        chown.assert_called_once_with(path, "root", "root")


class TestReloads:
    """Tests for reload and boot regeneration triggers."""

    def test_trigger_reload_runs_all_steps(self, engine, fake_runner):
        """Test daemon-reload and both udev steps run."""
        assert engine.trigger_reload() == []
        assert fake_runner.called("systemctl", "daemon-reload")
        assert fake_runner.called("udevadm", "control", "--reload-rules")
        assert fake_runner.called("udevadm", "trigger")

    def test_reload_failure_is_a_warning(self, engine, fake_runner):
        """Test a failing reload is reported, and later steps still run."""
        fake_runner.respond(["systemctl", "daemon-reload"], returncode=1, stderr="bus error")

        warnings = engine.trigger_reload()

        assert warnings == ["systemd daemon-reload failed: bus error"]
        assert fake_runner.called("udevadm", "trigger")

    def test_regenerate_boot_only_when_inputs_exist(self, engine, fake_runner, system_root):
        """Test mkinitcpio and grub-mkconfig run only for present configs."""
        assert engine.regenerate_boot(system_root) == []
        assert not fake_runner.called("mkinitcpio")

        (system_root / "etc" / "default").mkdir()
        (system_root / "etc" / "default" / "grub").write_text("GRUB_TIMEOUT=5\n")
        engine.regenerate_boot(system_root)

        assert fake_runner.called(
            "grub-mkconfig", "-o", str(system_root / "boot" / "grub" / "grub.cfg")
        )
        assert not fake_runner.called("mkinitcpio")
