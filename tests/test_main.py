"""Tests for the config-safeguard command line."""

import pytest

from config_safeguard import main
from config_safeguard.__version__ import __version__


@pytest.fixture(autouse=True)
def patched_runner(mocker, fake_runner):
    """Route every command the CLI runs through the recording runner."""
    mocker.patch("config_safeguard.main.CommandRunner", return_value=fake_runner)
    return fake_runner


@pytest.fixture
def cli(tmp_path, system_root):
    """Run main() against temporary backup, system and log directories."""
    base = [
        "--backup-root",
        str(tmp_path / "backups"),
        "--system-root",
        str(system_root),
        "--log-dir",
        str(tmp_path / "logs"),
        "-f",
    ]

    def run(*argv):
        return main.main(base + list(argv))

    return run


@pytest.fixture
def mappings_file(tmp_path, write_system_file):
    write_system_file("/etc/tlp.conf", "TLP_ENABLE=1\n")
    path = tmp_path / "mappings.txt"
    path.write_text("/etc/tlp.conf:configs/tlp.conf:TLP\n")
    return path


class TestVersionAndAudit:
    """Tests for the version and audit commands."""

    def test_version(self, cli, capsys):
        """Test the version is printed."""
        assert cli("version") == 0
        assert f"config-safeguard {__version__}" in capsys.readouterr().out

    def test_audit_default_mappings(self, cli, capsys):
        """Test the shipped mappings pass the audit."""
        assert cli("audit") == 0
        assert "no protected paths" in capsys.readouterr().out

    def test_audit_reports_violations(self, cli, tmp_path, capsys):
        """Test a mapping into a home directory fails the audit."""
        path = tmp_path / "bad.txt"
        path.write_text("/home/alice/.xinitrc:configs/xinitrc:xinit\n")

        assert cli("audit", "--mappings", str(path)) == 1
        assert "violation: " in capsys.readouterr().out


class TestSnapshotCommands:
    """Tests for the snapshot subcommands."""

    def test_create_then_list(self, cli, mappings_file, capsys):
        """Test a created snapshot shows up as valid."""
        assert cli("snapshot", "create", "before tlp", "--mappings", str(mappings_file)) == 0
        created = capsys.readouterr().out
        assert "Backed up: 1" in created

        assert cli("snapshot", "list") == 0
        listing = capsys.readouterr().out
        assert "valid" in listing
        assert "before tlp" in listing

    def test_dry_run_create(self, cli, mappings_file, capsys, tmp_path):
        """Test a dry run only lists what would be captured."""
        assert cli("-n", "snapshot", "create", "--mappings", str(mappings_file)) == 0
        assert "would back up /etc/tlp.conf" in capsys.readouterr().out
        assert not list(tmp_path.glob("backups/**/metadata.json"))

    def test_restore_unknown_snapshot(self, cli, capsys):
        """Test a missing snapshot is reported as an error."""
        assert cli("snapshot", "restore", "nope") == 1
        assert "Error: " in capsys.readouterr().err

    def test_unwritable_backup_root(self, tmp_path, system_root, mappings_file, capsys):
        """Test a filesystem error is reported instead of a traceback."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        argv = [
            "--backup-root",
            str(blocker / "backups"),
            "--system-root",
            str(system_root),
            "--log-dir",
            str(tmp_path / "logs"),
            "-f",
            "snapshot",
            "create",
            "--mappings",
            str(mappings_file),
        ]

        assert main.main(argv) == 1
        err = capsys.readouterr().err
        assert "Error: " in err
        assert f"See logs in {tmp_path / 'logs'}" in err

    def test_list_empty(self, cli, capsys):
        """Test listing with no snapshots."""
        assert cli("snapshot", "list") == 0
        assert "No snapshots found" in capsys.readouterr().out


class TestRollbackCommands:
    """Tests for the rollback subcommands."""

    def test_create_list_restore(self, cli, write_system_file, system_root, capsys):
        """Test the rollback lifecycle through the CLI."""
        write_system_file("/etc/tlp.conf", "TLP_ENABLE=1\n")

        assert cli("rollback", "create", "base", "Before changes") == 0
        assert "Rollback point: base_" in capsys.readouterr().out

        (system_root / "etc" / "tlp.conf").write_text("broken\n")
        assert cli("rollback", "restore") == 0
        out = capsys.readouterr().out
        assert "Emergency rollback point: " in out
        assert (system_root / "etc" / "tlp.conf").read_text() == "TLP_ENABLE=1\n"

        assert cli("rollback", "list") == 0
        assert "[emergency]" in capsys.readouterr().out

    def test_restore_without_points(self, cli, capsys):
        """Test restoring with nothing to restore."""
        assert cli("rollback", "restore") == 1
        assert "No rollback point to restore" in capsys.readouterr().err


class TestRecoverCommands:
    """Tests for the recover subcommands."""

    def test_list(self, cli, capsys):
        """Test every procedure is listed with its threshold."""
        assert cli("recover", "list") == 0
        out = capsys.readouterr().out
        assert "network_failure" in out
        assert "threshold 66%" in out
        assert len(out.strip().splitlines()) == 10

    def test_run_and_history(self, cli, write_system_file, capsys):
        """Test a run prints its steps and is recorded in the history."""
        write_system_file("/etc/tlp.conf", "TLP_ENABLE=1\n")

        assert cli("recover", "run", "permission_failure", "/etc/tlp.conf") == 0
        out = capsys.readouterr().out
        assert "1. Check /etc/tlp.conf exists: ok" in out
        assert "permission: success" in out

        assert cli("recover", "history", "-l", "1") == 0
        assert "RECOVERY: permission - success" in capsys.readouterr().out

    def test_unknown_tag(self, cli, capsys):
        """Test an unknown failure class exits with an error."""
        assert cli("recover", "run", "gremlin_failure") == 1
        assert "Unknown recovery type" in capsys.readouterr().err

    def test_failed_recovery_exit_code(self, cli):
        """Test a run below its threshold exits non-zero."""
        assert cli("recover", "run", "permission_failure", "/etc/nothing.conf") == 1


class TestProtect:
    """Tests for the protect command."""

    def test_runs_command_with_rollback_point(self, cli, write_system_file, capsys):
        """Test protect takes a rollback point and passes the exit code through."""
        write_system_file("/etc/tlp.conf", "TLP_ENABLE=1\n")

        assert cli("protect", "--name", "job", "--", "sh", "-c", "exit 4") == 4

        cli("rollback", "list")
        assert "job_" in capsys.readouterr().out

    def test_requires_command(self, cli, capsys):
        """Test protect without a command is an error."""
        assert cli("protect") == 1
        assert "needs a command" in capsys.readouterr().err
