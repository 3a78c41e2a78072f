"""Tests for config_safeguard.storage.path_policy."""

import pytest

from config_safeguard.config.mappings import DEFAULT_FILE_MAPPINGS
from config_safeguard.domain.models import FileMapping
from config_safeguard.storage.exceptions import PathRejectedError
from config_safeguard.storage.path_policy import (
    PROTECTED_PATTERNS,
    PathPolicy,
    system_path,
)


class TestProtectedPatterns:
    """Tests for protected path matching."""

    @pytest.mark.parametrize(
        "path",
        [
            "/home/alice/.bashrc",
            "/root/.profile",
            "/etc/skel/.ssh/authorized_keys",
            "/var/lib/x/.gnupg/pubring.kbx",
            "/etc/passwd",
            "/etc/shadow",
            "/etc/group",
            "/etc/gshadow",
        ],
    )
    def test_user_data_is_protected(self, path):
        """Test that every user-data location is refused."""
        assert PathPolicy().is_protected(path) is True

    @pytest.mark.parametrize(
        "path",
        ["/etc/tlp.conf", "/etc/X11/xorg.conf.d/10-hybrid.conf", "/boot/grub/grub.cfg"],
    )
    def test_system_config_is_not_protected(self, path):
        """Test that ordinary configuration files are allowed."""
        assert PathPolicy().is_protected(path) is False

    def test_matching_is_case_sensitive(self):
        """Test that /HOME/ does not match the lowercase pattern."""
        assert PathPolicy().is_protected("/HOME/alice/file") is False

    def test_dot_segments_do_not_bypass_policy(self):
        """Test that a path escaping into /home via .. is still refused."""
        assert PathPolicy().is_protected("/etc/../home/alice/notes") is True

    def test_patterns_are_immutable_tuple(self):
        """Test the protected pattern list cannot be mutated."""
        policy = PathPolicy()
        assert isinstance(policy.patterns, tuple)
        assert policy.patterns == PROTECTED_PATTERNS


class TestValidate:
    """Tests for PathPolicy.validate()."""

    def test_rejects_protected_path(self):
        """Test that validate raises PathRejectedError with the pattern."""
        with pytest.raises(PathRejectedError) as exc_info:
            PathPolicy().validate("/home/bob/.config/app.conf")
        assert exc_info.value.path == "/home/bob/.config/app.conf"
        assert exc_info.value.pattern == "*/home/*"

    def test_config_root_path_is_in_root(self):
        """Test that /etc paths are recognised as configuration roots."""
        check = PathPolicy().validate("/etc/tlp.conf")
        assert check.in_config_root is True

    def test_path_outside_roots_warns_but_passes(self, log_messages):
        """Test that unusual locations are allowed with a warning."""
        check = PathPolicy().validate("/opt/tool/config.ini")
        assert check.in_config_root is False
        assert any("outside typical system configuration" in m for m in log_messages)


class TestAuditMappings:
    """Tests for the mapping protection audit."""

    def test_default_mappings_are_clean(self):
        """Test the shipped mapping table touches no user data."""
        assert PathPolicy().audit_mappings(DEFAULT_FILE_MAPPINGS) == []

    def test_reports_protected_source_and_target(self):
        """Test each protected side of a mapping is reported."""
        mappings = [
            FileMapping("/home/alice/.xinitrc", "configs/xinitrc", "xinit"),
            FileMapping("/etc/tlp.conf", "/root/backup/tlp.conf", "tlp"),
        ]
        violations = PathPolicy().audit_mappings(mappings)
        assert len(violations) == 2
        assert "source /home/alice/.xinitrc" in violations[0]
        assert "target /root/backup/tlp.conf" in violations[1]


class TestSystemPath:
    """Tests for system_path()."""

    def test_maps_logical_path_under_root(self, tmp_path):
        """Test logical paths land under the given root."""
        assert system_path(tmp_path, "/etc/tlp.conf") == tmp_path / "etc" / "tlp.conf"
