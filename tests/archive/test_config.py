"""Tests for archive configuration loading and validation."""

from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest
from pydantic import ValidationError

from mailvault.archive.config import PASSWORD_ENV_VAR, ArchiveConfig


def _minimal(**overrides) -> dict:
    values = {"server": "imap.example.com", "username": "me", "password": "pw"}
    values.update(overrides)
    return values


def test_defaults(monkeypatch, tmp_path: Path):
    """Test configuration defaults."""
    monkeypatch.chdir(tmp_path)

    config = ArchiveConfig(**_minimal())

    assert config.port == 993
    assert config.batch_size == 50
    assert config.output_dir == (tmp_path / "EmailArchive").resolve()
    assert config.folders is None
    assert config.all_folders is False
    assert config.password.get_secret_value() == "pw"
    assert "pw" not in repr(config)


def test_plain_imap_port_is_rejected():
    """Test port 143 fails validation."""
    with pytest.raises(ValidationError):
        ArchiveConfig(**_minimal(port=143))


def test_end_date_before_start_date_is_rejected():
    """Test an inverted date range fails validation."""
    with pytest.raises(ValidationError):
        ArchiveConfig(**_minimal(start_date=date(2024, 2, 1), end_date=date(2024, 1, 1)))


@pytest.mark.parametrize("batch_size", [0, 1001])
def test_batch_size_bounds(batch_size: int):
    """Test batch size limits."""
    with pytest.raises(ValidationError):
        ArchiveConfig(**_minimal(batch_size=batch_size))


def test_blank_folder_names_are_dropped():
    """Test blank folder names are ignored."""
    config = ArchiveConfig(**_minimal(folders=[" INBOX ", "", "  "]))

    assert config.folders == ["INBOX"]
    assert ArchiveConfig(**_minimal(folders=["", " "])).folders is None


def test_retry_ceiling_must_cover_base():
    """Test the retry ceiling cannot be below the base delay."""
    with pytest.raises(ValidationError):
        ArchiveConfig(**_minimal(retry_base_delay_seconds=10, retry_max_delay_seconds=5))


def test_from_yaml_with_overrides(tmp_path: Path):
    """Test explicit overrides win over YAML values."""
    path = tmp_path / "archive.yaml"
    path.write_text(
        "server: imap.example.com\n"
        "username: me@example.com\n"
        "password: from-file\n"
        "output_dir: mail\n"
        "start_date: 2024-01-01\n"
        "folders: [INBOX, Sent]\n",
        encoding="utf-8",
    )

    config = ArchiveConfig.from_yaml(path, batch_size=10, server=None)

    assert config.server == "imap.example.com"
    assert config.batch_size == 10
    assert config.start_date == date(2024, 1, 1)
    assert config.folders == ["INBOX", "Sent"]
    assert config.output_dir.is_absolute()


def test_from_yaml_rejects_non_mapping(tmp_path: Path):
    """Test a YAML document that is not a mapping is rejected."""
    path = tmp_path / "archive.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError, match="mapping"):
        ArchiveConfig.from_yaml(path)


def test_from_yaml_rejects_invalid_yaml(tmp_path: Path):
    """Test unparsable YAML is rejected."""
    path = tmp_path / "archive.yaml"
    path.write_text("server: [unclosed\n", encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid YAML"):
        ArchiveConfig.from_yaml(path)


def test_password_falls_back_to_environment(monkeypatch):
    """Test the password is read from the environment when not given."""
    monkeypatch.setenv(PASSWORD_ENV_VAR, "from-env")

    config = ArchiveConfig.from_sources(None, server="imap.example.com", username="me")

    assert config.password.get_secret_value() == "from-env"


def test_missing_password_is_an_error(monkeypatch):
    """Test a configuration without any password fails."""
    monkeypatch.delenv(PASSWORD_ENV_VAR, raising=False)

    with pytest.raises(ValidationError):
        ArchiveConfig.from_sources(None, server="imap.example.com", username="me")
