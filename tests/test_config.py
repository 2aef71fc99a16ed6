"""
Tests for configuration loading and the audit log.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from savekeep.audit import audit_event, read_audit_log
from savekeep.config import CONFIG_RELPATH, SaveKeepConfig, load_config, save_config


class TestConfig:
    """Tests for SaveKeepConfig and its YAML file."""

    def test_defaults_when_missing(self, savekeep_home: Path):
        config = load_config(savekeep_home)
        assert config.base_url == "http://localhost:8080/"
        assert config.archive_grace_seconds == 2.75
        assert config.store_backend == "json"

    def test_save_and_load(self, savekeep_home: Path):
        path = save_config(
            savekeep_home,
            SaveKeepConfig(base_url="https://saves.example.com/", request_timeout=5),
        )
        assert path == savekeep_home / CONFIG_RELPATH
        config = load_config(savekeep_home)
        assert config.base_url == "https://saves.example.com/"
        assert config.request_timeout == 5

    def test_broken_yaml_falls_back(self, savekeep_home: Path):
        path = savekeep_home / CONFIG_RELPATH
        path.parent.mkdir(parents=True)
        path.write_text("base_url: [unclosed\n")
        assert load_config(savekeep_home) == SaveKeepConfig()

    def test_invalid_values_fall_back(self, savekeep_home: Path):
        path = savekeep_home / CONFIG_RELPATH
        path.parent.mkdir(parents=True)
        path.write_text("base_url: ftp://nope/\n")
        assert load_config(savekeep_home).base_url == "http://localhost:8080/"

    @pytest.mark.parametrize("url", ["localhost:8080/", "http://localhost:8080"])
    def test_base_url_rules(self, url: str):
        with pytest.raises(ValidationError):
            SaveKeepConfig(base_url=url)


class TestAudit:
    """Tests for the JSONL audit log."""

    def test_events_append(self, savekeep_home: Path):
        audit_event(savekeep_home, "LOGIN", "Login succeeded", user="alice")
        audit_event(savekeep_home, "SYNC_UP", "Uploaded 3/3 records", metadata={"errors": 0})
        entries = read_audit_log(savekeep_home)
        assert [e.event_type for e in entries] == ["LOGIN", "SYNC_UP"]
        assert entries[0].user == "alice"
        assert entries[1].metadata == {"errors": 0}

    def test_limit_keeps_most_recent(self, savekeep_home: Path):
        for i in range(5):
            audit_event(savekeep_home, "SYNC_DOWN", f"run {i}")
        assert [e.detail for e in read_audit_log(savekeep_home, limit=2)] == ["run 3", "run 4"]

    def test_unparsable_lines_kept(self, savekeep_home: Path):
        (savekeep_home / "audit.log").write_text("garbage\n")
        entries = read_audit_log(savekeep_home)
        assert entries[0].event_type == "UNPARSED"
        assert entries[0].detail == "garbage"
