"""Tests for the schemabus-worker entry point (argument handling only)."""
from __future__ import annotations

from pathlib import Path

import pytest

from schemabus.tier3_platform.registry import CompatibilityLevel
from schemabus_worker.main import build_parser, main


class TestWorkerCli:
    def test_no_role_prints_help(self, monkeypatch, capsys):
        monkeypatch.delenv("ROLE", raising=False)
        assert main([]) == 2
        assert "schemabus-worker" in capsys.readouterr().out

    def test_register_defaults_to_forward(self):
        args = build_parser().parse_args(
            ["register", "--file", "schema.json", "--artifact-id", "user-created"]
        )
        assert args.compatibility is CompatibilityLevel.FORWARD
        assert args.dry_run is False
        assert args.file == Path("schema.json")

    def test_register_dry_run_level(self):
        args = build_parser().parse_args(
            ["register", "--file", "s.json", "--artifact-id", "a", "--compatibility", "full", "--dry-run"]
        )
        assert args.compatibility is CompatibilityLevel.FULL
        assert args.dry_run is True

    def test_unknown_level_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(
                ["register", "--file", "s.json", "--artifact-id", "a", "--compatibility", "SIDEWAYS"]
            )

    def test_publish_artifact_optional(self):
        args = build_parser().parse_args(["publish", "--file", "payload.json"])
        assert args.role == "publish"
        assert args.artifact_id is None

    def test_missing_configuration_exits_1(self, monkeypatch):
        monkeypatch.delenv("APICURIO_URL", raising=False)
        monkeypatch.delenv("RABBITMQ_URL", raising=False)
        monkeypatch.chdir(Path(__file__).parent)
        assert main(["subscribe"]) == 1
