"""Tests for the CLI commands."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from scheduling_engine.cli import cli

pytestmark = pytest.mark.unit

ENGINE_TOML = """\
[engine]
name = "front-desk"

[[engine.stores]]
origin = "unified_event"
type = "json"
path = "unified.json"

[[engine.stores]]
origin = "service_schedule"
type = "json"
path = "schedule.json"

[engine.notifications]
type = "none"
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def _no_logging_setup():
    with patch("scheduling_engine.cli.configure_logging"):
        yield


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    (tmp_path / "engine.toml").write_text(ENGINE_TOML)
    (tmp_path / "unified.json").write_text(
        json.dumps(
            [
                {
                    "id": "A",
                    "title": "Consult",
                    "startDateTime": "2026-03-10T09:00",
                    "endDateTime": "2026-03-10T10:00",
                },
                {
                    "id": "B",
                    "title": "Follow-up",
                    "startDateTime": "2026-03-10T09:30",
                    "endDateTime": "2026-03-10T10:30",
                },
            ]
        )
    )
    (tmp_path / "schedule.json").write_text(
        json.dumps(
            [
                {
                    "id": "S1",
                    "service": "Massage",
                    "scheduledDate": "2026-03-10",
                    "scheduledTime": "14:00",
                    "duration": 60,
                }
            ]
        )
    )
    return tmp_path


def _proposal(tmp_path: Path, record: dict) -> Path:
    path = tmp_path / "proposed.json"
    path.write_text(json.dumps(record))
    return path


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestValidateConfig:
    def test_prints_summary(self, runner, config_dir):
        result = runner.invoke(cli, ["validate-config", "--config", str(config_dir)])

        assert result.exit_code == 0
        assert "Engine: front-desk" in result.output
        assert "Business hours: 08:00-18:00" in result.output
        assert "Store: unified_event (json)" in result.output
        assert "Notifications: none" in result.output

    def test_missing_config_exits_1(self, runner, tmp_path):
        result = runner.invoke(cli, ["validate-config", "--config", str(tmp_path)])
        assert result.exit_code == 1
        assert "Config error" in result.output


class TestDetect:
    def test_clear_slot_exits_0(self, runner, config_dir):
        proposed = _proposal(
            config_dir,
            {"id": "P", "startDateTime": "2026-03-10T11:00", "endDateTime": "2026-03-10T12:00"},
        )

        result = runner.invoke(cli, ["detect", str(proposed), "--config", str(config_dir)])

        assert result.exit_code == 0
        payload = json.loads(result.output)
        assert payload["has_conflicts"] is False
        assert payload["can_proceed"] is True

    def test_blocking_conflict_exits_1(self, runner, config_dir):
        proposed = _proposal(
            config_dir,
            {"id": "P", "startDateTime": "2026-03-10T09:00", "endDateTime": "2026-03-10T10:00"},
        )

        result = runner.invoke(cli, ["detect", str(proposed), "--config", str(config_dir)])

        assert result.exit_code == 1
        payload = json.loads(result.output)
        assert {c["conflicting_event_ids"][0] for c in payload["conflicts"]} == {"A", "B"}
        assert payload["can_proceed"] is False

    def test_service_schedule_origin(self, runner, config_dir):
        proposed = _proposal(
            config_dir,
            {"id": "P", "scheduledDate": "2026-03-10", "scheduledTime": "14:30", "duration": 30},
        )

        result = runner.invoke(
            cli,
            ["detect", str(proposed), "--origin", "service_schedule", "--config", str(config_dir)],
        )

        assert result.exit_code == 1
        payload = json.loads(result.output)
        assert payload["conflicts"][0]["conflicting_event_ids"] == ["S1"]

    def test_unparseable_record_prints_structured_error(self, runner, config_dir):
        proposed = _proposal(config_dir, {"id": "P", "title": "no time"})

        result = runner.invoke(cli, ["detect", str(proposed), "--config", str(config_dir)])

        assert result.exit_code == 1
        payload = json.loads(result.output)
        assert payload["status"] == "error"
        assert payload["error_code"] == "NORMALIZATION_ERROR"


class TestDay:
    def test_lists_groups_with_columns(self, runner, config_dir):
        result = runner.invoke(cli, ["day", "2026-03-10", "--config", str(config_dir)])

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0] == "Group 1: 09:00-10:30 (2 event(s), 2 column(s))"
        assert lines[1] == "  [0] 09:00-10:00 A Consult"
        assert lines[2] == "  [1] 09:30-10:30 B Follow-up"
        assert lines[3] == "Group 2: 14:00-15:00 (1 event(s), 1 column(s))"
        assert lines[4] == "  [0] 14:00-15:00 S1 Massage"

    def test_empty_day(self, runner, config_dir):
        result = runner.invoke(cli, ["day", "2026-03-11", "--config", str(config_dir)])
        assert result.exit_code == 0
        assert "No events on 2026-03-11" in result.output
