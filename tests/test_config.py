"""Tests for engine configuration loading and validation."""

from __future__ import annotations

from datetime import datetime, time
from pathlib import Path

import pytest

from scheduling_engine.config import (
    BlackoutPeriod,
    ConfigError,
    DetectionConfig,
    EngineConfig,
    NotifierType,
    StoreConfig,
    StoreType,
    load_config,
    resolve_env_vars,
)
from scheduling_engine.models import SourceOrigin

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FULL_TOML = """\
[engine]
name = "front-desk"
timezone = "America/New_York"

[engine.logging]
level = "debug"
format = "json"

[engine.detection]
critical_threshold = 0.8
high_threshold = 0.5
medium_threshold = 0.2
business_hours = ["09:00", "17:30"]
work_days = [4, 0, 1, 2, 3, 1]
suggestion_step_minutes = 15
max_suggestions = 5
buffer_minutes = 10

[engine.negotiation]
detect_timeout_s = 5
store_timeout_s = 2.5
stale_check_after_s = 30

[[engine.stores]]
origin = "service_schedule"
type = "json"
path = "data/schedule.json"

[[engine.stores]]
origin = "unified_event"
type = "http"
url = "https://events.example.com/api"
token = "${EVENTS_TOKEN}"

[engine.notifications]
type = "webhook"
url = "https://hooks.example.com/schedule"
"""

MINIMAL_TOML = """\
[engine]
name = "solo"
"""


def _write_toml(tmp_path: Path, content: str, filename: str = "engine.toml") -> Path:
    """Write *content* to a TOML file inside *tmp_path* and return the directory."""
    (tmp_path / filename).write_text(content)
    return tmp_path


# ---------------------------------------------------------------------------
# Happy-path tests
# ---------------------------------------------------------------------------


def test_load_full_config(tmp_path: Path, monkeypatch):
    """All sections present: every field is parsed."""
    monkeypatch.setenv("EVENTS_TOKEN", "tok-123")
    cfg = load_config(_write_toml(tmp_path, FULL_TOML))

    assert isinstance(cfg, EngineConfig)
    assert cfg.name == "front-desk"
    assert cfg.timezone == "America/New_York"
    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.format == "json"

    assert cfg.detection == DetectionConfig(
        critical_threshold=0.8,
        high_threshold=0.5,
        medium_threshold=0.2,
        business_hours_start=time(9, 0),
        business_hours_end=time(17, 30),
        work_days=(0, 1, 2, 3, 4),
        suggestion_step_minutes=15,
        max_suggestions=5,
        buffer_minutes=10,
    )

    assert cfg.negotiation.detect_timeout_s == 5.0
    assert cfg.negotiation.store_timeout_s == 2.5
    assert cfg.negotiation.stale_check_after_s == 30.0

    assert cfg.stores == [
        StoreConfig(
            origin=SourceOrigin.SERVICE_SCHEDULE,
            type=StoreType.JSON,
            path=tmp_path / "data" / "schedule.json",
        ),
        StoreConfig(
            origin=SourceOrigin.UNIFIED_EVENT,
            type=StoreType.HTTP,
            url="https://events.example.com/api",
            token="tok-123",
        ),
    ]
    assert cfg.notifications.type == NotifierType.WEBHOOK


def test_minimal_config_uses_defaults(tmp_path: Path):
    cfg = load_config(_write_toml(tmp_path, MINIMAL_TOML))

    assert cfg.name == "solo"
    assert cfg.timezone is None
    assert cfg.stores == []
    assert cfg.detection == DetectionConfig()
    assert cfg.negotiation.stale_check_after_s == 0.0
    assert cfg.notifications.type == NotifierType.LOG


def test_separate_business_hour_keys(tmp_path: Path):
    toml = MINIMAL_TOML + (
        '\n[engine.detection]\nbusiness_hours_start = "07:30"\nbusiness_hours_end = 20:00:00\n'
    )
    cfg = load_config(_write_toml(tmp_path, toml))
    assert cfg.detection.business_hours_start == time(7, 30)
    assert cfg.detection.business_hours_end == time(20, 0)


def test_business_rules_and_blackouts(tmp_path: Path):
    toml = MINIMAL_TOML + (
        "\n[engine.detection]\nenforce_business_hours = true\n"
        "\n[[engine.detection.blackout_periods]]\n"
        'start = 2026-12-24T00:00:00\nend = 2026-12-27T00:00:00\nreason = " Holidays "\n'
        "\n[[engine.detection.blackout_periods]]\n"
        'start = "2026-03-10T12:00"\nend = "2026-03-10T13:00"\n'
    )
    cfg = load_config(_write_toml(tmp_path, toml))

    assert cfg.detection.enforce_business_hours is True
    assert cfg.detection.blackout_periods == (
        BlackoutPeriod(datetime(2026, 12, 24), datetime(2026, 12, 27), "Holidays"),
        BlackoutPeriod(datetime(2026, 3, 10, 12, 0), datetime(2026, 3, 10, 13, 0)),
    )


def test_absolute_json_path_is_kept(tmp_path: Path):
    target = tmp_path / "elsewhere" / "tasks.json"
    toml = MINIMAL_TOML + (
        f'\n[[engine.stores]]\norigin = "legacy_task"\ntype = "json"\npath = "{target.as_posix()}"\n'
    )
    cfg = load_config(_write_toml(tmp_path, toml))
    assert cfg.stores[0].path == target


# ---------------------------------------------------------------------------
# Error cases
# ---------------------------------------------------------------------------


def test_missing_file(tmp_path: Path):
    with pytest.raises(ConfigError, match="Config file not found"):
        load_config(tmp_path)


def test_invalid_toml(tmp_path: Path):
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(_write_toml(tmp_path, "[engine\nname="))


def test_missing_engine_section(tmp_path: Path):
    with pytest.raises(ConfigError, match=r"Missing \[engine\] section"):
        load_config(_write_toml(tmp_path, '[other]\nname = "x"\n'))


def test_missing_name(tmp_path: Path):
    with pytest.raises(ConfigError, match="engine.name"):
        load_config(_write_toml(tmp_path, '[engine]\ntimezone = "UTC"\n'))


def test_unknown_timezone(tmp_path: Path):
    with pytest.raises(ConfigError, match="engine.timezone"):
        load_config(_write_toml(tmp_path, '[engine]\nname = "x"\ntimezone = "Mars/Olympus"\n'))


def test_bad_log_format(tmp_path: Path):
    toml = MINIMAL_TOML + '\n[engine.logging]\nformat = "xml"\n'
    with pytest.raises(ConfigError, match="engine.logging.format"):
        load_config(_write_toml(tmp_path, toml))


@pytest.mark.parametrize(
    "detection",
    [
        "critical_threshold = 1.5",
        "high_threshold = 0.9",
        'business_hours = ["18:00", "08:00"]',
        'business_hours = ["08:00"]',
        "work_days = []",
        "work_days = [7]",
        "buffer_minutes = -5",
        "max_suggestions = 0",
        'enforce_business_hours = "yes"',
        'blackout_periods = "2026-12-24"',
        "blackout_periods = [{ start = 2026-03-10T12:00:00, end = 2026-03-10T12:00:00 }]",
        "blackout_periods = [{ start = 2026-03-10T12:00:00Z, end = 2026-03-10T13:00:00Z }]",
        'blackout_periods = [{ start = "noon", end = 2026-03-10T13:00:00 }]',
        (
            "blackout_periods = "
            "[{ start = 2026-03-10T12:00:00, end = 2026-03-10T13:00:00, reason = 3 }]"
        ),
    ],
)
def test_invalid_detection_values(tmp_path: Path, detection: str):
    toml = MINIMAL_TOML + f"\n[engine.detection]\n{detection}\n"
    with pytest.raises(ConfigError):
        load_config(_write_toml(tmp_path, toml))


def test_non_positive_timeout(tmp_path: Path):
    toml = MINIMAL_TOML + "\n[engine.negotiation]\ndetect_timeout_s = 0\n"
    with pytest.raises(ConfigError, match="timeouts must be positive"):
        load_config(_write_toml(tmp_path, toml))


def test_unknown_store_origin(tmp_path: Path):
    toml = MINIMAL_TOML + '\n[[engine.stores]]\norigin = "spreadsheet"\n'
    with pytest.raises(ConfigError, match="origin"):
        load_config(_write_toml(tmp_path, toml))


def test_json_store_requires_path(tmp_path: Path):
    toml = MINIMAL_TOML + '\n[[engine.stores]]\norigin = "legacy_task"\ntype = "json"\n'
    with pytest.raises(ConfigError, match="path is required"):
        load_config(_write_toml(tmp_path, toml))


def test_http_store_requires_url(tmp_path: Path):
    toml = MINIMAL_TOML + '\n[[engine.stores]]\norigin = "legacy_task"\ntype = "http"\n'
    with pytest.raises(ConfigError, match="url is required"):
        load_config(_write_toml(tmp_path, toml))


def test_duplicate_store_origins(tmp_path: Path):
    toml = MINIMAL_TOML + (
        '\n[[engine.stores]]\norigin = "legacy_task"\n\n[[engine.stores]]\norigin = "legacy_task"\n'
    )
    with pytest.raises(ConfigError, match="Duplicate engine.stores origin"):
        load_config(_write_toml(tmp_path, toml))


def test_webhook_requires_url(tmp_path: Path):
    toml = MINIMAL_TOML + '\n[engine.notifications]\ntype = "webhook"\n'
    with pytest.raises(ConfigError, match="engine.notifications.url"):
        load_config(_write_toml(tmp_path, toml))


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def test_resolve_env_vars_walks_nested_values(monkeypatch):
    monkeypatch.setenv("HOST", "events.internal")
    resolved = resolve_env_vars({"url": "https://${HOST}/api", "retries": 3, "tags": ["${HOST}"]})
    assert resolved == {"url": "https://events.internal/api", "retries": 3, "tags": ["events.internal"]}


def test_missing_env_vars_reported_together(monkeypatch):
    monkeypatch.delenv("NOPE_ONE", raising=False)
    monkeypatch.delenv("NOPE_TWO", raising=False)
    with pytest.raises(ConfigError, match="NOPE_ONE, NOPE_TWO"):
        resolve_env_vars("${NOPE_ONE}:${NOPE_TWO}")
