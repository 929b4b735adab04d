"""Engine configuration loading and validation.

Reads engine.toml from a config directory, parses all sections, and returns
a validated EngineConfig dataclass.
"""

from __future__ import annotations

import enum
import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, time
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from scheduling_engine.models import SourceOrigin

CONFIG_FILENAME = "engine.toml"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

ALL_WEEKDAYS: tuple[int, ...] = (0, 1, 2, 3, 4, 5, 6)


class ConfigError(Exception):
    """Raised when engine configuration is missing, malformed, or invalid."""


class StoreType(enum.StrEnum):
    """Transport used to reach a source store."""

    MEMORY = "memory"
    JSON = "json"
    HTTP = "http"


class NotifierType(enum.StrEnum):
    """Post-commit notification collaborator."""

    NONE = "none"
    LOG = "log"
    WEBHOOK = "webhook"


@dataclass
class LoggingConfig:
    """Logging configuration from [engine.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass(frozen=True)
class BlackoutPeriod:
    """One ``[[engine.detection.blackout_periods]]`` entry: ``[start, end)`` is off limits."""

    start: datetime
    end: datetime
    reason: str = ""


@dataclass
class DetectionConfig:
    """Conflict detection policy from [engine.detection] section.

    Severity thresholds are fractions of the shorter event's duration.
    Suggestions scan forward from the proposed start in
    ``suggestion_step_minutes`` increments, staying on the same calendar day,
    inside ``business_hours_start``..``business_hours_end`` and on one of
    ``work_days`` (Monday=0).  ``buffer_minutes`` of 0 disables the
    buffer rule.

    With ``enforce_business_hours`` a proposed event outside business hours
    or on a non-work day raises a ``business_rule`` conflict.  Blackout
    periods always do.
    """

    critical_threshold: float = 0.75
    high_threshold: float = 0.40
    medium_threshold: float = 0.10
    business_hours_start: time = time(8, 0)
    business_hours_end: time = time(18, 0)
    work_days: tuple[int, ...] = ALL_WEEKDAYS
    suggestion_step_minutes: int = 30
    max_suggestions: int = 3
    buffer_minutes: int = 0
    enforce_business_hours: bool = False
    blackout_periods: tuple[BlackoutPeriod, ...] = ()


@dataclass
class NegotiationConfig:
    """Timeouts from [engine.negotiation] section.

    ``stale_check_after_s`` is how long a negotiation may sit in ``resolved``
    before commit must re-run detection; 0 means commit always re-validates.
    """

    detect_timeout_s: float = 15.0
    store_timeout_s: float = 10.0
    stale_check_after_s: float = 0.0


@dataclass
class StoreConfig:
    """A single source store entry from [[engine.stores]]."""

    origin: SourceOrigin
    type: StoreType = StoreType.MEMORY
    path: Path | None = None
    url: str | None = None
    token: str | None = None
    timeout_s: float = 30.0


@dataclass
class NotificationConfig:
    """Notifier configuration from [engine.notifications] section."""

    type: NotifierType = NotifierType.LOG
    url: str | None = None
    token: str | None = None
    timeout_s: float = 10.0


@dataclass
class EngineConfig:
    """Parsed and validated engine configuration."""

    name: str
    timezone: str | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    negotiation: NegotiationConfig = field(default_factory=NegotiationConfig)
    stores: list[StoreConfig] = field(default_factory=list)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _parse_clock(value: Any, path: str) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        try:
            return time.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ConfigError(f"Invalid {path}: {value!r}. Expected a 'HH:MM' string.")


def _parse_local_datetime(value: Any, path: str) -> datetime:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError:
            pass
    if isinstance(value, datetime) and value.tzinfo is None:
        return value
    raise ConfigError(
        f"Invalid {path}: {value!r}. Expected a local date-time such as 2026-12-24T00:00:00."
    )


def _parse_blackouts(raw: Any) -> tuple[BlackoutPeriod, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError("engine.detection.blackout_periods must be an array of tables")
    periods: list[BlackoutPeriod] = []
    for index, entry in enumerate(raw):
        path = f"engine.detection.blackout_periods[{index}]"
        if not isinstance(entry, dict):
            raise ConfigError(f"{path} must be a TOML table")
        start = _parse_local_datetime(entry.get("start"), f"{path}.start")
        end = _parse_local_datetime(entry.get("end"), f"{path}.end")
        if end <= start:
            raise ConfigError(f"{path} must end after it starts")
        reason = entry.get("reason", "")
        if not isinstance(reason, str):
            raise ConfigError(f"{path}.reason must be a string")
        periods.append(BlackoutPeriod(start=start, end=end, reason=reason.strip()))
    return tuple(periods)


def _parse_fraction(section: dict[str, Any], key: str, default: float) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid engine.detection.{key}: {raw!r}") from exc
    if not 0.0 <= value <= 1.0:
        raise ConfigError(f"Invalid engine.detection.{key}: {value!r}. Must be within [0, 1].")
    return value


def _parse_positive_int(section: dict[str, Any], path: str, key: str, default: int) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _parse_seconds(section: dict[str, Any], path: str, key: str, default: float) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must not be negative.")
    return value


def _parse_detection(raw: dict[str, Any]) -> DetectionConfig:
    """Parse the optional [engine.detection] sub-section."""
    critical = _parse_fraction(raw, "critical_threshold", 0.75)
    high = _parse_fraction(raw, "high_threshold", 0.40)
    medium = _parse_fraction(raw, "medium_threshold", 0.10)
    if not medium <= high <= critical:
        raise ConfigError(
            "engine.detection thresholds must satisfy "
            "medium_threshold <= high_threshold <= critical_threshold"
        )

    hours = raw.get("business_hours")
    if hours is not None:
        if not isinstance(hours, list) or len(hours) != 2:
            raise ConfigError("engine.detection.business_hours must be a [start, end] pair")
        start = _parse_clock(hours[0], "engine.detection.business_hours[0]")
        end = _parse_clock(hours[1], "engine.detection.business_hours[1]")
    else:
        start = _parse_clock(raw.get("business_hours_start", "08:00"), "business_hours_start")
        end = _parse_clock(raw.get("business_hours_end", "18:00"), "business_hours_end")
    if end <= start:
        raise ConfigError("engine.detection business hours must end after they start")

    raw_days = raw.get("work_days", list(ALL_WEEKDAYS))
    if not isinstance(raw_days, list) or not raw_days:
        raise ConfigError("engine.detection.work_days must be a non-empty list of weekday numbers")
    work_days: list[int] = []
    for day in raw_days:
        if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
            raise ConfigError(
                f"Invalid engine.detection.work_days entry: {day!r}. Expected 0 (Mon) to 6 (Sun)."
            )
        if day not in work_days:
            work_days.append(day)

    enforce = raw.get("enforce_business_hours", False)
    if not isinstance(enforce, bool):
        raise ConfigError(
            f"Invalid engine.detection.enforce_business_hours: {enforce!r}. Must be a boolean."
        )

    buffer_raw = raw.get("buffer_minutes", 0)
    if isinstance(buffer_raw, bool) or not isinstance(buffer_raw, int) or buffer_raw < 0:
        raise ConfigError(
            f"Invalid engine.detection.buffer_minutes: {buffer_raw!r}. "
            "Must be a non-negative integer."
        )

    return DetectionConfig(
        critical_threshold=critical,
        high_threshold=high,
        medium_threshold=medium,
        business_hours_start=start,
        business_hours_end=end,
        work_days=tuple(sorted(work_days)),
        suggestion_step_minutes=_parse_positive_int(
            raw, "engine.detection", "suggestion_step_minutes", 30
        ),
        max_suggestions=_parse_positive_int(raw, "engine.detection", "max_suggestions", 3),
        buffer_minutes=buffer_raw,
        enforce_business_hours=enforce,
        blackout_periods=_parse_blackouts(raw.get("blackout_periods")),
    )


def _parse_negotiation(raw: dict[str, Any]) -> NegotiationConfig:
    """Parse the optional [engine.negotiation] sub-section."""
    path = "engine.negotiation"
    detect_timeout_s = _parse_seconds(raw, path, "detect_timeout_s", 15.0)
    store_timeout_s = _parse_seconds(raw, path, "store_timeout_s", 10.0)
    if detect_timeout_s <= 0 or store_timeout_s <= 0:
        raise ConfigError(f"{path} timeouts must be positive")
    return NegotiationConfig(
        detect_timeout_s=detect_timeout_s,
        store_timeout_s=store_timeout_s,
        stale_check_after_s=_parse_seconds(raw, path, "stale_check_after_s", 0.0),
    )


def _parse_store_entry(entry: Any, index: int, config_dir: Path) -> StoreConfig:
    """Parse and validate one ``[[engine.stores]]`` entry."""
    entry_path = f"engine.stores[{index}]"
    if not isinstance(entry, dict):
        raise ConfigError(f"{entry_path} must be a TOML table")

    try:
        origin = SourceOrigin(str(entry.get("origin", "")).strip())
    except ValueError as exc:
        allowed = ", ".join(o.value for o in SourceOrigin)
        raise ConfigError(
            f"Invalid {entry_path}.origin: {entry.get('origin')!r}. Expected one of: {allowed}"
        ) from exc

    try:
        store_type = StoreType(str(entry.get("type", StoreType.MEMORY.value)).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(t.value for t in StoreType)
        raise ConfigError(
            f"Invalid {entry_path}.type: {entry.get('type')!r}. Expected one of: {allowed}"
        ) from exc

    path: Path | None = None
    url: str | None = None
    if store_type == StoreType.JSON:
        raw_path = entry.get("path")
        if not isinstance(raw_path, str) or not raw_path.strip():
            raise ConfigError(f"{entry_path}.path is required for json stores")
        path = Path(raw_path)
        if not path.is_absolute():
            path = config_dir / path
    elif store_type == StoreType.HTTP:
        url = entry.get("url")
        if not isinstance(url, str) or not url.strip():
            raise ConfigError(f"{entry_path}.url is required for http stores")

    token = entry.get("token")
    if token is not None and not isinstance(token, str):
        raise ConfigError(f"{entry_path}.token must be a string when set")

    return StoreConfig(
        origin=origin,
        type=store_type,
        path=path,
        url=url,
        token=token or None,
        timeout_s=_parse_seconds(entry, entry_path, "timeout_s", 30.0),
    )


def _parse_notifications(raw: dict[str, Any]) -> NotificationConfig:
    """Parse the optional [engine.notifications] sub-section."""
    try:
        notifier_type = NotifierType(str(raw.get("type", NotifierType.LOG.value)).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(t.value for t in NotifierType)
        raise ConfigError(
            f"Invalid engine.notifications.type: {raw.get('type')!r}. Expected one of: {allowed}"
        ) from exc

    url = raw.get("url")
    if notifier_type == NotifierType.WEBHOOK and (not isinstance(url, str) or not url.strip()):
        raise ConfigError("engine.notifications.url is required for webhook notifications")

    return NotificationConfig(
        type=notifier_type,
        url=url,
        token=raw.get("token") or None,
        timeout_s=_parse_seconds(raw, "engine.notifications", "timeout_s", 10.0),
    )


def load_config(config_dir: Path) -> EngineConfig:
    """Load and validate an engine.toml from *config_dir*.

    Relative store paths are resolved against *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    raw_bytes = toml_path.read_bytes()
    try:
        data = tomllib.loads(raw_bytes.decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    # --- [engine] section (required) ---
    engine_section = data.get("engine")
    if not isinstance(engine_section, dict):
        raise ConfigError("Missing [engine] section in config")

    name = engine_section.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("Missing required field: engine.name")

    timezone = engine_section.get("timezone")
    if timezone is not None:
        try:
            ZoneInfo(str(timezone))
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"Invalid engine.timezone: {timezone!r}") from exc

    # --- [engine.logging] sub-section ---
    logging_section = engine_section.get("logging", {})
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid engine.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    # --- [[engine.stores]] entries ---
    raw_stores = engine_section.get("stores", [])
    if not isinstance(raw_stores, list):
        raise ConfigError("engine.stores must be an array of tables ([[engine.stores]])")
    stores = [
        _parse_store_entry(entry, index, config_dir) for index, entry in enumerate(raw_stores)
    ]
    origins = [store.origin for store in stores]
    duplicates = sorted({o.value for o in origins if origins.count(o) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate engine.stores origin(s): {', '.join(duplicates)}")

    return EngineConfig(
        name=name.strip(),
        timezone=str(timezone) if timezone is not None else None,
        logging=logging_config,
        detection=_parse_detection(engine_section.get("detection", {})),
        negotiation=_parse_negotiation(engine_section.get("negotiation", {})),
        stores=stores,
        notifications=_parse_notifications(engine_section.get("notifications", {})),
    )
