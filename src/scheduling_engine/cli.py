"""CLI for the scheduling engine: check proposals and inspect days."""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Any

import click

from scheduling_engine.config import ConfigError, EngineConfig, load_config
from scheduling_engine.core.logging import configure_logging
from scheduling_engine.detector import CollisionGroup, collision_groups
from scheduling_engine.engine import SchedulingEngine
from scheduling_engine.errors import SchedulingError, build_structured_error
from scheduling_engine.models import ConflictResult, SourceOrigin
from scheduling_engine.normalizer import normalize

# Default directory containing engine.toml
DEFAULT_CONFIG_DIR = Path(".")

_config_option = click.option(
    "--config",
    "config_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    show_default=True,
    help="Directory containing engine.toml",
)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Scheduling engine: aggregate event stores and detect conflicts."""


def _load_or_exit(config_dir: Path) -> EngineConfig:
    try:
        config = load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=log_root,
        engine_name=config.name,
    )
    return config


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@cli.command("validate-config")
@_config_option
def validate_config(config_dir: Path) -> None:
    """Validate engine.toml and print a summary."""
    try:
        config = load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Engine: {config.name}")
    click.echo(f"Timezone: {config.timezone or 'naive wall-clock'}")
    detection = config.detection
    click.echo(
        "Business hours: "
        f"{detection.business_hours_start:%H:%M}-{detection.business_hours_end:%H:%M}"
    )
    if not config.stores:
        click.echo("Stores: none configured")
    for store in config.stores:
        target = store.path or store.url or "in-memory"
        click.echo(f"Store: {store.origin.value} ({store.type.value}) {target}")
    click.echo(f"Notifications: {config.notifications.type.value}")


async def _detect(
    config: EngineConfig, record: dict[str, Any], origin: SourceOrigin
) -> ConflictResult:
    engine = SchedulingEngine.from_config(config)
    try:
        proposed = normalize(record, origin, timezone=config.timezone)
        session = await engine.detect(proposed)
        return session.current_result() or ConflictResult.clear()
    finally:
        await engine.shutdown()


@cli.command()
@click.argument("proposed_json", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--origin",
    type=click.Choice([origin.value for origin in SourceOrigin]),
    default=SourceOrigin.UNIFIED_EVENT.value,
    show_default=True,
    help="Source shape of the proposed record",
)
@_config_option
def detect(proposed_json: Path, origin: str, config_dir: Path) -> None:
    """Detect conflicts for the raw event record in PROPOSED_JSON.

    Exits 1 when the event cannot proceed without resolution.
    """
    config = _load_or_exit(config_dir)
    try:
        record = json.loads(proposed_json.read_text(encoding="utf-8"))
    except ValueError as exc:
        click.echo(f"Invalid JSON in {proposed_json}: {exc}", err=True)
        sys.exit(1)

    try:
        result = asyncio.run(_detect(config, record, SourceOrigin(origin)))
    except SchedulingError as exc:
        _echo_json(build_structured_error(exc))
        sys.exit(1)

    _echo_json(result.model_dump(mode="json"))
    if not result.can_proceed:
        sys.exit(1)


async def _day(config: EngineConfig, day: date) -> list[CollisionGroup]:
    engine = SchedulingEngine.from_config(config)
    try:
        events = await engine.events_for_date(day, refresh=True)
        return collision_groups(events)
    finally:
        await engine.shutdown()


@cli.command("day")
@click.argument("day", type=click.DateTime(formats=["%Y-%m-%d"]))
@_config_option
def day_cmd(day: datetime, config_dir: Path) -> None:
    """List aggregated events for DAY (YYYY-MM-DD) with overlap columns."""
    config = _load_or_exit(config_dir)
    groups = asyncio.run(_day(config, day.date()))

    if not groups:
        click.echo(f"No events on {day:%Y-%m-%d}")
        return

    for index, group in enumerate(groups):
        click.echo(
            f"Group {index + 1}: {group.start:%H:%M}-{group.end:%H:%M} "
            f"({len(group.events)} event(s), {group.column_count} column(s))"
        )
        for event in group.events:
            column = group.columns[event.id]
            click.echo(
                f"  [{column}] {event.start_at:%H:%M}-{event.end_at:%H:%M} "
                f"{event.id} {event.title}".rstrip()
            )


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
