from __future__ import annotations

import asyncio
from typing import Optional

import typer
from pydantic import ValidationError

from app.runner import check_connection, run_stage_service
from core.config import Settings, get_settings
from core.logging import configure_logging, get_logger
from streams.base import BootstrapError

app = typer.Typer(help="Tick -> signal -> alert stream processors")
logger = get_logger(__name__)


def _load_settings(log_level: Optional[str] = None) -> Settings:
    try:
        settings = get_settings()
    except ValidationError as exc:
        configure_logging(log_level or "INFO")
        logger.error("Invalid configuration: %s", exc)
        raise typer.Exit(code=2)
    configure_logging(log_level or settings.log_level)
    return settings


def _run(settings: Settings, stage_name: str, **kwargs) -> None:
    try:
        asyncio.run(run_stage_service(settings, stage_name, **kwargs))
    except BootstrapError as exc:
        logger.error("%s cannot start: %s", stage_name, exc)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:  # pragma: no cover - interactive stop
        logger.info("%s stopped", stage_name)


@app.command()
def aggregator(
    group_id: Optional[str] = typer.Option(None, help="Override consumer group"),
    log_level: Optional[str] = typer.Option(None, help="Log level"),
    max_records: Optional[int] = typer.Option(None, help="Stop after handling this many records"),
) -> None:
    """Consume ticks and publish one signal per tick."""
    settings = _load_settings(log_level)
    _run(settings, "aggregator", group_id=group_id, max_records=max_records)


@app.command()
def alerting(
    group_id: Optional[str] = typer.Option(None, help="Override consumer group"),
    threshold_pct: Optional[float] = typer.Option(None, min=0.0, help="Alert when abs(percent_change) reaches this"),
    cooldown_sec: Optional[float] = typer.Option(None, min=0.0, help="Minimum seconds between alerts per symbol"),
    log_level: Optional[str] = typer.Option(None, help="Log level"),
    max_records: Optional[int] = typer.Option(None, help="Stop after handling this many records"),
) -> None:
    """Consume signals, publish throttled alerts and dead-letter unreadable input."""
    settings = _load_settings(log_level)
    _run(
        settings,
        "alerting",
        group_id=group_id,
        threshold_pct=threshold_pct,
        cooldown_sec=cooldown_sec,
        max_records=max_records,
    )


@app.command()
def test_connection() -> None:
    settings = _load_settings()
    try:
        asyncio.run(check_connection(settings))
    except BootstrapError as exc:
        logger.error("Kafka unreachable: %s", exc)
        raise typer.Exit(code=1)
    typer.echo(f"Connected to {settings.kafka_bootstrap}")


if __name__ == "__main__":
    app()
