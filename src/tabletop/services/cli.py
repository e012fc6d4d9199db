"""Typer CLI entry point for running and inspecting tabletop exercises."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import orjson
import structlog
import typer
import uvicorn
from dotenv import load_dotenv
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from ..config.settings import DEFAULT_CONFIG_PATH, ConfigError, ServerConfig, load_server_config
from ..core.errors import ProgressionError
from ..core.schemas import Exercise
from ..core.views import Leaderboard
from .auth import SYSTEM, Caller
from .web_api import ExerciseCreate, Runtime, build_runtime, create_app

LOGGER = structlog.get_logger(__name__)

app = typer.Typer(help="Run and inspect tabletop exercises.", invoke_without_command=False)
console = Console()
_configured_logging = False


def configure_logging(level: str = "INFO") -> None:
    global _configured_logging
    if _configured_logging:
        return
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        cache_logger_on_first_use=True,
    )
    _configured_logging = True


def _load_config(config: Path) -> ServerConfig:
    try:
        return load_server_config(config)
    except ConfigError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1) from exc


def _file_runtime(config: Path, data_dir: Optional[Path]) -> Runtime:
    """Runtime over the JSON document store, for offline commands."""

    server_config = _load_config(config)
    server_config.persistence = "json"
    if data_dir is not None:
        server_config.data_dir = data_dir
    return build_runtime(server_config)


@app.command("serve")
def serve(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to server configuration JSON"),
    host: Optional[str] = typer.Option(None, help="Override the bind address"),
    port: Optional[int] = typer.Option(None, help="Override the bind port"),
) -> None:
    """Serve the HTTP and WebSocket API with uvicorn."""

    load_dotenv()
    server_config = _load_config(config)
    if host is not None:
        server_config.host = host
    if port is not None:
        server_config.port = port
    configure_logging(server_config.log_level)

    LOGGER.info(
        "server.start",
        host=server_config.host,
        port=server_config.port,
        persistence=server_config.persistence,
    )
    application = create_app(build_runtime(server_config))
    uvicorn.run(application, host=server_config.host, port=server_config.port, log_level=server_config.log_level.lower())


@app.command("load")
def load(
    path: Path = typer.Argument(..., help="Exercise definition JSON (title, injects, summary)"),
    facilitator: str = typer.Option(..., "--facilitator", help="Facilitator id that will own the exercise"),
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to server configuration JSON"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Override the JSON store directory"),
) -> None:
    """Import an exercise definition into the JSON store."""

    load_dotenv()
    configure_logging()

    try:
        payload = ExerciseCreate.model_validate(orjson.loads(path.read_bytes()))
    except (OSError, orjson.JSONDecodeError, ValidationError) as exc:
        typer.echo(f"Error: cannot load {path}: {exc}")
        raise typer.Exit(code=1) from exc

    runtime = _file_runtime(config, data_dir)
    exercise = asyncio.run(
        runtime.controller.create_exercise(
            Caller.facilitator(facilitator),
            payload.title,
            description=payload.description,
            max_participants=payload.max_participants,
            settings=payload.settings,
            injects=payload.injects,
            summary=payload.summary,
        )
    )
    typer.echo(f"Loaded exercise {exercise.id} ({len(exercise.injects)} injects), access code {exercise.access_code}")


def _render_leaderboard(board: Leaderboard) -> Table:
    table = Table(title=f"{board.title} (average {board.average_score})", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("Name")
    table.add_column("Team")
    table.add_column("Total", justify="right")
    table.add_column("By inject")
    for rank, entry in enumerate(board.participants, start=1):
        breakdown = ", ".join(f"{number}: {points}" for number, points in sorted(entry.inject_scores.items()))
        table.add_row(str(rank), entry.name, entry.team, str(entry.total_score), breakdown)
    return table


def _render_injects(exercise: Exercise) -> Table:
    table = Table(title=f"{exercise.title} [{exercise.access_code}]", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Phases", justify="right")
    table.add_column("Released")
    table.add_column("Open")
    table.add_column("Locked")
    for inject in exercise.injects:
        table.add_row(
            str(inject.inject_number),
            inject.title,
            str(inject.phase_count),
            "yes" if inject.is_active else "no",
            "yes" if inject.responses_open else "no",
            "yes" if inject.phase_progression_locked else "no",
        )
    return table


@app.command("scores")
def scores(
    exercise_id: str = typer.Argument(..., help="Exercise id"),
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to server configuration JSON"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Override the JSON store directory"),
) -> None:
    """Print the leaderboard for an exercise."""

    load_dotenv()
    configure_logging()
    runtime = _file_runtime(config, data_dir)
    try:
        board = asyncio.run(runtime.controller.leaderboard(SYSTEM, exercise_id))
    except ProgressionError as exc:
        typer.echo(f"Error: {exc.message}")
        raise typer.Exit(code=1) from exc
    console.print(_render_leaderboard(board))


@app.command("show")
def show(
    exercise_id: str = typer.Argument(..., help="Exercise id"),
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to server configuration JSON"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Override the JSON store directory"),
) -> None:
    """Print an exercise's injects and their gate flags."""

    load_dotenv()
    configure_logging()
    runtime = _file_runtime(config, data_dir)
    try:
        exercise = asyncio.run(runtime.controller.get_exercise(SYSTEM, exercise_id))
    except ProgressionError as exc:
        typer.echo(f"Error: {exc.message}")
        raise typer.Exit(code=1) from exc
    console.print(_render_injects(exercise))


if __name__ == "__main__":  # pragma: no cover
    app()
