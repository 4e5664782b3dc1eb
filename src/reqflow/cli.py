from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import click
from dotenv import load_dotenv

from reqflow.config import ReqflowConfig, load_config, save_config
from reqflow.domain import Requirement, UseCase, utcnow
from reqflow.export import render_export
from reqflow.runtime import Runtime, build_store, load_runtime
from reqflow.state import Repository

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _load(config_value: str) -> tuple[Path, ReqflowConfig]:
    root = Path.cwd().resolve()
    return root, load_config(_resolve_config_path(root, config_value))


def _load_runtime(config_value: str) -> Runtime:
    root, config = _load(config_value)
    return load_runtime(config, root=root)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Requirements extraction and handoff workflow."""
    load_dotenv()
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@cli.command("init")
@click.option("--state-backend", type=click.Choice(["memory", "json"]), default=None)
@click.option("--models", "models_value", default=None, help="Comma separated model list.")
@click.option("--config", "config_value", default="reqflow.toml", show_default=True)
def init_command(state_backend: str | None, models_value: str | None, config_value: str) -> None:
    root, config = _load(config_value)
    config_path = _resolve_config_path(root, config_value)
    if state_backend:
        config.state.backend = state_backend  # type: ignore[assignment]
    if models_value:
        candidates = [item.strip() for item in models_value.split(",") if item.strip()]
        if candidates:
            config.models.candidates = candidates
    save_config(config_path, config)

    seeded = 0
    if config.state.backend == "json":
        repository = Repository(build_store(config, root))
        if config.workflow.seed_users:
            seeded = len(repository.seed_users())

    click.echo(f"Initialized reqflow in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Models: {', '.join(config.models.candidates)}")
    click.echo(f"State backend: {config.state.backend}")
    if seeded:
        click.echo(f"Users: {seeded}")


@cli.command("serve")
@click.option("--host", default=None)
@click.option("--port", type=int, default=None)
@click.option("--config", "config_value", default="reqflow.toml", show_default=True)
def serve_command(host: str | None, port: int | None, config_value: str) -> None:
    import uvicorn

    from reqflow.api import create_app

    runtime = _load_runtime(config_value)
    app = create_app(runtime)
    uvicorn.run(
        app,
        host=host or runtime.config.server.host,
        port=port or runtime.config.server.port,
        log_level=logging.getLevelName(logging.getLogger().level).lower(),
    )


@cli.command("analyze")
@click.argument("message")
@click.option("--user", "user_id", type=int, default=None, help="Acting user id.")
@click.option("--project", "project_id", type=int, default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="reqflow.toml", show_default=True)
def analyze_command(
    message: str, user_id: int | None, project_id: int | None, as_json: bool, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    acting = user_id or runtime.config.workflow.default_acting_user_id
    result = asyncio.run(runtime.pipeline.analyze(message, acting, project_id))
    if as_json:
        click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        return

    click.echo(result.response_text)
    if result.requirement_id is not None:
        click.echo("")
        click.echo(f"Requirement: {result.requirement_id} ({result.extracted_title})")
        click.echo(f"Use cases: {len(result.use_case_ids)}")
    if result.suggestions:
        click.echo("")
        for suggestion in result.suggestions:
            click.echo(f"- {suggestion}")
    if result.degraded:
        click.echo(f"Degraded: {', '.join(result.degraded)}", err=True)


@cli.command("export")
@click.option("--output", "output_path", type=click.Path(dir_okay=False), default=None)
@click.option("--config", "config_value", default="reqflow.toml", show_default=True)
def export_command(output_path: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    document = render_export(
        runtime.repository.all(Requirement),
        runtime.repository.all(UseCase),
        utcnow(),
    )
    if output_path:
        Path(output_path).write_text(document, encoding="utf-8")
        click.echo(f"Wrote {output_path}")
        return
    click.echo(document, nl=False)


@cli.command("activity")
@click.option("--limit", type=click.IntRange(1, 500), default=20, show_default=True)
@click.option("--config", "config_value", default="reqflow.toml", show_default=True)
def activity_command(limit: int, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    entries = [entry.to_dict() for entry in runtime.repository.recent_activity(limit)]
    click.echo(json.dumps(entries, ensure_ascii=False, indent=2))
