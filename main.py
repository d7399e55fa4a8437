"""
Command line entrypoint.
Reads flags, environment and .env, sets up logging and runs the server from server.py.
"""
from __future__ import annotations

import logging
import math
import shutil
from pathlib import Path
from typing import Optional

import typer
from dotenv import find_dotenv, load_dotenv

from reportconv.config import (
    DEFAULT_HOST,
    DEFAULT_PANDOC_EXECUTABLE,
    DEFAULT_PORT,
    Config,
    UnknownTeamPolicy,
    parse_duration,
)
from reportconv.errors import ServerStartupError
from reportconv.log import setup_logging
from server import run_server


logger = logging.getLogger("reportconv")

cli = typer.Typer(
    name="reportconv",
    help="Minimal server for converting Markdown reports to neat PDFs.",
    add_completion=False,
)


def build_config(
    app_root: Optional[Path],
    pandoc_executable: str,
    pandoc_timeout: str,
    host: str,
    port: int,
    unknown_team_policy: UnknownTeamPolicy,
    scratch_dir: Optional[Path],
) -> Config:
    if port <= 0:
        raise typer.BadParameter(f"port must be a positive number, is: {port}", param_hint="--port")

    try:
        timeout = parse_duration(pandoc_timeout)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--pandocTimeout") from exc
    if timeout <= 0 or not math.isfinite(timeout):
        raise typer.BadParameter(f"timeout must be positive, is: {pandoc_timeout}", param_hint="--pandocTimeout")

    if app_root is None:
        app_root = Path.cwd()

    return Config(
        app_root=app_root.resolve(),
        host=host,
        port=port,
        pandoc_executable=pandoc_executable,
        pandoc_timeout=timeout,
        unknown_team_policy=unknown_team_policy,
        scratch_dir=scratch_dir,
    )


def check_resources(config: Config) -> None:
    for path in (config.index_path, config.template_path):
        if not path.is_file():
            raise ServerStartupError(f"required resource is missing: {path}")
    if not config.fonts_path.is_dir():
        logger.warning("font directory %s does not exist, typst will fall back to system fonts", config.fonts_path)
    if shutil.which(config.pandoc_executable) is None:
        logger.warning("%s was not found on PATH, conversions will fail", config.pandoc_executable)


@cli.command()
def serve(
    app_root: Optional[Path] = typer.Option(
        None,
        "--applicationRoot",
        "--appRoot",
        envvar="APPLICATION_ROOT",
        help="path to application root directory",
        file_okay=False,
    ),
    pandoc_executable: str = typer.Option(
        DEFAULT_PANDOC_EXECUTABLE,
        "--pandocExecutable",
        envvar="PANDOC_EXECUTABLE",
        help="name of pandoc executable",
    ),
    pandoc_timeout: str = typer.Option(
        "10s",
        "--pandocTimeout",
        envvar="PANDOC_TIMEOUT",
        help="timeout for pandoc conversion, e.g. 10s, 1m30s or plain seconds",
    ),
    host: str = typer.Option(DEFAULT_HOST, "--host", "-h", envvar="HTTP_HOST", help="host to expose service on"),
    port: int = typer.Option(DEFAULT_PORT, "--port", "-p", envvar="HTTP_PORT", help="port to expose service on"),
    unknown_team_policy: UnknownTeamPolicy = typer.Option(
        UnknownTeamPolicy.REJECT,
        "--unknownTeamPolicy",
        envvar="UNKNOWN_TEAM_POLICY",
        help="reject unknown team identifiers or convert them without a team name",
        case_sensitive=False,
    ),
    scratch_dir: Optional[Path] = typer.Option(
        None,
        "--scratchDir",
        envvar="SCRATCH_DIR",
        help="directory for per-request scratch files (default: system temp dir)",
        file_okay=False,
    ),
    log_level: str = typer.Option("INFO", "--logLevel", envvar="LOG_LEVEL", help="logging level"),
) -> None:
    config = build_config(
        app_root, pandoc_executable, pandoc_timeout, host, port, unknown_team_policy, scratch_dir
    )
    try:
        setup_logging(config.log_file, log_level)
        if app_root is None:
            logger.info("no application root provided, using working directory at %s", config.app_root)
        check_resources(config)
        run_server(config)
    except ServerStartupError as exc:
        logger.error("%s", exc)
        raise typer.Exit(1) from exc


def main() -> None:
    # Values from .env never override variables already set in the environment.
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path)
    cli()


if __name__ == "__main__":
    main()
