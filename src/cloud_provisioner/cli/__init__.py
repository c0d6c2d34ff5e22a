"""CLI application for cloud-provisioner."""

from __future__ import annotations

import logging
import os

import typer

from cloud_provisioner import __version__

app = typer.Typer(
    name="cloud-provisioner",
    no_args_is_help=True,
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"cloud-provisioner {__version__}")
        raise typer.Exit


LOG_ENV_VAR = "PROVISIONER_LOG"
_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _log_level(verbose: int) -> int | None:
    """Level from ``PROVISIONER_LOG`` or the ``-v`` count; ``None`` means leave logging alone."""
    env_level = os.environ.get(LOG_ENV_VAR, "").upper()
    if env_level:
        if env_level not in _VALID_LEVELS:
            typer.echo(
                f"WARNING: invalid {LOG_ENV_VAR} level '{env_level}', "
                f"expected one of {', '.join(sorted(_VALID_LEVELS))}; defaulting to INFO",
                err=True,
            )
            return logging.INFO
        return getattr(logging, env_level)
    if verbose >= 2:
        return logging.DEBUG
    if verbose == 1:
        return logging.INFO
    return None


def _configure_logging(verbose: int) -> None:
    level = _log_level(verbose)
    if level is None:
        return

    from rich.console import Console
    from rich.logging import RichHandler

    handler = RichHandler(
        console=Console(stderr=True),
        show_path=level == logging.DEBUG,
        rich_tracebacks=False,
    )
    logging.basicConfig(
        level=logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[handler],
        force=True,
    )
    logging.getLogger("cloud_provisioner").setLevel(level)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase log verbosity (-v info, -vv debug).",
    ),
) -> None:
    """Declarative infrastructure: plan, apply and provision resources from YAML."""
    _ = version
    _configure_logging(verbose)


# Register commands after app is created to avoid circular imports.
from cloud_provisioner.cli import commands as _commands  # noqa: E402, F401
