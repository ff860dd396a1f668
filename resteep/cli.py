import asyncio
import json
from pathlib import Path
from typing import List, Optional

import typer

from resteep.errors import ConfigError, ResteepError
from resteep.supervisor.config import SupervisorConfig, load_config
from resteep.supervisor.logs import configure_logging, default_log_path
from resteep.supervisor.loop import Supervisor
from resteep.supervisor.models import ReloadStrategy

app = typer.Typer(help="Hot-reload supervisor for interactive terminal programs.")


def _load_cli_config(
    target: Path,
    args: Optional[List[str]],
    root: Optional[Path],
    ext: Optional[List[str]],
    exclude: Optional[List[str]],
    config_path: Optional[Path],
    python: Optional[str],
    log_file: Optional[Path],
) -> SupervisorConfig:
    config = load_config(
        config_path,
        target=target,
        args=args,
        root=root,
        extensions=ext,
        excluded_dirs=exclude,
        python=python,
        log_file=log_file,
    )
    if config.strategy is not ReloadStrategy.SUBPROCESS:
        raise ConfigError("the exec strategy is only available through resteep.entry.resteep()")
    return config


@app.command()
def run(
    target: Path = typer.Argument(..., help="Script or package directory to run"),
    args: Optional[List[str]] = typer.Argument(None, help="Arguments passed to the program (after --)"),
    root: Optional[Path] = typer.Option(None, "--root", help="Directory tree to watch (default: cwd)"),
    ext: Optional[List[str]] = typer.Option(None, "--ext", help="Source file extension to watch; repeatable"),
    exclude: Optional[List[str]] = typer.Option(None, "--exclude", help="Directory name to skip; repeatable"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="JSON config file"),
    python: Optional[str] = typer.Option(None, "--python", help="Interpreter used to run the target"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Supervisor log file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Also log routine events to stderr"),
):
    """Run TARGET and restart it, with its last state, whenever a source file changes."""
    try:
        config = _load_cli_config(target, args, root, ext, exclude, config_path, python, log_file)
    except ResteepError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)

    configure_logging(config.log_file, verbose=verbose)
    try:
        exit_code = asyncio.run(Supervisor(config).run())
    except ResteepError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)
    raise typer.Exit(code=exit_code)


@app.command("config")
def show_config(
    target: Path = typer.Argument(..., help="Script or package directory to run"),
    args: Optional[List[str]] = typer.Argument(None),
    root: Optional[Path] = typer.Option(None, "--root"),
    ext: Optional[List[str]] = typer.Option(None, "--ext"),
    exclude: Optional[List[str]] = typer.Option(None, "--exclude"),
    config_path: Optional[Path] = typer.Option(None, "--config"),
    python: Optional[str] = typer.Option(None, "--python"),
    log_file: Optional[Path] = typer.Option(None, "--log-file"),
    json_output: bool = typer.Option(False, "--json", help="Print the effective config as JSON"),
):
    """Print the effective supervisor configuration."""
    try:
        config = _load_cli_config(target, args, root, ext, exclude, config_path, python, log_file)
    except ResteepError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)

    if json_output:
        typer.echo(json.dumps(config.model_dump(mode="json"), indent=2))
        return
    typer.echo(f"target: {config.target}")
    typer.echo(f"args: {' '.join(config.args) or '-'}")
    typer.echo(f"root: {config.root}")
    typer.echo(f"extensions: {', '.join(config.extensions)}")
    typer.echo(f"excluded_dirs: {', '.join(config.excluded_dirs)}")
    typer.echo(f"python: {config.python or 'current interpreter'}")
    typer.echo(f"interpreter_flags: {' '.join(config.interpreter_flags) or '-'}")
    typer.echo(f"log_file: {config.log_file or default_log_path()}")


if __name__ == "__main__":
    app()
