from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from dotenv import load_dotenv

from .errors import SetupError
from .logging import attach_log_file, get_logger
from .phases import default_trainer_cmd, run_phases
from .topology import trainer_pipeline
from .utils import _get, log_dir, model_file


USAGE_ERROR_CODE = 2

app = typer.Typer(add_completion=False, help="Four-stage process pipeline orchestrator")
log = get_logger("pipetrain.cli")


def load_config(path: str | Path) -> dict:
    p = Path(path)
    if not p.exists():
        log.debug("No config at %s, using defaults", p)
        return {}
    with open(p, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _load_pipeline(config: str):
    try:
        return trainer_pipeline(load_config(config))
    except ValueError as e:
        typer.echo(f"Invalid config {config}: {e}", err=True)
        raise typer.Exit(code=1)


@app.command()
def run(
    csv_path: str = typer.Argument(..., help="Path forwarded to the first stage"),
    config: str = typer.Option("configs/base.yaml", help="Path to YAML config"),
    strict: bool = typer.Option(
        False, help="Exit 1 when any stage exits non-zero or is killed"
    ),
    log_file: Optional[Path] = typer.Option(None, help="Also write diagnostics here"),
    state_file: Optional[Path] = typer.Option(None, help="Write the run record as JSON"),
):
    """Launch the stages, wire their pipes, and wait for all of them."""
    pipe = _load_pipeline(config)
    if log_file:
        attach_log_file(log_file)
    try:
        result = pipe.run(csv_path)
    except SetupError as e:
        log.error("Setup failed: %s", e)
        raise typer.Exit(code=1)

    if state_file:
        state_file.parent.mkdir(parents=True, exist_ok=True)
        with open(state_file, "w", encoding="utf-8") as f:
            json.dump(result.to_dict(), f, indent=2)
    if strict and result.failed:
        log.error("Failed stages: %s", ", ".join(e.stage or "?" for e in result.failed))
        raise typer.Exit(code=1)


@app.command()
def plan(
    csv_path: str = typer.Argument("<csv_path>", help="Argument shown for the first stage"),
    config: str = typer.Option("configs/base.yaml", help="Path to YAML config"),
):
    """Show how the stages would be wired, without running anything."""
    pipe = _load_pipeline(config)
    for step in pipe.plan(csv_path):
        stdin = step["stdin"] or "-"
        stdout = step["stdout"] or "stdout"
        typer.echo(f"- {step['name']}: {' '.join(step['argv'])}  [in: {stdin}, out: {stdout}]")


@app.command()
def phases(
    train_csv: Optional[str] = typer.Option(None, help="Training CSV"),
    test_csv: Optional[str] = typer.Option(None, help="Test CSV"),
    logs: Optional[str] = typer.Option(None, "--log-dir", help="Directory for phase logs"),
    config: str = typer.Option("configs/base.yaml", help="Path to YAML config"),
):
    """Run pre-test, train and post-test phases through the trainer."""
    params = load_config(config)
    out_dir = Path(logs or log_dir(params))
    try:
        results = run_phases(
            train_csv=Path(train_csv or _get(params, "phases", "train_csv", default="data/train.csv")),
            test_csv=Path(test_csv or _get(params, "phases", "test_csv", default="data/test.csv")),
            log_dir=out_dir,
            trainer_cmd=default_trainer_cmd(config),
            model_file=model_file(params),
        )
    except FileNotFoundError as e:
        typer.echo(f"[run] {e}", err=True)
        raise typer.Exit(code=1)
    if results and not results[-1].ok:
        raise typer.Exit(code=1)


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    try:
        app(args=argv, prog_name="pipetrain", standalone_mode=True)
    except SystemExit as e:
        code = e.code
        if code is None:
            return 0
        if not isinstance(code, int):
            return 1
        # Usage errors exit 1 here, not with click's 2
        return 1 if code == USAGE_ERROR_CODE else code
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
