"""Train/test phase driver around the trainer pipeline.

Each phase runs the trainer once with ``BACKWARD_MODE`` set to the phase name.
The trainer's stdout (the logger stage's output) is teed into a log file while
``SAMPLE`` lines advance a progress bar; stderr goes to a separate error file.
The logger finishes with a ``SUMMARY <samples> <avg_loss> <avg_yhat>`` line.
"""

from __future__ import annotations

import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import typer

from .logging import get_logger


log = get_logger("pipetrain.phases")


@dataclass
class PhaseSummary:
    samples: str
    avg_loss: str
    avg_yhat: str


@dataclass
class PhaseResult:
    phase: str
    csv: Path
    log_file: Path
    err_file: Path
    total_lines: int
    samples_seen: int
    returncode: int
    summary: Optional[PhaseSummary] = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def default_trainer_cmd(config: Optional[str] = None) -> List[str]:
    cmd = [sys.executable, "-m", "pipetrain", "run"]
    if config:
        cmd += ["--config", str(config)]
    return cmd


def count_nonempty_lines(path: Path) -> int:
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return sum(1 for line in f if line.strip())


def parse_summary(log_file: Path) -> Optional[PhaseSummary]:
    """Last ``SUMMARY`` line of ``log_file``, or None."""
    last = None
    try:
        with open(log_file, "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                if line.startswith("SUMMARY"):
                    last = line
    except FileNotFoundError:
        return None
    if last is None:
        return None
    fields = last.split()[1:4]
    fields += [""] * (3 - len(fields))
    return PhaseSummary(*fields)


def run_phase(
    phase: str,
    csv: Path,
    log_file: Path,
    err_file: Path,
    trainer_cmd: Sequence[str],
    env: Optional[Dict[str, str]] = None,
) -> PhaseResult:
    csv = Path(csv)
    log_file = Path(log_file)
    err_file = Path(err_file)
    if not csv.is_file():
        raise FileNotFoundError(f"CSV file not found for phase '{phase}': {csv}")

    total = count_nonempty_lines(csv)
    typer.echo(f"[run] Phase: {phase}, file: {csv}")
    typer.echo(f"[run] Total lines: {total}")
    typer.echo(f"[run] Logs: {log_file}, errors: {err_file}")

    child_env = dict(os.environ if env is None else env)
    child_env["BACKWARD_MODE"] = phase

    log_file.parent.mkdir(parents=True, exist_ok=True)
    err_file.parent.mkdir(parents=True, exist_ok=True)
    samples = 0
    with open(log_file, "wb") as log_out, open(err_file, "wb") as err_out:
        proc = subprocess.Popen(
            [*trainer_cmd, str(csv)],
            stdout=subprocess.PIPE,
            stderr=err_out,
            env=child_env,
        )
        with typer.progressbar(length=max(total, 0), label=f"[{phase}]") as bar:
            for line in proc.stdout:
                log_out.write(line)
                if line.startswith(b"SAMPLE"):
                    samples += 1
                    bar.update(1)
        proc.stdout.close()
        returncode = proc.wait()

    summary = parse_summary(log_file)
    if summary is not None:
        typer.echo(
            f"[run] Phase '{phase}' summary: samples={summary.samples} "
            f"avg_loss={summary.avg_loss} avg_yhat={summary.avg_yhat}"
        )
    else:
        typer.echo(f"[run] Phase '{phase}' summary: (no SUMMARY line found)")

    if returncode != 0:
        log.error("Phase %s: trainer exited with status %d (see %s)", phase, returncode, err_file)
    typer.echo(f"[run] Phase '{phase}' finished.")
    typer.echo(f"[run] Final logs: {log_file}")
    return PhaseResult(
        phase=phase,
        csv=csv,
        log_file=log_file,
        err_file=err_file,
        total_lines=total,
        samples_seen=samples,
        returncode=returncode,
        summary=summary,
    )


def run_phases(
    train_csv: Path,
    test_csv: Path,
    log_dir: Path,
    trainer_cmd: Sequence[str],
    model_file: Optional[str] = None,
) -> List[PhaseResult]:
    """Baseline test, training, then post-training test.

    Stops after the first phase whose trainer exits non-zero.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    env = dict(os.environ)
    if model_file:
        env["MODEL_FILE"] = str(model_file)
    else:
        env.setdefault("MODEL_FILE", str(log_dir / "model_params.txt"))

    schedule = [
        ("test", test_csv, "pre-test"),
        ("train", train_csv, "train-train"),
        ("test", test_csv, "post-test"),
    ]
    results: List[PhaseResult] = []
    for phase, csv, stem in schedule:
        result = run_phase(
            phase,
            Path(csv),
            log_dir / f"{stem}.log",
            log_dir / f"{stem}.err",
            trainer_cmd,
            env=env,
        )
        results.append(result)
        if not result.ok:
            break
    return results
