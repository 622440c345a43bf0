from __future__ import annotations

"""Small helpers for reading stage and path settings from config params."""

import os
from typing import Dict, List


def _get(d: Dict, *keys, default=None):
    cur = d
    for k in keys:
        if not isinstance(cur, dict):
            return default
        cur = cur.get(k)
        if cur is None:
            return default
    return cur


def bin_dir(p: Dict) -> str:
    env = os.getenv("PIPETRAIN_BIN_DIR")
    if env is not None:
        return env
    return str(_get(p, "project", "bin_dir", default="bin"))


def log_dir(p: Dict) -> str:
    return str(_get(p, "project", "log_dir", default="logs"))


def model_file(p: Dict) -> str:
    return os.getenv("MODEL_FILE") or str(
        _get(p, "phases", "model_file", default=os.path.join(log_dir(p), "model_params.txt"))
    )


def stage_program(p: Dict, role: str, default: str) -> str:
    """Resolve a stage executable.

    Bare names live under the bin dir; anything with a path separator is used
    as given. An empty bin dir leaves bare names to the PATH search.
    """
    program = str(_get(p, "stages", role, "program", default=default))
    if os.sep in program or (os.altsep and os.altsep in program):
        return program
    base = bin_dir(p)
    return os.path.join(base, program) if base else program


def stage_args(p: Dict, role: str) -> List[str]:
    args = _get(p, "stages", role, "args", default=[])
    if isinstance(args, str):
        return [args]
    return [str(a) for a in args]
