"""The trainer's fixed four-stage chain.

preprocess reads the CSV named on the command line, forward_layer and
backward_layer transform the stream, and logger writes to our own stdout.
"""

from __future__ import annotations

from typing import Dict, Optional

from .core import Pipeline, StageSpec
from .utils import _get, stage_args, stage_program


ROLES = ("producer", "transformer_1", "transformer_2", "consumer")

DEFAULT_PROGRAMS = {
    "producer": "preprocess",
    "transformer_1": "forward_layer",
    "transformer_2": "backward_layer",
    "consumer": "logger",
}


def trainer_pipeline(params: Optional[Dict] = None) -> Pipeline:
    params = params or {}
    configured = _get(params, "stages", default={}) or {}
    if not isinstance(configured, dict):
        raise ValueError("`stages` must map role names to stage settings")
    unknown = sorted(set(configured) - set(ROLES))
    if unknown:
        raise ValueError(
            f"Unknown stage role(s) {', '.join(unknown)}; expected {', '.join(ROLES)}"
        )
    stages = [
        StageSpec(
            name=role,
            program=stage_program(params, role, DEFAULT_PROGRAMS[role]),
            args=stage_args(params, role),
            takes_argument=(role == "producer"),
        )
        for role in ROLES
    ]
    edges = list(zip(ROLES, ROLES[1:]))
    return Pipeline(stages=stages, edges=edges, name="trainer")
