"""Process pipeline orchestrator for the trainer stages.

Launches a chain of external programs joined by pipes, keeps the orchestrator's
own pipe descriptors out of every child, and reaps each stage as it exits.
"""

from .core import ChildExit, Pipeline, RunResult, StageSpec  # re-export for convenience
from .topology import trainer_pipeline

__all__ = ["ChildExit", "Pipeline", "RunResult", "StageSpec", "trainer_pipeline"]
