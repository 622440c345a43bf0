"""Failures that abort a pipeline run before its children are drained."""

from __future__ import annotations


class SetupError(RuntimeError):
    pass


class PipeCreationError(SetupError):
    pass


class SpawnError(SetupError):
    pass
