from __future__ import annotations

import enum
import logging
import os
import signal
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .errors import PipeCreationError, SpawnError
from .fds import Pipe, close_pipes, open_pipes
from .logging import get_logger
from .notify import DeathNotifier
from .spawn import spawn_child


@dataclass
class StageSpec:
    name: str
    program: str
    args: List[str] = field(default_factory=list)
    takes_argument: bool = False

    def argv(self, argument: Optional[str] = None) -> List[str]:
        """Argument vector for exec; element 0 echoes the program."""
        argv = [self.program, *self.args]
        if self.takes_argument and argument is not None:
            argv.append(argument)
        return argv


class RunState(enum.Enum):
    INITIALIZING = "initializing"
    PIPES_READY = "pipes_ready"
    ALL_SPAWNED = "all_spawned"
    DRAINING = "draining"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ChildExit:
    pid: int
    stage: Optional[str]
    exit_code: Optional[int] = None
    signal: Optional[int] = None

    @classmethod
    def from_status(cls, pid: int, status: int, stage: Optional[str]) -> "ChildExit":
        if os.WIFSIGNALED(status):
            return cls(pid=pid, stage=stage, signal=os.WTERMSIG(status))
        return cls(pid=pid, stage=stage, exit_code=os.WEXITSTATUS(status))

    @property
    def ok(self) -> bool:
        return self.signal is None and self.exit_code == 0

    def describe(self) -> str:
        if self.signal is not None:
            try:
                name = signal.Signals(self.signal).name
            except ValueError:
                name = "unknown"
            return f"terminated by signal {self.signal} ({name})"
        return f"exited with status {self.exit_code}"

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "stage": self.stage,
            "exit_code": self.exit_code,
            "signal": self.signal,
        }


@dataclass
class RunResult:
    pipeline: str
    exits: List[ChildExit]
    notified: bool = False

    @property
    def failed(self) -> List[ChildExit]:
        return [e for e in self.exits if not e.ok]

    def to_dict(self) -> dict:
        return {
            "pipeline": self.pipeline,
            "notified": self.notified,
            "children": [e.to_dict() for e in self.exits],
            "failed_stages": [e.stage for e in self.failed],
        }


def topo_sort(nodes: Iterable[str], edges: Iterable[tuple[str, str]]) -> list[str]:
    """Order nodes so every edge points forward; ties keep declaration order."""
    nodes = list(nodes)
    incoming = {n: set() for n in nodes}
    outgoing: dict[str, list[str]] = {n: [] for n in nodes}
    for u, v in edges:
        if u not in incoming or v not in incoming:
            raise ValueError(f"Edge references unknown node: {(u, v)}")
        outgoing[u].append(v)
        incoming[v].add(u)
    ordered: list[str] = []
    roots = [n for n in nodes if not incoming[n]]
    while roots:
        n = roots.pop(0)
        ordered.append(n)
        for m in outgoing[n]:
            incoming[m].discard(n)
            if not incoming[m]:
                roots.append(m)
        outgoing[n] = []
    if any(incoming[n] for n in nodes):
        raise ValueError("Cycle detected in pipeline")
    return ordered


class Pipeline:
    """Stages connected by one-writer/one-reader pipes.

    Each edge ``(writer, reader)`` becomes one pipe, allocated in edge order.
    A stage has at most one incoming edge (its stdin) and at most one outgoing
    edge (its stdout); with no outgoing edge it writes to our own stdout.
    """

    def __init__(
        self,
        stages: list[StageSpec],
        edges: list[tuple[str, str]],
        name: str = "pipeline",
    ):
        self.name = name
        self.stages = {}
        for spec in stages:
            if spec.name in self.stages:
                raise ValueError(f"Duplicate stage name: {spec.name}")
            self.stages[spec.name] = spec
        self.edges = list(edges)
        self.order = topo_sort(self.stages.keys(), self.edges)
        self._stdin_edge: dict[str, int] = {}
        self._stdout_edge: dict[str, int] = {}
        for i, (writer, reader) in enumerate(self.edges):
            if writer in self._stdout_edge:
                raise ValueError(f"Stage {writer} already writes to a pipe")
            if reader in self._stdin_edge:
                raise ValueError(f"Stage {reader} already reads from a pipe")
            self._stdout_edge[writer] = i
            self._stdin_edge[reader] = i
        self.state = RunState.INITIALIZING
        self.logger = get_logger(f"pipetrain.{self.name}")
        # One line per reaped child regardless of PIPETRAIN_LOG_LEVEL
        self.reap_logger = get_logger(f"pipetrain.{self.name}.reap", min_level=logging.INFO)

    def pipe_names(self) -> list[str]:
        return [f"{w}->{r}" for w, r in self.edges]

    def plan(self, argument: Optional[str] = None) -> list[dict]:
        names = self.pipe_names()
        steps = []
        for stage_name in self.order:
            spec = self.stages[stage_name]
            stdin_idx = self._stdin_edge.get(stage_name)
            stdout_idx = self._stdout_edge.get(stage_name)
            steps.append(
                {
                    "name": stage_name,
                    "argv": spec.argv(argument),
                    "stdin": names[stdin_idx] if stdin_idx is not None else None,
                    "stdout": names[stdout_idx] if stdout_idx is not None else None,
                }
            )
        return steps

    def run(self, argument: Optional[str] = None) -> RunResult:
        """Wire up and launch every stage, then wait for all of them.

        Raises PipeCreationError or SpawnError on setup failure. Stage failures
        are only reported; they never turn into an exception here.
        """
        self.state = RunState.INITIALIZING
        notifier = DeathNotifier()
        with notifier:
            try:
                pipes = open_pipes(self.pipe_names())
            except PipeCreationError:
                self.state = RunState.FAILED
                raise
            self.state = RunState.PIPES_READY
            self.logger.debug("Pipes ready: %s", ", ".join(p.name for p in pipes))

            try:
                children = self._spawn_all(pipes, argument)
            except SpawnError:
                self.state = RunState.FAILED
                raise
            finally:
                # Held write ends would keep every reader from seeing EOF
                closed = close_pipes(pipes)
                self.logger.debug("Closed %d pipe descriptors", closed)
            self.state = RunState.ALL_SPAWNED
            self.logger.info("All %d stages running, waiting for exits", len(children))

            self.state = RunState.DRAINING
            exits = self._reap(children)
        self.state = RunState.DONE
        return RunResult(pipeline=self.name, exits=exits, notified=notifier.fired)

    def _spawn_all(self, pipes: list[Pipe], argument: Optional[str]) -> dict[int, str]:
        children: dict[int, str] = {}
        for stage_name in self.order:
            spec = self.stages[stage_name]
            stdin_idx = self._stdin_edge.get(stage_name)
            stdout_idx = self._stdout_edge.get(stage_name)
            stdin_fd = pipes[stdin_idx].read_fd if stdin_idx is not None else None
            stdout_fd = pipes[stdout_idx].write_fd if stdout_idx is not None else None
            try:
                pid = spawn_child(spec.program, spec.argv(argument), stdin_fd, stdout_fd)
            except SpawnError:
                if children:
                    self.logger.warning(
                        "Aborting after %s; left running: %s",
                        stage_name,
                        ", ".join(f"{n} ({p})" for p, n in children.items()),
                    )
                raise
            self.logger.info("Spawned %s as pid %d", stage_name, pid)
            children[pid] = stage_name
        return children

    def _reap(self, children: dict[int, str]) -> list[ChildExit]:
        exits: list[ChildExit] = []
        while True:
            try:
                pid, status = os.wait()
            except ChildProcessError:
                break
            child = ChildExit.from_status(pid, status, children.get(pid))
            self.reap_logger.log(
                logging.INFO if child.ok else logging.WARNING,
                "child %d (%s) %s",
                pid,
                child.stage or "?",
                child.describe(),
            )
            exits.append(child)
        return exits
