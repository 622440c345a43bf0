from __future__ import annotations

import errno
import logging
import os
import signal
from collections import Counter

import pytest

from pipetrain import core
from pipetrain.core import ChildExit, Pipeline, RunState, StageSpec, topo_sort
from pipetrain.errors import PipeCreationError, SpawnError


ROLES = ["producer", "transformer_1", "transformer_2", "consumer"]


def _chain() -> Pipeline:
    stages = [
        StageSpec(name=r, program=f"bin/{r}", takes_argument=(r == "producer"))
        for r in ROLES
    ]
    return Pipeline(stages, list(zip(ROLES, ROLES[1:])), name="trainer")


class FakeOS:
    """Records pipe creation, closes and spawn requests without forking."""

    def __init__(self, monkeypatch, fail_pipe_at=None, fail_spawn_at=None, statuses=None):
        self.pipes = []
        self.closed = []
        self.spawns = []
        self.fail_pipe_at = fail_pipe_at
        self.fail_spawn_at = fail_spawn_at
        self.statuses = list(statuses or [])
        self._real_pipe = os.pipe
        self._real_close = os.close
        monkeypatch.setattr(os, "pipe", self.pipe)
        monkeypatch.setattr(os, "close", self.close)
        monkeypatch.setattr(os, "wait", self.wait)
        monkeypatch.setattr(core, "spawn_child", self.spawn)

    def pipe(self):
        if self.fail_pipe_at is not None and len(self.pipes) == self.fail_pipe_at:
            raise OSError(errno.EMFILE, "Too many open files")
        pair = self._real_pipe()
        self.pipes.append(pair)
        return pair

    def close(self, fd):
        self.closed.append(fd)
        self._real_close(fd)

    def spawn(self, program, argv, stdin_fd=None, stdout_fd=None):
        if self.fail_spawn_at is not None and len(self.spawns) == self.fail_spawn_at:
            raise SpawnError(f"could not create process for {program}")
        for fd in (stdin_fd, stdout_fd):
            if fd is not None:
                assert not os.get_inheritable(fd)
        self.spawns.append((program, list(argv), stdin_fd, stdout_fd))
        return 1000 + len(self.spawns)

    def wait(self):
        if not self.statuses:
            raise ChildProcessError(errno.ECHILD, "No child processes")
        return self.statuses.pop(0)

    def pipe_fds(self):
        return [fd for pair in self.pipes for fd in pair]


def test_topo_sort_keeps_declaration_order():
    assert topo_sort(["a", "b", "c"], [("a", "b"), ("b", "c")]) == ["a", "b", "c"]
    assert topo_sort(["c", "b", "a"], [("a", "b"), ("b", "c")]) == ["a", "b", "c"]


def test_topo_sort_rejects_cycles_and_unknown_nodes():
    with pytest.raises(ValueError, match="Cycle"):
        topo_sort(["a", "b"], [("a", "b"), ("b", "a")])
    with pytest.raises(ValueError, match="unknown node"):
        topo_sort(["a"], [("a", "z")])


def test_pipeline_rejects_fan_out_fan_in_and_duplicates():
    a, b, c = (StageSpec(name=n, program=n) for n in "abc")
    with pytest.raises(ValueError, match="already writes"):
        Pipeline([a, b, c], [("a", "b"), ("a", "c")])
    with pytest.raises(ValueError, match="already reads"):
        Pipeline([a, b, c], [("a", "c"), ("b", "c")])
    with pytest.raises(ValueError, match="Duplicate"):
        Pipeline([a, a], [])


def test_plan_describes_chain_wiring():
    steps = _chain().plan("data.csv")
    assert [s["name"] for s in steps] == ROLES
    assert steps[0]["argv"] == ["bin/producer", "data.csv"]
    assert steps[1]["argv"] == ["bin/transformer_1"]
    assert steps[0]["stdin"] is None
    assert steps[0]["stdout"] == steps[1]["stdin"] == "producer->transformer_1"
    assert steps[3]["stdout"] is None


def test_run_wires_stages_and_closes_each_pipe_end_once(monkeypatch, caplog):
    statuses = [(1001, 0), (1002, 0), (1003, 7 << 8), (1004, signal.SIGPIPE)]
    fake = FakeOS(monkeypatch, statuses=statuses)
    pipe = _chain()

    with caplog.at_level(logging.INFO):
        result = pipe.run("data.csv")

    assert len(fake.pipes) == 3
    (r1, w1), (r2, w2), (r3, w3) = fake.pipes
    assert [s[2:] for s in fake.spawns] == [(None, w1), (r1, w2), (r2, w3), (r3, None)]
    assert fake.spawns[0][1] == ["bin/producer", "data.csv"]
    assert [s[1] for s in fake.spawns[1:]] == [[f"bin/{r}"] for r in ROLES[1:]]

    counts = Counter(fd for fd in fake.closed if fd in fake.pipe_fds())
    assert set(counts) == set(fake.pipe_fds())
    assert all(n == 1 for n in counts.values())

    assert pipe.state is RunState.DONE
    assert [e.stage for e in result.exits] == ROLES
    assert [e.stage for e in result.failed] == ["transformer_2", "consumer"]
    lines = [r.getMessage() for r in caplog.records if r.getMessage().startswith("child ")]
    assert lines == [
        "child 1001 (producer) exited with status 0",
        "child 1002 (transformer_1) exited with status 0",
        "child 1003 (transformer_2) exited with status 7",
        f"child 1004 (consumer) terminated by signal {int(signal.SIGPIPE)} (SIGPIPE)",
    ]


def test_pipe_creation_failure_spawns_nothing(monkeypatch):
    fake = FakeOS(monkeypatch, fail_pipe_at=1)
    pipe = _chain()
    with pytest.raises(PipeCreationError):
        pipe.run("data.csv")
    assert fake.spawns == []
    assert sorted(fake.closed) == sorted(fake.pipe_fds())
    assert pipe.state is RunState.FAILED


def test_spawn_failure_stops_remaining_spawns(monkeypatch):
    fake = FakeOS(monkeypatch, fail_spawn_at=1)
    pipe = _chain()
    with pytest.raises(SpawnError):
        pipe.run("data.csv")
    assert len(fake.spawns) == 1
    counts = Counter(fd for fd in fake.closed if fd in fake.pipe_fds())
    assert len(counts) == 6 and set(counts.values()) == {1}
    assert pipe.state is RunState.FAILED


def test_unknown_child_is_reported_with_placeholder(monkeypatch, caplog):
    FakeOS(monkeypatch, statuses=[(4242, 3 << 8)])
    with caplog.at_level(logging.INFO):
        result = _chain().run("x")
    assert result.exits == [ChildExit(pid=4242, stage=None, exit_code=3)]
    assert "child 4242 (?) exited with status 3" in caplog.text


def test_run_result_record():
    result = core.RunResult(
        pipeline="trainer",
        exits=[
            ChildExit(pid=1, stage="producer", exit_code=0),
            ChildExit(pid=2, stage="consumer", signal=9),
        ],
    )
    record = result.to_dict()
    assert record["failed_stages"] == ["consumer"]
    assert record["children"][1] == {"pid": 2, "stage": "consumer", "exit_code": None, "signal": 9}


def test_reap_lines_survive_stricter_log_level(monkeypatch, caplog):
    statuses = [(1001, 0), (1002, 0), (1003, 0), (1004, 0)]
    FakeOS(monkeypatch, statuses=statuses)
    root = logging.getLogger()
    previous = root.level
    root.setLevel(logging.WARNING)
    try:
        _chain().run("data.csv")
    finally:
        root.setLevel(previous)
    messages = [r.getMessage() for r in caplog.records]
    assert sum(m.startswith("child ") for m in messages) == 4
    assert not any(m.startswith("Spawned ") for m in messages)
