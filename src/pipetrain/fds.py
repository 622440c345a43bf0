"""Pipe allocation and descriptor hygiene for the orchestrator process.

Every pipe end is marked close-on-exec as soon as it exists. Stages get the end
they need through ``dup2`` onto fd 0/1, which leaves the copy inheritable, so
the original numbers never leak into unrelated children.
"""

from __future__ import annotations

import fcntl
import os
from dataclasses import dataclass
from typing import Iterable, List

from .errors import PipeCreationError
from .logging import get_logger


log = get_logger("pipetrain.fds")


def set_cloexec(fd: int) -> bool:
    """Add FD_CLOEXEC to ``fd`` keeping its other flags.

    Failures are logged and reported through the return value only.
    """
    try:
        flags = fcntl.fcntl(fd, fcntl.F_GETFD)
    except OSError as e:
        log.error("fcntl F_GETFD failed on fd %d: %s", fd, e)
        return False
    try:
        fcntl.fcntl(fd, fcntl.F_SETFD, flags | fcntl.FD_CLOEXEC)
    except OSError as e:
        log.error("fcntl F_SETFD failed on fd %d: %s", fd, e)
        return False
    return True


@dataclass
class Pipe:
    name: str
    read_fd: int
    write_fd: int
    read_open: bool = True
    write_open: bool = True

    @classmethod
    def open(cls, name: str) -> "Pipe":
        try:
            r, w = os.pipe()
        except OSError as e:
            log.error("pipe %s: %s", name, e)
            raise PipeCreationError(f"could not create pipe {name}: {e}") from e
        return cls(name=name, read_fd=r, write_fd=w)

    def fds(self) -> tuple[int, int]:
        return self.read_fd, self.write_fd

    def close(self) -> int:
        """Release whichever ends are still held. Returns how many were closed."""
        closed = 0
        if self.read_open:
            self.read_open = False
            closed += _close(self.read_fd, f"{self.name} read end")
        if self.write_open:
            self.write_open = False
            closed += _close(self.write_fd, f"{self.name} write end")
        return closed


def _close(fd: int, label: str) -> int:
    try:
        os.close(fd)
    except OSError as e:
        # Marked released regardless; never retried
        log.error("close %s (fd %d): %s", label, fd, e)
    return 1


def open_pipes(names: Iterable[str]) -> List[Pipe]:
    pipes: List[Pipe] = []
    try:
        for name in names:
            pipe = Pipe.open(name)
            pipes.append(pipe)
            for fd in pipe.fds():
                set_cloexec(fd)
    except PipeCreationError:
        close_pipes(pipes)
        raise
    return pipes


def close_pipes(pipes: Iterable[Pipe]) -> int:
    return sum(p.close() for p in pipes)
