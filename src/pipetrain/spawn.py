from __future__ import annotations

import os
import signal
from typing import NoReturn, Optional, Sequence

from .errors import SpawnError
from .logging import get_logger


log = get_logger("pipetrain.spawn")

# Exit codes a stage reports when it dies before its program image starts
EXIT_REDIRECT_FAILED = 125
EXIT_EXEC_FAILED = 127

# Dispositions the interpreter changes at startup; SIG_IGN survives exec
_RESTORE_SIGNALS = ("SIGPIPE", "SIGXFSZ")


def spawn_child(
    program: str,
    argv: Sequence[str],
    stdin_fd: Optional[int] = None,
    stdout_fd: Optional[int] = None,
) -> int:
    """Fork and exec ``program`` with optional stdin/stdout rebinding.

    ``None`` for either descriptor means the child inherits the caller's own
    stream. Returns the child's pid. Raises SpawnError when no process could be
    created; failures inside the child only show up in its exit status.

    None of the caller's descriptors are closed here.
    """
    argv = [str(a) for a in argv]
    try:
        pid = os.fork()
    except OSError as e:
        log.error("fork failed for %s: %s", program, e)
        raise SpawnError(f"could not create process for {program}: {e}") from e
    if pid == 0:
        _exec_child(program, argv, stdin_fd, stdout_fd)
    return pid


def _exec_child(
    program: str,
    argv: list[str],
    stdin_fd: Optional[int],
    stdout_fd: Optional[int],
) -> NoReturn:
    try:
        for fd, target, label in ((stdin_fd, 0, "stdin"), (stdout_fd, 1, "stdout")):
            if fd is None:
                continue
            try:
                if fd != target:
                    os.dup2(fd, target)
                else:
                    os.set_inheritable(target, True)
            except OSError as e:
                _child_fail(f"dup2 {label} for {program}: {e}", EXIT_REDIRECT_FAILED)
        for name in _RESTORE_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is not None:
                signal.signal(signum, signal.SIG_DFL)
        try:
            os.execvp(program, argv)
        except OSError as e:
            _child_fail(f"execvp {program}: {e}", EXIT_EXEC_FAILED)
    finally:
        os._exit(EXIT_EXEC_FAILED)


def _child_fail(message: str, code: int) -> NoReturn:
    # Unbuffered write only: the forked copy must not touch logging locks
    try:
        os.write(2, f"pipetrain: {message}\n".encode("utf-8", "replace"))
    finally:
        os._exit(code)
