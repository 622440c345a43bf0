from __future__ import annotations

import signal

from .logging import get_logger


log = get_logger("pipetrain.notify")


class DeathNotifier:
    """SIGCHLD latch owned by a single pipeline run.

    The handler only flips ``fired``. It carries no pid or status and nothing
    branches on it; the blocking wait in the reap loop is what collects exits.
    """

    def __init__(self) -> None:
        self.fired = False
        self._previous = None
        self._installed = False

    def _handle(self, signum, frame) -> None:
        self.fired = True

    def install(self) -> "DeathNotifier":
        if not self._installed:
            self._previous = signal.signal(signal.SIGCHLD, self._handle)
            self._installed = True
        return self

    def restore(self) -> None:
        if not self._installed:
            return
        previous = self._previous if self._previous is not None else signal.SIG_DFL
        signal.signal(signal.SIGCHLD, previous)
        self._installed = False
        log.debug("SIGCHLD handler restored (fired=%s)", self.fired)

    def __enter__(self) -> "DeathNotifier":
        return self.install()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.restore()
