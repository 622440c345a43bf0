from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure src/ is on sys.path for `import pipetrain` without an install
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from pipetrain.core import StageSpec  # noqa: E402

PY = sys.executable

# Stand-ins for the four trainer programs
PRODUCER = "import sys; sys.stdout.write(sys.argv[1])"
CAT = "import sys; sys.stdout.write(sys.stdin.read())"


def append(suffix: str) -> str:
    return f"import sys; sys.stdout.write(sys.stdin.read() + {suffix!r})"


def py_stage(name: str, code: str, takes_argument: bool = False) -> StageSpec:
    return StageSpec(name=name, program=PY, args=["-c", code], takes_argument=takes_argument)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("PIPETRAIN_BIN_DIR", "MODEL_FILE", "BACKWARD_MODE"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture(autouse=True)
def _detach_log_files():
    yield
    import logging
    from logging.handlers import RotatingFileHandler

    package = logging.getLogger("pipetrain")
    for handler in list(package.handlers):
        if isinstance(handler, RotatingFileHandler):
            package.removeHandler(handler)
            handler.close()
