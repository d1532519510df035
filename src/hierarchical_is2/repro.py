from __future__ import annotations

import platform
import shlex
import subprocess
import sys
from pathlib import Path
from typing import Any, Sequence

import numpy as np


def command_str(argv: Sequence[str] | None = None) -> str:
    """Return a shell-escaped command line string."""
    if argv is None:
        argv = sys.argv
    return " ".join(shlex.quote(str(a)) for a in argv)


def _git(args: list[str], *, repo_root: Path) -> str | None:
    try:
        out = subprocess.check_output(["git", *args], cwd=str(repo_root), stderr=subprocess.DEVNULL)
    except (OSError, subprocess.CalledProcessError):
        return None
    return out.decode("utf-8").strip()


def run_metadata(*, repo_root: Path, seed: int, argv: Sequence[str] | None = None) -> dict[str, Any]:
    """Everything needed to rerun an IS² estimate: command, seed, code version, library versions."""
    sha = _git(["rev-parse", "HEAD"], repo_root=repo_root)
    status = _git(["status", "--porcelain=v1"], repo_root=repo_root)
    import scipy
    import sklearn

    return {
        "command": command_str(argv),
        "seed": int(seed),
        "git_sha": sha if sha else None,
        "git_dirty": None if status is None else bool(status),
        "python": platform.python_version(),
        "numpy": np.__version__,
        "scipy": scipy.__version__,
        "sklearn": sklearn.__version__,
    }
