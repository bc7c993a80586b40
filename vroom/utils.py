"""Filesystem helpers for vroom."""

import os
from pathlib import Path


def get_vroom_home() -> Path:
    """Return the vroom data directory.

    Honors ``VROOM_HOME`` and falls back to ``~/.vroom``.
    """
    env = os.environ.get("VROOM_HOME")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".vroom"
