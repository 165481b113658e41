from __future__ import annotations
from typing import Optional
import resource


def _lowered(limit: int, value: int) -> None:
    _, hard = resource.getrlimit(limit)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(limit, (value, value))


def apply_child_rlimits(max_processes: Optional[int] = None) -> None:
    """
    Runs in the child between fork and exec. Only limits that every backend wants:
    no core files in the workspace and, when given, a ceiling on the number of
    processes so a fork loop cannot fill the process table. CPU/memory belong to the
    isolation backend. If the OS refuses a limit we keep its default.

    RLIMIT_NPROC counts every process of the real uid, so the worker should run
    under a dedicated account.
    """
    try:
        resource.setrlimit(resource.RLIMIT_CORE, (0, 0))
    except (ValueError, OSError):
        pass
    if max_processes is not None:
        try:
            _lowered(resource.RLIMIT_NPROC, max_processes)
        except (ValueError, OSError):
            pass
