from __future__ import annotations
from typing import List
import shutil


def wrap_with_ns(cmd: List[str]) -> List[str]:
    """
    Namespace-only isolation: user (mapped to root inside), mount, pid, ipc, uts and
    an empty network namespace. No syscall filtering and no rlimits of its own.
    ``--kill-child`` takes the whole pid namespace down when unshare is killed.
    """
    unshare = shutil.which("unshare") or "unshare"
    flags = [
        "--user", "--map-root-user",
        "--mount", "--mount-proc",
        "--pid", "--fork", "--kill-child",
        "--ipc", "--uts",
        "--net",
    ]
    return [unshare] + flags + ["--"] + cmd
