from __future__ import annotations
from pathlib import Path
from typing import List
import shutil


def wrap_with_firejail(cmd: List[str], workspace: Path) -> List[str]:
    """
    Full sandbox: private home = workspace, private /tmp, seccomp default filter,
    no root, no new privileges, no network. ``cmd`` runs relative to the private home,
    so the binary must be addressed as ``./exec``.
    """
    firejail = shutil.which("firejail") or "firejail"
    return [
        firejail,
        "--quiet",
        f"--private={workspace}",
        "--private-tmp",
        "--nogroups",
        "--nonewprivs",
        "--seccomp",
        "--noroot",
        "--nosound",
        "--net=none",
        "--",
    ] + cmd
