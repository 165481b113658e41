from __future__ import annotations
from typing import List
import shutil

from ..core.models import Limits


def wrap_with_prlimit(cmd: List[str], limits: Limits) -> List[str]:
    """
    Address-space, CPU-time and process-count ceilings via util-linux prlimit.
    Applied to the exec'd program itself, so it composes inside firejail/unshare.
    """
    prlimit = shutil.which("prlimit") or "prlimit"
    return [
        prlimit,
        f"--as={limits.memory_bytes}",
        f"--cpu={limits.cpu_seconds}",
        f"--nproc={limits.max_processes}",
        "--",
    ] + cmd
