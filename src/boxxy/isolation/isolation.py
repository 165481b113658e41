from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence
import os
import subprocess

import structlog

from ..core.models import Limits
from .firejail import wrap_with_firejail
from .namespaces import wrap_with_ns
from .prlimit import wrap_with_prlimit

log = structlog.get_logger(__name__)

RLIMIT_HELPER = "prlimit"


def probe_tool(tool: str) -> bool:
    """True when ``tool`` resolves on PATH. Decided by the exit code of ``command -v``."""
    try:
        rc = subprocess.run(
            ["sh", "-c", 'command -v "$1"', "sh", tool],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=5,
        ).returncode
    except (OSError, subprocess.SubprocessError):
        return False
    return rc == 0


Launcher = Callable[[List[str], Path, Limits], List[str]]


@dataclass(frozen=True)
class Backend:
    """
    One rung of the isolation ladder.

    enforces_limits: the backend applies CPU/memory ceilings itself (only the
        ``prlimit`` rung does); otherwise the prlimit helper is layered inside it
        when ``layers_helper`` is set and the helper is installed.
    isolates_pids: the process runs in its own pid namespace, so killing the
        launcher kills every descendant.
    relative_binary: the backend remaps the workspace, the binary is addressed
        relative to it.
    """
    name: str
    tool: Optional[str]
    launcher: Launcher
    enforces_limits: bool = False
    isolates_pids: bool = False
    layers_helper: bool = False
    relative_binary: bool = False

    def wrap(self, binary: Path, workspace: Path, limits: Limits, rlimit_helper: bool) -> List[str]:
        cmd = ["./" + binary.name] if self.relative_binary else [str(binary)]
        if self.layers_helper and rlimit_helper:
            cmd = wrap_with_prlimit(cmd, limits)
        return self.launcher(cmd, workspace, limits)


FIREJAIL = Backend("firejail", "firejail", lambda cmd, ws, lim: wrap_with_firejail(cmd, ws),
                   isolates_pids=True, layers_helper=True, relative_binary=True)
UNSHARE = Backend("unshare", "unshare", lambda cmd, ws, lim: wrap_with_ns(cmd),
                  isolates_pids=True, layers_helper=True)
PRLIMIT = Backend("prlimit", RLIMIT_HELPER, lambda cmd, ws, lim: wrap_with_prlimit(cmd, lim),
                  enforces_limits=True)
NONE = Backend("none", None, lambda cmd, ws, lim: cmd)

# strongest first
BACKENDS: Dict[str, Backend] = {b.name: b for b in (FIREJAIL, UNSHARE, PRLIMIT, NONE)}


@dataclass(frozen=True)
class Selection:
    backend: Backend
    rlimit_helper: bool

    @property
    def name(self) -> str:
        return self.backend.name

    @property
    def limits_enforced(self) -> bool:
        return self.backend.enforces_limits or (self.backend.layers_helper and self.rlimit_helper)

    def command(self, binary: Path, workspace: Path, limits: Limits) -> List[str]:
        return self.backend.wrap(binary, workspace, limits, self.rlimit_helper)


class IsolationSelector:
    """Picks the first available backend of ``preference``; ``none`` is always available."""

    def __init__(self, preference: Sequence[str] = tuple(BACKENDS), probe: Callable[[str], bool] = probe_tool):
        unknown = [n for n in preference if n not in BACKENDS]
        if unknown:
            raise ValueError(f"unknown isolation backend(s): {unknown}")
        self.preference = [BACKENDS[n] for n in preference]
        self.probe = probe

    def select(self) -> Selection:
        helper = self.probe(RLIMIT_HELPER)
        chosen = NONE
        for backend in self.preference:
            if backend.tool is None:
                chosen = backend
                break
            if backend.tool == RLIMIT_HELPER:
                if helper:
                    chosen = backend
                    break
                continue
            if self.probe(backend.tool):
                chosen = backend
                break

        sel = Selection(chosen, rlimit_helper=helper)
        if not sel.limits_enforced:
            log.warning("isolation_degraded", backend=chosen.name, rlimit_helper=helper,
                        detail="cpu/memory ceilings not enforced; wall clock only")
        else:
            log.debug("isolation_selected", backend=chosen.name, rlimit_helper=helper)
        return sel


def probe_capabilities(preference: Sequence[str] = tuple(BACKENDS), probe: Callable[[str], bool] = probe_tool) -> dict:
    """Environment report for diagnostics (GET /health/isolation)."""
    tools = {name: probe(b.tool) for name, b in BACKENDS.items() if b.tool}
    selected = IsolationSelector(preference, probe=lambda t: tools.get(t, False)).select()
    return {
        "preference": list(preference),
        "tools": tools,
        "selected": selected.name,
        "rlimit_helper": selected.rlimit_helper,
        "limits_enforced": selected.limits_enforced,
        "isolates_pids": selected.backend.isolates_pids,
        "euid": os.geteuid() if hasattr(os, "geteuid") else None,
    }
