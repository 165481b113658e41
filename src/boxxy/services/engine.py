from __future__ import annotations
import shutil
import tempfile
from pathlib import Path
from typing import Any, Mapping, Optional

import structlog

from ..core.models import ExecutionOutcome, Limits
from ..isolation.isolation import IsolationSelector
from ..runner.compiler import CppCompiler
from ..runner.process_runner import ProcessRunner
from ..settings import Settings

log = structlog.get_logger(__name__)


class ExecutionEngine:
    """
    Compile -> select backend -> run -> remove workspace.

    Every call gets its own ``job-*`` directory; nothing else is shared between
    calls, so the engine can be used from several threads at once.
    """

    def __init__(
        self,
        limits: Optional[Limits] = None,
        compiler: Optional[CppCompiler] = None,
        selector: Optional[IsolationSelector] = None,
        runner: Optional[ProcessRunner] = None,
        workspace_root: Optional[Path] = None,
    ):
        self.limits = limits or Limits()
        self.compiler = compiler or CppCompiler()
        self.selector = selector or IsolationSelector()
        self.runner = runner or ProcessRunner()
        self.workspace_root = workspace_root

    @classmethod
    def from_settings(cls, s: Settings) -> "ExecutionEngine":
        return cls(
            limits=s.default_limits(),
            compiler=CppCompiler(s.compiler, s.cpp_std, s.compile_timeout_s),
            selector=IsolationSelector(s.isolation_backends),
            workspace_root=s.workspace_root,
        )

    def _workspace(self) -> Path:
        root = None
        if self.workspace_root is not None:
            self.workspace_root.mkdir(parents=True, exist_ok=True)
            root = str(self.workspace_root)
        return Path(tempfile.mkdtemp(prefix="job-", dir=root)).resolve()

    def execute(
        self,
        code: str,
        limits_override: Optional[Mapping[str, Any]] = None,
        stdin: Optional[str] = None,
    ) -> ExecutionOutcome:
        limits = self.limits.merged(limits_override)
        ws = self._workspace()
        try:
            compiled = self.compiler.compile(code, ws)
            if not compiled.ok:
                return ExecutionOutcome.compile_error(compiled.diagnostics)

            selection = self.selector.select()
            return self.runner.run(selection, Path(compiled.binary), ws, limits, stdin=stdin)
        finally:
            shutil.rmtree(ws, ignore_errors=True)
            log.debug("workspace_removed", workspace=str(ws))
