from __future__ import annotations
import subprocess
import time
from pathlib import Path
from typing import List

import structlog

from ..core.models import CompileResult
from ..core.utils import normalize_source

log = structlog.get_logger(__name__)

SOURCE_NAME = "main.cpp"
BINARY_NAME = "exec"


class CppCompiler:
    """Writes the submission into the workspace and builds ``exec`` next to it."""

    def __init__(self, compiler: str = "g++", std: str = "gnu++17", timeout_s: float = 30.0):
        self.compiler = compiler
        self.std = std
        self.timeout_s = timeout_s

    def command(self, src: Path, binary: Path) -> List[str]:
        return [self.compiler, str(src), "-O2", f"-std={self.std}", "-o", str(binary)]

    def compile(self, code: str, workspace: Path) -> CompileResult:
        src = workspace / SOURCE_NAME
        binary = workspace / BINARY_NAME
        src.write_text(normalize_source(code), encoding="utf-8")

        start = time.monotonic()
        try:
            proc = subprocess.run(
                self.command(src, binary),
                cwd=str(workspace),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout_s,
            )
        except FileNotFoundError:
            return CompileResult(ok=False, diagnostics=f"compiler not found: {self.compiler}")
        except subprocess.TimeoutExpired:
            return CompileResult(ok=False, diagnostics=f"compilation timed out after {self.timeout_s:g}s",
                                 duration_ms=int((time.monotonic() - start) * 1000))
        except OSError as e:
            return CompileResult(ok=False, diagnostics=f"compiler failed to start: {e}")

        dur = int((time.monotonic() - start) * 1000)
        diagnostics = proc.stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0 or not binary.exists():
            log.info("compile_failed", rc=proc.returncode, duration_ms=dur)
            return CompileResult(ok=False, diagnostics=diagnostics, duration_ms=dur)
        return CompileResult(ok=True, diagnostics=diagnostics, binary=str(binary), duration_ms=dur)
