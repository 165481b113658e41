from __future__ import annotations
import functools
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, IO, List, Optional

import structlog

from ..core.errors import BackendSpawnError
from ..core.models import ExecutionOutcome, Limits, OutcomeStatus
from ..isolation.isolation import Selection
from .rlimits import apply_child_rlimits

log = structlog.get_logger(__name__)

CHUNK = 64 * 1024


def classify(overflowed: bool, timed_out: bool, returncode: Optional[int]) -> OutcomeStatus:
    """Highest priority wins: output overflow, then deadline, then exit status."""
    if overflowed:
        return OutcomeStatus.OUTPUT_LIMIT_EXCEEDED
    if timed_out:
        return OutcomeStatus.TIMEOUT
    if returncode != 0:
        return OutcomeStatus.RUNTIME_ERROR
    return OutcomeStatus.SUCCESS


def split_returncode(returncode: Optional[int]):
    """Popen reports death-by-signal as ``-signum``. Returns (exit_code, signal_name)."""
    if returncode is None or returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"SIG{-returncode}"


class _Run:
    """Shared state of one attempt. The first of overflow/deadline/exit to fire wins the kill."""

    def __init__(self, proc: subprocess.Popen, max_output: int):
        self.proc = proc
        self.max_output = max_output
        self.lock = threading.Lock()
        self.exited = False
        self.overflowed = False
        self.timed_out = False
        self.stdout: List[bytes] = []
        self.stderr: List[bytes] = []
        self.used = 0

    def kill(self):
        try:
            os.killpg(self.proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            try:
                self.proc.kill()
            except OSError:
                pass

    def on_deadline(self):
        with self.lock:
            if self.exited:
                return
            self.timed_out = True
        self.kill()

    def on_stdout(self, data: bytes):
        with self.lock:
            if self.overflowed:
                return  # draining after the kill
            remaining = self.max_output - self.used
            if len(data) <= remaining:
                self.stdout.append(data)
                self.used += len(data)
                return
            if remaining > 0:
                self.stdout.append(data[:remaining])
            self.used = self.max_output
            self.overflowed = True
        self.kill()


def _pump(stream: IO[bytes], sink) -> None:
    try:
        while True:
            data = stream.read1(CHUNK)
            if not data:
                break
            sink(data)
    except (OSError, ValueError):
        pass
    finally:
        try:
            stream.close()
        except OSError:
            pass


def _feed(stream: IO[bytes], data: bytes) -> None:
    try:
        stream.write(data)
    except (BrokenPipeError, OSError, ValueError):
        pass  # program exited or closed stdin without reading it all
    finally:
        try:
            stream.close()
        except OSError:
            pass


class ProcessRunner:
    """
    Launches the compiled binary under a selected isolation backend.

    stdout and stderr are drained by two threads, a ``threading.Timer`` carries the
    wall-clock deadline, and the calling thread waits for the exit. Overflow and
    deadline both SIGKILL the whole session (the child is started with setsid), and
    the group is killed again after exit to reap stray descendants.
    """

    def __init__(self, env: Optional[Dict[str, str]] = None, drain_timeout_s: float = 2.0):
        self.env = env
        self.drain_timeout_s = drain_timeout_s

    def _env(self, workspace: Path) -> Dict[str, str]:
        if self.env is not None:
            return dict(self.env)
        return {
            "PATH": "/usr/local/bin:/usr/bin:/bin",
            "HOME": str(workspace),
            "LANG": "C.UTF-8",
        }

    def run(
        self,
        selection: Selection,
        binary: Path,
        workspace: Path,
        limits: Limits,
        stdin: Optional[str] = None,
    ) -> ExecutionOutcome:
        argv = selection.command(binary, workspace, limits)
        log.debug("run_start", backend=selection.name, argv=argv)

        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(workspace),
                env=self._env(workspace),
                preexec_fn=functools.partial(apply_child_rlimits, limits.max_processes),
                start_new_session=True,
            )
        except OSError as e:
            raise BackendSpawnError(selection.name, e) from e

        run = _Run(proc, limits.max_output)
        threads = [
            threading.Thread(target=_pump, args=(proc.stdout, run.on_stdout), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, run.stderr.append), daemon=True),
        ]
        if stdin is not None:
            threads.append(threading.Thread(target=_feed, args=(proc.stdin, stdin.encode("utf-8")), daemon=True))
        timer = threading.Timer(limits.wall_ms / 1000.0, run.on_deadline)
        timer.daemon = True

        for t in threads:
            t.start()
        timer.start()
        try:
            returncode = proc.wait()
        finally:
            with run.lock:
                run.exited = True
            timer.cancel()
        runtime_ms = int((time.monotonic() - start) * 1000)

        # descendants outside a pid namespace may still hold the pipes open. The group id
        # stays reserved while any member lives, so the leader's pid is not reused under it.
        # A pid namespace dies with its launcher and needs no second kill.
        if not selection.backend.isolates_pids:
            run.kill()
        for t in threads:
            t.join(self.drain_timeout_s)
            if t.is_alive():
                log.warning("stream_drain_timeout", backend=selection.name)

        with run.lock:
            status = classify(run.overflowed, run.timed_out, returncode)
            out = b"".join(run.stdout)
            err = b"".join(run.stderr)

        exit_code, sig = split_returncode(returncode)
        outcome = ExecutionOutcome(
            status=status,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
            exit_code=exit_code,
            signal=sig,
            runtime_ms=runtime_ms,
            backend=selection.name,
        )
        log.info("run_finished", backend=selection.name, status=status.value,
                 exit_code=exit_code, signal=sig, runtime_ms=runtime_ms, stdout_bytes=len(out))
        return outcome
