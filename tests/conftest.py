import os
import shutil
import stat
from pathlib import Path

import fakeredis
import pytest
import redis

from boxxy.core.models import Limits
from boxxy.isolation.isolation import NONE, IsolationSelector, Selection
from boxxy.runner.compiler import CppCompiler
from boxxy.services.engine import ExecutionEngine
from boxxy.services.job_store import JobStore
from boxxy.services.queue import RedisQueue
from boxxy.services.status_cache import StatusCache

HERE = Path(__file__).resolve().parent

needs_gpp = pytest.mark.skipif(shutil.which("g++") is None, reason="g++ not installed")

# Stands in for g++: the "source" is a shell script, "compiling" copies it to the
# -o target. A source containing SYNTAX_ERROR fails like a real compiler would.
FAKE_COMPILER = """#!/bin/sh
src="$1"
for a; do out="$a"; done
if grep -q SYNTAX_ERROR "$src"; then
  echo "$src:1:1: error: expected unqualified-id" >&2
  exit 1
fi
cp "$src" "$out"
chmod +x "$out"
"""


class BrokenRedis:
    """Every command fails like a dropped connection."""

    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise redis.ConnectionError("connection refused")
        return _fail


def write_exec(path: Path, body: str) -> Path:
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def bare() -> Selection:
    return Selection(NONE, rlimit_helper=False)


@pytest.fixture
def workspace(tmp_path) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def script(workspace):
    """Write ``body`` as the workspace's ``exec`` binary."""
    def _make(body: str) -> Path:
        return write_exec(workspace / "exec", "#!/bin/sh\n" + body + "\n")
    return _make


@pytest.fixture
def fake_compiler(tmp_path) -> CppCompiler:
    cc = write_exec(tmp_path / "fake-gxx", FAKE_COMPILER)
    return CppCompiler(compiler=str(cc), timeout_s=10)


@pytest.fixture
def workspace_root(tmp_path) -> Path:
    return tmp_path / "jobs"


@pytest.fixture
def engine(fake_compiler, workspace_root) -> ExecutionEngine:
    return ExecutionEngine(
        limits=Limits(wall_ms=3000, max_output=64 * 1024),
        compiler=fake_compiler,
        selector=IsolationSelector(["none"]),
        workspace_root=workspace_root,
    )


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def store(tmp_path) -> JobStore:
    return JobStore(f"sqlite:///{tmp_path / 'jobs.db'}")


@pytest.fixture
def cache(redis_client) -> StatusCache:
    return StatusCache(redis_client, ttl_s=60)


@pytest.fixture
def queue(redis_client) -> RedisQueue:
    return RedisQueue(redis_client, name="test_queue", visibility_timeout_s=60, max_receives=3)


@pytest.fixture
def isolated_config(monkeypatch, tmp_path):
    """Point the YAML sources at files that do not exist and drop SBX_* variables."""
    monkeypatch.setenv("SANDBOX_CONF", str(tmp_path / "missing-sandbox.yaml"))
    monkeypatch.setenv("SANDBOX_LIMITS", str(tmp_path / "missing-limits.yaml"))
    for key in list(os.environ):
        if key.startswith("SBX_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    return tmp_path
