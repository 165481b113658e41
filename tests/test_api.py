import json

import pytest
from fastapi.testclient import TestClient

from boxxy.api.app import create_app
from boxxy.core.models import JobRequest, JobStatus
from boxxy.services.queue import RedisQueue
from boxxy.services.worker import JobWorker
from boxxy.settings import Settings

from conftest import BrokenRedis


@pytest.fixture
def settings(isolated_config):
    return Settings(isolation_backends=["none"])


@pytest.fixture
def client(settings, engine, store, queue, cache):
    app = create_app(settings, engine=engine, store=store, queue=queue, cache=cache)
    with TestClient(app) as c:
        yield c


class TestExecute:
    def test_runs_inline(self, client):
        r = client.post("/execute", json={"code": "#!/bin/sh\nread a\necho hi $a\n", "input": "bob\n"})
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "success"
        assert body["stdout"] == "hi bob\n"
        assert body["exit_code"] == 0
        assert body["backend"] == "none"

    def test_compile_error(self, client):
        body = client.post("/execute", json={"code": "SYNTAX_ERROR"}).json()
        assert body["status"] == "compile_error"
        assert "error" in body["stderr"]

    def test_limit_override(self, client):
        r = client.post("/execute", json={"code": "#!/bin/sh\nwhile :; do :; done\n", "limits": {"wall_ms": 300}})
        assert r.json()["status"] == "timeout"

    def test_bad_limits(self, client):
        r = client.post("/execute", json={"code": "x", "limits": {"wall_ms": 0}})
        assert r.status_code == 400
        r = client.post("/execute", json={"code": "x", "limits": {"heap": 1}})
        assert r.status_code == 400

    def test_missing_code(self, client):
        assert client.post("/execute", json={}).status_code == 422


class TestJobs:
    def test_enqueue_with_given_id(self, client, queue):
        r = client.post("/jobs", json={"id": "j1", "code": "int main(){}", "input": "1\n"})
        assert r.status_code == 202
        assert r.json() == {"job_id": "j1"}
        [msg] = queue.receive()
        assert json.loads(msg.body) == {"id": "j1", "code": "int main(){}", "input": "1\n"}

    def test_enqueue_generates_id(self, client, queue):
        job_id = client.post("/jobs", json={"code": "int main(){}"}).json()["job_id"]
        assert job_id
        [msg] = queue.receive()
        assert json.loads(msg.body) == {"id": job_id, "code": "int main(){}"}

    def test_empty_id_rejected(self, client):
        assert client.post("/jobs", json={"id": "", "code": "x"}).status_code == 422

    def test_unknown_job(self, client):
        r = client.get("/jobs/nope")
        assert r.status_code == 404
        assert r.json()["detail"] == "job_not_found"

    def test_get_job(self, client, store, cache):
        store.create(JobRequest(id="j1", code="secret", input="in"))
        store.update("j1", JobStatus.COMPLETED, result={"status": "success", "stdout": "ok"})
        cache.set("j1", JobStatus.COMPLETED)

        body = client.get("/jobs/j1").json()
        assert body["id"] == "j1"
        assert body["status"] == "COMPLETED"
        assert body["cached_status"] == "COMPLETED"
        assert body["result"] == {"status": "success", "stdout": "ok"}
        assert body["createdAt"] and body["updatedAt"]
        assert "code" not in body and "input" not in body

    def test_submit_then_worker_then_poll(self, client, queue, store, cache, engine):
        job_id = client.post("/jobs", json={"code": "#!/bin/sh\necho done\n"}).json()["job_id"]
        JobWorker(queue, store, cache, engine, wait_seconds=0, sleep=lambda s: None).run_once()

        body = client.get(f"/jobs/{job_id}").json()
        assert body["status"] == "COMPLETED"
        assert body["result"]["stdout"] == "done\n"


class TestHealth:
    def test_health(self, client, queue):
        queue.send({"id": "x"})
        assert client.get("/health").json() == {"ok": True, "queue": {"pending": 1, "inflight": 0, "dead": 0}}

    def test_isolation_report(self, client):
        body = client.get("/health/isolation").json()
        assert body["preference"] == ["none"]
        assert body["selected"] == "none"
        assert set(body["tools"]) == {"firejail", "unshare", "prlimit"}


def test_queue_outage(settings, engine, store, cache):
    broken = RedisQueue(BrokenRedis(), name="q")
    app = create_app(settings, engine=engine, store=store, queue=broken, cache=cache)
    with TestClient(app) as c:
        assert c.post("/jobs", json={"code": "x"}).status_code == 503
        assert c.get("/health").json()["ok"] is False


def test_startup_without_redis_url_fails(settings, engine, store):
    app = create_app(settings, engine=engine, store=store)
    with pytest.raises(Exception, match="SBX_REDIS_URL"):
        with TestClient(app):
            pass
