from __future__ import annotations
import signal
import sys
import time
from typing import Callable, Optional

import redis
import structlog

from ..core.errors import ConfigError, DuplicateJobError, InvalidJobMessage, QueueError
from ..core.models import JobRequest, JobStatus, Message
from ..core.utils import parse_job_message, salvage_job_id
from ..logging import setup_logging
from ..settings import Settings, load_settings
from .engine import ExecutionEngine
from .job_store import JobStore
from .queue import RedisQueue
from .status_cache import StatusCache

log = structlog.get_logger(__name__)

COMPLETED = "completed"
DUPLICATE = "duplicate"
FAILED = "failed"


class JobWorker:
    """
    Poll -> register -> execute -> record -> acknowledge, one message at a time.

    A message is acknowledged only after the job reached COMPLETED, or when its id
    is already registered (duplicate delivery). Anything else leaves it in the queue
    and the lease expiry redelivers it. A redelivered job whose record is FAILED is
    claimed back and executed again.
    """

    def __init__(
        self,
        queue: RedisQueue,
        store: JobStore,
        cache: StatusCache,
        engine: ExecutionEngine,
        wait_seconds: float = 8,
        empty_sleep_s: float = 1.0,
        error_sleep_s: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.queue = queue
        self.store = store
        self.cache = cache
        self.engine = engine
        self.wait_seconds = wait_seconds
        self.empty_sleep_s = empty_sleep_s
        self.error_sleep_s = error_sleep_s
        self.sleep = sleep
        self._stopping = False

    @classmethod
    def from_settings(cls, s: Settings, client: redis.Redis) -> "JobWorker":
        return cls(
            queue=RedisQueue(client, s.queue_name, s.visibility_timeout_s, s.max_receives),
            store=JobStore(s.database_url),
            cache=StatusCache(client, s.status_ttl_s),
            engine=ExecutionEngine.from_settings(s),
            wait_seconds=s.queue_wait_s,
            empty_sleep_s=s.empty_poll_sleep_s,
            error_sleep_s=s.error_poll_sleep_s,
        )

    def stop(self, *_args) -> None:
        log.info("worker_stopping")
        self._stopping = True

    def run_forever(self) -> None:
        log.info("worker_started", wait_seconds=self.wait_seconds)
        while not self._stopping:
            self.run_once()
        log.info("worker_stopped")

    def run_once(self) -> bool:
        """One poll. True when a message was handled."""
        try:
            messages = self.queue.receive(self.wait_seconds)
        except QueueError:
            log.exception("poll_failed")
            self.sleep(self.error_sleep_s)
            return False
        except Exception:
            log.exception("poll_failed_unexpected")
            self.sleep(self.error_sleep_s)
            return False

        if not messages:
            self.sleep(self.empty_sleep_s)
            return False
        for msg in messages:
            self.handle(msg)
        return True

    def handle(self, msg: Message) -> str:
        job_id: Optional[str] = None
        try:
            req = parse_job_message(msg.body)
            job_id = req.id
            log.info("job_received", job_id=job_id, receive_count=msg.receive_count)

            if not self._register(req):
                self._ack(msg, job_id)
                return DUPLICATE

            outcome = self.engine.execute(req.code, stdin=req.input)

            self.store.update(job_id, JobStatus.COMPLETED, result=outcome.to_dict())
            self.cache.set(job_id, JobStatus.COMPLETED)
            log.info("job_completed", job_id=job_id, status=outcome.status.value,
                     backend=outcome.backend, runtime_ms=outcome.runtime_ms)
        except InvalidJobMessage as e:
            if e.job_id is None:
                log.error("message_unparseable", message_id=msg.id, error=str(e))
                return FAILED
            self._fail(e.job_id, e)
            return FAILED
        except Exception as e:
            self._fail(job_id or salvage_job_id(msg.body), e)
            return FAILED

        self._ack(msg, job_id)
        return COMPLETED

    def _register(self, req: JobRequest) -> bool:
        """False when this delivery is a duplicate and must not run."""
        try:
            self.store.create(req)
        except DuplicateJobError:
            if self.store.claim_failed(req.id):
                log.info("job_retry_claimed", job_id=req.id)
                self.cache.set(req.id, JobStatus.PENDING)
                return True
            log.info("duplicate_job_skipped", job_id=req.id)
            return False

        self.cache.set(req.id, JobStatus.SUBMITTED)
        self.store.update(req.id, JobStatus.PENDING)
        self.cache.set(req.id, JobStatus.PENDING)
        return True

    def _ack(self, msg: Message, job_id: Optional[str]) -> None:
        # the record is already final; a lost ack only means one more duplicate delivery
        try:
            self.queue.delete(msg)
        except QueueError:
            log.exception("ack_failed", job_id=job_id, message_id=msg.id)

    def _fail(self, job_id: Optional[str], err: BaseException) -> None:
        log.exception("job_failed", job_id=job_id, error=str(err))
        if not job_id:
            return
        try:
            recorded = self.store.mark_failed(job_id, str(err))
        except Exception:
            log.exception("job_fail_record_failed", job_id=job_id)
            return
        if not recorded:
            log.info("job_already_completed", job_id=job_id)
            return
        self.cache.set(job_id, JobStatus.FAILED)


def main() -> int:
    setup_logging()
    try:
        s = load_settings().require("redis_url", "database_url")
    except ConfigError as e:
        log.error("config_invalid", error=str(e))
        return 2
    setup_logging(s.log_level, s.log_json)

    client = redis.Redis.from_url(s.redis_url, decode_responses=True)
    worker = JobWorker.from_settings(s, client)
    signal.signal(signal.SIGTERM, worker.stop)
    signal.signal(signal.SIGINT, worker.stop)
    worker.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
