from __future__ import annotations
from typing import Optional

import redis
import structlog

from ..core.models import JobStatus

log = structlog.get_logger(__name__)


class StatusCache:
    """Progress flags under ``job:<id>``. Best effort: a Redis failure is logged, never raised."""

    def __init__(self, client: redis.Redis, ttl_s: int = 24 * 3600, prefix: str = "job:"):
        self.client = client
        self.ttl_s = ttl_s
        self.prefix = prefix

    def key(self, job_id: str) -> str:
        return f"{self.prefix}{job_id}"

    def set(self, job_id: str, status: JobStatus) -> bool:
        try:
            self.client.set(self.key(job_id), status.value, ex=self.ttl_s)
            return True
        except redis.RedisError as e:
            log.warning("status_cache_write_failed", job_id=job_id, status=status.value, error=str(e))
            return False

    def get(self, job_id: str) -> Optional[str]:
        try:
            val = self.client.get(self.key(job_id))
        except redis.RedisError as e:
            log.warning("status_cache_read_failed", job_id=job_id, error=str(e))
            return None
        if isinstance(val, bytes):
            val = val.decode("utf-8")
        return val
