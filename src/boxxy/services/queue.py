from __future__ import annotations
import json
import time
import uuid
from typing import Any, Dict, List, Union

import redis
import structlog

from ..core.errors import QueueError
from ..core.models import Message

log = structlog.get_logger(__name__)


def _text(v: Union[str, bytes]) -> str:
    return v.decode("utf-8") if isinstance(v, bytes) else v


class RedisQueue:
    """
    At-least-once queue on Redis lists with visibility leases.

    Keys (``<name>`` is the queue name):
      <name>            pending messages, LPUSH in / RIGHT out
      <name>:inflight   received, not yet deleted
      <name>:leases     zset envelope -> lease deadline (epoch seconds)
      <name>:receives   hash message id -> receive count
      <name>:dead       messages that exceeded ``max_receives`` or are not an envelope

    A receive first returns expired leases to the pending list, so a message a
    worker never acknowledged becomes visible again after ``visibility_timeout_s``.
    """

    def __init__(self, client: redis.Redis, name: str = "boxxy_queue",
                 visibility_timeout_s: int = 60, max_receives: int = 5):
        self.client = client
        self.name = name
        self.visibility_timeout_s = visibility_timeout_s
        self.max_receives = max_receives
        self.inflight = f"{name}:inflight"
        self.leases = f"{name}:leases"
        self.receives = f"{name}:receives"
        self.dead = f"{name}:dead"

    def send(self, body: Union[str, Dict[str, Any]]) -> str:
        if not isinstance(body, str):
            body = json.dumps(body)
        msg_id = uuid.uuid4().hex
        envelope = json.dumps({"id": msg_id, "body": body})
        try:
            self.client.lpush(self.name, envelope)
        except redis.RedisError as e:
            raise QueueError(f"send to {self.name}: {e}") from e
        return msg_id

    def requeue_expired(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        moved = 0
        for raw in self.client.zrangebyscore(self.leases, "-inf", now):
            pipe = self.client.pipeline(transaction=True)
            pipe.lrem(self.inflight, 1, raw)
            pipe.zrem(self.leases, raw)
            removed, _ = pipe.execute()
            if removed:
                self.client.rpush(self.name, raw)
                moved += 1
        if moved:
            log.info("leases_expired", queue=self.name, requeued=moved)
        return moved

    def receive(self, wait_seconds: float = 0) -> List[Message]:
        """At most one message. ``wait_seconds <= 0`` does not block."""
        try:
            self.requeue_expired()
            if wait_seconds > 0:
                raw = self.client.blmove(self.name, self.inflight, wait_seconds, "RIGHT", "LEFT")
            else:
                raw = self.client.lmove(self.name, self.inflight, "RIGHT", "LEFT")
            if raw is None:
                return []
            raw = _text(raw)
            try:
                env = json.loads(raw)
                msg_id, body = env["id"], env["body"]
                if not isinstance(msg_id, str) or not isinstance(body, str):
                    raise ValueError("envelope fields must be strings")
            except (ValueError, KeyError, TypeError):
                pipe = self.client.pipeline(transaction=True)
                pipe.lrem(self.inflight, 1, raw)
                pipe.lpush(self.dead, raw)
                pipe.execute()
                log.error("message_malformed", queue=self.name, raw=raw[:200])
                return []
            count = int(self.client.hincrby(self.receives, msg_id, 1))
            if count > self.max_receives:
                pipe = self.client.pipeline(transaction=True)
                pipe.lrem(self.inflight, 1, raw)
                pipe.lpush(self.dead, raw)
                pipe.hdel(self.receives, msg_id)
                pipe.execute()
                log.warning("message_dead_lettered", queue=self.name, message_id=msg_id, receives=count - 1)
                return []
            self.client.zadd(self.leases, {raw: time.time() + self.visibility_timeout_s})
        except redis.RedisError as e:
            raise QueueError(f"receive from {self.name}: {e}") from e
        return [Message(id=msg_id, body=body, receipt=raw, receive_count=count)]

    def delete(self, message: Message) -> None:
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.lrem(self.inflight, 1, message.receipt)
            pipe.zrem(self.leases, message.receipt)
            pipe.hdel(self.receives, message.id)
            pipe.execute()
        except redis.RedisError as e:
            raise QueueError(f"delete {message.id} from {self.name}: {e}") from e

    def stats(self) -> Dict[str, int]:
        try:
            return {
                "pending": int(self.client.llen(self.name)),
                "inflight": int(self.client.llen(self.inflight)),
                "dead": int(self.client.llen(self.dead)),
            }
        except redis.RedisError as e:
            raise QueueError(f"stats of {self.name}: {e}") from e
