import json
import time

import pytest

from boxxy.core.errors import QueueError
from boxxy.services.queue import RedisQueue

from conftest import BrokenRedis


def test_send_receive_delete(queue):
    msg_id = queue.send({"id": "j1", "code": "x"})
    [msg] = queue.receive()
    assert msg.id == msg_id
    assert json.loads(msg.body) == {"id": "j1", "code": "x"}
    assert msg.receive_count == 1
    assert queue.stats() == {"pending": 0, "inflight": 1, "dead": 0}

    queue.delete(msg)
    assert queue.stats() == {"pending": 0, "inflight": 0, "dead": 0}
    assert queue.receive() == []


def test_string_body_kept_verbatim(queue):
    queue.send('{"id": "j1"}')
    assert queue.receive()[0].body == '{"id": "j1"}'


def test_fifo(queue):
    for i in range(3):
        queue.send({"n": i})
    got = [json.loads(queue.receive()[0].body)["n"] for _ in range(3)]
    assert got == [0, 1, 2]


def test_received_message_is_invisible(queue):
    queue.send({"id": "j1"})
    assert len(queue.receive()) == 1
    assert queue.receive() == []


def test_blocking_receive_times_out_empty(queue):
    assert queue.receive(wait_seconds=0.1) == []


def test_blocking_receive_returns_pending(queue):
    queue.send({"id": "j1"})
    assert len(queue.receive(wait_seconds=1)) == 1


def test_expired_lease_redelivers(queue):
    queue.send({"id": "j1"})
    [first] = queue.receive()

    assert queue.requeue_expired(now=time.time() + 61) == 1
    [again] = queue.receive()
    assert again.id == first.id
    assert again.receive_count == 2


def test_unexpired_lease_not_requeued(queue):
    queue.send({"id": "j1"})
    queue.receive()
    assert queue.requeue_expired() == 0
    assert queue.stats()["inflight"] == 1


def test_dead_letter_after_max_receives(queue):
    queue.send({"id": "poison"})
    for n in range(1, 4):
        [msg] = queue.receive()
        assert msg.receive_count == n
        queue.requeue_expired(now=time.time() + 61)

    assert queue.receive() == []
    assert queue.stats() == {"pending": 0, "inflight": 0, "dead": 1}


def test_delete_after_ack_is_harmless(queue):
    queue.send({"id": "j1"})
    [msg] = queue.receive()
    queue.delete(msg)
    queue.delete(msg)
    assert queue.requeue_expired(now=time.time() + 61) == 0


def test_queues_are_separate(redis_client):
    a = RedisQueue(redis_client, name="a")
    b = RedisQueue(redis_client, name="b")
    a.send({"id": "j1"})
    assert b.receive() == []
    assert len(a.receive()) == 1


@pytest.mark.parametrize("op", ["send", "receive", "stats"])
def test_transport_errors_become_queue_errors(op):
    q = RedisQueue(BrokenRedis(), name="q")
    with pytest.raises(QueueError):
        if op == "send":
            q.send({"id": "j1"})
        else:
            getattr(q, op)()


@pytest.mark.parametrize("raw", [
    "garbage",
    json.dumps({"id": "j1", "code": "int main(){}"}),
    json.dumps(["id", "body"]),
    json.dumps({"id": 1, "body": {"code": "x"}}),
])
def test_foreign_entry_dead_lettered(queue, redis_client, raw):
    redis_client.lpush(queue.name, raw)
    queue.send({"id": "next"})

    assert queue.receive() == []
    assert redis_client.lrange(queue.dead, 0, -1) == [raw]
    assert redis_client.zcard(queue.leases) == 0

    [msg] = queue.receive()
    assert json.loads(msg.body) == {"id": "next"}
    assert queue.stats() == {"pending": 0, "inflight": 1, "dead": 1}
