"""Request queue and aggregation tests."""

import threading

import pytest

from drip_queue import DripRequest, RequestQueue, aggregate, count_by_address


def test_enqueue_uses_fixed_drip_amount():
    q = RequestQueue(drip_amount=5)
    req = q.enqueue("A")

    assert req.address == "A"
    assert req.amount == 5
    assert len(q) == 1


def test_non_positive_drip_amount_rejected():
    with pytest.raises(ValueError):
        RequestQueue(drip_amount=0)


def test_no_double_counting(queue: RequestQueue):
    for _ in range(7):
        queue.enqueue("A")

    assert aggregate(queue.snapshot()) == {"A": 7}
    # Snapshots do not consume anything
    assert aggregate(queue.snapshot()) == {"A": 7}
    assert len(queue) == 7


def test_drain_returns_everything_and_empties(queue: RequestQueue):
    queue.enqueue("A")
    queue.enqueue("B")

    batch = queue.drain()

    assert [r.address for r in batch] == ["A", "B"]
    assert len(queue) == 0
    assert queue.drain() == []


def test_enqueue_after_drain_lands_in_next_drain(queue: RequestQueue):
    queue.enqueue("A")
    first = queue.drain()
    queue.enqueue("B")
    queue.enqueue("A")
    second = queue.drain()

    assert aggregate(first) == {"A": 1}
    assert aggregate(second) == {"B": 1, "A": 1}


def test_snapshot_is_a_copy(queue: RequestQueue):
    queue.enqueue("A")
    snap = queue.snapshot()
    snap.clear()

    assert len(queue) == 1


def test_restore_puts_requests_back_for_next_drain(queue: RequestQueue):
    queue.enqueue("A")
    queue.enqueue("B")
    batch = queue.drain()
    queue.enqueue("C")

    restored = queue.restore(r for r in batch if r.address == "B")

    assert restored == 1
    assert aggregate(queue.drain()) == {"C": 1, "B": 1}


def test_concurrent_enqueue_and_drain_loses_nothing():
    """
    Writers enqueue from threads while the main thread keeps draining.
    Every request must show up in exactly one drain.
    """
    q = RequestQueue()
    writers = 8
    per_writer = 500
    drained = []
    start = threading.Barrier(writers + 1)

    def writer(i: int):
        start.wait()
        for _ in range(per_writer):
            q.enqueue(f"addr{i}")

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(writers)]
    for t in threads:
        t.start()
    start.wait()
    while any(t.is_alive() for t in threads):
        drained.extend(q.drain())
    for t in threads:
        t.join()
    drained.extend(q.drain())

    assert len(drained) == writers * per_writer
    assert len({id(r) for r in drained}) == writers * per_writer
    assert aggregate(drained) == {f"addr{i}": per_writer for i in range(writers)}


def test_aggregate_collapses_per_address():
    reqs = [DripRequest("A"), DripRequest("B"), DripRequest("A"), DripRequest("A")]

    assert aggregate(reqs) == {"A": 3, "B": 1}


def test_aggregate_sums_amounts_in_first_seen_order():
    reqs = [DripRequest("B", 2), DripRequest("A", 1), DripRequest("B", 3)]

    totals = aggregate(reqs)

    assert totals == {"B": 5, "A": 1}
    assert list(totals) == ["B", "A"]


def test_aggregate_is_order_independent():
    reqs = [DripRequest("A"), DripRequest("B", 4), DripRequest("A"), DripRequest("C")]

    assert aggregate(reqs) == aggregate(list(reversed(reqs)))


def test_aggregate_empty():
    assert aggregate([]) == {}


def test_count_by_address_ignores_amount():
    reqs = [DripRequest("A", 10), DripRequest("A", 10), DripRequest("B", 10)]

    assert count_by_address(reqs) == {"A": 2, "B": 1}
