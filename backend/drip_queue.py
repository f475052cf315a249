# drip_queue.py
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List


@dataclass(frozen=True)
class DripRequest:
    address: str
    amount: int = 1
    requested_at: float = field(default_factory=time.time)


class RequestQueue:
    """
    In-memory buffer of pending drip requests.

    Intake handlers may run in worker threads while the schedulers run on the
    event loop, so every operation holds one lock. drain() swaps the buffer out
    under that lock: a request lands either in this drain or in the next one.
    Nothing is persisted; a crash loses whatever is still queued.
    """

    def __init__(self, drip_amount: int = 1):
        if drip_amount <= 0:
            raise ValueError("drip_amount must be positive")
        self.drip_amount = drip_amount
        self._items: List[DripRequest] = []
        self._lock = threading.Lock()

    def enqueue(self, address: str) -> DripRequest:
        req = DripRequest(address=address, amount=self.drip_amount)
        with self._lock:
            self._items.append(req)
        return req

    def restore(self, requests: Iterable[DripRequest]) -> int:
        """Put previously drained requests back so the next drain picks them up."""
        items = list(requests)
        with self._lock:
            self._items.extend(items)
        return len(items)

    def drain(self) -> List[DripRequest]:
        with self._lock:
            batch, self._items = self._items, []
        return batch

    def snapshot(self) -> List[DripRequest]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def aggregate(requests: Iterable[DripRequest]) -> Dict[str, int]:
    """Collapse requests into address -> total amount, keyed in first-seen order."""
    totals: Dict[str, int] = {}
    for req in requests:
        totals[req.address] = totals.get(req.address, 0) + req.amount
    return totals


def count_by_address(requests: Iterable[DripRequest]) -> Dict[str, int]:
    """Per-address request counts (monitoring view, independent of amount)."""
    counts: Dict[str, int] = {}
    for req in requests:
        counts[req.address] = counts.get(req.address, 0) + 1
    return counts
