"""
Periodic tasks of the drip faucet.

- SettlementScheduler drains the request queue, aggregates it per address and
  issues one transfer per address, one at a time.
- MonitorScheduler reads a queue snapshot and reports pending counts.
- PeriodicTask drives either of them from a ticker. The next wait starts only
  after the handler returns, so ticks of one task never overlap.
"""

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from drip_queue import RequestQueue, aggregate, count_by_address
from erc20_issuer import IssuanceClient, IssuanceError

logger = logging.getLogger(__name__)


class SettlementPolicy(str, Enum):
    ABORT = "abort"        # first failure ends the cycle, the rest is dropped
    REQUEUE = "requeue"    # first failure ends the cycle, the rest goes back to the queue
    ISOLATE = "isolate"    # every address is attempted, failures are dropped


# Per-address outcome states
SENT = "sent"
FAILED = "failed"
ABANDONED = "abandoned"
REQUEUED = "requeued"


@dataclass
class AddressOutcome:
    address: str
    amount: int
    status: str
    tx_hash: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SettlementReport:
    cycle: int
    started_at: float
    request_count: int
    policy: str
    finished_at: Optional[float] = None
    outcomes: List[AddressOutcome] = field(default_factory=list)

    def amount_with(self, status: str) -> int:
        return sum(o.amount for o in self.outcomes if o.status == status)

    def addresses_with(self, status: str) -> List[str]:
        return [o.address for o in self.outcomes if o.status == status]

    @property
    def ok(self) -> bool:
        return all(o.status == SENT for o in self.outcomes)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["ok"] = self.ok
        d["sent_amount"] = self.amount_with(SENT)
        d["dropped_amount"] = self.amount_with(FAILED) + self.amount_with(ABANDONED)
        d["requeued_amount"] = self.amount_with(REQUEUED)
        return d


class SettlementScheduler:
    """
    One settlement cycle per tick: drain, aggregate, issue sequentially.

    The queue is empty again as soon as the drain returns, so intake keeps
    filling it for the next cycle while this one is still issuing. Cycles are
    serialized by a run-lock; a cycle requested while another is in flight is
    skipped without draining.

    With the default ABORT policy a failed transfer ends the cycle and every
    address after it in the batch loses what it was owed for that cycle.
    REQUEUE puts the failed and unprocessed requests back instead; ISOLATE
    keeps going and only drops the failed addresses.
    """

    def __init__(
        self,
        queue: RequestQueue,
        issuer: IssuanceClient,
        policy: SettlementPolicy = SettlementPolicy.ABORT,
        issue_timeout_sec: Optional[float] = 60.0,
        history_size: int = 50,
    ):
        self.queue = queue
        self.issuer = issuer
        self.policy = SettlementPolicy(policy)
        self.issue_timeout_sec = issue_timeout_sec
        self.history: deque[SettlementReport] = deque(maxlen=max(1, history_size))
        self._run_lock = asyncio.Lock()

        self.cycles_run = 0
        self.cycles_skipped = 0
        self.transfers_sent = 0
        self.transfers_failed = 0
        self.tokens_sent = 0
        self.tokens_dropped = 0
        self.tokens_requeued = 0

    @property
    def in_flight(self) -> bool:
        return self._run_lock.locked()

    async def run_cycle(self) -> Optional[SettlementReport]:
        """Run one cycle. Returns None for an empty queue or a skipped tick."""
        if self._run_lock.locked():
            self.cycles_skipped += 1
            logger.warning(f"[settle] cycle already in flight, skipping (pending={len(self.queue)})")
            return None
        async with self._run_lock:
            return await self._settle()

    async def _settle(self) -> Optional[SettlementReport]:
        if len(self.queue) == 0:
            return None

        batch = self.queue.drain()
        if not batch:
            return None
        totals = aggregate(batch)

        self.cycles_run += 1
        report = SettlementReport(
            cycle=self.cycles_run,
            started_at=time.time(),
            request_count=len(batch),
            policy=self.policy.value,
        )
        self.history.append(report)
        logger.info(
            f"[settle] cycle={report.cycle} processing batch for {len(totals)} unique addresses "
            f"({len(batch)} requests)"
        )

        pairs = list(totals.items())
        try:
            await self._issue_all(report, batch, pairs)
        except asyncio.CancelledError:
            self._log_cancelled(report, pairs[len(report.outcomes):])
            raise

        report.finished_at = time.time()
        logger.info(
            f"[settle] cycle={report.cycle} done sent={report.amount_with(SENT)} "
            f"dropped={report.amount_with(FAILED) + report.amount_with(ABANDONED)} "
            f"requeued={report.amount_with(REQUEUED)} "
            f"duration={report.finished_at - report.started_at:.2f}s"
        )
        return report

    async def _issue_all(self, report: SettlementReport, batch, pairs) -> None:
        for i, (address, amount) in enumerate(pairs):
            try:
                tx_hash = await self._issue(address, amount)
            except IssuanceError as e:
                self.transfers_failed += 1
                logger.error(f"[settle] cycle={report.cycle} failed address={address} amount={amount} err={e}")
                if self.policy is SettlementPolicy.ISOLATE:
                    report.outcomes.append(AddressOutcome(address, amount, FAILED, error=str(e)))
                    self.tokens_dropped += amount
                    continue
                self._cut_off(report, batch, pairs[i:], str(e))
                return
            report.outcomes.append(AddressOutcome(address, amount, SENT, tx_hash=tx_hash))
            self.transfers_sent += 1
            self.tokens_sent += amount
            logger.info(f"[settle] sent address={address} amount={amount} tx={tx_hash}")

    def _log_cancelled(self, report: SettlementReport, owed) -> None:
        """A cancelled cycle (shutdown) still owes everything it had not issued."""
        report.outcomes.extend(AddressOutcome(a, amt, ABANDONED, error="cancelled") for a, amt in owed)
        self.tokens_dropped += sum(amt for _, amt in owed)
        report.finished_at = time.time()
        logger.error(
            f"[settle] cycle={report.cycle} cancelled with {len(owed)} addresses unissued: "
            + ", ".join(f"{a}={amt}" for a, amt in owed)
        )

    def _cut_off(self, report: SettlementReport, batch, remaining, error: str) -> None:
        """Handle the failed pair and everything after it under ABORT or REQUEUE."""
        (failed_addr, failed_amount), rest = remaining[0], remaining[1:]

        if self.policy is SettlementPolicy.REQUEUE:
            addrs = {addr for addr, _ in remaining}
            restored = self.queue.restore(r for r in batch if r.address in addrs)
            report.outcomes.append(AddressOutcome(failed_addr, failed_amount, REQUEUED, error=error))
            report.outcomes.extend(AddressOutcome(a, amt, REQUEUED) for a, amt in rest)
            self.tokens_requeued += sum(amt for _, amt in remaining)
            logger.warning(
                f"[settle] cycle={report.cycle} requeued {len(remaining)} addresses ({restored} requests)"
            )
            return

        report.outcomes.append(AddressOutcome(failed_addr, failed_amount, FAILED, error=error))
        report.outcomes.extend(AddressOutcome(a, amt, ABANDONED) for a, amt in rest)
        self.tokens_dropped += sum(amt for _, amt in remaining)
        if rest:
            logger.error(
                f"[settle] cycle={report.cycle} abandoned {len(rest)} addresses after failure: "
                + ", ".join(f"{a}={amt}" for a, amt in rest)
            )

    async def _issue(self, address: str, amount: int) -> str:
        try:
            if self.issue_timeout_sec:
                return await asyncio.wait_for(self.issuer.issue(address, amount), self.issue_timeout_sec)
            return await self.issuer.issue(address, amount)
        except IssuanceError:
            raise
        except asyncio.TimeoutError:
            # Ambiguous: the transfer may still have been broadcast. Treated as failed.
            raise IssuanceError(f"issue timed out after {self.issue_timeout_sec}s")
        except Exception as e:
            raise IssuanceError(repr(e)) from e

    def recent(self, limit: int = 10) -> List[SettlementReport]:
        """Most recent reports first."""
        return list(reversed(self.history))[:max(0, limit)]

    def stats(self) -> Dict[str, Any]:
        return {
            "cycles_run": self.cycles_run,
            "cycles_skipped": self.cycles_skipped,
            "transfers_sent": self.transfers_sent,
            "transfers_failed": self.transfers_failed,
            "tokens_sent": self.tokens_sent,
            "tokens_dropped": self.tokens_dropped,
            "tokens_requeued": self.tokens_requeued,
            "in_flight": self.in_flight,
        }


@dataclass
class MonitorReport:
    taken_at: float
    total: int
    counts: Dict[str, int]


def log_queue_listing(report: MonitorReport) -> None:
    lines = [f"Queued Token Drip Requests ({report.total} total):"]
    for index, (address, count) in enumerate(report.counts.items(), start=1):
        lines.append(f"{index}. {address}: {count} requests")
    logger.info("\n".join(lines))


class MonitorScheduler:
    """Read-only view of the queue; never drains."""

    def __init__(
        self,
        queue: RequestQueue,
        reporter: Optional[Callable[[MonitorReport], None]] = None,
    ):
        self.queue = queue
        self.reporter = reporter or log_queue_listing
        self.last_report: Optional[MonitorReport] = None

    async def run_once(self) -> MonitorReport:
        pending = self.queue.snapshot()
        report = MonitorReport(taken_at=time.time(), total=len(pending), counts=count_by_address(pending))
        self.last_report = report
        self.reporter(report)
        return report


class IntervalTicker:
    def __init__(self, interval_sec: float):
        if interval_sec <= 0:
            raise ValueError("interval_sec must be positive")
        self.interval_sec = interval_sec

    async def wait(self) -> None:
        await asyncio.sleep(self.interval_sec)


class PeriodicTask:
    def __init__(self, name: str, ticker: Any, handler: Callable[[], Awaitable[Any]]):
        self.name = name
        self.ticker = ticker
        self.handler = handler
        self.run_count = 0
        self.error_count = 0
        self.last_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            raise RuntimeError(f"task {self.name} already started")
        self._task = asyncio.create_task(self._loop(), name=self.name)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info(f"[{self.name}] stopped after {self.run_count} runs")

    async def _loop(self) -> None:
        logger.info(f"[{self.name}] started")
        while True:
            await self.ticker.wait()
            try:
                await self.handler()
                self.run_count += 1
            except Exception as e:
                self.error_count += 1
                self.last_error = str(e)
                logger.error(f"[{self.name}] run failed: {e}", exc_info=True)
