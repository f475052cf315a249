# drip_intake.py
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from web3 import Web3

from drip_queue import RequestQueue

logger = logging.getLogger(__name__)


class RejectReason(str, Enum):
    INVALID_ADDRESS = "InvalidAddress"


@dataclass(frozen=True)
class SubmitResult:
    accepted: bool
    reason: Optional[RejectReason] = None
    address: Optional[str] = None


def normalize_address(addr: Any) -> Optional[str]:
    """Return the checksum form of an EVM address, or None if it is not one."""
    if not isinstance(addr, str):
        return None
    addr = addr.strip()
    if not addr or not Web3.is_address(addr):
        return None
    return Web3.to_checksum_address(addr)


class DripIntake:
    """
    Validates one drip request and enqueues it.

    The caller only learns that the request was queued; settlement outcomes
    are visible through the settlement reports and logs, never per request.
    """

    def __init__(self, queue: RequestQueue):
        self.queue = queue
        self.accepted = 0
        self.rejected = 0
        self._lock = threading.Lock()

    def submit(self, address: Any) -> SubmitResult:
        checksum = normalize_address(address)
        if checksum is None:
            with self._lock:
                self.rejected += 1
            logger.info(f"[intake] rejected invalid address={address!r}")
            return SubmitResult(accepted=False, reason=RejectReason.INVALID_ADDRESS)

        self.queue.enqueue(checksum)
        with self._lock:
            self.accepted += 1
        logger.info(f"[intake] Token drip request queued: {checksum}")
        return SubmitResult(accepted=True, address=checksum)

    def stats(self) -> dict:
        with self._lock:
            return {"requests_accepted": self.accepted, "requests_rejected": self.rejected}
