"""
Provisioning re-drive queue.

Identity-provider events and the periodic sweep both land here. Each
identity is driven through ``ProvisioningService.provision``; a retryable
failure puts it back on the queue with exponential delay, and once the
re-drive budget is spent the identity moves to the operator queue instead
of being dropped.
"""

from __future__ import annotations

import enum
import heapq
import itertools
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable

from rbi_registry.core.errors import (
    ProvisioningPermanentFailure,
    ProvisioningRetryable,
)
from rbi_registry.core.schema import AccountProfile
from rbi_registry.provisioning.service import ProvisioningService

logger = logging.getLogger(__name__)


class DriveStatus(str, enum.Enum):
    PROVISIONED = "provisioned"
    REQUEUED = "requeued"
    REJECTED = "rejected"
    ESCALATED = "escalated"


@dataclass
class DriveOutcome:
    identity_id: str
    status: DriveStatus
    attempt: int
    profile: AccountProfile | None = None
    reason: str = ""


@dataclass(order=True)
class _Entry:
    due: float
    seq: int
    identity_id: str = field(compare=False)
    attempt: int = field(compare=False, default=0)


class ProvisioningQueue:
    """
    Thread-safe delay queue in front of the provisioning service.

    An identity is queued at most once; submitting it again only pulls its
    due time forward.
    """

    def __init__(
        self,
        service: ProvisioningService,
        max_redrives: int = 5,
        base_delay: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        operator_capacity: int = 1000,
    ) -> None:
        self.service = service
        self.max_redrives = max_redrives
        self.base_delay = base_delay
        self.clock = clock
        self.operator_capacity = operator_capacity
        self._heap: list[_Entry] = []
        self._queued: dict[str, _Entry] = {}
        self._operator: OrderedDict[str, str] = OrderedDict()
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._queued)

    @property
    def operator_queue(self) -> dict[str, str]:
        """
        Identity id → last failure reason for signups this process gave up on.

        Holds at most ``operator_capacity`` entries, newest last. The full
        list lives in ``ProvisioningService.operator_queue()``.
        """
        with self._lock:
            return dict(self._operator)

    def submit(self, identity_id: str, delay: float = 0.0, attempt: int = 0) -> None:
        due = self.clock() + delay
        with self._lock:
            current = self._queued.get(identity_id)
            if current is not None and current.due <= due:
                return
            entry = _Entry(due, next(self._seq), identity_id, attempt)
            if current is not None:
                # Superseded entries stay in the heap and are skipped on pop
                entry.attempt = max(entry.attempt, current.attempt)
            self._queued[identity_id] = entry
            heapq.heappush(self._heap, entry)

    def _pop_due(self) -> _Entry | None:
        now = self.clock()
        with self._lock:
            while self._heap and self._heap[0].due <= now:
                entry = heapq.heappop(self._heap)
                if self._queued.get(entry.identity_id) is entry:
                    del self._queued[entry.identity_id]
                    return entry
            return None

    def _flag_operator(self, identity_id: str, reason: str) -> None:
        # Bounded view; the signup row's needs_operator flag is the durable record
        with self._lock:
            self._operator.pop(identity_id, None)
            self._operator[identity_id] = reason
            while len(self._operator) > self.operator_capacity:
                evicted, _ = self._operator.popitem(last=False)
                logger.warning("Operator view full; dropped oldest entry %s", evicted)

    def drive(self, identity_id: str, attempt: int = 0) -> DriveOutcome:
        """Run one provisioning attempt and route the result."""
        try:
            profile = self.service.provision(identity_id)
        except ProvisioningPermanentFailure as exc:
            self._flag_operator(identity_id, exc.reason)
            logger.error("Signup %s rejected: %s", identity_id, exc.reason)
            return DriveOutcome(identity_id, DriveStatus.REJECTED, attempt, reason=exc.reason)
        except ProvisioningRetryable as exc:
            next_attempt = attempt + 1
            if next_attempt > self.max_redrives:
                self._flag_operator(identity_id, exc.reason)
                logger.error(
                    "Signup %s still failing after %d re-drives; escalated: %s",
                    identity_id, attempt, exc.reason,
                )
                return DriveOutcome(
                    identity_id, DriveStatus.ESCALATED, attempt, reason=exc.reason
                )
            delay = self.base_delay * (2 ** attempt)
            self.submit(identity_id, delay=delay, attempt=next_attempt)
            logger.info(
                "Signup %s re-queued in %.0fs (re-drive %d/%d): %s",
                identity_id, delay, next_attempt, self.max_redrives, exc.reason,
            )
            return DriveOutcome(identity_id, DriveStatus.REQUEUED, attempt, reason=exc.reason)

        with self._lock:
            self._operator.pop(identity_id, None)
        return DriveOutcome(identity_id, DriveStatus.PROVISIONED, attempt, profile=profile)

    def run_due(self, limit: int | None = None) -> list[DriveOutcome]:
        """Drive every entry whose delay has elapsed."""
        outcomes: list[DriveOutcome] = []
        while limit is None or len(outcomes) < limit:
            entry = self._pop_due()
            if entry is None:
                break
            outcomes.append(self.drive(entry.identity_id, entry.attempt))
        return outcomes

    def sweep(self, limit: int = 100) -> int:
        """
        Queue signups the database reports as stuck before a terminal state.

        Returns:
            How many identities were submitted.
        """
        stuck = self.service.pending_requests(limit=limit)
        for identity_id in stuck:
            self.submit(identity_id)
        if stuck:
            logger.info("Sweep found %d stuck signups", len(stuck))
        return len(stuck)
