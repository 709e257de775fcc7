"""
Live Update Broadcaster for Quadly.

This module implements StatusBroadcaster, a long-lived background task that
polls the StatusAggregator on a fixed interval, diffs the results against the
last-known status of each tracked unit, and fans change events out to any
number of subscribers.

Each Subscription owns a bounded buffer. When a subscriber falls behind, the
oldest buffered events for that subscriber are dropped: the producer never
blocks and other subscribers are unaffected.

The broadcaster is an explicitly owned object. Construct one per process (or
per test) and inject it where needed.
"""

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Deque, Dict, List, Optional, Set, Tuple

from quadly.core.aggregator import StatusAggregator
from quadly.shared.exceptions import BroadcasterStateError, QueryError
from quadly.shared.models import StatusChange, UnitStatus

logger = logging.getLogger(__name__)


class BroadcasterState(Enum):
    """Lifecycle of the polling task."""
    STOPPED = "stopped"
    POLLING = "polling"


class Subscription:
    """
    A consumer's handle on the change stream.

    Iterate it with ``async for``; iteration ends when the broadcaster stops
    or the subscription is closed. Use it as an async context manager so the
    buffer is released as soon as the consumer goes away.
    """

    def __init__(self, broadcaster: "StatusBroadcaster", capacity: int):
        if capacity <= 0:
            raise ValueError("Subscription capacity must be positive")
        self._broadcaster = broadcaster
        self._buffer: Deque[StatusChange] = deque(maxlen=capacity)
        self._wakeup = asyncio.Event()
        self._closed = False
        self._ended = False
        self.capacity = capacity
        self.dropped = 0
        self.delivered = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def _push(self, change: StatusChange) -> bool:
        if self._closed or self._ended:
            return False
        if len(self._buffer) == self.capacity:
            self.dropped += 1
        self._buffer.append(change)
        self._wakeup.set()
        return True

    def _end(self) -> None:
        """Producer side is gone; buffered events may still be drained."""
        self._ended = True
        self._wakeup.set()

    def get_nowait(self) -> Optional[StatusChange]:
        if not self._buffer:
            return None
        self.delivered += 1
        return self._buffer.popleft()

    async def get(self) -> StatusChange:
        """
        Wait for the next event.

        Raises:
            StopAsyncIteration: When the subscription is closed, or the
                broadcaster stopped and the buffer is drained
        """
        while True:
            if self._closed:
                raise StopAsyncIteration
            if self._buffer:
                self.delivered += 1
                return self._buffer.popleft()
            if self._ended:
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()

    def close(self) -> None:
        """Detach from the broadcaster and release the buffer."""
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        self._wakeup.set()
        self._broadcaster._discard(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> StatusChange:
        return await self.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()


class StatusBroadcaster:
    """
    Polls tracked units and republishes status changes to subscribers.

    Lifecycle: STOPPED -> start() -> POLLING -> stop() -> STOPPED (terminal).
    The tracked-unit set and the last-known table are only touched by the
    polling cycle; ``track``/``untrack`` queue mutations that the next cycle
    applies before querying.
    """

    def __init__(self, aggregator: StatusAggregator, poll_interval: float = 2.0,
                 buffer_size: int = 64):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self.aggregator = aggregator
        self.poll_interval = poll_interval
        self.buffer_size = buffer_size

        self._tracked: Set[str] = set()
        self._last_known: Dict[str, UnitStatus] = {}
        self._pending: Deque[Tuple[str, str]] = deque()
        self._subscribers: Dict[Subscription, None] = {}
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._state = BroadcasterState.STOPPED
        self._terminated = False
        self.cycles = 0

    @property
    def state(self) -> BroadcasterState:
        return self._state

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def tracked_units(self) -> frozenset:
        return frozenset(self._tracked)

    @property
    def accepting_subscribers(self) -> bool:
        return not self._terminated

    def last_known(self, ref: str) -> Optional[UnitStatus]:
        return self._last_known.get(ref)

    def track(self, ref: str) -> None:
        """Start monitoring ``ref`` from the next poll cycle."""
        self._pending.append(("add", ref))

    def untrack(self, ref: str) -> None:
        """Stop monitoring ``ref`` from the next poll cycle."""
        self._pending.append(("remove", ref))

    def subscribe(self, capacity: Optional[int] = None) -> Subscription:
        """
        Register a new subscriber. It only sees events emitted from now on.

        Raises:
            BroadcasterStateError: If the broadcaster has already been stopped
        """
        if self._terminated:
            raise BroadcasterStateError("Broadcaster has been stopped")
        subscription = Subscription(self, capacity or self.buffer_size)
        self._subscribers[subscription] = None
        logger.debug(f"Subscriber added ({len(self._subscribers)} active)")
        return subscription

    def _discard(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            del self._subscribers[subscription]
            logger.debug(f"Subscriber removed ({len(self._subscribers)} active)")

    def _apply_pending(self) -> None:
        while self._pending:
            action, ref = self._pending.popleft()
            if action == "add":
                self._tracked.add(ref)
            else:
                self._tracked.discard(ref)
                self._last_known.pop(ref, None)

    def _publish(self, change: StatusChange) -> None:
        for subscription in list(self._subscribers):
            if subscription.closed:
                self._discard(subscription)
                continue
            subscription._push(change)

    def _diff(self, ref: str, status: UnitStatus) -> Optional[StatusChange]:
        previous = self._last_known.get(ref)
        self._last_known[ref] = status
        # an unseen unit compares as Unknown, so a first Unknown is not news
        if status == (previous or UnitStatus.UNKNOWN):
            return None
        return StatusChange(ref=ref, old_status=previous, new_status=status)

    async def poll_once(self) -> List[StatusChange]:
        """
        Run one poll cycle and publish the changes it finds.

        Query failures leave the unit's last-known status untouched.
        """
        self._apply_pending()
        if not self._tracked:
            return []

        results = await self.aggregator.query_many(sorted(self._tracked))

        changes = []
        for ref, result in results.items():
            if ref not in self._tracked:
                # untracked while the query was in flight
                continue
            if isinstance(result, QueryError):
                logger.debug(f"Keeping last-known status for {ref}: {result.message}")
                continue
            change = self._diff(ref, result)
            if change is not None:
                changes.append(change)

        for change in changes:
            self._publish(change)

        self.cycles += 1
        if changes:
            logger.info(f"Poll cycle {self.cycles}: {len(changes)} status changes")
        return changes

    async def _run(self) -> None:
        logger.info(f"Status polling started (interval={self.poll_interval}s)")
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Poll cycle failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Status polling stopped")

    def start(self) -> asyncio.Task:
        """
        Launch the polling task on the running event loop.

        Raises:
            BroadcasterStateError: If already polling or already stopped
        """
        if self._terminated:
            raise BroadcasterStateError("Broadcaster cannot be restarted after stop")
        if self._state is BroadcasterState.POLLING:
            raise BroadcasterStateError("Broadcaster is already polling")

        self._state = BroadcasterState.POLLING
        self._task = asyncio.create_task(self._run(), name="quadly-status-poller")
        return self._task

    async def stop(self) -> None:
        """Stop polling and end every subscription's stream."""
        if self._terminated:
            return
        self._terminated = True
        self._stop_event.set()

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self._state = BroadcasterState.STOPPED
        for subscription in list(self._subscribers):
            subscription._end()
        self._subscribers.clear()
        logger.info("Status broadcaster stopped")
