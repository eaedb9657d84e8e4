"""Self-rescheduling clock for periodic audio engines.

An entry is any object with a ``tick(current_time, audio_time, dt)`` method.
The scheduler calls it when its time comes and uses the returned value as the
entry's next wake time; it never computes timing on the entry's behalf.
"""

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_LOOKAHEAD = 0.1
DEFAULT_INTERVAL = 0.005


@dataclass(order=True)
class _Entry:
    next_time: float
    seq: int
    engine: Any = field(compare=False)
    last_time: Optional[float] = field(default=None, compare=False)
    executing: bool = field(default=False, compare=False)
    removed: bool = field(default=False, compare=False)


class Scheduler:
    """Run registered entries against a monotonic time source.

    Args:
        get_time: Callable returning the current audio clock time in seconds
        lookahead: How far ahead of ``get_time()`` entries may be executed
        interval: Sleep between passes of the ``run`` loop
    """

    def __init__(
        self,
        get_time: Callable[[], float],
        lookahead: float = DEFAULT_LOOKAHEAD,
        interval: float = DEFAULT_INTERVAL,
    ):
        if lookahead < 0:
            raise ValueError("Lookahead must not be negative")
        if interval <= 0:
            raise ValueError("Interval must be positive")
        self.get_time = get_time
        self.lookahead = lookahead
        self.interval = interval
        self.current_time: Optional[float] = None

        self._queue: List[_Entry] = []
        self._entries: Dict[int, _Entry] = {}
        self._seq = itertools.count()
        self._running = False

    def __len__(self) -> int:
        return len(self._entries)

    def has(self, engine) -> bool:
        return id(engine) in self._entries

    def is_executing(self, engine) -> bool:
        """True while ``engine.tick`` is running under this scheduler."""
        entry = self._entries.get(id(engine))
        return entry is not None and entry.executing

    def add(self, engine, start_time: Optional[float] = None) -> None:
        """Schedule ``engine`` for its first tick at ``start_time`` (default: now)."""
        if self.has(engine):
            raise ValueError("Engine is already scheduled")
        if start_time is None:
            start_time = self.get_time()
        entry = _Entry(start_time, next(self._seq), engine)
        self._entries[id(engine)] = entry
        heapq.heappush(self._queue, entry)

    def remove(self, engine) -> None:
        """Stop ticking ``engine``. Removing an unknown engine is a no-op."""
        entry = self._entries.pop(id(engine), None)
        if entry is not None:
            # Lazily dropped from the heap when popped
            entry.removed = True

    def process(self) -> int:
        """Tick every entry due before ``now + lookahead``.

        An exception from a tick removes that entry and propagates; entries
        deferred earlier in the pass stay queued.

        Returns:
            Number of ticks executed
        """
        now = self.get_time()
        horizon = now + self.lookahead
        deferred = []
        count = 0

        try:
            while self._queue and self._queue[0].next_time <= horizon:
                entry = heapq.heappop(self._queue)
                if entry.removed:
                    continue

                time = entry.next_time
                dt = 0.0 if entry.last_time is None else time - entry.last_time
                audio_time = max(time, now)
                self.current_time = time

                entry.executing = True
                try:
                    next_time = entry.engine.tick(time, audio_time, dt)
                except BaseException:
                    # A failed tick ends the entry
                    self.remove(entry.engine)
                    raise
                finally:
                    entry.executing = False
                count += 1
                entry.last_time = time

                if entry.removed:
                    continue
                if next_time is None:
                    self.remove(entry.engine)
                    continue

                entry.next_time = float(next_time)
                entry.seq = next(self._seq)
                if entry.next_time <= time:
                    logger.warning(
                        "Entry %r returned non-advancing time %.6f at %.6f; deferring to next pass",
                        entry.engine, entry.next_time, time,
                    )
                    deferred.append(entry)
                else:
                    heapq.heappush(self._queue, entry)
        finally:
            for entry in deferred:
                heapq.heappush(self._queue, entry)
        return count

    def stop(self) -> None:
        self._running = False

    async def run(self, duration: Optional[float] = None) -> None:
        """Call ``process`` every ``interval`` seconds until stopped.

        Args:
            duration: Stop after this many seconds of the time source (default: run until ``stop``)
        """
        deadline = None if duration is None else self.get_time() + duration
        self._running = True
        while self._running:
            self.process()
            if deadline is not None and self.get_time() >= deadline:
                break
            await asyncio.sleep(self.interval)
        self._running = False
