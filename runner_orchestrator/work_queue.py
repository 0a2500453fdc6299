"""
Keyed work queue for reconcile requests.

Guarantees:
- a key is handed to at most one worker at a time
- a key added while it is being processed is queued again once the worker is done
- duplicate adds of a waiting key collapse into one
- failed keys come back after an exponential backoff (initial * factor ** (failures - 1),
  capped at max) until forget() resets the count
"""

import asyncio
import logging
from typing import Dict, Set

logger = logging.getLogger(__name__)


class WorkQueue:

    def __init__(self, backoff_initial_sec: float = 0.5, backoff_max_sec: float = 300.0, backoff_factor: float = 2.0):
        self.backoff_initial_sec = backoff_initial_sec
        self.backoff_max_sec = backoff_max_sec
        self.backoff_factor = backoff_factor

        self._queue: asyncio.Queue = asyncio.Queue()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._delayed: Dict[str, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return self._queue.qsize()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    async def get(self) -> str:
        key = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def is_processing(self, key: str) -> bool:
        return key in self._processing

    def add_after(self, key: str, delay_sec: float) -> None:
        if self._shutting_down:
            return
        if delay_sec <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        existing = self._delayed.get(key)
        if existing is not None:
            # Keep whichever retry fires first
            if existing.when() <= loop.time() + delay_sec:
                return
            existing.cancel()
        self._delayed[key] = loop.call_later(delay_sec, self._fire, key)

    def add_rate_limited(self, key: str) -> float:
        """Requeue key after its backoff delay. Returns the delay used."""
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = min(self.backoff_initial_sec * (self.backoff_factor ** (failures - 1)), self.backoff_max_sec)
        self.add_after(key, delay)
        return delay

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        self._failures.pop(key, None)

    def shut_down(self) -> None:
        self._shutting_down = True
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()

    def _fire(self, key: str) -> None:
        self._delayed.pop(key, None)
        self.add(key)
