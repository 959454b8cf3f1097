from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class WorkTimer:
    elapsed: int = 0
    running: bool = True


def format_elapsed(seconds: int) -> str:
    seconds = max(int(seconds or 0), 0)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class WorkClock:
    """Elapsed-time counters for jobs being worked on, keyed by order id.

    One clock advances every timer; there is no per-order interval to leak.
    """

    def __init__(self) -> None:
        self._timers: Dict[int, WorkTimer] = {}
        self._lock = threading.Lock()

    def start(self, order_id: int) -> WorkTimer:
        with self._lock:
            timer = WorkTimer()
            self._timers[order_id] = timer
            return WorkTimer(timer.elapsed, timer.running)

    def resume(self, order_id: int, elapsed: int) -> WorkTimer:
        """Re-register a timer for a job that was already in progress."""
        with self._lock:
            timer = self._timers.get(order_id)
            if timer is None:
                timer = WorkTimer(elapsed=max(int(elapsed), 0))
                self._timers[order_id] = timer
            return WorkTimer(timer.elapsed, timer.running)

    def get(self, order_id: int) -> Optional[WorkTimer]:
        with self._lock:
            timer = self._timers.get(order_id)
            return WorkTimer(timer.elapsed, timer.running) if timer else None

    def remove(self, order_id: int) -> Optional[WorkTimer]:
        with self._lock:
            return self._timers.pop(order_id, None)

    def tick(self, seconds: int = 1) -> None:
        with self._lock:
            for timer in self._timers.values():
                if timer.running:
                    timer.elapsed += seconds

    def clear(self) -> None:
        with self._lock:
            self._timers.clear()

    def __contains__(self, order_id: object) -> bool:
        with self._lock:
            return order_id in self._timers

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)

    async def run(self, interval: float = 1.0) -> None:
        logger.info("Work clock started (interval=%ss)", interval)
        try:
            while True:
                await asyncio.sleep(interval)
                self.tick()
        except asyncio.CancelledError:
            logger.info("Work clock stopped")
            raise


work_clock = WorkClock()
