"""Utility functions."""

import logging
import threading
import traceback
from queue import Queue
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class DeferredExecution:
    """A thread that accepts closures to run, and runs them as it finds them"""

    def __init__(self, name: str) -> None:
        self.queue: "Queue[Callable[[], None]]" = Queue()
        self.thread = threading.Thread(target=self._run, args=(), name=name, daemon=True)
        self.thread.start()

    def queueWork(self, runnable: Callable[[], None]) -> None:
        """Queue up the work"""
        self.queue.put(runnable)

    def _run(self) -> None:
        while True:
            runnable = self.queue.get()
            try:
                runnable()
            except Exception:
                logger.error(
                    "Unexpected error in deferred execution %s", traceback.format_exc()
                )


def sanitize_address(address: Optional[str]) -> Optional[str]:
    """
    Normalize a BLE address by removing separators and lowercasing.

    Returns None for None or whitespace-only input.
    """
    if address is None or not address.strip():
        return None
    return (
        address.strip()
        .replace("-", "")
        .replace("_", "")
        .replace(":", "")
        .replace(" ", "")
        .lower()
    )
