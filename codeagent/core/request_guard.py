"""
Request deduplication.

A coarse debounce: an instruction whose (session, text) fingerprint was
accepted within the trailing window is rejected before any provider is
contacted. Nothing is queued.
"""

import hashlib
import logging
import time
from typing import Callable, Dict

logger = logging.getLogger(__name__)


class RequestDeduplicator:
    CLEANUP_THRESHOLD = 100

    def __init__(
        self,
        window_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self._clock = clock
        self._accepted: Dict[str, float] = {}

    @staticmethod
    def fingerprint(session_id: str, instruction: str) -> str:
        payload = f"{session_id}\x00{instruction}".encode("utf-8")
        return hashlib.sha256(payload).hexdigest()

    def accept(self, session_id: str, instruction: str) -> bool:
        """
        Record the instruction and return True, or return False when the
        same fingerprint was accepted within the window.
        """
        now = self._clock()
        key = self.fingerprint(session_id, instruction)

        last = self._accepted.get(key)
        if last is not None and now - last < self.window_seconds:
            logger.info(f"Duplicate request rejected for session {session_id}")
            return False

        self._accepted[key] = now
        if len(self._accepted) > self.CLEANUP_THRESHOLD:
            self._cleanup(now)
        return True

    def _cleanup(self, now: float) -> None:
        expired = [k for k, t in self._accepted.items() if now - t >= self.window_seconds]
        for key in expired:
            del self._accepted[key]
