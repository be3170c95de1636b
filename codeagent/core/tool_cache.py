"""
Read-only tool result cache.

Keyed on (tool name, canonical JSON of the arguments). Entries expire
after a TTL and the oldest entry is evicted once the cache is full. The
cache is an explicit object handed to the ToolSupervisor, so every agent
(and every test) can own an isolated instance.
"""

import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


def canonical_arguments(arguments: Dict[str, Any]) -> str:
    return json.dumps(arguments, sort_keys=True, separators=(",", ":"), default=str)


@dataclass
class CacheEntry:
    value: Any
    created_at: float


class ToolResultCache:
    def __init__(
        self,
        ttl_seconds: float = 30 * 60,
        max_entries: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        # bumped by every invalidation; a result computed across a bump is stale
        self.generation = 0

    @staticmethod
    def make_key(tool_name: str, arguments: Dict[str, Any]) -> CacheKey:
        return tool_name, canonical_arguments(arguments)

    def get(self, tool_name: str, arguments: Dict[str, Any]) -> Optional[Any]:
        key = self.make_key(tool_name, arguments)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._clock() - entry.created_at >= self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        logger.debug(f"Cache HIT for {tool_name}")
        return entry.value

    def put(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        value: Any,
        generation: Optional[int] = None,
    ) -> bool:
        """
        Store ``value``. When ``generation`` is given and the cache has been
        invalidated since it was read, the value is dropped and False is
        returned.
        """
        if generation is not None and generation != self.generation:
            logger.debug(f"Skipping cache store for {tool_name}: invalidated while running")
            return False
        key = self.make_key(tool_name, arguments)
        if key in self._entries:
            del self._entries[key]
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = CacheEntry(value=value, created_at=self._clock())
        return True

    def invalidate(self, predicate: Callable[[str, Dict[str, Any]], bool]) -> int:
        """Drop every entry for which ``predicate(tool_name, arguments)`` is true."""
        self.generation += 1
        doomed = [
            key for key in self._entries
            if predicate(key[0], json.loads(key[1]))
        ]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cached tool results")
        return len(doomed)

    def clear(self) -> None:
        self.generation += 1
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
