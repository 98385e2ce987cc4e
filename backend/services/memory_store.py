import asyncio
import copy
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from services.store import (
    Callback,
    ConcurrentWriteError,
    StateStore,
    Subscription,
    paths_overlap,
    record_key,
    split_path,
)

logger = logging.getLogger(__name__)


class InMemoryStore(StateStore):
    """
    Process-local StateStore backed by nested dicts.

    Used by the test suite and for single-process local play. Transactions
    yield to the event loop between read and commit so that interleaved
    coroutines really do race, and a per-record revision counter detects
    the losers.
    """

    def __init__(self, max_attempts: int = 5):
        super().__init__(max_attempts)
        self._root: Dict[str, Any] = {}
        self._revisions: Dict[str, int] = {}
        self._subs: List[Subscription] = []

    # ── Tree helpers ──────────────────────────────────────────────────────────

    def _read(self, parts: List[str]) -> Any:
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _write(self, parts: List[str], value: Any) -> None:
        if value is None:
            self._delete(parts)
            return
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = copy.deepcopy(value)

    def _delete(self, parts: List[str]) -> None:
        trail = [self._root]
        for part in parts[:-1]:
            child = trail[-1].get(part)
            if not isinstance(child, dict):
                return
            trail.append(child)
        trail[-1].pop(parts[-1], None)
        # Empty maps vanish, as in a realtime database
        for depth in range(len(trail) - 1, 0, -1):
            if trail[depth]:
                break
            trail[depth - 1].pop(parts[depth - 1], None)

    def _apply(self, values: Dict[str, Any]) -> None:
        for path, value in values.items():
            self._write(split_path(path), value)
            key = record_key(path)
            self._revisions[key] = self._revisions.get(key, 0) + 1
        self._notify(values.keys())

    def _notify(self, paths: Iterable[str]) -> None:
        paths = list(paths)
        for sub in list(self._subs):
            if any(paths_overlap(sub.path, p) for p in paths):
                sub.push(copy.deepcopy(self._read(split_path(sub.path))))

    # ── StateStore ────────────────────────────────────────────────────────────

    async def get(self, path: str) -> Any:
        return copy.deepcopy(self._read(split_path(path)))

    async def update(self, values: Dict[str, Any]) -> None:
        if values:
            self._apply(values)

    async def transaction(
        self,
        path: str,
        fn: Callable[[Any], Any],
        max_attempts: Optional[int] = None,
    ) -> Any:
        attempts = max_attempts or self.max_attempts
        key = record_key(path)
        for attempt in range(1, attempts + 1):
            revision = self._revisions.get(key, 0)
            current = copy.deepcopy(self._read(split_path(path)))
            new_value = fn(current)
            # Commit happens "later": other writers get a chance to land first
            await asyncio.sleep(0)
            if self._revisions.get(key, 0) != revision:
                logger.debug("Transaction on %s lost race (attempt %d/%d)", path, attempt, attempts)
                continue
            self._apply({path: new_value})
            return copy.deepcopy(new_value)
        raise ConcurrentWriteError(path, attempts)

    def subscribe(self, path: str, callback: Callback) -> Subscription:
        split_path(path)
        sub: Subscription

        def _forget() -> None:
            if sub in self._subs:
                self._subs.remove(sub)

        sub = Subscription(path, callback, on_cancel=_forget)
        self._subs.append(sub)
        sub.push(copy.deepcopy(self._read(split_path(path))))
        return sub

    # ── Test helpers ──────────────────────────────────────────────────────────

    async def drain(self, max_spins: int = 10000) -> None:
        """Wait until every subscription callback (and what it triggers) has run."""
        for _ in range(max_spins):
            if not any(s.pending for s in self._subs):
                # One more spin lets freshly scheduled tasks start and enqueue
                await asyncio.sleep(0)
                if not any(s.pending for s in self._subs):
                    return
            await asyncio.sleep(0)
        logger.warning("drain() gave up with callbacks still pending")

    def dump(self) -> Dict[str, Any]:
        return copy.deepcopy(self._root)
