"""
Shared state store interface.

Every protocol component takes a StateStore instead of reaching for a global
database handle. Values are JSON-like (dicts, lists, scalars) addressed by
slash-separated key paths:

  games/{sessionId}                  — Session record
  presence/{sessionId}/{playerId}    — Presence record
  userGames/{userId}/{sessionId}     — Membership marker (reverse index)
  quickPlay/queues/{queueId}         — Matchmaking queue
  users/{userId}                     — Profile (owned by the identity subsystem)

The first two segments of a path name a *record*: the unit of conflict
detection for transactions (one Firestore document in production).
"""
import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

logger = logging.getLogger(__name__)

Callback = Callable[[Any], Union[None, Awaitable[None]]]


class ConcurrentWriteError(Exception):
    """A transaction kept losing the race against other writers."""

    code = "CONCURRENT_WRITE"

    def __init__(self, path: str, attempts: int):
        super().__init__(f"Record at '{path}' changed during {attempts} attempts; retry")
        self.path = path
        self.attempts = attempts


# ── Path helpers ──────────────────────────────────────────────────────────────

def split_path(path: str) -> List[str]:
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts:
        raise ValueError("Empty store path")
    return parts


def record_key(path: str) -> str:
    """First two segments: the record a path lives in."""
    return "/".join(split_path(path)[:2])


def paths_overlap(a: str, b: str) -> bool:
    pa, pb = split_path(a), split_path(b)
    n = min(len(pa), len(pb))
    return pa[:n] == pb[:n]


def game_path(session_id: str) -> str:
    return f"games/{session_id}"


def presence_path(session_id: str, player_id: Optional[str] = None) -> str:
    if player_id is None:
        return f"presence/{session_id}"
    return f"presence/{session_id}/{player_id}"


def membership_path(user_id: str, session_id: Optional[str] = None) -> str:
    if session_id is None:
        return f"userGames/{user_id}"
    return f"userGames/{user_id}/{session_id}"


QUEUES_PATH = "quickPlay/queues"


def queue_path(queue_id: str) -> str:
    return f"{QUEUES_PATH}/{queue_id}"


def user_path(user_id: str) -> str:
    return f"users/{user_id}"


# ── Subscriptions ─────────────────────────────────────────────────────────────

class Subscription:
    """
    Ordered delivery of change notifications for one key path.

    Values are queued by the store (possibly from another thread via
    push_threadsafe) and handed to the callback one at a time, in commit
    order. A failing callback is logged and delivery continues.
    """

    def __init__(self, path: str, callback: Callback, on_cancel: Optional[Callable[[], None]] = None):
        self.path = path
        self._callback = callback
        self._on_cancel = on_cancel
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._pending = 0
        self._closed = False
        self._task = asyncio.create_task(self._deliver())

    @property
    def pending(self) -> int:
        return self._pending

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, value: Any) -> None:
        if self._closed:
            return
        self._pending += 1
        self._queue.put_nowait(value)

    def push_threadsafe(self, value: Any) -> None:
        self._loop.call_soon_threadsafe(self.push, value)

    async def _deliver(self) -> None:
        while not self._closed:
            value = await self._queue.get()
            try:
                result = self._callback(value)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Subscription callback for '%s' failed", self.path, exc_info=True)
            finally:
                self._pending = max(0, self._pending - 1)

    def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pending = 0
        if self._on_cancel:
            self._on_cancel()
        # Cancelled from inside our own callback: the loop exits on its own
        if self._task is not asyncio.current_task():
            self._task.cancel()


# ── Store interface ───────────────────────────────────────────────────────────

class StateStore(ABC):
    """
    Realtime key-value store: reads, atomic multi-path updates, optimistic
    transactions, per-path change subscriptions and on-disconnect cleanup.
    """

    def __init__(self, max_attempts: int = 5):
        self.max_attempts = max_attempts
        # {client_id: {path, ...}}: removed when the client's connection drops
        self._on_disconnect: Dict[str, Set[str]] = {}

    @abstractmethod
    async def get(self, path: str) -> Any:
        """Value at path, or None when absent."""

    @abstractmethod
    async def update(self, values: Dict[str, Any]) -> None:
        """Write every path in one atomic step. A None value deletes the path."""

    @abstractmethod
    async def transaction(
        self,
        path: str,
        fn: Callable[[Any], Any],
        max_attempts: Optional[int] = None,
    ) -> Any:
        """
        Compare-and-set read-modify-write of a single path.

        fn receives the current value and returns the new one (None deletes).
        If the enclosing record changes between read and commit, fn is re-run
        on the fresh value. fn raising aborts with no write. Returns the
        committed value; raises ConcurrentWriteError once attempts run out.
        """

    @abstractmethod
    def subscribe(self, path: str, callback: Callback) -> Subscription:
        """Deliver the current value now and again after every change under path."""

    async def set(self, path: str, value: Any) -> None:
        await self.update({path: value})

    async def remove(self, path: str) -> None:
        await self.update({path: None})

    # ── On-disconnect hooks ───────────────────────────────────────────────────

    def on_disconnect_remove(self, client_id: str, path: str) -> None:
        self._on_disconnect.setdefault(client_id, set()).add(path)

    def cancel_on_disconnect(self, client_id: str, path: Optional[str] = None) -> None:
        if path is None:
            self._on_disconnect.pop(client_id, None)
            return
        paths = self._on_disconnect.get(client_id)
        if paths:
            paths.discard(path)
            if not paths:
                self._on_disconnect.pop(client_id, None)

    def pending_disconnect_paths(self, client_id: str) -> Tuple[str, ...]:
        return tuple(sorted(self._on_disconnect.get(client_id, ())))

    async def disconnect(self, client_id: str) -> None:
        """The client's connection is gone: run its cleanup hooks."""
        paths = self._on_disconnect.pop(client_id, set())
        if paths:
            logger.info("Client %s disconnected, removing %d path(s)", client_id, len(paths))
            await self.update({p: None for p in paths})
