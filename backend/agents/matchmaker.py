"""
Quick-play matchmaking.

All queues live in one record (quickPlay/queues) so that picking a queue and
taking a seat in it happen in a single compare-and-set transaction.

Queue choice: among available queues (status waiting, fewer than six active
members) take the one with the most active members; ties go to the lowest
queue id. Fuller queues fill first and fewer half-empty queues linger.

When a seat fills the sixth active slot, that same transaction flips the
queue to `starting`; only the caller whose enqueue did that forms the game,
so two clients can never both create it.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import settings
from models.game import Queue, QueueEntry, QueueStatus
from services.store import QUEUES_PATH, StateStore, Subscription, queue_path
from utils.ids import generate_id
from agents.errors import IdentityAbsentError, NotFoundError, PreconditionError
from agents.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


def _load(data: Any) -> Dict[str, Queue]:
    return {qid: Queue.model_validate({**q, "id": qid}) for qid, q in (data or {}).items()}


def _dump(queues: Dict[str, Queue]) -> Optional[Dict[str, Any]]:
    return {qid: q.to_record() for qid, q in queues.items()} or None


def pick_queue(queues: Dict[str, Queue], now: float, stale_after: float, capacity: int) -> Optional[Queue]:
    """Most active occupants first, then lowest queue id."""
    available = [q for q in queues.values() if q.is_available(now, stale_after, capacity)]
    if not available:
        return None
    return min(available, key=lambda q: (-len(q.active_players(now, stale_after)), q.id))


class _NoChange(Exception):
    pass


class Matchmaker:
    def __init__(
        self,
        store: StateStore,
        registry: Optional[SessionRegistry] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.registry = registry or SessionRegistry(store, clock=clock)
        self._clock = clock
        self.capacity = settings.max_players
        self.stale_after = settings.queue_stale_seconds

    async def get_queue(self, queue_id: str) -> Optional[Queue]:
        data = await self.store.get(queue_path(queue_id))
        return Queue.model_validate({**data, "id": queue_id}) if data else None

    def watch(self, queue_id: str, callback) -> Subscription:
        return self.store.subscribe(queue_path(queue_id), callback)

    # ── Seat taking ───────────────────────────────────────────────────────────

    async def enqueue(self, player_name: str, user_id: str) -> Tuple[Queue, str]:
        """
        Seat the caller in the best queue. Returns (queue as committed, player id).
        If this seat completed the queue, the game is formed before returning
        and queue.game_id is set.
        """
        if not user_id:
            raise IdentityAbsentError()
        name = self.registry.clean_name(player_name)
        outcome: Dict[str, Any] = {}

        def _seat(current):
            now = self._clock()
            queues = _load(current)
            outcome.clear()

            # Already queued: refresh in place
            for queue in queues.values():
                for pid, entry in queue.players.items():
                    if entry.user_id == user_id and queue.status == QueueStatus.WAITING:
                        entry.timestamp = now
                        entry.name = name
                        outcome.update(queue_id=queue.id, player_id=pid, filled=False)
                        return _dump(queues)

            queue = pick_queue(queues, now, self.stale_after, self.capacity)
            if queue is None:
                qid = generate_id(settings.player_id_length)
                while qid in queues:
                    qid = generate_id(settings.player_id_length)
                queue = Queue(id=qid, created_at=now)
                queues[qid] = queue

            # Stale seats do not count towards the six; drop them now
            queue.players = queue.active_players(now, self.stale_after)
            pid = generate_id(settings.player_id_length)
            while pid in queue.players:
                pid = generate_id(settings.player_id_length)
            queue.players[pid] = QueueEntry(name=name, user_id=user_id, timestamp=now)

            filled = len(queue.players) >= self.capacity
            if filled:
                queue.status = QueueStatus.STARTING
            outcome.update(queue_id=queue.id, player_id=pid, filled=filled)
            return _dump(queues)

        await self.store.transaction(QUEUES_PATH, _seat)
        queue_id, player_id = outcome["queue_id"], outcome["player_id"]
        logger.info("Quick play: %s seated in queue %s as %s", name, queue_id, player_id)

        if outcome["filled"]:
            await self.form_game(queue_id)
        queue = await self.get_queue(queue_id)
        if queue is None:
            raise NotFoundError("Queue vanished before it could be read")
        return queue, player_id

    async def form_game(self, queue_id: str) -> str:
        """
        Turn a full (starting) queue into a lobby: the longest-waiting member
        hosts and the rest are joined.

        The game id is published on the queue as soon as the lobby exists, so
        calling this again after a failed join reuses that lobby; members
        already seated come back as reconnects.
        """
        queue = await self.get_queue(queue_id)
        if queue is None:
            raise NotFoundError("Queue not found")
        if queue.status != QueueStatus.STARTING:
            raise PreconditionError("Queue is still waiting for players", "QUEUE_NOT_FULL")

        members = sorted(queue.players.items(), key=lambda kv: (kv[1].timestamp, kv[0]))
        game_id = queue.game_id
        if not game_id:
            host_entry = members[0][1]
            session, _host = await self.registry.create_session(host_entry.name, host_entry.user_id)
            game_id = session.id
            await self.store.set(f"{queue_path(queue_id)}/gameId", game_id)

        for _pid, entry in members[1:]:
            await self.registry.join_session(game_id, entry.name, entry.user_id)

        logger.info("[%s] Formed from quick-play queue %s", game_id, queue_id)
        return game_id

    # ── Membership upkeep ─────────────────────────────────────────────────────

    async def heartbeat(self, queue_id: str, player_id: str) -> None:
        def _touch(current):
            if current is None or player_id not in (current.get("players") or {}):
                raise NotFoundError("Not waiting in this queue")
            current["players"][player_id]["timestamp"] = self._clock()
            return current

        await self.store.transaction(queue_path(queue_id), _touch)

    async def leave(self, queue_id: str, player_id: str) -> None:
        def _drop(current):
            if current is None or player_id not in (current.get("players") or {}):
                raise _NoChange()
            del current["players"][player_id]
            # An empty queue is deleted outright
            return current if current["players"] else None

        try:
            await self.store.transaction(queue_path(queue_id), _drop)
        except _NoChange:
            return
        logger.info("Quick play: %s left queue %s", player_id, queue_id)

    async def sweep(self) -> List[str]:
        """Drop stale members everywhere; delete queues left empty. Returns deleted ids."""
        deleted: List[str] = []

        def _sweep(current):
            now = self._clock()
            queues = _load(current)
            deleted.clear()
            changed = False
            for qid, queue in list(queues.items()):
                active = queue.active_players(now, self.stale_after)
                if len(active) != len(queue.players):
                    queue.players = active
                    changed = True
                if not queue.players:
                    del queues[qid]
                    deleted.append(qid)
                    changed = True
            if not changed:
                raise _NoChange()
            return _dump(queues)

        try:
            await self.store.transaction(QUEUES_PATH, _sweep)
        except _NoChange:
            return []
        if deleted:
            logger.info("Quick play sweep removed %d empty queue(s)", len(deleted))
        return deleted

    async def run_sweeper(self, interval: Optional[float] = None) -> None:
        """Sweep forever; one failed pass never stops the loop."""
        interval = interval or settings.queue_sweep_seconds
        logger.info("Quick play sweeper running every %.0fs", interval)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Quick play sweep failed; retrying next tick", exc_info=True)
