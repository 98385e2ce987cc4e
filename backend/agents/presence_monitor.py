"""
Presence Monitor — per-player heartbeat producer and peer liveness consumer.

Flow for one player in one session:
  1. start(): write presence/{sid}/{pid}, arm the on-disconnect removal hook,
     subscribe to games/{sid} and to the whole presence/{sid} tree, start the
     refresh loop.
  2. Every refresh tick: rewrite the presence record (+ membership lastActive)
     and re-evaluate the roster. Tick failures are logged, never fatal.
  3. On every session / presence change: diff roster against live presence.
  4. While playing, any other roster member without presence is
     disconnected → interrupt: the host deletes the session, anyone else
     marks it interrupted, and the local owner is told why.

A roster member we have never seen present gets one refresh interval of
grace before counting as disconnected, so a player who has just joined and
not yet written presence does not end the game.
"""
import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from config import settings
from models.game import Player, PresenceRecord, Session, SessionState
from services.store import (
    StateStore,
    Subscription,
    game_path,
    membership_path,
    presence_path,
)
from agents.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

InterruptCallback = Callable[[str, List[Player]], Union[None, Awaitable[None]]]


class PresenceMonitor:
    def __init__(
        self,
        store: StateStore,
        session_id: str,
        player_id: str,
        user_id: str,
        name: str,
        client_id: Optional[str] = None,
        on_interrupted: Optional[InterruptCallback] = None,
        refresh_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        registry: Optional[SessionRegistry] = None,
    ):
        self.store = store
        self.session_id = session_id
        self.player_id = player_id
        self.user_id = user_id
        self.name = name
        self.client_id = client_id or f"{session_id}:{player_id}"
        self.refresh_interval = refresh_interval or settings.presence_refresh_seconds
        self._on_interrupted = on_interrupted
        self._clock = clock
        self._registry = registry or SessionRegistry(store, clock=clock)

        self._session: Optional[Session] = None
        self._presence: Dict[str, Any] = {}
        self._seen: Set[str] = set()
        self._missing_since: Dict[str, float] = {}
        self._subs: List[Subscription] = []
        self._task: Optional[asyncio.Task] = None
        self._grace_task: Optional[asyncio.Task] = None
        self._grace_deadline: Optional[float] = None
        self._running = False
        self.interrupted = False

    @property
    def own_path(self) -> str:
        return presence_path(self.session_id, self.player_id)

    @property
    def is_host(self) -> bool:
        return self._session is not None and self._session.host_id == self.player_id

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self.write_presence()
        self.store.on_disconnect_remove(self.client_id, self.own_path)
        self._subs = [
            self.store.subscribe(game_path(self.session_id), self._on_session),
            self.store.subscribe(presence_path(self.session_id), self._on_presence),
        ]
        self._task = asyncio.create_task(self._refresh_loop())
        logger.debug("[%s] Presence started for %s", self.session_id, self.player_id)

    async def stop(self, remove_record: bool = True) -> None:
        """Stop heartbeating and drop our own presence record."""
        if not self._running:
            return
        self._running = False
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None
        if self._grace_task is not None and self._grace_task is not asyncio.current_task():
            self._grace_task.cancel()
        self._grace_task = None
        for sub in self._subs:
            sub.cancel()
        self._subs = []
        self.store.cancel_on_disconnect(self.client_id, self.own_path)
        if remove_record:
            await self.store.remove(self.own_path)
        logger.debug("[%s] Presence stopped for %s", self.session_id, self.player_id)

    # ── Heartbeat ─────────────────────────────────────────────────────────────

    async def write_presence(self) -> None:
        now = self._clock()
        record = PresenceRecord(online=True, last_seen=now, user_id=self.user_id, name=self.name)
        await self.store.update({
            self.own_path: record.to_record(),
            f"{membership_path(self.user_id, self.session_id)}/lastActive": now,
        })

    async def tick(self) -> None:
        await self.write_presence()
        await self.evaluate()

    async def _refresh_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.refresh_interval)
            if not self._running:
                break
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("[%s] Presence refresh failed; retrying next tick", self.session_id, exc_info=True)

    # ── Observation ───────────────────────────────────────────────────────────

    async def _on_session(self, value: Any) -> None:
        if self.interrupted:
            return
        if value is None:
            if self._session is not None:
                await self._interrupt("The game no longer exists", [])
            return
        self._session = Session.model_validate(value)
        if self._session.state == SessionState.INTERRUPTED:
            await self._interrupt("The game was interrupted", [])
            return
        await self.evaluate()

    async def _on_presence(self, value: Any) -> None:
        self._presence = value or {}
        self._seen.update(self._presence)
        await self.evaluate()

    def disconnected_players(self) -> List[Player]:
        """Roster members (other than us) with no live presence record."""
        if self._session is None:
            return []
        now = self._clock()
        started = self._session.started_at
        gone: List[Player] = []
        self._grace_deadline = None
        for p in self._session.players:
            if p.id == self.player_id:
                continue
            if p.id in self._presence:
                self._missing_since.pop(p.id, None)
                continue
            since = self._missing_since.setdefault(p.id, now)
            if started is not None:
                since = min(since, started)
            if p.id in self._seen or now - since >= self.refresh_interval:
                gone.append(p)
            else:
                deadline = since + self.refresh_interval
                if self._grace_deadline is None or deadline < self._grace_deadline:
                    self._grace_deadline = deadline
        return gone

    async def evaluate(self) -> None:
        if self.interrupted or self._session is None:
            return
        if self._session.state != SessionState.PLAYING:
            # Keep grace timers fresh so a lobby-era absence is not held against anyone
            self._missing_since.clear()
            return
        gone = self.disconnected_players()
        if gone:
            names = ", ".join(p.name for p in gone)
            await self._interrupt(f"Game interrupted: {names} disconnected", gone)
        elif self._grace_deadline is not None:
            self._arm_grace_check(self._grace_deadline)

    def _arm_grace_check(self, deadline: float) -> None:
        """Re-evaluate when the earliest grace period runs out, not at the next refresh."""
        if not self._running or (self._grace_task is not None and not self._grace_task.done()):
            return
        delay = max(0.0, deadline - self._clock())
        self._grace_task = asyncio.create_task(self._grace_check(delay))

    async def _grace_check(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._grace_task = None
        try:
            await self.evaluate()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("[%s] Grace check failed", self.session_id, exc_info=True)

    # ── Interruption ──────────────────────────────────────────────────────────

    async def _interrupt(self, reason: str, gone: List[Player]) -> None:
        """Best-effort teardown; no negotiation with peers."""
        if self.interrupted:
            return
        self.interrupted = True
        logger.warning("[%s] %s", self.session_id, reason)
        try:
            if self.is_host:
                await self.store.update({
                    game_path(self.session_id): None,
                    presence_path(self.session_id): None,
                })
                logger.info("[%s] Host removed interrupted game", self.session_id)
            elif gone:
                await self._registry.mark_interrupted(self.session_id)
        except Exception:
            logger.warning("[%s] Interruption cleanup failed", self.session_id, exc_info=True)

        await self.stop()
        if self._on_interrupted is not None:
            result = self._on_interrupted(reason, gone)
            if inspect.isawaitable(result):
                await result
