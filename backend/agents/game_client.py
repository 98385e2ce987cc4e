"""
Game Client — one player's handle on the session protocol.

Binds an identity to at most one session at a time and wires the pieces
together: registry for create/join/start/leave, the role-chain engine for
guesses, a PresenceMonitor for heartbeat + peer liveness, and a
GameStateProjector for the local view. The WebSocket hub runs one per
connected player; tests drive several side by side over one store.
"""
import inspect
import logging
import random
import time
from typing import Awaitable, Callable, Dict, List, Optional, Union

from models.game import GameView, GuessOutcome, Player, Session, WAITING
from services.store import StateStore
from agents.errors import IdentityAbsentError, NotFoundError, PreconditionError
from agents.game_projector import GameStateProjector, reconcile_player_id
from agents.presence_monitor import PresenceMonitor
from agents.role_chain import RoleChainEngine
from agents.session_registry import SessionRegistry, normalize_code

logger = logging.getLogger(__name__)

ViewListener = Callable[[GameView], Union[None, Awaitable[None]]]


class GameClient:
    def __init__(
        self,
        store: StateStore,
        user_id: Optional[str],
        client_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        refresh_interval: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.user_id = user_id
        self.client_id = client_id
        self._clock = clock
        self._refresh_interval = refresh_interval
        self.engine = RoleChainEngine(store, rng=rng, clock=clock)
        self.registry = SessionRegistry(store, engine=self.engine, clock=clock)

        self.session_id: Optional[str] = None
        self.player_id: Optional[str] = None
        self.player_name: Optional[str] = None
        self.interruption: Optional[str] = None
        self.projector: Optional[GameStateProjector] = None
        self.presence: Optional[PresenceMonitor] = None
        self._listeners: List[ViewListener] = []

    # ── Observation ───────────────────────────────────────────────────────────

    @property
    def view(self) -> GameView:
        if self.projector is None:
            return GameView(state=WAITING, interruption=self.interruption)
        return self.projector.view

    def add_listener(self, listener: ViewListener) -> None:
        self._listeners.append(listener)

    async def _emit(self, view: GameView) -> None:
        for listener in list(self._listeners):
            result = listener(view)
            if inspect.isawaitable(result):
                await result

    async def _on_view(self, view: GameView) -> None:
        if self.projector is not None and self.projector.player_id:
            self.player_id = self.projector.player_id
        if view.interruption and self.session_id is not None:
            await self._on_interrupted(view.interruption, [])
            return
        await self._emit(view)

    def _require_identity(self) -> str:
        if not self.user_id:
            raise IdentityAbsentError()
        return self.user_id

    def _require_session(self) -> str:
        if self.session_id is None or self.player_id is None:
            raise PreconditionError("You are not in a game", "NO_SESSION")
        return self.session_id

    # ── Binding ───────────────────────────────────────────────────────────────

    async def _bind(self, session_id: str, player: Player) -> None:
        if self.session_id is not None:
            await self._unbind()
        self.session_id = session_id
        self.player_id = player.id
        self.player_name = player.name
        self.interruption = None

        self.projector = GameStateProjector(self.store, session_id, player.id, self.user_id)
        self.projector.add_listener(self._on_view)
        self.projector.start()

        self.presence = PresenceMonitor(
            self.store,
            session_id,
            player.id,
            self.user_id,
            player.name,
            client_id=self.client_id,
            on_interrupted=self._on_interrupted,
            refresh_interval=self._refresh_interval,
            clock=self._clock,
            registry=self.registry,
        )
        await self.presence.start()

    async def _unbind(self) -> None:
        if self.presence is not None:
            await self.presence.stop()
        if self.projector is not None:
            self.projector.stop()
        self.presence = None
        self.projector = None
        self.session_id = None
        self.player_id = None

    async def _on_interrupted(self, reason: str, gone: List[Player]) -> None:
        session_id, player_id = self.session_id, self.player_id
        if session_id is None:
            return
        self.interruption = reason
        await self._unbind()
        try:
            await self.registry.leave_session(session_id, self.user_id, player_id, interrupted=True)
        except Exception:
            logger.warning("[%s] Cleanup after interruption failed", session_id, exc_info=True)
        await self._emit(GameView(state=WAITING, interruption=reason))

    # ── Actions ───────────────────────────────────────────────────────────────

    async def create_game(
        self,
        player_name: str,
        label_scheme: Optional[str] = None,
        role_names: Optional[Dict[str, str]] = None,
    ) -> str:
        session, host = await self.registry.create_session(
            player_name, self._require_identity(), label_scheme, role_names
        )
        await self._bind(session.id, host)
        return session.id

    async def join_game(self, session_id: str, player_name: str) -> Player:
        code = normalize_code(session_id)
        player, _reconnected = await self.registry.join_session(code, player_name, self._require_identity())
        await self._bind(code, player)
        return player

    async def resume(self, session_id: str, player_id: Optional[str]) -> Player:
        """Re-attach after a refresh using a saved (session id, player id) pair."""
        user_id = self._require_identity()
        code = normalize_code(session_id)
        session: Optional[Session] = await self.registry.get_session(code)
        if session is None:
            raise NotFoundError("Game not found")
        pid = reconcile_player_id(session, player_id, user_id)
        player = session.find_player(pid)
        if player is None or player.user_id != user_id:
            raise NotFoundError("You are not a player in this game")
        await self._bind(code, player)
        return player

    async def start_game(self, expected_version: Optional[int] = None) -> Session:
        session_id = self._require_session()
        return await self.registry.start_session(session_id, self.player_id, expected_version)

    async def make_guess(self, target_id: str, expected_version: Optional[int] = None) -> GuessOutcome:
        session_id = self._require_session()
        return await self.engine.submit_guess(session_id, self.player_id, target_id, expected_version)

    async def leave_game(self) -> None:
        session_id, player_id = self.session_id, self.player_id
        if session_id is None:
            return
        await self._unbind()
        await self.registry.leave_session(session_id, self._require_identity(), player_id)

    async def close(self) -> None:
        """Connection gone: stop local machinery, keep the seat for a later resume."""
        await self._unbind()
