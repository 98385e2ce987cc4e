"""
Game State Projector — derives one player's view from session snapshots.

No writes of its own. project() is pure; GameStateProjector keeps a
subscription on games/{sid} and re-projects on every snapshot.
"""
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

from models.game import (
    GameView,
    Session,
    SessionState,
    WAITING,
    role_info,
)
from services.store import StateStore, Subscription, game_path
from agents.role_chain import final_ranking

logger = logging.getLogger(__name__)

ViewListener = Callable[[GameView], Union[None, Awaitable[None]]]


def reconcile_player_id(session: Session, player_id: Optional[str], user_id: Optional[str]) -> Optional[str]:
    """
    Keep a saved player id if it is still on the roster and owned by user_id,
    else adopt the entry owned by user_id. Another identity's id is never kept.
    """
    saved = session.find_player(player_id)
    if saved is not None and saved.user_id == user_id:
        return player_id
    mine = session.find_by_user(user_id)
    return mine.id if mine else None


def project(
    session: Optional[Session],
    player_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> GameView:
    if session is None:
        return GameView(state=WAITING)

    player_id = reconcile_player_id(session, player_id, user_id)
    reveal_all = session.state == SessionState.COMPLETED
    players = [
        p.to_public(reveal_role=reveal_all or p.is_locked or p.id == player_id)
        for p in session.players
    ]

    me = None
    local = session.find_player(player_id)
    if local is not None:
        me = local.to_public(reveal_role=True)
        me["userId"] = local.user_id
        if local.role is not None:
            info = role_info(local.role, session.label_scheme, session.role_names)
            me["roleInfo"] = info.to_record()
            me["targetRole"] = info.target_name

    return GameView(
        state=session.state.value,
        session_id=session.id,
        version=session.version,
        players=players,
        me=me,
        is_host=local is not None and local.id == session.host_id,
        current_turn_player_id=session.current_turn_player_id,
        last_guess=session.last_guess,
        ranking=final_ranking(session) if session.state == SessionState.COMPLETED else [],
        interruption=(
            "The game was interrupted" if session.state == SessionState.INTERRUPTED else None
        ),
    )


class GameStateProjector:
    """
    Subscribes to one session and keeps `view` current.
    A snapshot that disappears after we had one means the game is gone.
    """

    def __init__(
        self,
        store: StateStore,
        session_id: str,
        player_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        self.store = store
        self.session_id = session_id
        self.player_id = player_id
        self.user_id = user_id
        self.session: Optional[Session] = None
        self.view: GameView = GameView(state=WAITING)
        self._listeners: List[ViewListener] = []
        self._sub: Optional[Subscription] = None
        self._loaded = False

    def add_listener(self, listener: ViewListener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        if self._sub is None:
            self._sub = self.store.subscribe(game_path(self.session_id), self._on_snapshot)

    def stop(self) -> None:
        if self._sub is not None:
            self._sub.cancel()
            self._sub = None

    async def _on_snapshot(self, value: Any) -> None:
        if value is None:
            self.session = None
            view = GameView(state=WAITING)
            if self._loaded:
                view.interruption = "The game no longer exists"
                logger.info("[%s] Session record gone", self.session_id)
        else:
            self.session = Session.model_validate(value)
            self._loaded = True
            self.player_id = reconcile_player_id(self.session, self.player_id, self.user_id)
            view = project(self.session, self.player_id, self.user_id)
        self.view = view
        for listener in list(self._listeners):
            result = listener(view)
            if inspect.isawaitable(result):
                await result
