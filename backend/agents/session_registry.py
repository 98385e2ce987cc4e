"""
Session Registry — creates, finds and tears down game sessions.

Every roster change is one compare-and-set transaction on games/{id}, so the
capacity check and the append can never be split by another joiner.
"""
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from config import settings
from models.game import (
    LABEL_SCHEMES,
    Membership,
    Player,
    Role,
    Session,
    SessionState,
)
from services.store import (
    StateStore,
    game_path,
    membership_path,
    presence_path,
    user_path,
)
from utils.ids import generate_id
from agents.errors import (
    GameError,
    IdentityAbsentError,
    NotFoundError,
    NotHostError,
    PreconditionError,
    StaleStateError,
)
from agents.role_chain import RoleChainEngine

logger = logging.getLogger(__name__)


class _CodeTaken(Exception):
    pass


class _NoChange(Exception):
    pass


class _AlreadyJoined(Exception):
    def __init__(self, player: Player):
        self.player = player


def normalize_code(session_id: str) -> str:
    return (session_id or "").strip().upper()


class SessionRegistry:
    def __init__(
        self,
        store: StateStore,
        engine: Optional[RoleChainEngine] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.engine = engine or RoleChainEngine(store, clock=clock)
        self._clock = clock

    @staticmethod
    def clean_name(player_name: str) -> str:
        name = " ".join((player_name or "").split())[: settings.max_name_length]
        if not name:
            raise PreconditionError("Please enter your name", "INVALID_NAME")
        return name

    def _new_player_id(self, taken) -> str:
        for _ in range(settings.id_max_attempts):
            pid = generate_id(settings.player_id_length)
            if pid not in taken:
                return pid
        raise GameError("Could not allocate a player id; try again", "ID_EXHAUSTED")

    async def get_session(self, session_id: str) -> Optional[Session]:
        data = await self.store.get(game_path(normalize_code(session_id)))
        return Session.model_validate(data) if data else None

    async def _register_membership(self, user_id: str, session_id: str) -> None:
        now = self._clock()
        path = membership_path(user_id, session_id)
        existing = await self.store.get(path)
        joined_at = existing.get("joinedAt", now) if isinstance(existing, dict) else now
        await self.store.set(path, Membership(joined_at=joined_at, last_active=now).to_record())

    # ── Create / join ─────────────────────────────────────────────────────────

    async def create_session(
        self,
        player_name: str,
        user_id: Optional[str],
        label_scheme: Optional[str] = None,
        role_names: Optional[Dict[str, str]] = None,
    ) -> Tuple[Session, Player]:
        """Open a lobby with the caller as host. Returns (session, host player)."""
        if not user_id:
            raise IdentityAbsentError()
        name = self.clean_name(player_name)
        scheme = label_scheme or settings.default_label_scheme
        if scheme not in LABEL_SCHEMES:
            raise PreconditionError(f"Unknown label scheme: {scheme}", "INVALID_LABELS")
        for key in role_names or {}:
            try:
                Role(key)
            except ValueError:
                raise PreconditionError(f"Unknown role in custom labels: {key}", "INVALID_LABELS")

        for attempt in range(1, settings.id_max_attempts + 1):
            now = self._clock()
            code = generate_id(settings.session_code_length)
            host = Player(
                id=generate_id(settings.player_id_length),
                user_id=user_id,
                name=name,
                is_host=True,
                joined_at=now,
            )
            session = Session(
                id=code,
                players=[host],
                host_id=host.id,
                label_scheme=scheme,
                role_names=role_names or {},
                created_at=now,
                updated_at=now,
            )

            def _claim(current, record=session.to_record()):
                if current is not None:
                    raise _CodeTaken()
                return record

            try:
                await self.store.transaction(game_path(code), _claim)
            except _CodeTaken:
                logger.warning("Game code %s already in use (attempt %d)", code, attempt)
                continue

            await self._register_membership(user_id, code)
            logger.info(f"[{code}] Game created by {name} (player {host.id})")
            return session, host

        raise GameError("Could not allocate a game code; try again", "CODE_EXHAUSTED")

    async def join_session(
        self, session_id: str, player_name: str, user_id: Optional[str]
    ) -> Tuple[Player, bool]:
        """
        Add the caller to a lobby. Returns (player, reconnected).
        An identity already on the roster gets its existing entry back, in any phase.
        """
        if not user_id:
            raise IdentityAbsentError()
        name = self.clean_name(player_name)
        code = normalize_code(session_id)
        joined: Dict[str, Player] = {}

        def _join(current):
            if current is None:
                raise NotFoundError("Game not found")
            session = Session.model_validate(current)
            existing = session.find_by_user(user_id)
            if existing is not None:
                raise _AlreadyJoined(existing)
            if session.state != SessionState.LOBBY:
                raise PreconditionError("Game already started", "ALREADY_STARTED")
            if len(session.players) >= settings.max_players:
                raise PreconditionError("Game is full", "FULL")

            now = self._clock()
            player = Player(
                id=self._new_player_id({p.id for p in session.players}),
                user_id=user_id,
                name=name,
                joined_at=now,
            )
            session.players.append(player)
            session.version += 1
            session.updated_at = now
            joined["player"] = player
            return session.to_record()

        try:
            await self.store.transaction(game_path(code), _join)
        except _AlreadyJoined as exc:
            await self._register_membership(user_id, code)
            logger.info(f"[{code}] {exc.player.name} reconnected as {exc.player.id}")
            return exc.player, True

        player = joined["player"]
        await self._register_membership(user_id, code)
        logger.info(f"[{code}] Player {player.id} ({player.name}) joined")
        return player, False

    # ── Start ─────────────────────────────────────────────────────────────────

    async def start_session(
        self,
        session_id: str,
        host_player_id: str,
        expected_version: Optional[int] = None,
    ) -> Session:
        """Host-only lobby → playing, roles and state written in one transaction."""
        code = normalize_code(session_id)

        def _start(current):
            if current is None:
                raise NotFoundError("Game not found")
            session = Session.model_validate(current)
            if expected_version is not None and session.version != expected_version:
                raise StaleStateError("Lobby changed since you last looked; try again")
            if session.host_id != host_player_id:
                raise NotHostError("Only the host can start the game")
            return self.engine.assign_roles(session).to_record()

        committed = await self.store.transaction(game_path(code), _start)
        session = Session.model_validate(committed)
        logger.info(f"[{code}] Game started with {len(session.players)} players")
        return session

    # ── Leave / cleanup ───────────────────────────────────────────────────────

    async def leave_session(
        self,
        session_id: str,
        user_id: Optional[str],
        player_id: Optional[str] = None,
        interrupted: bool = False,
    ) -> None:
        """
        Drop the caller's reverse-index entry.
        Leaving a lobby also frees the seat (a departing host closes the lobby).
        After an interruption the host deletes the whole session.
        """
        if not user_id:
            raise IdentityAbsentError()
        code = normalize_code(session_id)
        updates: Dict[str, object] = {membership_path(user_id, code): None}

        session = await self.get_session(code)
        if session is not None:
            me = session.find_player(player_id)
            # A seat the caller does not own is never acted on
            if me is None or me.user_id != user_id:
                me = session.find_by_user(user_id)
            is_host = me is not None and me.id == session.host_id
            if interrupted and is_host:
                updates[game_path(code)] = None
                updates[presence_path(code)] = None
                logger.info(f"[{code}] Host cleaned up interrupted game")
            elif me is not None and session.state == SessionState.LOBBY:
                if is_host:
                    updates[game_path(code)] = None
                    updates[presence_path(code)] = None
                    logger.info(f"[{code}] Host left the lobby, game closed")
                else:
                    await self._remove_from_lobby(code, me.id)

        await self.store.update(updates)

    async def _remove_from_lobby(self, code: str, player_id: str) -> None:
        def _remove(current):
            if current is None:
                raise NotFoundError("Game not found")
            session = Session.model_validate(current)
            if session.state != SessionState.LOBBY:
                raise _NoChange()
            session.players = [p for p in session.players if p.id != player_id]
            session.version += 1
            session.updated_at = self._clock()
            return session.to_record()

        try:
            await self.store.transaction(game_path(code), _remove)
        except (NotFoundError, _NoChange):
            return
        logger.info(f"[{code}] Player {player_id} left the lobby")

    async def mark_interrupted(self, session_id: str) -> bool:
        """playing → interrupted. Returns False when the session is gone or not playing."""
        code = normalize_code(session_id)
        def _interrupt(current):
            if current is None:
                raise _NoChange()
            session = Session.model_validate(current)
            if session.state != SessionState.PLAYING:
                raise _NoChange()
            session.state = SessionState.INTERRUPTED
            session.current_turn_player_id = None
            for p in session.players:
                p.is_current_turn = False
            session.version += 1
            session.updated_at = self._clock()
            return session.to_record()

        try:
            await self.store.transaction(game_path(code), _interrupt)
        except _NoChange:
            return False
        logger.info(f"[{code}] Game marked interrupted")
        return True

    # ── Reverse index ─────────────────────────────────────────────────────────

    async def sessions_for(self, user_id: Optional[str]) -> Dict[str, Membership]:
        if not user_id:
            raise IdentityAbsentError()
        data = await self.store.get(membership_path(user_id)) or {}
        return {sid: Membership.model_validate(m) for sid, m in data.items()}

    async def purge_user(self, user_id: Optional[str]) -> List[str]:
        """
        Account deletion cascade: close every game the user hosts and drop
        their memberships and profile. Returns the closed session ids.
        """
        if not user_id:
            raise IdentityAbsentError()
        memberships = await self.sessions_for(user_id)
        updates: Dict[str, object] = {
            membership_path(user_id): None,
            user_path(user_id): None,
        }
        closed: List[str] = []
        for code in memberships:
            session = await self.get_session(code)
            if session is None:
                continue
            host = session.find_player(session.host_id)
            if host is not None and host.user_id == user_id:
                updates[game_path(code)] = None
                updates[presence_path(code)] = None
                closed.append(code)
        await self.store.update(updates)
        logger.info("User %s purged (%d game(s) closed)", user_id, len(closed))
        return closed
