"""
Game HTTP endpoints.

Routes:
  POST   /api/games                               — Create game + register host as first player
  POST   /api/games/{game_id}/join                — Join the lobby (or get your seat back)
  GET    /api/games/{game_id}                     — Game view for the caller (roles hidden)
  POST   /api/games/{game_id}/start               — Host starts game (triggers role assignment)
  POST   /api/games/{game_id}/guess               — Current-turn player guesses who holds the next role
  POST   /api/games/{game_id}/leave               — Leave the game
  GET    /api/users/me/games                      — Games the caller belongs to
  DELETE /api/users/me                            — Account deletion cascade
  POST   /api/quick-play                          — Join the best matchmaking queue
  POST   /api/quick-play/{queue_id}/{pid}/heartbeat — Keep a queue seat alive
  DELETE /api/quick-play/{queue_id}/{pid}         — Leave a queue

Identity comes from the X-User-Id header set by the identity provider.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from models.game import (
    CreateGameRequest, CreateGameResponse,
    JoinGameRequest, JoinGameResponse,
    PlayerActionRequest, GuessRequest,
    QuickPlayRequest, QuickPlayResponse,
)
from services.firestore_service import get_store
from services.store import ConcurrentWriteError, StateStore
from agents.errors import (
    GameError,
    IdentityAbsentError,
    NotFoundError,
    NotHostError,
)
from agents.game_projector import project
from agents.matchmaker import Matchmaker
from agents.session_registry import SessionRegistry, normalize_code

logger = logging.getLogger(__name__)

router = APIRouter(tags=["games"])


def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity. Missing header → 401 before any store access."""
    if not x_user_id:
        raise http_error(IdentityAbsentError())
    return x_user_id


def http_error(exc) -> HTTPException:
    """Map the game error taxonomy onto HTTP status codes."""
    if isinstance(exc, ConcurrentWriteError):
        return HTTPException(
            status_code=409,
            detail={"message": str(exc), "code": exc.code, "retryable": True},
        )
    if isinstance(exc, IdentityAbsentError):
        status = 401
    elif isinstance(exc, NotHostError):
        status = 403
    elif isinstance(exc, NotFoundError):
        status = 404
    else:
        status = 409
    return HTTPException(
        status_code=status,
        detail={"message": exc.message, "code": exc.code, "retryable": exc.retryable},
    )


async def _load_seat(registry: SessionRegistry, game_id: str, player_id: str, user_id: str):
    """The session, provided player_id is a seat owned by the caller."""
    session = await registry.get_session(game_id)
    if session is None:
        raise http_error(NotFoundError("Game not found"))
    player = session.find_player(player_id)
    if player is None or player.user_id != user_id:
        raise http_error(NotFoundError("You are not a player in this game"))
    return session


# ── Games ─────────────────────────────────────────────────────────────────────

@router.post("/games", response_model=CreateGameResponse, status_code=201, response_model_by_alias=True)
async def create_game(
    body: CreateGameRequest,
    user_id: str = Depends(current_user),
    store: StateStore = Depends(get_store),
):
    """Create a new game and register the caller as host."""
    registry = SessionRegistry(store)
    try:
        session, host = await registry.create_session(
            body.player_name, user_id, body.label_scheme, body.role_names
        )
    except (GameError, ConcurrentWriteError) as exc:
        raise http_error(exc)
    return CreateGameResponse(game_id=session.id, player_id=host.id)


@router.post("/games/{game_id}/join", response_model=JoinGameResponse, response_model_by_alias=True)
async def join_game(
    game_id: str,
    body: JoinGameRequest,
    user_id: str = Depends(current_user),
    store: StateStore = Depends(get_store),
):
    """Add the caller to the lobby. A returning identity gets its old seat back."""
    registry = SessionRegistry(store)
    try:
        player, reconnected = await registry.join_session(game_id, body.player_name, user_id)
    except (GameError, ConcurrentWriteError) as exc:
        raise http_error(exc)
    return JoinGameResponse(game_id=normalize_code(game_id), player_id=player.id, reconnected=reconnected)


@router.get("/games/{game_id}")
async def get_game(
    game_id: str,
    player_id: Optional[str] = Query(None, alias="playerId"),
    user_id: str = Depends(current_user),
    store: StateStore = Depends(get_store),
):
    """
    The caller's projection of the game.
    Other players' roles stay hidden until locked or the game completes.
    """
    session = await SessionRegistry(store).get_session(game_id)
    if session is None:
        raise http_error(NotFoundError("Game not found"))
    return project(session, player_id, user_id).to_record()


@router.post("/games/{game_id}/start")
async def start_game(
    game_id: str,
    body: PlayerActionRequest,
    user_id: str = Depends(current_user),
    store: StateStore = Depends(get_store),
):
    """Host starts the game: roles dealt and first turn set in one write."""
    registry = SessionRegistry(store)
    await _load_seat(registry, game_id, body.player_id, user_id)
    try:
        session = await registry.start_session(game_id, body.player_id, body.expected_version)
    except (GameError, ConcurrentWriteError) as exc:
        raise http_error(exc)
    return {
        "status": "started",
        "gameId": session.id,
        "version": session.version,
        "currentTurnPlayerId": session.current_turn_player_id,
    }


@router.post("/games/{game_id}/guess")
async def make_guess(
    game_id: str,
    body: GuessRequest,
    user_id: str = Depends(current_user),
    store: StateStore = Depends(get_store),
):
    registry = SessionRegistry(store)
    session = await _load_seat(registry, game_id, body.player_id, user_id)
    try:
        outcome = await registry.engine.submit_guess(
            session.id, body.player_id, body.target_id, body.expected_version
        )
    except (GameError, ConcurrentWriteError) as exc:
        raise http_error(exc)
    return outcome.to_record()


@router.post("/games/{game_id}/leave", status_code=204)
async def leave_game(
    game_id: str,
    body: PlayerActionRequest,
    user_id: str = Depends(current_user),
    store: StateStore = Depends(get_store),
):
    try:
        await SessionRegistry(store).leave_session(game_id, user_id, body.player_id)
    except (GameError, ConcurrentWriteError) as exc:
        raise http_error(exc)


# ── Users ─────────────────────────────────────────────────────────────────────

@router.get("/users/me/games")
async def my_games(
    user_id: str = Depends(current_user),
    store: StateStore = Depends(get_store),
):
    memberships = await SessionRegistry(store).sessions_for(user_id)
    return {"games": {sid: m.to_record() for sid, m in memberships.items()}}


@router.delete("/users/me")
async def delete_me(
    user_id: str = Depends(current_user),
    store: StateStore = Depends(get_store),
):
    """Account deletion: closes hosted games, drops memberships and profile."""
    closed = await SessionRegistry(store).purge_user(user_id)
    return {"deleted": True, "closedGames": closed}


# ── Quick play ────────────────────────────────────────────────────────────────

@router.post("/quick-play", response_model=QuickPlayResponse, response_model_by_alias=True)
async def quick_play(
    body: QuickPlayRequest,
    user_id: str = Depends(current_user),
    store: StateStore = Depends(get_store),
):
    """Take a seat in the fullest open queue. gameId is set once six are seated."""
    matchmaker = Matchmaker(store)
    try:
        queue, player_id = await matchmaker.enqueue(body.player_name, user_id)
    except (GameError, ConcurrentWriteError) as exc:
        raise http_error(exc)
    return QuickPlayResponse(
        queue_id=queue.id,
        player_id=player_id,
        waiting=len(queue.players),
        game_id=queue.game_id,
    )


@router.post("/quick-play/{queue_id}/{player_id}/heartbeat", status_code=204)
async def quick_play_heartbeat(
    queue_id: str,
    player_id: str,
    user_id: str = Depends(current_user),
    store: StateStore = Depends(get_store),
):
    try:
        await Matchmaker(store).heartbeat(queue_id, player_id)
    except (GameError, ConcurrentWriteError) as exc:
        raise http_error(exc)


@router.delete("/quick-play/{queue_id}/{player_id}", status_code=204)
async def quick_play_leave(
    queue_id: str,
    player_id: str,
    user_id: str = Depends(current_user),
    store: StateStore = Depends(get_store),
):
    try:
        await Matchmaker(store).leave(queue_id, player_id)
    except (GameError, ConcurrentWriteError) as exc:
        raise http_error(exc)
