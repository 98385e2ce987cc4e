"""
WebSocket Hub — real-time view delivery and presence per connected player.

URL: /ws/{game_id}?playerId={player_id}&userId={user_id}

Connection flow:
  1. Validate identity, game and seat (GameClient.resume)
  2. Presence starts: heartbeat record + on-disconnect removal hook
  3. Send private "connected" message with the caller's game view
  4. Broadcast "player_joined" to everyone else on this process
  5. Message loop (handle_message dispatcher); "state" pushed on every change
  6. On disconnect: fire the store's on-disconnect hooks, stop the client,
     broadcast "player_left"

Client → server message types handled here:
  ping    — keep-alive heartbeat → responds with "pong"
  start   — host starts the game            { expectedVersion? }
  guess   — current-turn guess              { targetId, expectedVersion? }
  leave   — leave the game and close the socket

Server → client:
  connected / state   — { gameState: GameView }
  guess_result        — GuessOutcome
  interrupted         — { reason }
  error               — { message, code, retryable }
"""
import json
import logging
import uuid
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from models.game import GameView
from services.firestore_service import get_store
from services.store import ConcurrentWriteError, StateStore
from agents.errors import GameError, IdentityAbsentError, NotFoundError
from agents.game_client import GameClient
from agents.game_projector import project

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


class ConnectionManager:
    """
    Tracks active WebSocket connections per game.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        # {game_id: {player_id: WebSocket}}
        self._games: Dict[str, Dict[str, WebSocket]] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def connect(self, game_id: str, player_id: str, ws: WebSocket) -> None:
        await ws.accept()
        self._games.setdefault(game_id, {})[player_id] = ws
        logger.debug(
            f"[{game_id}] {player_id} connected ({self.count(game_id)} total)"
        )

    def disconnect(self, game_id: str, player_id: str) -> None:
        game_conns = self._games.get(game_id, {})
        game_conns.pop(player_id, None)
        if not game_conns:
            self._games.pop(game_id, None)

    def count(self, game_id: str) -> int:
        return len(self._games.get(game_id, {}))

    def is_connected(self, game_id: str, player_id: str) -> bool:
        return player_id in self._games.get(game_id, {})

    # ── Sending ────────────────────────────────────────────────────────────────

    async def send_to(
        self, game_id: str, player_id: str, message: Dict
    ) -> None:
        """Send a private message to a single player."""
        ws = self._games.get(game_id, {}).get(player_id)
        if ws:
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning(
                    f"[{game_id}] send_to {player_id} failed: {exc}"
                )
                self.disconnect(game_id, player_id)

    async def broadcast(
        self,
        game_id: str,
        message: Dict,
        exclude: Optional[str] = None,
    ) -> None:
        """Broadcast a message to all connected players in a game."""
        for pid, ws in list(self._games.get(game_id, {}).items()):
            if pid == exclude:
                continue
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning(
                    f"[{game_id}] broadcast to {pid} failed: {exc}"
                )
                self.disconnect(game_id, pid)

    async def send_view(self, game_id: str, player_id: str, view: GameView) -> None:
        if view.interruption:
            await self.send_to(game_id, player_id, {
                "type": "interrupted",
                "reason": view.interruption,
            })
        else:
            await self.send_to(game_id, player_id, {
                "type": "state",
                "gameState": view.to_record(),
            })

    async def send_error(self, game_id: str, player_id: str, exc: Exception) -> None:
        await self.send_to(game_id, player_id, {
            "type": "error",
            "message": getattr(exc, "message", str(exc)),
            "code": getattr(exc, "code", "GAME_ERROR"),
            "retryable": isinstance(exc, ConcurrentWriteError) or getattr(exc, "retryable", False),
        })


# Module-level singleton
manager = ConnectionManager()


# ── WebSocket endpoint ─────────────────────────────────────────────────────────

@router.websocket("/ws/{game_id}")
async def websocket_endpoint(
    ws: WebSocket,
    game_id: str,
    playerId: Optional[str] = Query(None, description="Player id from the create/join response"),
    userId: Optional[str] = Query(None, description="Identity from the identity provider"),
    store: StateStore = Depends(get_store),
):
    client_id = f"ws:{uuid.uuid4().hex}"
    client = GameClient(store, userId, client_id=client_id)

    # Until the "connected" frame is out, changes are only noted
    delivery = {"ready": False, "missed": False}

    async def _push(view: GameView) -> None:
        if not delivery["ready"]:
            delivery["missed"] = True
            return
        await manager.send_view(game_id, player_id, view)

    client.add_listener(_push)

    # ── Validate identity, game and seat ───────────────────────────────────────
    try:
        player = await client.resume(game_id, playerId)
    except IdentityAbsentError:
        await ws.close(code=4401, reason="Sign in required")
        return
    except NotFoundError as exc:
        await ws.close(code=4404, reason=exc.message)
        return

    game_id = client.session_id
    player_id = player.id

    # ── Accept and register ────────────────────────────────────────────────────
    await manager.connect(game_id, player_id, ws)
    session = await client.registry.get_session(game_id)
    await manager.send_to(game_id, player_id, {
        "type": "connected",
        "playerId": player_id,
        "gameState": project(session, player_id, userId).to_record(),
    })
    delivery["ready"] = True
    if delivery["missed"]:
        await manager.send_view(game_id, player_id, client.view)

    await manager.broadcast(game_id, {
        "type": "player_joined",
        "playerId": player_id,
        "name": player.name,
        "count": manager.count(game_id),
    }, exclude=player_id)

    # ── Message loop ───────────────────────────────────────────────────────────
    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send_to(game_id, player_id, {
                    "type": "error",
                    "message": "Invalid JSON",
                    "code": "PARSE_ERROR",
                })
                continue

            msg_type = data.get("type", "")
            # Frontend sends { type, data: { ... } }; unwrap inner payload for handlers
            inner_data = data.get("data") if isinstance(data.get("data"), dict) else {}
            if msg_type == "leave":
                await _on_leave(game_id, player_id, client)
                await ws.close()
                break
            await _handle_message(game_id, player_id, msg_type, inner_data, client)

    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(game_id, player_id)
        await store.disconnect(client_id)
        await client.close()
        await manager.broadcast(game_id, {
            "type": "player_left",
            "playerId": player_id,
            "name": player.name,
            "count": manager.count(game_id),
        })


# ── Message dispatcher ─────────────────────────────────────────────────────────

async def _handle_message(
    game_id: str,
    player_id: str,
    msg_type: str,
    data: Dict,
    client: GameClient,
) -> None:
    try:
        await _dispatch_message(game_id, player_id, msg_type, data, client)
    except WebSocketDisconnect:
        raise
    except (GameError, ConcurrentWriteError) as exc:
        await manager.send_error(game_id, player_id, exc)
    except Exception:
        logger.exception("[%s] Unhandled error in _handle_message (type=%s)", game_id, msg_type)
        await manager.send_to(game_id, player_id, {
            "type": "error", "message": "Internal server error", "code": "SERVER_ERROR"
        })


async def _dispatch_message(
    game_id: str,
    player_id: str,
    msg_type: str,
    data: Dict,
    client: GameClient,
) -> None:
    if msg_type == "ping":
        await manager.send_to(game_id, player_id, {"type": "pong"})

    elif msg_type == "start":
        await client.start_game(data.get("expectedVersion"))

    elif msg_type == "guess":
        await _on_guess(game_id, player_id, data, client)

    else:
        await manager.send_to(game_id, player_id, {
            "type": "error",
            "message": f"Unknown message type: '{msg_type}'",
            "code": "UNKNOWN_TYPE",
        })


# ── Handlers ──────────────────────────────────────────────────────────────────

async def _on_guess(game_id: str, player_id: str, data: Dict, client: GameClient) -> None:
    target_id = data.get("targetId")
    if not target_id:
        await manager.send_to(game_id, player_id, {
            "type": "error",
            "message": "Pick a player to guess",
            "code": "NO_TARGET_ID",
        })
        return
    outcome = await client.make_guess(str(target_id), data.get("expectedVersion"))
    await manager.send_to(game_id, player_id, {"type": "guess_result", **outcome.to_record()})


async def _on_leave(game_id: str, player_id: str, client: GameClient) -> None:
    try:
        await client.leave_game()
    except GameError as exc:
        await manager.send_error(game_id, player_id, exc)
        return
    await manager.send_to(game_id, player_id, {"type": "left"})
    logger.info("[%s] %s left via WebSocket", game_id, player_id)
