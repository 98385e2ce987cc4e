"""
Role-Chain Engine — pure deterministic Python.

Responsibilities:
- Shuffle the six chain roles onto the roster at game start
- Resolve a guess (correct → locks + turn passes, wrong → roles swap)
- Detect completion and compute the final ranking

Lock convention: locks always cover a prefix of the chain. A correct guess
on the holder of chain index j locks every player whose role index is <= j
and hands the turn to the player just found. A locked player may hold the
turn; locked only means "confirmed, can no longer be swapped". A wrong
guess swaps roles between guesser and target and re-applies the same
prefix, so a confirmed chain position stays locked whoever holds it.

resolve_guess()/assign_roles() never touch the store; submit_guess() wraps
resolve_guess() in one compare-and-set transaction on games/{id}.
"""
import logging
import random
import time
from typing import Callable, Dict, List, Optional, Tuple

from config import settings
from models.game import (
    GuessOutcome,
    LastGuess,
    Player,
    RankEntry,
    ROLE_CHAIN,
    ROLE_POINTS,
    Session,
    SessionState,
    chain_index,
    is_terminal,
    next_role,
    role_label,
)
from services.store import StateStore, game_path
from agents.errors import NotFoundError, PreconditionError, StaleStateError

logger = logging.getLogger(__name__)


def locked_through(players: List[Player]) -> int:
    """Highest chain index held by a locked player, -1 when nothing is confirmed."""
    return max((chain_index(p.role) for p in players if p.is_locked and p.role), default=-1)


def _apply_locks(players: List[Player], through: int) -> None:
    for p in players:
        p.is_locked = p.role is not None and chain_index(p.role) <= through


def final_ranking(session: Session) -> List[RankEntry]:
    """Players by final role points, highest first; join order breaks ties."""
    ranked = sorted(
        session.players,
        key=lambda p: -(ROLE_POINTS[p.role] if p.role else -1),
    )
    return [
        RankEntry(
            rank=i + 1,
            player_id=p.id,
            name=p.name,
            role=p.role,
            role_name=role_label(p.role, session.label_scheme, session.role_names),
            points=ROLE_POINTS[p.role],
        )
        for i, p in enumerate(ranked)
        if p.role is not None
    ]


class RoleChainEngine:
    """
    Turn state machine for one chain of six roles.
    `rng` and `clock` are injectable so tests can pin the shuffle and timestamps.
    """

    def __init__(
        self,
        store: StateStore,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self._rng = rng or random.Random()
        self._clock = clock

    # ── Assignment ────────────────────────────────────────────────────────────

    def assign_roles(self, session: Session) -> Session:
        """
        lobby → playing. Returns a new Session; the input is left untouched.
        Roles are a uniform shuffle of the chain dealt in roster order; the
        holder of the first chain role takes the first turn.
        """
        if session.state != SessionState.LOBBY:
            raise PreconditionError("Game already started", "ALREADY_STARTED")
        if len(session.players) != settings.max_players:
            raise PreconditionError(
                f"Need exactly {settings.max_players} players to start; "
                f"have {len(session.players)}",
                "NOT_ENOUGH_PLAYERS",
            )

        updated = session.model_copy(deep=True)
        roles = list(ROLE_CHAIN)
        self._rng.shuffle(roles)
        for player, role in zip(updated.players, roles):
            player.role = role
            player.is_locked = False
            player.is_current_turn = role == ROLE_CHAIN[0]

        first = updated.holder_of(ROLE_CHAIN[0])
        updated.current_turn_player_id = first.id if first else None
        updated.state = SessionState.PLAYING
        updated.last_guess = None
        updated.version += 1
        updated.updated_at = self._clock()
        updated.started_at = updated.updated_at

        logger.info(
            "[%s] Roles assigned: %s",
            session.id,
            {p.name: p.role.value for p in updated.players},
        )
        return updated

    # ── Guess resolution ──────────────────────────────────────────────────────

    def resolve_guess(
        self, session: Session, actor_id: str, target_id: str
    ) -> Tuple[Session, GuessOutcome]:
        """
        Apply one guess to a snapshot. Deterministic: the same snapshot and
        inputs always produce the same roster. Raises on any precondition.
        """
        if session.state != SessionState.PLAYING:
            raise PreconditionError("Game is not in progress", "NOT_PLAYING")

        updated = session.model_copy(deep=True)
        actor = updated.find_player(actor_id)
        if actor is None:
            raise NotFoundError("You are not a player in this game")
        if not actor.is_current_turn:
            raise PreconditionError("It is not your turn", "NOT_YOUR_TURN")
        if actor.role is None or is_terminal(actor.role):
            raise PreconditionError("Your role has no one left to find", "NO_TARGET")
        if target_id == actor_id:
            raise PreconditionError("You cannot guess yourself", "SELF_GUESS")
        target = updated.find_player(target_id)
        if target is None:
            raise NotFoundError("That player is not in this game")
        if target.is_locked:
            raise PreconditionError("That player's role is already confirmed", "TARGET_LOCKED")

        sought = next_role(actor.role)
        sought_name = role_label(sought, updated.label_scheme, updated.role_names)
        through = locked_through(updated.players)
        correct = target.role == sought

        if correct:
            through = chain_index(sought)
            _apply_locks(updated.players, through)
            actor.is_current_turn = False
            if is_terminal(sought):
                for p in updated.players:
                    p.is_current_turn = False
                updated.current_turn_player_id = None
            else:
                target.is_current_turn = True
                updated.current_turn_player_id = target.id
            message = f"{actor.name} found the {sought_name}: {target.name}!"
        else:
            actor.role, target.role = target.role, actor.role
            _apply_locks(updated.players, through)
            if is_terminal(actor.role):
                # The end of the chain seeks no one: the turn follows the role
                actor.is_current_turn = False
                target.is_current_turn = True
                updated.current_turn_player_id = target.id
            message = (
                f"Wrong guess! {target.name} is not the {sought_name}. "
                f"{actor.name} and {target.name} swap roles."
            )

        if updated.all_locked:
            updated.state = SessionState.COMPLETED

        now = self._clock()
        updated.version += 1
        updated.updated_at = now
        updated.last_guess = LastGuess(
            actor_id=actor.id,
            target_id=target.id,
            correct=correct,
            message=message,
            at=now,
        )
        outcome = GuessOutcome(
            correct=correct,
            message=message,
            actor_id=actor.id,
            target_id=target.id,
            completed=updated.state == SessionState.COMPLETED,
            version=updated.version,
        )
        return updated, outcome

    async def submit_guess(
        self,
        session_id: str,
        actor_id: str,
        target_id: str,
        expected_version: Optional[int] = None,
    ) -> GuessOutcome:
        """
        Resolve a guess as one atomic read-modify-write.
        expected_version pins the snapshot the player was looking at: if the
        session has moved since, nothing is written and StaleStateError is raised.
        """
        result: Dict[str, GuessOutcome] = {}

        def _apply(current):
            if current is None:
                raise NotFoundError("Game not found")
            session = Session.model_validate(current)
            if expected_version is not None and session.version != expected_version:
                raise StaleStateError(
                    f"Game moved on (version {session.version}, you saw {expected_version})"
                )
            updated, outcome = self.resolve_guess(session, actor_id, target_id)
            result["outcome"] = outcome
            return updated.to_record()

        await self.store.transaction(game_path(session_id), _apply)
        outcome = result["outcome"]
        logger.info(
            "[%s] Guess %s → %s: %s%s",
            session_id, actor_id, target_id,
            "correct" if outcome.correct else "wrong",
            " (game completed)" if outcome.completed else "",
        )
        return outcome
