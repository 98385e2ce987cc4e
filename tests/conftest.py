import random
from typing import List, Optional

import pytest

from models.game import Player, Role, ROLE_CHAIN, Session, SessionState
from services.memory_store import InMemoryStore
from agents.role_chain import RoleChainEngine
from agents.session_registry import SessionRegistry

T0 = 1_700_000_000.0


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def engine(store, clock):
    return RoleChainEngine(store, rng=random.Random(7), clock=clock)


@pytest.fixture
def registry(store, engine, clock):
    return SessionRegistry(store, engine=engine, clock=clock)


NAMES = ["Asha", "Bilal", "Chitra", "Dev", "Esha", "Farid"]


async def open_lobby(registry: SessionRegistry, count: int = 6):
    """Host + (count - 1) joiners. Returns (session id, players in join order)."""
    session, host = await registry.create_session(NAMES[0], "user-0")
    players = [host]
    for i in range(1, count):
        player, _ = await registry.join_session(session.id, NAMES[i], f"user-{i}")
        players.append(player)
    return session.id, players


def playing_session(
    roles: Optional[List[Role]] = None,
    locked: int = 0,
    turn: Optional[int] = None,
) -> Session:
    """
    Six players P0..P5 in state playing. roles[i] goes to Pi (chain order by
    default), the first `locked` players are locked, and Pi holds the turn
    (defaults to whoever holds Raja).
    """
    roles = roles or list(ROLE_CHAIN)
    players = [
        Player(
            id=f"P{i}",
            user_id=f"user-{i}",
            name=NAMES[i],
            role=role,
            is_host=i == 0,
            is_locked=i < locked,
            joined_at=T0 + i,
        )
        for i, role in enumerate(roles)
    ]
    if turn is None:
        turn = next(i for i, p in enumerate(players) if p.role == Role.RAJA)
    players[turn].is_current_turn = True
    return Session(
        id="ABC123",
        state=SessionState.PLAYING,
        players=players,
        host_id="P0",
        current_turn_player_id=f"P{turn}",
        version=7,
        created_at=T0,
        updated_at=T0,
    )
