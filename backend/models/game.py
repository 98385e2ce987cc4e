from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any
from enum import Enum
import time


def _now() -> float:
    """Epoch seconds; every persisted timestamp uses this unit."""
    return time.time()


class Record(BaseModel):
    """Base for everything written to the store: camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ── Role chain ────────────────────────────────────────────────────────────────

class Role(str, Enum):
    RAJA = "raja"
    RANI = "rani"
    MANTRI = "mantri"
    SIPAHI = "sipahi"
    POLICE = "police"
    CHOR = "chor"

    @classmethod
    def _missing_(cls, value):
        # English labels name the same chain positions
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _ENGLISH_ALIASES:
                return cls(_ENGLISH_ALIASES[lowered])
            for member in cls:
                if member.value == lowered:
                    return member
        return None


_ENGLISH_ALIASES: Dict[str, str] = {
    "king": "raja",
    "queen": "rani",
    "minister": "mantri",
    "soldier": "sipahi",
    "thief": "chor",
}

# Chain order: the role at index i must find the role at index i + 1.
ROLE_CHAIN: List[Role] = [
    Role.RAJA,
    Role.RANI,
    Role.MANTRI,
    Role.SIPAHI,
    Role.POLICE,
    Role.CHOR,
]

ROLE_POINTS: Dict[Role, int] = {
    Role.RAJA: 10,
    Role.RANI: 9,
    Role.MANTRI: 7,
    Role.SIPAHI: 6,
    Role.POLICE: 4,
    Role.CHOR: 0,
}

LABEL_SCHEMES: Dict[str, Dict[Role, str]] = {
    "classic": {
        Role.RAJA: "Raja",
        Role.RANI: "Rani",
        Role.MANTRI: "Mantri",
        Role.SIPAHI: "Sipahi",
        Role.POLICE: "Police",
        Role.CHOR: "Chor",
    },
    "english": {
        Role.RAJA: "King",
        Role.RANI: "Queen",
        Role.MANTRI: "Minister",
        Role.SIPAHI: "Soldier",
        Role.POLICE: "Police",
        Role.CHOR: "Thief",
    },
}


def chain_index(role: Role) -> int:
    return ROLE_CHAIN.index(role)


def next_role(role: Role) -> Optional[Role]:
    """The role this role must find, or None for the end of the chain."""
    idx = chain_index(role)
    if idx + 1 >= len(ROLE_CHAIN):
        return None
    return ROLE_CHAIN[idx + 1]


def is_terminal(role: Role) -> bool:
    return next_role(role) is None


class RoleInfo(Record):
    role: Role
    name: str
    points: int
    chain_order: int
    description: str
    target: Optional[Role] = None
    target_name: Optional[str] = None


def role_label(
    role: Role, scheme: str = "classic", overrides: Optional[Dict[str, str]] = None
) -> str:
    if overrides and overrides.get(role.value):
        return overrides[role.value]
    labels = LABEL_SCHEMES.get(scheme, LABEL_SCHEMES["classic"])
    return labels[role]


def role_info(
    role: Role, scheme: str = "classic", overrides: Optional[Dict[str, str]] = None
) -> RoleInfo:
    target = next_role(role)
    name = role_label(role, scheme, overrides)
    if target is not None:
        target_name = role_label(target, scheme, overrides)
        description = f"You must find the {target_name} to secure your position."
    else:
        target_name = None
        previous = ROLE_CHAIN[chain_index(role) - 1]
        description = f"Stay hidden from the {role_label(previous, scheme, overrides)}!"
    return RoleInfo(
        role=role,
        name=name,
        points=ROLE_POINTS[role],
        chain_order=chain_index(role),
        description=description,
        target=target,
        target_name=target_name,
    )


# ── Session records ───────────────────────────────────────────────────────────

class SessionState(str, Enum):
    LOBBY = "lobby"
    PLAYING = "playing"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


# Client-local only: no session loaded. Never persisted.
WAITING = "waiting"


class Player(Record):
    id: str
    user_id: str
    name: str
    role: Optional[Role] = None
    is_host: bool = False
    is_locked: bool = False
    is_current_turn: bool = False
    joined_at: float = Field(default_factory=_now)

    def to_public(self, reveal_role: bool = False) -> Dict[str, Any]:
        """Roster entry as other players see it; role hidden unless revealed."""
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role.value if (reveal_role and self.role) else None,
            "isHost": self.is_host,
            "isLocked": self.is_locked,
            "isCurrentTurn": self.is_current_turn,
        }


class LastGuess(Record):
    actor_id: str
    target_id: str
    correct: bool
    message: str
    at: float = Field(default_factory=_now)


class Session(Record):
    id: str
    state: SessionState = SessionState.LOBBY
    players: List[Player] = []
    host_id: str
    current_turn_player_id: Optional[str] = None
    # Incremented on every transition; compare-and-set token for stale snapshots
    version: int = 0
    label_scheme: str = "classic"
    role_names: Dict[str, str] = {}
    last_guess: Optional[LastGuess] = None
    created_at: float = Field(default_factory=_now)
    updated_at: float = Field(default_factory=_now)
    # Set on lobby → playing; presence grace for never-seen members runs from here
    started_at: Optional[float] = None

    @field_validator("role_names")
    @classmethod
    def _canonical_role_keys(cls, value: Dict[str, str]) -> Dict[str, str]:
        cleaned: Dict[str, str] = {}
        for key, label in (value or {}).items():
            label = str(label).strip()
            if label:
                cleaned[Role(key).value] = label
        return cleaned

    def find_player(self, player_id: Optional[str]) -> Optional[Player]:
        if not player_id:
            return None
        return next((p for p in self.players if p.id == player_id), None)

    def find_by_user(self, user_id: Optional[str]) -> Optional[Player]:
        if not user_id:
            return None
        return next((p for p in self.players if p.user_id == user_id), None)

    def holder_of(self, role: Role) -> Optional[Player]:
        return next((p for p in self.players if p.role == role), None)

    @property
    def all_locked(self) -> bool:
        return bool(self.players) and all(p.is_locked for p in self.players)


class PresenceRecord(Record):
    online: bool = True
    last_seen: float = Field(default_factory=_now)
    user_id: str
    name: str


class Membership(Record):
    """Reverse index entry at userGames/{userId}/{sessionId}."""

    joined_at: float = Field(default_factory=_now)
    last_active: float = Field(default_factory=_now)


# ── Matchmaking queue ─────────────────────────────────────────────────────────

class QueueStatus(str, Enum):
    WAITING = "waiting"
    STARTING = "starting"


class QueueEntry(Record):
    name: str
    user_id: str
    timestamp: float = Field(default_factory=_now)


class Queue(Record):
    id: str
    created_at: float = Field(default_factory=_now)
    status: QueueStatus = QueueStatus.WAITING
    game_id: Optional[str] = None
    players: Dict[str, QueueEntry] = {}

    def active_players(self, now: float, stale_after: float) -> Dict[str, QueueEntry]:
        return {
            pid: entry
            for pid, entry in self.players.items()
            if now - entry.timestamp < stale_after
        }

    def is_available(self, now: float, stale_after: float, capacity: int) -> bool:
        return (
            self.status == QueueStatus.WAITING
            and len(self.active_players(now, stale_after)) < capacity
        )


# ── Projected view ────────────────────────────────────────────────────────────

class RankEntry(Record):
    rank: int
    player_id: str
    name: str
    role: Role
    role_name: str
    points: int


class GameView(Record):
    """What one player sees. Recomputed from every session snapshot."""

    state: str = WAITING
    session_id: Optional[str] = None
    version: int = 0
    players: List[Dict[str, Any]] = []
    me: Optional[Dict[str, Any]] = None
    is_host: bool = False
    current_turn_player_id: Optional[str] = None
    last_guess: Optional[LastGuess] = None
    ranking: List[RankEntry] = []
    interruption: Optional[str] = None


class GuessOutcome(Record):
    correct: bool
    message: str
    actor_id: str
    target_id: str
    completed: bool = False
    version: int


# ── HTTP request/response models ──────────────────────────────────────────────

class CreateGameRequest(Record):
    player_name: str
    label_scheme: Optional[str] = None
    role_names: Dict[str, str] = {}


class CreateGameResponse(Record):
    game_id: str
    player_id: str


class JoinGameRequest(Record):
    player_name: str


class JoinGameResponse(Record):
    game_id: str
    player_id: str
    reconnected: bool = False


class PlayerActionRequest(Record):
    player_id: str
    expected_version: Optional[int] = None


class GuessRequest(Record):
    player_id: str
    target_id: str
    expected_version: Optional[int] = None


class QuickPlayRequest(Record):
    player_name: str


class QuickPlayResponse(Record):
    queue_id: str
    player_id: str
    waiting: int
    game_id: Optional[str] = None
