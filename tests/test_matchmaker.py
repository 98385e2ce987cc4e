import asyncio

import pytest

from models.game import Queue, QueueEntry, QueueStatus, SessionState
from services.store import QUEUES_PATH, ConcurrentWriteError, queue_path
from agents.errors import IdentityAbsentError, NotFoundError
from agents.matchmaker import Matchmaker, pick_queue

from conftest import T0


@pytest.fixture
def matchmaker(store, registry, clock):
    return Matchmaker(store, registry=registry, clock=clock)


def _queue(qid, ages, status=QueueStatus.WAITING):
    """Queue whose members joined `age` seconds before T0."""
    return Queue(
        id=qid,
        created_at=T0 - 100,
        status=status,
        players={
            f"{qid}-{i}": QueueEntry(name=f"N{i}", user_id=f"{qid}-user-{i}", timestamp=T0 - age)
            for i, age in enumerate(ages)
        },
    )


# ── pick_queue ────────────────────────────────────────────────


def test_pick_queue_prefers_most_active():
    queues = {"AAA": _queue("AAA", [0, 0]), "BBB": _queue("BBB", [0, 0, 0, 0])}
    assert pick_queue(queues, T0, 60, 6).id == "BBB"


def test_pick_queue_breaks_ties_by_lowest_id():
    queues = {"ZZZ": _queue("ZZZ", [0, 0, 0]), "MMM": _queue("MMM", [0, 0, 0])}
    assert pick_queue(queues, T0, 60, 6).id == "MMM"


def test_pick_queue_ignores_stale_members():
    # Four stale members do not outweigh two live ones
    queues = {"AAA": _queue("AAA", [90, 90, 90, 90, 0]), "BBB": _queue("BBB", [0, 0])}
    assert pick_queue(queues, T0, 60, 6).id == "BBB"


def test_pick_queue_skips_full_and_starting():
    queues = {
        "AAA": _queue("AAA", [0] * 6),
        "BBB": _queue("BBB", [0, 0], status=QueueStatus.STARTING),
    }
    assert pick_queue(queues, T0, 60, 6) is None


def test_queue_with_one_stale_member_stays_available():
    queue = _queue("AAA", [0, 0, 0, 0, 0, 61])
    assert len(queue.active_players(T0, 60)) == 5
    assert queue.is_available(T0, 60, 6)


# ── enqueue ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_enqueue_creates_then_fills_one_queue(matchmaker):
    first, pid1 = await matchmaker.enqueue("Asha", "user-1")
    second, pid2 = await matchmaker.enqueue("Bilal", "user-2")

    assert first.id == second.id
    assert len(first.id) == 8
    assert pid1 != pid2
    assert set(second.players) == {pid1, pid2}
    assert second.status == QueueStatus.WAITING


@pytest.mark.asyncio
async def test_enqueue_same_identity_refreshes_seat(matchmaker, clock):
    queue, pid = await matchmaker.enqueue("Asha", "user-1")
    clock.advance(30)
    again, pid_again = await matchmaker.enqueue("Asha B", "user-1")

    assert pid_again == pid
    assert list(again.players) == [pid]
    assert again.players[pid].timestamp == T0 + 30
    assert again.players[pid].name == "Asha B"


@pytest.mark.asyncio
async def test_enqueue_requires_identity(matchmaker, store):
    with pytest.raises(IdentityAbsentError):
        await matchmaker.enqueue("Asha", "")
    assert await store.get(QUEUES_PATH) is None


@pytest.mark.asyncio
async def test_sixth_seat_forms_the_game(matchmaker, registry, clock):
    seats = []
    for i in range(6):
        queue, pid = await matchmaker.enqueue(f"Player {i}", f"user-{i}")
        seats.append(pid)
        clock.advance(1)

    assert queue.status == QueueStatus.STARTING
    assert queue.game_id is not None

    session = await registry.get_session(queue.game_id)
    assert session.state == SessionState.LOBBY
    assert [p.user_id for p in session.players] == [f"user-{i}" for i in range(6)]
    # Longest-waiting member hosts
    assert session.find_player(session.host_id).user_id == "user-0"


@pytest.mark.asyncio
async def test_failed_join_while_forming_reuses_the_lobby(matchmaker, registry, store, clock, monkeypatch):
    real_join = registry.join_session
    calls = []

    async def flaky_join(session_id, name, user_id):
        calls.append(user_id)
        if len(calls) == 3:
            raise ConcurrentWriteError(f"games/{session_id}", 5)
        return await real_join(session_id, name, user_id)

    monkeypatch.setattr(registry, "join_session", flaky_join)
    for i in range(5):
        queue, _ = await matchmaker.enqueue(f"Player {i}", f"user-{i}")
        clock.advance(1)
    with pytest.raises(ConcurrentWriteError):
        await matchmaker.enqueue("Player 5", "user-5")

    published = (await matchmaker.get_queue(queue.id)).game_id
    assert published is not None

    game_id = await matchmaker.form_game(queue.id)
    assert game_id == published
    assert list(store.dump()["games"]) == [game_id]
    session = await registry.get_session(game_id)
    assert sorted(p.user_id for p in session.players) == [f"user-{i}" for i in range(6)]


@pytest.mark.asyncio
async def test_starting_queue_is_not_joined_again(matchmaker, clock):
    for i in range(6):
        full, _ = await matchmaker.enqueue(f"Player {i}", f"user-{i}")
    fresh, _ = await matchmaker.enqueue("Latecomer", "user-late")

    assert fresh.id != full.id
    assert list(p.user_id for p in fresh.players.values()) == ["user-late"]


# ── sweep / heartbeat / leave ─────────────────────────────────


@pytest.mark.asyncio
async def test_sweep_drops_stale_member_and_keeps_queue_open(matchmaker, store, registry):
    queue = _queue("QUEUE001", [0, 5, 10, 15, 20, 61])
    await store.set(QUEUES_PATH, {queue.id: queue.to_record()})

    deleted = await matchmaker.sweep()
    swept = await matchmaker.get_queue(queue.id)

    assert deleted == []
    assert len(swept.players) == 5
    assert "QUEUE001-5" not in swept.players
    assert swept.status == QueueStatus.WAITING

    # The next arrival completes it
    filled, _ = await matchmaker.enqueue("Sixth", "user-six")
    assert filled.id == queue.id
    assert filled.game_id is not None
    session = await registry.get_session(filled.game_id)
    assert len(session.players) == 6


@pytest.mark.asyncio
async def test_sweep_deletes_queues_left_empty(matchmaker, store):
    await store.set(QUEUES_PATH, {
        "OLDQUEUE": _queue("OLDQUEUE", [70, 80]).to_record(),
        "LIVEQUEU": _queue("LIVEQUEU", [1]).to_record(),
    })

    assert await matchmaker.sweep() == ["OLDQUEUE"]
    assert await matchmaker.get_queue("OLDQUEUE") is None
    assert await matchmaker.get_queue("LIVEQUEU") is not None
    # Nothing left to do: no write
    assert await matchmaker.sweep() == []


@pytest.mark.asyncio
async def test_heartbeat_keeps_member_fresh(matchmaker, clock):
    queue, pid = await matchmaker.enqueue("Asha", "user-1")
    clock.advance(50)
    await matchmaker.heartbeat(queue.id, pid)
    clock.advance(50)

    await matchmaker.sweep()
    assert pid in (await matchmaker.get_queue(queue.id)).players


@pytest.mark.asyncio
async def test_heartbeat_for_unknown_seat(matchmaker):
    queue, _ = await matchmaker.enqueue("Asha", "user-1")
    with pytest.raises(NotFoundError):
        await matchmaker.heartbeat(queue.id, "NOPE0000")


@pytest.mark.asyncio
async def test_leave_deletes_empty_queue(matchmaker, store):
    queue, pid1 = await matchmaker.enqueue("Asha", "user-1")
    _, pid2 = await matchmaker.enqueue("Bilal", "user-2")

    await matchmaker.leave(queue.id, pid1)
    assert list((await matchmaker.get_queue(queue.id)).players) == [pid2]

    await matchmaker.leave(queue.id, pid2)
    assert await store.get(queue_path(queue.id)) is None
    # Leaving twice is harmless
    await matchmaker.leave(queue.id, pid2)


@pytest.mark.asyncio
async def test_watch_reports_game_id(matchmaker, store, clock):
    queue, _ = await matchmaker.enqueue("Player 0", "user-0")
    updates = []
    sub = matchmaker.watch(queue.id, lambda value: updates.append(value))
    for i in range(1, 6):
        await matchmaker.enqueue(f"Player {i}", f"user-{i}")
    await store.drain()
    sub.cancel()

    assert updates[0]["status"] == "waiting"
    assert updates[-1]["gameId"]


@pytest.mark.asyncio
async def test_sweeper_survives_failures(matchmaker, monkeypatch):
    calls = []

    async def flaky_sweep():
        calls.append(1)
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(matchmaker, "sweep", flaky_sweep)
    task = asyncio.create_task(matchmaker.run_sweeper(interval=0.001))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(calls) >= 2
