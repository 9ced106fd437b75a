"""Tests for conversation/store.py -- session table, locking and eviction."""

import asyncio

import pytest

from conversation.models import Session, SessionBudget
from conversation.store import ConversationStore
from errors import SessionNotFound
from events.bus import EventBus
from events.types import EscalationEvent, EventType
from models.schemas import AnalysisType, SessionState
from reasoning.prompts import resolve_profile
from tests.conftest import FakeClock, make_test_settings


def _session(session_id: str | None = None) -> Session:
    return Session(
        id=session_id or ConversationStore.generate_session_id(),
        analysis_type=AnalysisType.EXECUTION_TRACE,
        profile=resolve_profile(AnalysisType.EXECUTION_TRACE, make_test_settings()),
        context={"question": "Why?"},
        budget=SessionBudget(seconds_remaining=60.0, turns_remaining=5),
    )


@pytest.fixture()
def store(event_bus: EventBus, clock: FakeClock) -> ConversationStore:
    return ConversationStore(ttl_seconds=100, event_bus=event_bus, clock=clock)


# =========================================================================
# Registration and Access
# =========================================================================


class TestCreateAndAccess:
    def test_session_id_format(self) -> None:
        session_id = ConversationStore.generate_session_id()
        assert session_id.startswith("sess_")
        assert len(session_id) == len("sess_") + 12

    async def test_with_session_returns_fn_result(self, store: ConversationStore) -> None:
        session = _session()
        await store.create(session)

        async def _read(s: Session) -> str:
            return s.context["question"]

        assert await store.with_session(session.id, _read) == "Why?"
        assert session.id in store
        assert len(store) == 1

    async def test_duplicate_id_is_rejected(self, store: ConversationStore) -> None:
        await store.create(_session("sess_000000000001"))

        with pytest.raises(ValueError):
            await store.create(_session("sess_000000000001"))

    async def test_unknown_id_raises_not_found(self, store: ConversationStore) -> None:
        async def _noop(s: Session) -> None:
            return None

        with pytest.raises(SessionNotFound) as exc_info:
            await store.with_session("sess_missing00000", _noop)

        assert exc_info.value.session_id == "sess_missing00000"

    async def test_activity_timestamp_tracks_operations(
        self, store: ConversationStore, clock: FakeClock
    ) -> None:
        session = _session()
        await store.create(session)
        clock.advance(50)

        async def _work(s: Session) -> None:
            clock.advance(5)

        await store.with_session(session.id, _work)

        assert session.last_activity_at == clock.now

    def test_peek_never_blocks(self, store: ConversationStore) -> None:
        assert store.peek("sess_missing00000") is None


# =========================================================================
# Mutual Exclusion
# =========================================================================


class TestSerialization:
    async def test_operations_on_one_session_never_overlap(
        self, store: ConversationStore
    ) -> None:
        session = _session()
        await store.create(session)
        in_flight = 0
        max_in_flight = 0
        order: list[int] = []

        async def _op(s: Session, n: int) -> None:
            nonlocal in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0.01)
            order.append(n)
            in_flight -= 1

        await asyncio.gather(
            *(store.with_session(session.id, lambda s, n=n: _op(s, n)) for n in range(5))
        )

        assert max_in_flight == 1
        assert sorted(order) == [0, 1, 2, 3, 4]

    async def test_different_sessions_run_concurrently(self, store: ConversationStore) -> None:
        first, second = _session(), _session()
        await store.create(first)
        await store.create(second)
        both_inside = asyncio.Event()
        inside = 0

        async def _op(s: Session) -> None:
            nonlocal inside
            inside += 1
            if inside == 2:
                both_inside.set()
            await asyncio.wait_for(both_inside.wait(), timeout=1.0)

        await asyncio.gather(
            store.with_session(first.id, _op),
            store.with_session(second.id, _op),
        )

        assert both_inside.is_set()

    async def test_lock_released_after_exception(self, store: ConversationStore) -> None:
        session = _session()
        await store.create(session)

        async def _boom(s: Session) -> None:
            raise RuntimeError("boom")

        async def _ok(s: Session) -> str:
            return "ok"

        with pytest.raises(RuntimeError):
            await store.with_session(session.id, _boom)

        assert await asyncio.wait_for(store.with_session(session.id, _ok), timeout=1.0) == "ok"


# =========================================================================
# Eviction
# =========================================================================


class TestEviction:
    async def test_idle_session_is_evicted(
        self, store: ConversationStore, clock: FakeClock, event_bus: EventBus
    ) -> None:
        session = _session()
        await store.create(session)
        queue = event_bus.subscribe(session.id)
        clock.advance(101)

        evicted = await store.evict_expired()

        assert evicted == [session.id]
        assert session.state == SessionState.EXPIRED
        assert session.id not in store
        assert queue.get_nowait().type == EventType.SESSION_EXPIRED

    async def test_eviction_frees_event_history(
        self, store: ConversationStore, clock: FakeClock, event_bus: EventBus
    ) -> None:
        session = _session()
        await store.create(session)
        await event_bus.publish(
            EscalationEvent(type=EventType.SESSION_STARTED, session_id=session.id)
        )
        clock.advance(101)

        await store.evict_expired()

        assert event_bus.get_event_history(session.id) == []
        assert not event_bus.is_closed(session.id)

    async def test_evicted_session_is_not_found(
        self, store: ConversationStore, clock: FakeClock
    ) -> None:
        session = _session()
        await store.create(session)
        clock.advance(101)
        await store.evict_expired()

        async def _noop(s: Session) -> None:
            return None

        with pytest.raises(SessionNotFound):
            await store.with_session(session.id, _noop)

    async def test_session_within_ttl_is_kept(
        self, store: ConversationStore, clock: FakeClock
    ) -> None:
        session = _session()
        await store.create(session)
        clock.advance(100)

        assert await store.evict_expired() == []
        assert session.id in store

    async def test_session_with_operation_in_flight_is_skipped(
        self, store: ConversationStore, clock: FakeClock
    ) -> None:
        session = _session()
        await store.create(session)
        entered = asyncio.Event()
        release = asyncio.Event()

        async def _hold(s: Session) -> None:
            entered.set()
            await release.wait()

        task = asyncio.create_task(store.with_session(session.id, _hold))
        await entered.wait()
        clock.advance(500)

        assert await store.evict_expired() == []

        release.set()
        await task
        assert session.id in store
        assert session.state == SessionState.CREATED

    async def test_subscribers_are_closed_on_eviction(
        self, store: ConversationStore, clock: FakeClock, event_bus: EventBus
    ) -> None:
        session = _session()
        await store.create(session)
        queue = event_bus.subscribe(session.id)
        clock.advance(101)

        await store.evict_expired()

        received = [queue.get_nowait() for _ in range(queue.qsize())]
        assert [e.type for e in received] == [
            EventType.SESSION_EXPIRED,
            EventType.SESSION_CLOSED,
        ]

    async def test_sweep_loop_evicts_periodically(
        self, store: ConversationStore, clock: FakeClock
    ) -> None:
        session = _session()
        await store.create(session)
        clock.advance(101)

        store.start_sweep_loop(interval_seconds=0.01)
        for _ in range(50):
            if session.id not in store:
                break
            await asyncio.sleep(0.01)
        await store.drain()

        assert session.state == SessionState.EXPIRED

    async def test_sweep_loop_prunes_closed_tournament_history(
        self, event_bus: EventBus, clock: FakeClock
    ) -> None:
        store = ConversationStore(
            ttl_seconds=100, event_bus=event_bus, clock=clock, history_retention_seconds=0
        )
        await event_bus.publish(
            EscalationEvent(type=EventType.TOURNAMENT_COMPLETE, session_id="trn_000000000001")
        )
        await event_bus.close_session("trn_000000000001")
        await asyncio.sleep(0.001)

        store.start_sweep_loop(interval_seconds=0.01)
        for _ in range(50):
            if not event_bus.get_event_history("trn_000000000001"):
                break
            await asyncio.sleep(0.01)
        await store.drain()

        assert event_bus.get_event_history("trn_000000000001") == []


# =========================================================================
# Reporting and Shutdown
# =========================================================================


class TestCountsAndDrain:
    async def test_count_by_state(self, store: ConversationStore) -> None:
        active = _session()
        active.transition(SessionState.ACTIVE)
        await store.create(active)
        await store.create(_session())

        counts = store.count_by_state()

        assert counts["active"] == 1
        assert counts["created"] == 1
        assert counts["completed"] == 0
        assert counts["total"] == 2

    async def test_drain_stops_sweep_and_clears_table(
        self, store: ConversationStore, event_bus: EventBus
    ) -> None:
        session = _session()
        await store.create(session)
        queue = event_bus.subscribe(session.id)
        task = store.start_sweep_loop(interval_seconds=60)

        await store.drain()

        assert task.done()
        assert len(store) == 0
        assert queue.get_nowait().type == EventType.SESSION_CLOSED
