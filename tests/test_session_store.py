from __future__ import annotations

import threading
import time

import pytest

from portflow.core.orchestration.errors import SessionOwnerMismatch, SessionRoleMismatch
from portflow.core.sessions.store import Session, SessionStore, Turn, credential_owner


def _exchange(store: SessionStore, session: Session, text: str) -> bool:
    return store.append_exchange(
        session,
        Turn(speaker="user", text=text, timestamp=0.0),
        Turn(speaker="agent", text=f"re: {text}", timestamp=0.0),
    )


def test_first_message_creates_session(clock) -> None:
    store = SessionStore(timeout_s=60, clock=clock)

    with store.acquire("s1", "CARRIER", "tok") as session:
        assert session.credential == "tok"
        _exchange(store, session, "hello")

    assert [turn.speaker for turn in store.history("s1")] == ["user", "agent"]
    assert [info.session_id for info in store.list_active()] == ["s1"]


def test_role_change_is_rejected(clock) -> None:
    store = SessionStore(timeout_s=60, clock=clock)
    with store.acquire("s1", "CARRIER", "tok"):
        pass

    with pytest.raises(SessionRoleMismatch):
        with store.acquire("s1", "OPERATOR", "tok"):
            pass


def test_idle_session_is_swept_and_restarts_fresh(clock) -> None:
    store = SessionStore(timeout_s=60, clock=clock)
    with store.acquire("s1", "CARRIER", "tok") as session:
        _exchange(store, session, "old")

    clock.advance(61)

    assert store.list_active() == []
    assert store.sweep() == ["s1"]
    with store.acquire("s1", "OPERATOR", "tok") as session:
        _exchange(store, session, "new")
    assert [turn.text for turn in store.history("s1")] == ["new", "re: new"]


def test_sweep_defers_sessions_with_run_in_flight(clock) -> None:
    store = SessionStore(timeout_s=60, clock=clock)

    with store.acquire("s1", "CARRIER", "tok"):
        clock.advance(120)
        assert store.sweep() == []

    clock.advance(61)
    assert store.sweep() == ["s1"]


def test_clear_during_a_run_holds_new_runs_until_it_releases() -> None:
    store = SessionStore(timeout_s=60)
    holding = threading.Event()
    finish = threading.Event()
    entered = threading.Event()
    appended: list[bool] = []

    def first_run() -> None:
        with store.acquire("s1", "CARRIER", "tok") as session:
            holding.set()
            finish.wait(timeout=5)
            appended.append(_exchange(store, session, "old-run"))

    def second_run() -> None:
        with store.acquire("s1", "CARRIER", "tok") as session:
            entered.set()
            _exchange(store, session, "new-run")

    first = threading.Thread(target=first_run)
    first.start()
    assert holding.wait(timeout=5)

    assert store.clear("s1") is True
    second = threading.Thread(target=second_run)
    second.start()
    assert not entered.wait(timeout=0.2)

    finish.set()
    first.join(timeout=5)
    second.join(timeout=5)

    assert entered.is_set()
    assert appended == [False]
    assert [turn.text for turn in store.history("s1")] == ["new-run", "re: new-run"]


def test_run_queued_before_clear_starts_on_a_fresh_session() -> None:
    store = SessionStore(timeout_s=60)
    holding = threading.Event()
    finish = threading.Event()
    queued_session: list[Session] = []

    def first_run() -> None:
        with store.acquire("s1", "CARRIER", "tok") as session:
            holding.set()
            finish.wait(timeout=5)
            _exchange(store, session, "old-run")

    def queued_run() -> None:
        with store.acquire("s1", "CARRIER", "tok") as session:
            queued_session.append(session)
            _exchange(store, session, "queued")

    first = threading.Thread(target=first_run)
    first.start()
    assert holding.wait(timeout=5)
    old = store._sessions["s1"]
    second = threading.Thread(target=queued_run)
    second.start()
    deadline = time.monotonic() + 2
    while old.next_ticket < 2 and time.monotonic() < deadline:
        time.sleep(0.001)

    store.clear("s1")
    finish.set()
    first.join(timeout=5)
    second.join(timeout=5)

    assert queued_session and queued_session[0] is not old
    assert [turn.text for turn in store.history("s1")] == ["queued", "re: queued"]
    assert store._draining == {}


def test_session_of_another_owner_is_refused(clock) -> None:
    store = SessionStore(timeout_s=60, clock=clock)
    with store.acquire("s1", "CARRIER", "carrier-a") as session:
        _exchange(store, session, "mine")

    with pytest.raises(SessionOwnerMismatch):
        with store.acquire("s1", "CARRIER", "carrier-b"):
            pass
    with pytest.raises(SessionOwnerMismatch):
        store.check_access("s1", "CARRIER", credential_owner("carrier-b"))

    store.check_access("s1", "CARRIER", credential_owner("carrier-a"))
    assert [turn.text for turn in store.history("s1")] == ["mine", "re: mine"]
    assert store.list_active()[0].owner == credential_owner("carrier-a")


def test_clear_discards_history(clock) -> None:
    store = SessionStore(timeout_s=60, clock=clock)
    with store.acquire("s1", "CARRIER", "tok") as session:
        _exchange(store, session, "hello")

    assert store.clear("s1") is True
    assert store.history("s1") == []
    assert store.clear("s1") is False


def test_invalidated_credential_is_not_reused(clock) -> None:
    store = SessionStore(timeout_s=60, clock=clock)
    with store.acquire("s1", "CARRIER", "old-token", owner="user:7"):
        store.invalidate_credential("s1")

    with store.acquire("s1", "CARRIER", "old-token", owner="user:7") as session:
        assert session.credential is None
    with store.acquire("s1", "CARRIER", "new-token", owner="user:7") as session:
        assert session.credential == "new-token"


def test_runs_for_one_session_are_serialized_in_arrival_order() -> None:
    store = SessionStore(timeout_s=60)
    active = {"count": 0, "max": 0}
    lock = threading.Lock()
    entered: list[int] = []

    def run(index: int) -> None:
        with store.acquire("shared", "CARRIER", "tok") as session:
            with lock:
                active["count"] += 1
                active["max"] = max(active["max"], active["count"])
                entered.append(index)
            time.sleep(0.01)
            _exchange(store, session, f"m{index}")
            with lock:
                active["count"] -= 1

    threads = []
    for index in range(5):
        thread = threading.Thread(target=run, args=(index,))
        thread.start()
        threads.append(thread)
        # wait until this run holds its ticket before submitting the next one
        deadline = time.monotonic() + 2
        while time.monotonic() < deadline:
            with store._cond:
                session = store._sessions.get("shared")
                if session is not None and session.next_ticket == index + 1:
                    break
            time.sleep(0.001)
    for thread in threads:
        thread.join(timeout=5)

    assert active["max"] == 1
    assert entered == [0, 1, 2, 3, 4]
    texts = [turn.text for turn in store.history("shared") if turn.speaker == "user"]
    assert texts == ["m0", "m1", "m2", "m3", "m4"]
    assert len(store.history("shared")) == 10


def test_different_sessions_do_not_block_each_other() -> None:
    store = SessionStore(timeout_s=60)
    barrier = threading.Barrier(2, timeout=5)
    errors: list[BaseException] = []

    def run(session_id: str) -> None:
        try:
            with store.acquire(session_id, "CARRIER", "tok"):
                barrier.wait()
        except threading.BrokenBarrierError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=run, args=(name,)) for name in ("a", "b")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
