from __future__ import annotations

import hashlib
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Literal

from portflow.core.orchestration.errors import SessionOwnerMismatch, SessionRoleMismatch

logger = logging.getLogger("portflow.sessions")


@dataclass(frozen=True)
class Turn:
    speaker: Literal["user", "agent"]
    text: str
    timestamp: float
    error: bool = False


@dataclass
class Session:
    id: str
    role: str
    owner: str
    credential: str | None
    created_at: float
    last_access_at: float
    history: list[Turn] = field(default_factory=list)
    revoked: set[str] = field(default_factory=set)
    # FIFO tickets; ``serving`` is the ticket allowed to run
    next_ticket: int = 0
    serving: int = 0
    cleared: bool = False

    @property
    def busy(self) -> bool:
        return self.next_ticket != self.serving


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    role: str
    owner: str
    created_at: float
    last_access_at: float
    turns: int
    busy: bool


def _fingerprint(credential: str) -> str:
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


def credential_owner(credential: str | None) -> str:
    """Owner identity for callers without a verified user id: the credential itself."""
    return f"token:{_fingerprint(credential or '')}"


class SessionStore:
    """In-memory sessions with per-session FIFO serialization and idle eviction.

    ``clock`` drives idle accounting and should be monotonic; ``wall_clock`` is
    only used for the timestamps shown to callers.

    A session cleared while a run holds it stays in ``_draining`` until that
    run releases; new runs for the id queue behind it and start on a fresh
    session.
    """

    def __init__(
        self,
        timeout_s: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.timeout_s = timeout_s
        self.clock = clock
        self.wall_clock = wall_clock
        self._sessions: dict[str, Session] = {}
        self._draining: dict[str, Session] = {}
        self._cond = threading.Condition()

    def _expired(self, session: Session, now: float) -> bool:
        return not session.busy and now - session.last_access_at > self.timeout_s

    @staticmethod
    def _check(session: Session, role: str, owner: str) -> None:
        if session.role != role:
            raise SessionRoleMismatch(session.id, session.role, role)
        if session.owner != owner:
            raise SessionOwnerMismatch(session.id)

    def _live(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is not None and self._expired(session, self.clock()):
            logger.info("session_expired", extra={"extra_fields": {"session_id": session_id}})
            del self._sessions[session_id]
            return None
        return session

    def _enter(self, session_id: str, role: str, credential: str | None, owner: str) -> Session:
        while True:
            while session_id in self._draining:
                self._cond.wait()
            session = self._live(session_id)
            if session is None:
                now = self.clock()
                session = Session(
                    id=session_id,
                    role=role,
                    owner=owner,
                    credential=credential,
                    created_at=self.wall_clock(),
                    last_access_at=now,
                )
                self._sessions[session_id] = session
                logger.info("session_created", extra={"extra_fields": {"session_id": session_id, "role": role}})
            else:
                self._check(session, role, owner)

            ticket = session.next_ticket
            session.next_ticket += 1
            while session.serving != ticket:
                self._cond.wait()
            if not session.cleared:
                return session
            # cleared while queued: give the ticket back and start over
            self._release(session)

    def _release(self, session: Session) -> None:
        session.serving += 1
        session.last_access_at = self.clock()
        if session.cleared and not session.busy and self._draining.get(session.id) is session:
            del self._draining[session.id]
            logger.info("session_drained", extra={"extra_fields": {"session_id": session.id}})
        self._cond.notify_all()

    @contextmanager
    def acquire(
        self,
        session_id: str,
        role: str,
        credential: str | None,
        owner: str | None = None,
    ) -> Iterator[Session]:
        owner = owner or credential_owner(credential)
        with self._cond:
            session = self._enter(session_id, role, credential, owner)
            if credential and _fingerprint(credential) not in session.revoked:
                session.credential = credential
            elif credential:
                session.credential = None
            session.last_access_at = self.clock()

        try:
            yield session
        finally:
            with self._cond:
                self._release(session)

    def check_access(self, session_id: str, role: str, owner: str) -> None:
        """Raise if a live session with this id belongs to another role or owner."""
        with self._cond:
            session = self._live(session_id)
            if session is not None:
                self._check(session, role, owner)

    def append_exchange(self, session: Session, user_turn: Turn, agent_turn: Turn) -> bool:
        with self._cond:
            if self._sessions.get(session.id) is not session:
                logger.info("session_gone_before_append", extra={"extra_fields": {"session_id": session.id}})
                return False
            session.history.extend((user_turn, agent_turn))
            session.last_access_at = self.clock()
            return True

    def touch(self, session_id: str) -> None:
        with self._cond:
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_access_at = self.clock()

    def invalidate_credential(self, session_id: str) -> None:
        with self._cond:
            session = self._sessions.get(session_id)
            if session is None:
                return
            if session.credential:
                session.revoked.add(_fingerprint(session.credential))
            session.credential = None
        logger.warning("session_credential_invalidated", extra={"extra_fields": {"session_id": session_id}})

    def clear(self, session_id: str) -> bool:
        with self._cond:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            session.cleared = True
            draining = session.busy
            if draining:
                self._draining[session_id] = session
        logger.info("session_cleared", extra={"extra_fields": {"session_id": session_id, "draining": draining}})
        return True

    def history(self, session_id: str) -> list[Turn]:
        with self._cond:
            session = self._sessions.get(session_id)
            if session is None or self._expired(session, self.clock()):
                return []
            return list(session.history)

    def list_active(self) -> list[SessionInfo]:
        with self._cond:
            now = self.clock()
            return [
                SessionInfo(
                    session_id=session.id,
                    role=session.role,
                    owner=session.owner,
                    created_at=session.created_at,
                    last_access_at=session.last_access_at,
                    turns=len(session.history),
                    busy=session.busy,
                )
                for session in self._sessions.values()
                if not self._expired(session, now)
            ]

    def sweep(self) -> list[str]:
        """Evict idle sessions. Sessions with a run in flight or queued wait for a later sweep."""
        with self._cond:
            now = self.clock()
            evicted = [session_id for session_id, session in self._sessions.items() if self._expired(session, now)]
            for session_id in evicted:
                del self._sessions[session_id]
        if evicted:
            logger.info("sessions_evicted", extra={"extra_fields": {"count": len(evicted), "session_ids": evicted}})
        return evicted
