"""
Session pool with bounded concurrency and FIFO-fair leasing.

The pool is the single serialization point for session slots. It keeps at
most ``max_concurrent_sessions`` sessions leased; callers beyond that wait
in arrival order. A freed slot is handed directly to the oldest waiter, so a
newcomer can never overtake a caller that is already queued.

The pool listens to its RuntimeHandle: when the runtime fails, every active
session is cancelled and all waiters are woken with ``RuntimeNotReady``.
"""

import logging
import threading
import time
import uuid
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, List, Optional

from llm_runtime_lite.config import RuntimeConfig
from llm_runtime_lite.errors import PoolExhausted, RuntimeNotReady
from llm_runtime_lite.runtime.handle import RuntimeHandle, RuntimeState
from llm_runtime_lite.sessions.session import Session, SessionState

log = logging.getLogger("llm_runtime_lite.sessions")


class _Waiter:
    """A queued lease request."""

    __slots__ = ("event", "granted", "aborted", "arrived_at")

    def __init__(self) -> None:
        self.event = threading.Event()
        self.granted = False
        self.aborted = False
        self.arrived_at = time.monotonic()


class SessionPool:
    """Leases sessions against a RuntimeHandle.

    Attributes:
        handle: Runtime the sessions generate against.
        max_sessions: Maximum number of concurrently leased sessions.
    """

    def __init__(
        self, handle: RuntimeHandle, config: Optional[RuntimeConfig] = None
    ) -> None:
        """Initialize SessionPool.

        Args:
            handle: Runtime the sessions generate against.
            config: Runtime configuration; defaults to the handle's.
        """
        self.handle = handle
        self.config = config or handle.config
        self.max_sessions = self.config.max_concurrent_sessions

        self._lock = threading.Lock()
        self._sessions: "OrderedDict[str, Session]" = OrderedDict()
        self._waiters: Deque[_Waiter] = deque()
        # Slots granted to woken waiters that have not yet created their session
        self._reserved = 0
        # Slots of released sessions whose generation has not finished yet
        self._draining = 0

        self._total_leases = 0
        self._evictions = 0
        self._forced_cancellations = 0

        handle.add_listener(self._on_runtime_transition)

    # --- leasing ---
    def lease(self, timeout: Optional[float] = None) -> Session:
        """Acquire a session slot.

        Args:
            timeout: Seconds to wait for a free slot. Defaults to
                ``lease_timeout_ms`` from the configuration; 0 never waits.

        Returns:
            A new IDLE session.

        Raises:
            RuntimeNotReady: If the runtime is not READY (on entry or while waiting).
            PoolExhausted: If no slot frees up within ``timeout``.
        """
        if timeout is None:
            timeout = self.config.lease_timeout

        with self._lock:
            if not self.handle.is_ready():
                raise RuntimeNotReady(self.handle.state.value)
            if not self._waiters and self._in_use() < self.max_sessions:
                return self._create_session()
            waiter = _Waiter()
            self._waiters.append(waiter)
            position = len(self._waiters)

        log.debug("lease queued at position %d (timeout=%.3fs)", position, timeout)
        waiter.event.wait(timeout)

        with self._lock:
            if waiter.granted:
                self._reserved -= 1
                if not self.handle.is_ready():
                    self._hand_off_slot()
                    raise RuntimeNotReady(self.handle.state.value)
                return self._create_session()
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            if waiter.aborted:
                raise RuntimeNotReady(self.handle.state.value)
            raise PoolExhausted(self.max_sessions, timeout)

    def release(self, session: Session) -> None:
        """Return a session's slot to the pool. Releasing twice is a no-op.

        A session released mid-generation is asked to cancel, and its slot
        stays taken until its stream has finished and freed the backend
        generation state (the stream ends at its next token, or when it is
        closed or garbage collected).
        """
        with self._lock:
            if self._sessions.pop(session.session_id, None) is None:
                return
            if session.close("released", on_drained=self._slot_drained):
                self._draining += 1
                log.debug("session %s released while generating", session.session_id)
                return
            self._hand_off_slot()
        log.debug("session %s released", session.session_id)

    def _slot_drained(self) -> None:
        with self._lock:
            self._draining -= 1
            self._hand_off_slot()

    # --- eviction / cancellation ---
    def evict_oldest_idle(self) -> Optional[str]:
        """Close the IDLE session leased longest ago and free its slot.

        Returns:
            The evicted session id, or None if no session is idle.
        """
        with self._lock:
            idle = [s for s in self._sessions.values() if s.state == SessionState.IDLE]
            if not idle:
                return None
            victim = min(idle, key=lambda s: s.leased_at)
            del self._sessions[victim.session_id]
            victim.terminated = True
            victim.close("evicted")
            self._evictions += 1
            self._hand_off_slot()
        log.info("evicted idle session %s", victim.session_id)
        return victim.session_id

    def cancel_all(self) -> int:
        """Terminate every active session; returns how many were affected."""
        with self._lock:
            sessions = list(self._sessions.values())
        affected = 0
        for session in sessions:
            if session.state in (SessionState.IDLE, SessionState.GENERATING):
                session.terminate()
                affected += 1
        with self._lock:
            self._forced_cancellations += affected
        if affected:
            log.warning("cancelled %d active session(s)", affected)
        return affected

    def close(self) -> None:
        """Close every session, wake all waiters, and detach from the runtime."""
        self.handle.remove_listener(self._on_runtime_transition)
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._abort_waiters()
        for session in sessions:
            session.close("released")

    # --- inspection ---
    def active_sessions(self) -> List[Session]:
        """Leased sessions, oldest lease first."""
        with self._lock:
            return list(self._sessions.values())

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def get_stats(self) -> Dict[str, Any]:
        """Get pool statistics.

        Returns:
            Dictionary with keys:
            - max: Maximum concurrent sessions
            - active: Leased sessions
            - generating: Sessions currently producing tokens
            - waiting: Queued lease requests
            - draining: Released sessions whose generation is still winding down
            - utilization: Fraction of slots in use (0.0 to 1.0)
            - total_leases: Sessions leased since creation
            - evictions: Idle sessions evicted since creation
            - forced_cancellations: Sessions terminated by cancel_all()
        """
        with self._lock:
            active = len(self._sessions)
            generating = sum(1 for s in self._sessions.values() if s.is_generating())
            return {
                "max": self.max_sessions,
                "active": active,
                "generating": generating,
                "waiting": len(self._waiters),
                "draining": self._draining,
                "utilization": self._in_use() / self.max_sessions,
                "total_leases": self._total_leases,
                "evictions": self._evictions,
                "forced_cancellations": self._forced_cancellations,
            }

    # --- internals ---
    def _in_use(self) -> int:
        # Caller holds self._lock
        return len(self._sessions) + self._reserved + self._draining

    def _create_session(self) -> Session:
        # Caller holds self._lock
        session = Session(session_id=f"sess_{uuid.uuid4().hex[:8]}", handle=self.handle)
        self._sessions[session.session_id] = session
        self._total_leases += 1
        log.debug(
            "session %s leased (%d/%d)",
            session.session_id,
            len(self._sessions),
            self.max_sessions,
        )
        return session

    def _hand_off_slot(self) -> None:
        # Caller holds self._lock; gives one free slot to the oldest waiter
        if self._waiters and self._in_use() < self.max_sessions:
            waiter = self._waiters.popleft()
            waiter.granted = True
            self._reserved += 1
            waiter.event.set()

    def _abort_waiters(self) -> None:
        # Caller holds self._lock
        while self._waiters:
            waiter = self._waiters.popleft()
            waiter.aborted = True
            waiter.event.set()

    def _on_runtime_transition(
        self, handle: RuntimeHandle, old: RuntimeState, new: RuntimeState
    ) -> None:
        if new in (RuntimeState.FAILED, RuntimeState.UNLOADING):
            with self._lock:
                self._abort_waiters()
        if new == RuntimeState.FAILED and old == RuntimeState.READY:
            self.cancel_all()
