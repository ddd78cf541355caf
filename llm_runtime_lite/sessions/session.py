"""
Session dataclass and its state machine.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, List, Optional

from llm_runtime_lite.errors import InvalidRequest

if TYPE_CHECKING:
    from llm_runtime_lite.runtime.handle import RuntimeHandle


class SessionState(Enum):
    """State of an inference session."""

    IDLE = "idle"  # Leased, ready to generate
    GENERATING = "generating"  # A token stream is being produced
    CANCELLED = "cancelled"  # Generation was cancelled or terminated
    CLOSED = "closed"  # Released back to the pool (or evicted)


@dataclass(eq=False)
class Session:
    """One caller's exclusive lease on the runtime.

    Attributes:
        session_id: Unique identifier for the session
        handle: Runtime the session generates against (not owned)
        state: Current state of the session
        tokens: Token ids emitted by the latest generation
        leased_at: When the session was leased
        last_used_at: When the session last started or finished a generation
        terminated: True if the runtime or monitor ended the session forcibly
        close_reason: Why the session was closed ("released" or "evicted")
    """

    session_id: str
    handle: "RuntimeHandle" = field(repr=False)
    state: SessionState = SessionState.IDLE
    tokens: List[int] = field(default_factory=list)
    leased_at: float = field(default_factory=time.time)
    last_used_at: float = field(default_factory=time.time)
    terminated: bool = False
    close_reason: Optional[str] = None
    _cancel_event: threading.Event = field(
        default_factory=threading.Event, repr=False
    )
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _on_drained: Optional[Callable[[], None]] = field(default=None, repr=False)

    def is_generating(self) -> bool:
        return self.state == SessionState.GENERATING

    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    def cancel_requested(self) -> bool:
        """Check the cooperative cancellation flag."""
        return self._cancel_event.is_set()

    def touch(self) -> None:
        self.last_used_at = time.time()

    def start_generation(self) -> None:
        """IDLE -> GENERATING.

        Raises:
            InvalidRequest: If the session is not IDLE.
        """
        with self._lock:
            if self.state != SessionState.IDLE:
                raise InvalidRequest(
                    f"session {self.session_id} is {self.state.value}, not idle"
                )
            self._cancel_event.clear()
            self.tokens = []
            self.state = SessionState.GENERATING
            self.touch()

    def finish_generation(self) -> SessionState:
        """GENERATING -> IDLE, or -> CANCELLED if cancellation was requested.

        Returns:
            The resulting state.
        """
        with self._lock:
            if self.state == SessionState.GENERATING:
                if self._cancel_event.is_set():
                    self.state = SessionState.CANCELLED
                else:
                    self.state = SessionState.IDLE
            self.touch()
            state = self.state
            on_drained, self._on_drained = self._on_drained, None
        if on_drained is not None:
            on_drained()
        return state

    def request_cancel(self) -> None:
        """Ask the producer to stop at its next token boundary.

        A session that is idle moves to CANCELLED right away.
        """
        with self._lock:
            self._cancel_event.set()
            if self.state == SessionState.IDLE:
                self.state = SessionState.CANCELLED

    def terminate(self) -> None:
        """Forcibly end the session's current generation."""
        with self._lock:
            self._cancel_event.set()
            self.terminated = True
            if self.state in (SessionState.IDLE, SessionState.GENERATING):
                self.state = SessionState.CANCELLED

    def close(
        self, reason: str = "released", on_drained: Optional[Callable[[], None]] = None
    ) -> bool:
        """Mark the session closed; a running generation stops at its next token.

        Args:
            reason: Why the session is closed
            on_drained: Called once the running generation has finished

        Returns:
            True if a generation was still running, in which case
            ``on_drained`` will be called when it ends.
        """
        with self._lock:
            running = self.state == SessionState.GENERATING
            self._cancel_event.set()
            self.state = SessionState.CLOSED
            self.close_reason = reason
            if running:
                self._on_drained = on_drained
            return running

    def reset(self) -> None:
        """CANCELLED -> IDLE so the session can generate again.

        Raises:
            InvalidRequest: If the session is closed or still generating.
        """
        with self._lock:
            if self.state in (SessionState.CLOSED, SessionState.GENERATING):
                raise InvalidRequest(
                    f"cannot reset session {self.session_id} in state {self.state.value}"
                )
            self._cancel_event.clear()
            self.terminated = False
            self.state = SessionState.IDLE
