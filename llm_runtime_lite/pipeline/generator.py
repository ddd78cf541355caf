"""
Token-by-token generation against a leased session.

``InferencePipeline.generate`` validates the request eagerly and returns a
``TokenStream``. Nothing is decoded until the stream is iterated; each
``next()`` decodes at most one token. Between decode steps the producer
checks the session's cancellation flag, so ``cancel`` takes effect within
one token's worth of latency.
"""

import logging
import time
from typing import Generator, List, Optional

from llm_runtime_lite.errors import (
    GenerationTimeout,
    InvalidRequest,
    RuntimeNotReady,
)
from llm_runtime_lite.pipeline.request import InferenceRequest
from llm_runtime_lite.runtime.handle import RuntimeHandle
from llm_runtime_lite.sampling.sampling import StopChecker
from llm_runtime_lite.sessions.pool import SessionPool
from llm_runtime_lite.sessions.session import Session, SessionState

log = logging.getLogger("llm_runtime_lite.pipeline")

# finish_reason values
FINISH_STOP = "stop"  # a stop sequence matched
FINISH_LENGTH = "length"  # max_tokens reached
FINISH_END = "end"  # the model emitted end-of-generation
FINISH_CANCELLED = "cancelled"  # cancel(), unload, eviction or runtime failure
FINISH_TIMEOUT = "timeout"  # request.timeout_ms exceeded
FINISH_ERROR = "error"  # the backend raised while decoding
FINISH_CLOSED = "closed"  # the consumer closed the stream early


class TokenStream:
    """Lazy, finite, single-use stream of generated token ids.

    Iterating a consumed stream yields nothing; it is not restartable.

    Attributes:
        session: Session the tokens are generated on
        request: Request being served
        finish_reason: Why the stream ended, None while it is still open
    """

    def __init__(
        self,
        session: Session,
        request: InferenceRequest,
        handle: RuntimeHandle,
        empty: bool = False,
    ) -> None:
        self.session = session
        self.request = request
        self.handle = handle
        self.finish_reason: Optional[str] = None
        self._emitted: List[int] = []
        if empty:
            self.finish_reason = FINISH_LENGTH
            self._iter: Generator[int, None, None] = self._empty()
        else:
            self._iter = self._produce()

    def __iter__(self) -> "TokenStream":
        return self

    def __next__(self) -> int:
        return next(self._iter)

    @property
    def tokens(self) -> List[int]:
        """Tokens emitted so far."""
        return list(self._emitted)

    def collect(self) -> List[int]:
        """Drain the stream and return every token it emitted."""
        for _ in self:
            pass
        return self.tokens

    def close(self) -> None:
        """Stop the stream early and return the session to IDLE."""
        self._iter.close()

    @staticmethod
    def _empty() -> Generator[int, None, None]:
        return
        yield

    def _produce(self) -> Generator[int, None, None]:
        session = self.session
        handle = self.handle
        request = self.request
        config = request.config

        if session.cancel_requested():
            self.finish_reason = FINISH_CANCELLED
            return

        session.start_generation()
        try:
            epoch, model_state = handle.begin_generation(session)
        except RuntimeNotReady:
            session.finish_generation()
            raise

        backend = handle.backend
        stop = StopChecker(config.stop_sequences)
        deadline = None
        if request.timeout_ms is not None:
            deadline = time.monotonic() + request.timeout_ms / 1000.0

        gen_state = None
        pending: List[int] = []
        generated = 0
        try:
            gen_state = backend.native_begin(
                model_state, request.prompt_tokens, config.sampling
            )
            while True:
                if generated >= config.max_tokens:
                    self.finish_reason = FINISH_LENGTH
                    break
                if session.cancel_requested() or not handle.is_current(epoch):
                    self.finish_reason = FINISH_CANCELLED
                    break
                if deadline is not None and time.monotonic() > deadline:
                    self.finish_reason = FINISH_TIMEOUT
                    session.terminate()
                    raise GenerationTimeout(session.session_id, request.timeout_ms)

                try:
                    token = backend.native_generate_next(gen_state)
                except Exception as e:
                    self.finish_reason = FINISH_ERROR
                    log.exception(
                        "decode failed on session %s (%s)",
                        session.session_id,
                        request.request_id,
                    )
                    handle.fail(f"decode error: {e!r}"[:200])
                    raise RuntimeNotReady(handle.state.value) from e

                # Checkpoint after the decode so cancel lands within one token
                if session.cancel_requested() or not handle.is_current(epoch):
                    self.finish_reason = FINISH_CANCELLED
                    break
                if token is None:
                    self.finish_reason = FINISH_END
                    break

                generated += 1
                pending.append(token)
                if stop:
                    matched = stop.match(pending)
                    if matched:
                        del pending[-matched:]
                        self.finish_reason = FINISH_STOP
                        break
                    ready = len(pending) - stop.partial_match(pending)
                else:
                    ready = len(pending)
                for t in pending[:ready]:
                    yield self._emit(t)
                del pending[:ready]

            # Held-back tokens that never completed a stop sequence
            for t in pending:
                yield self._emit(t)
            pending = []
        except GeneratorExit:
            if self.finish_reason is None:
                self.finish_reason = FINISH_CLOSED
            raise
        finally:
            if gen_state is not None and handle.is_current(epoch):
                backend.native_end(gen_state)
            handle.end_generation(session, epoch)
            state = session.finish_generation()
            log.debug(
                "generation %s on %s finished: reason=%s tokens=%d state=%s",
                request.request_id,
                session.session_id,
                self.finish_reason,
                len(self._emitted),
                state.value,
            )

    def _emit(self, token: int) -> int:
        self._emitted.append(token)
        self.session.tokens.append(token)
        return token


class InferencePipeline:
    """Drives generation on sessions leased from a SessionPool."""

    def __init__(self, handle: RuntimeHandle, pool: Optional[SessionPool] = None) -> None:
        """Initialize InferencePipeline.

        Args:
            handle: Runtime the sessions generate against
            pool: Pool the sessions must be leased from (checked when given)
        """
        self.handle = handle
        self.pool = pool

    def generate(self, session: Session, request: InferenceRequest) -> TokenStream:
        """Start a generation and return its token stream.

        Args:
            session: Leased, IDLE session
            request: Prompt and generation configuration

        Returns:
            Lazy TokenStream; empty when ``max_tokens`` is 0

        Raises:
            InvalidRequest: Empty prompt, negative ``max_tokens``, non-positive
                timeout, or a session that is closed, busy, cancelled, or not
                leased from this pipeline's pool
            RuntimeNotReady: If the runtime is not READY
        """
        self._validate_session(session)
        if not request.prompt_tokens:
            raise InvalidRequest("prompt is empty")
        if request.config.max_tokens < 0:
            raise InvalidRequest(
                f"max_tokens must be non-negative, got {request.config.max_tokens}"
            )
        if request.timeout_ms is not None and request.timeout_ms <= 0:
            raise InvalidRequest(f"timeout_ms must be positive, got {request.timeout_ms}")
        if not self.handle.is_ready():
            raise RuntimeNotReady(self.handle.state.value)

        if request.config.max_tokens == 0:
            return TokenStream(session, request, self.handle, empty=True)

        log.debug(
            "generate %s on %s (prompt_tokens=%d max_tokens=%d)",
            request.request_id,
            session.session_id,
            len(request.prompt_tokens),
            request.config.max_tokens,
        )
        return TokenStream(session, request, self.handle)

    def cancel(self, session: Session) -> None:
        """Ask the session's generation to stop at the next token boundary."""
        session.request_cancel()
        log.info("cancel requested for session %s", session.session_id)

    def _validate_session(self, session: Session) -> None:
        if session.handle is not self.handle:
            raise InvalidRequest(f"session {session.session_id} belongs to another runtime")
        if self.pool is not None and self.pool.get(session.session_id) is not session:
            raise InvalidRequest(f"session {session.session_id} is not leased")
        if session.state != SessionState.IDLE:
            hint = "; call reset() first" if session.state == SessionState.CANCELLED else ""
            raise InvalidRequest(
                f"session {session.session_id} is {session.state.value}{hint}"
            )
