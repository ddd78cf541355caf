"""
Tests for the Session state machine.
"""

import pytest

from llm_runtime_lite.errors import InvalidRequest
from llm_runtime_lite.sessions.session import Session, SessionState


@pytest.fixture
def session(ready_handle) -> Session:
    return Session(session_id="sess_test", handle=ready_handle)


@pytest.mark.unit
def test_new_session_is_idle(session) -> None:
    assert session.state == SessionState.IDLE
    assert session.tokens == []
    assert not session.cancel_requested()
    assert not session.terminated
    assert session.close_reason is None


@pytest.mark.unit
def test_generation_round_trip(session) -> None:
    """Test IDLE -> GENERATING -> IDLE."""
    session.tokens = [1, 2]

    session.start_generation()
    assert session.is_generating()
    assert session.tokens == []

    assert session.finish_generation() == SessionState.IDLE


@pytest.mark.unit
def test_start_requires_idle(session) -> None:
    session.start_generation()

    with pytest.raises(InvalidRequest):
        session.start_generation()


@pytest.mark.unit
def test_cancel_during_generation(session) -> None:
    session.start_generation()

    session.request_cancel()

    assert session.cancel_requested()
    assert session.state == SessionState.GENERATING
    assert session.finish_generation() == SessionState.CANCELLED


@pytest.mark.unit
def test_cancel_while_idle(session) -> None:
    session.request_cancel()

    assert session.state == SessionState.CANCELLED


@pytest.mark.unit
def test_terminate_marks_cancelled(session) -> None:
    session.start_generation()

    session.terminate()

    assert session.state == SessionState.CANCELLED
    assert session.terminated
    # finish after termination keeps CANCELLED
    assert session.finish_generation() == SessionState.CANCELLED


@pytest.mark.unit
def test_reset_after_cancel(session) -> None:
    session.request_cancel()

    session.reset()

    assert session.state == SessionState.IDLE
    assert not session.cancel_requested()
    assert not session.terminated


@pytest.mark.unit
def test_reset_rejected_while_generating_or_closed(session) -> None:
    session.start_generation()
    with pytest.raises(InvalidRequest):
        session.reset()

    session.finish_generation()
    session.close()
    with pytest.raises(InvalidRequest):
        session.reset()


@pytest.mark.unit
def test_close_sets_cancel_flag(session) -> None:
    session.start_generation()

    session.close("evicted")

    assert session.is_closed()
    assert session.close_reason == "evicted"
    assert session.cancel_requested()
    # A generation that ends after close leaves the session closed
    assert session.finish_generation() == SessionState.CLOSED


@pytest.mark.unit
def test_close_idle_session_has_nothing_to_drain(session) -> None:
    drained = []

    running = session.close(on_drained=lambda: drained.append(True))

    assert running is False
    assert drained == []


@pytest.mark.unit
def test_drain_callback_runs_when_generation_ends(session) -> None:
    drained = []
    session.start_generation()

    assert session.close(on_drained=lambda: drained.append(True)) is True
    assert drained == []

    session.finish_generation()
    session.finish_generation()
    assert drained == [True]
