"""
Tests for RuntimeHandle and RuntimeRegistry.
"""

import threading
import time

import pytest

from llm_runtime_lite.assets.resolver import resolve
from llm_runtime_lite.config import RuntimeConfig
from llm_runtime_lite.errors import AssetCorrupt, LoadFailed, RuntimeNotReady
from llm_runtime_lite.runtime.handle import RuntimeHandle, RuntimeRegistry, RuntimeState
from llm_runtime_lite.sessions.pool import SessionPool
from tests.helpers import ScriptedBackend, run_in_threads


class FakeParticipant:
    """Stands in for a session inside the generation bracket."""

    def __init__(self, session_id, on_cancel=None):
        self.session_id = session_id
        self.on_cancel = on_cancel
        self.cancel_requested = False
        self.terminated = False

    def request_cancel(self):
        self.cancel_requested = True
        if self.on_cancel is not None:
            self.on_cancel(self)

    def terminate(self):
        self.terminated = True


@pytest.mark.unit
def test_load_reaches_ready(handle, backend, asset) -> None:
    """Test UNLOADED -> LOADING -> READY."""
    assert handle.state == RuntimeState.UNLOADED

    result = handle.load(asset)

    assert result is handle
    assert handle.state == RuntimeState.READY
    assert handle.is_ready()
    assert handle.asset == asset
    assert handle.loaded_at is not None
    assert handle.load_time_ms >= 0
    assert handle.memory_bytes() > 0
    assert backend.load_calls == 1


@pytest.mark.unit
def test_load_same_asset_twice_is_idempotent(ready_handle, backend, asset) -> None:
    assert ready_handle.load(asset) is ready_handle
    assert backend.load_calls == 1


@pytest.mark.unit
def test_load_other_asset_while_ready_fails(ready_handle, make_gguf) -> None:
    other = resolve(make_gguf("other-Q8_0.gguf", payload=b"\x01" * 64))

    with pytest.raises(LoadFailed) as exc_info:
        ready_handle.load(other)

    assert "unload it first" in exc_info.value.reason
    assert ready_handle.state == RuntimeState.READY


@pytest.mark.unit
def test_listeners_see_every_transition(handle, asset) -> None:
    transitions = []
    handle.add_listener(lambda h, old, new: transitions.append((old, new)))

    handle.load(asset)
    handle.unload()

    assert transitions == [
        (RuntimeState.UNLOADED, RuntimeState.LOADING),
        (RuntimeState.LOADING, RuntimeState.READY),
        (RuntimeState.READY, RuntimeState.UNLOADING),
        (RuntimeState.UNLOADING, RuntimeState.UNLOADED),
    ]


@pytest.mark.unit
def test_unload_releases_model(ready_handle, backend) -> None:
    ready_handle.unload()

    assert ready_handle.state == RuntimeState.UNLOADED
    assert ready_handle.asset is None
    assert backend.unload_calls == 1
    assert ready_handle.memory_bytes() == 0
    with pytest.raises(RuntimeNotReady):
        ready_handle.model_state


@pytest.mark.unit
def test_unload_when_unloaded_is_noop(handle, backend) -> None:
    handle.unload()
    handle.unload()

    assert handle.state == RuntimeState.UNLOADED
    assert backend.unload_calls == 0


class TestLoadFailures:
    """Test load failures move the handle to a sticky FAILED state."""

    def test_out_of_memory(self, config, asset):
        backend = ScriptedBackend(load_error=MemoryError())
        handle = RuntimeHandle(backend, config)

        with pytest.raises(LoadFailed) as exc_info:
            handle.load(asset)

        assert exc_info.value.reason == "insufficient memory"
        assert handle.state == RuntimeState.FAILED
        assert handle.last_error == "insufficient memory"

    def test_backend_exception(self, config, asset):
        backend = ScriptedBackend(load_error=ValueError("unknown architecture"))
        handle = RuntimeHandle(backend, config)

        with pytest.raises(LoadFailed) as exc_info:
            handle.load(asset)

        assert "unknown architecture" in exc_info.value.reason
        assert handle.state == RuntimeState.FAILED

    def test_backend_reports_corrupt_asset(self, config, asset):
        backend = ScriptedBackend(load_error=AssetCorrupt(asset.path, "tensor data truncated"))
        handle = RuntimeHandle(backend, config)

        with pytest.raises(LoadFailed) as exc_info:
            handle.load(asset)

        assert exc_info.value.reason == "corrupt asset: tensor data truncated"

    def test_incompatible_abi(self, config, asset):
        backend = ScriptedBackend(supported_abis=("mips",))
        handle = RuntimeHandle(backend, config)

        with pytest.raises(LoadFailed) as exc_info:
            handle.load(asset)

        assert "incompatible ABI" in exc_info.value.reason
        assert backend.load_calls == 0
        assert handle.state == RuntimeState.FAILED

    def test_file_modified_after_resolve(self, handle, backend, asset, gguf_file):
        data = bytearray(gguf_file.read_bytes())
        data[-1] ^= 0xFF
        gguf_file.write_bytes(bytes(data))

        with pytest.raises(LoadFailed) as exc_info:
            handle.load(asset)

        assert exc_info.value.reason == "corrupt asset: checksum mismatch"
        assert backend.load_calls == 0

    def test_file_modified_without_verification(self, backend, asset, gguf_file):
        data = bytearray(gguf_file.read_bytes())
        data[-1] ^= 0xFF
        gguf_file.write_bytes(bytes(data))
        handle = RuntimeHandle(backend, RuntimeConfig(verify_checksum_on_load=False))

        handle.load(asset)

        assert handle.is_ready()
        handle.unload()

    def test_file_truncated_after_resolve(self, handle, asset, gguf_file):
        gguf_file.write_bytes(gguf_file.read_bytes()[:10])

        with pytest.raises(LoadFailed) as exc_info:
            handle.load(asset)

        assert "size changed" in exc_info.value.reason

    def test_failed_is_sticky_until_unload(self, config, asset):
        backend = ScriptedBackend(load_error=RuntimeError("boom"))
        handle = RuntimeHandle(backend, config)
        with pytest.raises(LoadFailed):
            handle.load(asset)

        backend.load_error = None
        with pytest.raises(LoadFailed) as exc_info:
            handle.load(asset)

        assert "failed state" in exc_info.value.reason
        assert backend.load_calls == 1

        handle.unload()
        handle.load(asset)

        assert handle.is_ready()
        assert backend.load_calls == 2
        handle.unload()

    def test_corrupt_load_blocks_leases_until_reload(self, config, asset):
        """Test corrupt asset -> FAILED; lease -> RuntimeNotReady until unload + load."""
        backend = ScriptedBackend(load_error=AssetCorrupt(asset.path, "bad tensor"))
        handle = RuntimeHandle(backend, config)
        with pytest.raises(LoadFailed):
            handle.load(asset)
        pool = SessionPool(handle, config)

        with pytest.raises(RuntimeNotReady):
            pool.lease(timeout=0)

        backend.load_error = None
        handle.unload()
        with pytest.raises(RuntimeNotReady):
            pool.lease(timeout=0)

        handle.load(asset)
        session = pool.lease(timeout=0)

        assert session.session_id.startswith("sess_")
        pool.close()
        handle.unload()


class TestConcurrentLoad:
    """Test at most one load is in flight."""

    def test_concurrent_loads_share_one_outcome(self, config, asset):
        backend = ScriptedBackend(load_delay=0.2)
        handle = RuntimeHandle(backend, config)

        results = run_in_threads(lambda: handle.load(asset), 4)

        assert all(r is handle for r in results)
        assert backend.load_calls == 1
        assert handle.state == RuntimeState.READY
        handle.unload()

    def test_concurrent_loads_share_failure(self, config, asset):
        backend = ScriptedBackend(load_delay=0.2, load_error=RuntimeError("bad weights"))
        handle = RuntimeHandle(backend, config)

        results = run_in_threads(lambda: handle.load(asset), 3)

        assert all(isinstance(r, LoadFailed) for r in results)
        assert all("bad weights" in r.reason for r in results)
        assert backend.load_calls == 1

    def test_fail_fast(self, asset):
        backend = ScriptedBackend(load_delay=0.3)
        handle = RuntimeHandle(backend, RuntimeConfig(fail_fast_concurrent_load=True))
        loader = threading.Thread(target=handle.load, args=(asset,))
        loader.start()
        assert backend.load_started.wait(timeout=5)

        with pytest.raises(LoadFailed) as exc_info:
            handle.load(asset)

        loader.join()
        assert exc_info.value.reason == "load already in progress"
        assert handle.state == RuntimeState.READY
        handle.unload()

    def test_waiting_load_times_out(self, asset):
        backend = ScriptedBackend(load_delay=0.5)
        handle = RuntimeHandle(backend, RuntimeConfig(load_timeout_ms=50))
        loader = threading.Thread(target=handle.load, args=(asset,))
        loader.start()
        assert backend.load_started.wait(timeout=5)

        with pytest.raises(LoadFailed) as exc_info:
            handle.load(asset)

        loader.join()
        assert "timed out" in exc_info.value.reason
        handle.unload()


class TestGenerationBracket:
    """Test the reader-writer discipline between generation and unload."""

    def test_begin_requires_ready(self, handle):
        with pytest.raises(RuntimeNotReady):
            handle.begin_generation(FakeParticipant("s1"))

    def test_begin_and_end(self, ready_handle):
        participant = FakeParticipant("s1")

        epoch, model_state = ready_handle.begin_generation(participant)

        assert model_state is ready_handle.model_state
        assert ready_handle.active_generations == 1
        assert ready_handle.is_current(epoch)

        ready_handle.end_generation(participant, epoch)
        assert ready_handle.active_generations == 0

    def test_unload_drains_cooperative_generations(self, ready_handle):
        """Test generations that stop when asked are not counted as forced."""
        epochs = {}

        def stop(p):
            ready_handle.end_generation(p, epochs[p.session_id])

        participant = FakeParticipant("s1", on_cancel=stop)
        epochs["s1"], _ = ready_handle.begin_generation(participant)

        ready_handle.unload()

        assert participant.cancel_requested
        assert not participant.terminated
        assert ready_handle.forced_terminations == 0
        assert ready_handle.state == RuntimeState.UNLOADED

    def test_unload_terminates_stragglers_after_grace(self, backend, asset):
        handle = RuntimeHandle(backend, RuntimeConfig(generation_grace_ms=50))
        handle.load(asset)
        participant = FakeParticipant("s1")
        epoch, _ = handle.begin_generation(participant)

        started = time.monotonic()
        handle.unload()

        assert time.monotonic() - started >= 0.05
        assert participant.cancel_requested
        assert participant.terminated
        assert handle.forced_terminations == 1
        assert not handle.is_current(epoch)

        # A late end from the terminated generation is ignored
        handle.end_generation(participant, epoch)
        assert handle.active_generations == 0

    def test_fail_cancels_generations(self, ready_handle):
        participant = FakeParticipant("s1")
        epoch, _ = ready_handle.begin_generation(participant)

        ready_handle.fail("decode error")

        assert ready_handle.state == RuntimeState.FAILED
        assert ready_handle.last_error == "decode error"
        assert participant.cancel_requested
        assert ready_handle.is_current(epoch)
        ready_handle.end_generation(participant, epoch)

    def test_fail_outside_ready_is_ignored(self, handle):
        handle.fail("late error")

        assert handle.state == RuntimeState.UNLOADED
        assert handle.last_error is None


class TestRuntimeRegistry:
    """Test single-model-per-process ownership."""

    def test_load_returns_single_live_handle(self, registry, backend, config, asset):
        first = registry.load(asset, backend, config)
        second = registry.load(asset, backend, config)

        assert first is second
        assert registry.current() is first
        assert backend.load_calls == 1

    def test_other_backend_rejected_while_live(self, registry, backend, config, asset):
        registry.load(asset, backend, config)

        with pytest.raises(LoadFailed):
            registry.acquire(ScriptedBackend(), config)

    def test_other_backend_allowed_after_unload(self, registry, backend, config, asset):
        registry.load(asset, backend, config)
        registry.unload()
        other = ScriptedBackend()

        handle = registry.load(asset, other, config)

        assert handle.backend is other
        assert handle.is_ready()

    def test_reset_forgets_handle(self, registry, backend, config, asset):
        handle = registry.load(asset, backend, config)

        registry.reset()

        assert registry.current() is None
        assert handle.state == RuntimeState.UNLOADED
