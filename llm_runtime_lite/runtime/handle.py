"""
RuntimeHandle: exclusive owner of one loaded native runtime.

The handle is an explicit state machine:

    UNLOADED -> LOADING -> {READY, FAILED} -> UNLOADING -> UNLOADED

At most one load is in flight at a time. ``FAILED`` is sticky: it is left only
through an explicit ``unload()`` followed by a new ``load()``, so a
permanently incompatible asset is never retried in a loop.

Generation and load/unload follow a reader-writer discipline. Any number of
sessions may generate against a ``READY`` handle (``begin_generation`` /
``end_generation`` bracket each one); ``unload`` first stops new generations,
asks the in-flight ones to cancel at their next token boundary, and waits up
to ``generation_grace_ms`` before terminating the stragglers.
"""

import logging
import os
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from llm_runtime_lite.assets.resolver import ModelAsset, compute_checksum
from llm_runtime_lite.config import RuntimeConfig
from llm_runtime_lite.errors import (
    AssetCorrupt,
    AssetNotFound,
    LoadFailed,
    RuntimeNotReady,
    is_out_of_memory,
)
from llm_runtime_lite.runtime.backend import NativeBackend
from llm_runtime_lite.utils.device import current_abi

log = logging.getLogger("llm_runtime_lite.runtime")

StateListener = Callable[["RuntimeHandle", "RuntimeState", "RuntimeState"], None]


class RuntimeState(Enum):
    """Lifecycle state of a RuntimeHandle."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"
    UNLOADING = "unloading"


class RuntimeHandle:
    """Owns the lifetime of one loaded native runtime.

    Attributes:
        backend: Native backend that performs the actual load and decode.
        config: Runtime configuration (timeouts, grace period).
        asset: Asset currently loading or loaded, None when unloaded.
        loaded_at: Timestamp of the last successful load.
        load_time_ms: Duration of the last load attempt.
        last_error: Reason of the last load or runtime failure.
    """

    def __init__(
        self, backend: NativeBackend, config: Optional[RuntimeConfig] = None
    ) -> None:
        self.backend = backend
        self.config = config or RuntimeConfig()

        self.asset: Optional[ModelAsset] = None
        self.loaded_at: Optional[float] = None
        self.load_time_ms: Optional[int] = None
        self.last_error: Optional[str] = None
        self.last_error_at: Optional[float] = None

        self._state = RuntimeState.UNLOADED
        self._model_state: Any = None
        self._cond = threading.Condition()
        self._listeners: List[StateListener] = []

        # Incremented on every unload so stale generations can be told apart
        self._epoch = 0
        # session_id -> participant (exposes request_cancel() / terminate())
        self._generating: Dict[str, Any] = {}
        self._forced_terminations = 0

    # --- state inspection ---
    @property
    def state(self) -> RuntimeState:
        return self._state

    def is_ready(self) -> bool:
        return self._state == RuntimeState.READY

    @property
    def model_state(self) -> Any:
        """Opaque backend model state.

        Raises:
            RuntimeNotReady: If the handle is not READY.
        """
        with self._cond:
            if self._state != RuntimeState.READY:
                raise RuntimeNotReady(self._state.value)
            return self._model_state

    @property
    def active_generations(self) -> int:
        with self._cond:
            return len(self._generating)

    @property
    def forced_terminations(self) -> int:
        return self._forced_terminations

    def memory_bytes(self) -> int:
        """Backend estimate of native memory held by the loaded model."""
        with self._cond:
            model_state = self._model_state
        if model_state is None:
            return 0
        return self.backend.memory_bytes(model_state)

    def add_listener(self, listener: StateListener) -> None:
        """Register ``listener(handle, old_state, new_state)`` for transitions."""
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # --- lifecycle ---
    def load(self, asset: ModelAsset) -> "RuntimeHandle":
        """Load ``asset`` into the native runtime.

        Args:
            asset: Validated model asset.

        Returns:
            This handle, READY.

        Raises:
            LoadFailed: On incompatible ABI, insufficient memory, corrupt
                asset, backend failure, a sticky FAILED state, a different
                asset already loaded, or a concurrent load that failed or
                did not finish within ``load_timeout_ms``.
        """
        with self._cond:
            while True:
                state = self._state
                if state == RuntimeState.UNLOADED:
                    break
                if state == RuntimeState.READY:
                    if self.asset is not None and self.asset.checksum == asset.checksum:
                        return self
                    raise LoadFailed(
                        f"runtime already has {self.asset.name if self.asset else 'a model'} "
                        "loaded; unload it first"
                    )
                if state == RuntimeState.FAILED:
                    raise LoadFailed(
                        f"runtime is in failed state ({self.last_error}); "
                        "unload before retrying"
                    )
                if state == RuntimeState.LOADING and self.config.fail_fast_concurrent_load:
                    raise LoadFailed("load already in progress")

                # LOADING or UNLOADING: wait for the transition to settle
                waiting_on_load = state == RuntimeState.LOADING
                settled = self._cond.wait_for(
                    lambda: self._state != state, timeout=self.config.load_timeout
                )
                if not settled:
                    raise LoadFailed(
                        f"timed out after {self.config.load_timeout_ms}ms waiting "
                        f"for runtime in state {state.value}"
                    )
                if waiting_on_load and self._state == RuntimeState.FAILED:
                    raise LoadFailed(self.last_error or "concurrent load failed")

            self.asset = asset
            self._set_state(RuntimeState.LOADING)

        self._notify(RuntimeState.UNLOADED, RuntimeState.LOADING)
        log.info("loading runtime %s with backend %s", asset.name, self.backend.name)

        started = time.time()
        try:
            model_state = self._native_load(asset)
        except LoadFailed as e:
            self._mark_failed(e.reason, started)
            raise

        with self._cond:
            self._model_state = model_state
            self.loaded_at = time.time()
            self.load_time_ms = int((self.loaded_at - started) * 1000)
            self._set_state(RuntimeState.READY)
        self._notify(RuntimeState.LOADING, RuntimeState.READY)
        log.info(
            "runtime ready %s (load_time_ms=%d mem_bytes=%d)",
            asset.name,
            self.load_time_ms,
            self.memory_bytes(),
        )
        return self

    def _native_load(self, asset: ModelAsset) -> Any:
        supported = self.backend.supported_abis
        abi = current_abi()
        if supported is not None and abi not in supported:
            raise LoadFailed(
                f"incompatible ABI {abi} (backend supports {', '.join(supported)})"
            )

        if not os.path.isfile(asset.path):
            raise LoadFailed(f"corrupt asset: {AssetNotFound(asset.path)}")
        size = os.path.getsize(asset.path)
        if size != asset.size_bytes:
            raise LoadFailed(
                f"corrupt asset: size changed since resolve ({asset.size_bytes} -> {size})"
            )
        if self.config.verify_checksum_on_load:
            checksum = compute_checksum(asset.path)
            if checksum != asset.checksum:
                raise LoadFailed("corrupt asset: checksum mismatch")

        try:
            return self.backend.native_load(asset)
        except LoadFailed:
            raise
        except AssetCorrupt as e:
            raise LoadFailed(f"corrupt asset: {e.detail}") from e
        except Exception as e:
            log.exception("native load failed for %s", asset.name)
            if is_out_of_memory(e):
                raise LoadFailed("insufficient memory") from e
            raise LoadFailed(repr(e)[:200]) from e

    def _mark_failed(self, reason: str, started: float) -> None:
        with self._cond:
            old = self._state
            self.last_error = reason
            self.last_error_at = time.time()
            self.load_time_ms = int((self.last_error_at - started) * 1000)
            self._set_state(RuntimeState.FAILED)
        self._notify(old, RuntimeState.FAILED)
        log.error("runtime load failed: %s", reason)

    def fail(self, reason: str) -> None:
        """Move a READY handle to FAILED after a runtime error.

        In-flight generations are asked to cancel; listeners cancel every
        active session. Calling this in any other state does nothing.
        """
        with self._cond:
            if self._state != RuntimeState.READY:
                return
            self.last_error = reason
            self.last_error_at = time.time()
            self._set_state(RuntimeState.FAILED)
            participants = list(self._generating.values())
        for participant in participants:
            participant.request_cancel()
        self._notify(RuntimeState.READY, RuntimeState.FAILED)
        log.error("runtime failed: %s", reason)

    def unload(self) -> None:
        """Release the native runtime.

        Valid from READY or FAILED; a no-op when already UNLOADED. A load in
        flight is waited for first. In-flight generations get
        ``generation_grace_ms`` to reach a cancellation checkpoint before
        they are terminated.
        """
        with self._cond:
            if self._state == RuntimeState.LOADING:
                self._cond.wait_for(
                    lambda: self._state != RuntimeState.LOADING,
                    timeout=self.config.load_timeout,
                )
            if self._state == RuntimeState.UNLOADING:
                self._cond.wait_for(lambda: self._state != RuntimeState.UNLOADING)
                return
            if self._state == RuntimeState.UNLOADED:
                return
            if self._state == RuntimeState.LOADING:
                raise LoadFailed("cannot unload: load still in progress")

            old = self._state
            self._set_state(RuntimeState.UNLOADING)
            participants = list(self._generating.values())

        self._notify(old, RuntimeState.UNLOADING)
        for participant in participants:
            participant.request_cancel()

        with self._cond:
            drained = self._cond.wait_for(
                lambda: not self._generating, timeout=self.config.generation_grace
            )
            stragglers = list(self._generating.values())
            if not drained:
                self._generating.clear()
                self._forced_terminations += len(stragglers)
            self._epoch += 1
            model_state = self._model_state
            self._model_state = None

        if stragglers:
            log.warning(
                "grace period of %dms expired; terminating %d generation(s)",
                self.config.generation_grace_ms,
                len(stragglers),
            )
            for participant in stragglers:
                participant.terminate()

        try:
            if model_state is not None:
                self.backend.native_unload(model_state)
        finally:
            with self._cond:
                name = self.asset.name if self.asset else None
                self.asset = None
                self.loaded_at = None
                self._set_state(RuntimeState.UNLOADED)
            self._notify(RuntimeState.UNLOADING, RuntimeState.UNLOADED)
            log.info("runtime unloaded %s", name)

    # --- generation bracket ---
    def begin_generation(self, participant: Any) -> Tuple[int, Any]:
        """Register a generation.

        Returns:
            ``(epoch, model_state)``; the epoch is handed back to
            ``end_generation``.

        Raises:
            RuntimeNotReady: If the handle is not READY.
        """
        with self._cond:
            if self._state != RuntimeState.READY:
                raise RuntimeNotReady(self._state.value)
            self._generating[participant.session_id] = participant
            return self._epoch, self._model_state

    def end_generation(self, participant: Any, epoch: int) -> None:
        """Unregister a generation. Stale epochs (already terminated) are ignored."""
        with self._cond:
            if epoch != self._epoch:
                return
            if self._generating.pop(participant.session_id, None) is not None:
                self._cond.notify_all()

    def is_current(self, epoch: int) -> bool:
        """True while the runtime a generation started on is still loaded."""
        return epoch == self._epoch and self._state in (
            RuntimeState.READY,
            RuntimeState.UNLOADING,
            RuntimeState.FAILED,
        )

    # --- internals ---
    def _set_state(self, state: RuntimeState) -> None:
        # Caller holds self._cond
        self._state = state
        self._cond.notify_all()

    def _notify(self, old: RuntimeState, new: RuntimeState) -> None:
        for listener in list(self._listeners):
            listener(self, old, new)

    def __repr__(self) -> str:
        return (
            f"RuntimeHandle(state={self._state.value}, "
            f"asset={self.asset.name if self.asset else None}, "
            f"backend={self.backend.name})"
        )


class RuntimeRegistry:
    """Process-wide owner of the single live RuntimeHandle.

    Only one model is loaded per process. Loading through the registry while
    a different runtime is live fails until that runtime is unloaded.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: Optional[RuntimeHandle] = None

    def current(self) -> Optional[RuntimeHandle]:
        return self._handle

    def acquire(
        self, backend: NativeBackend, config: Optional[RuntimeConfig] = None
    ) -> RuntimeHandle:
        """Return the live handle for ``backend``, creating it if none is live.

        Raises:
            LoadFailed: If a runtime for another backend is still live.
        """
        with self._lock:
            handle = self._handle
            if handle is not None and handle.backend is not backend:
                if handle.state != RuntimeState.UNLOADED:
                    raise LoadFailed(
                        f"another runtime is live ({handle!r}); unload it first"
                    )
                handle = None
            if handle is None:
                handle = RuntimeHandle(backend, config)
                self._handle = handle
            return handle

    def load(
        self,
        asset: ModelAsset,
        backend: NativeBackend,
        config: Optional[RuntimeConfig] = None,
    ) -> RuntimeHandle:
        """Load ``asset`` into the process runtime (see ``RuntimeHandle.load``)."""
        return self.acquire(backend, config).load(asset)

    def unload(self) -> None:
        """Unload the live runtime, if any."""
        handle = self._handle
        if handle is not None:
            handle.unload()

    def reset(self) -> None:
        """Unload and forget the live runtime."""
        self.unload()
        with self._lock:
            self._handle = None


# Singleton instance
REGISTRY = RuntimeRegistry()

__all__ = ["REGISTRY", "RuntimeHandle", "RuntimeRegistry", "RuntimeState"]
