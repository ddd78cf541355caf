"""
InferenceEngine: the application-facing entry point.

Ties the pieces together in the order they are used: resolve an asset, load
it into the process runtime, lease sessions, generate, and watch health.
"""

import logging
import os
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from llm_runtime_lite.assets.resolver import Manifest, ModelAsset, resolve
from llm_runtime_lite.config import RuntimeConfig
from llm_runtime_lite.errors import RuntimeNotReady
from llm_runtime_lite.monitor.health import HealthMonitor, HealthSnapshot
from llm_runtime_lite.pipeline.generator import InferencePipeline, TokenStream
from llm_runtime_lite.pipeline.request import InferenceRequest
from llm_runtime_lite.pipeline.text import PromptFormatter, TextPipeline
from llm_runtime_lite.runtime.backend import NativeBackend
from llm_runtime_lite.runtime.handle import (
    REGISTRY,
    RuntimeHandle,
    RuntimeRegistry,
    RuntimeState,
)
from llm_runtime_lite.runtime.transformers_backend import TransformersGGUFBackend
from llm_runtime_lite.sampling.sampling import SamplingParams
from llm_runtime_lite.sessions.pool import SessionPool
from llm_runtime_lite.sessions.session import Session
from llm_runtime_lite.utils.device import (
    get_memory_stats,
    process_memory_bytes,
    query_device_capabilities,
)
from llm_runtime_lite.utils.logging import configure_logging

log = logging.getLogger("llm_runtime_lite.engine")


class InferenceEngine:
    """Loads one model per process and serves generations on leased sessions.

    Example:
        >>> with InferenceEngine() as engine:
        ...     engine.load_runtime(engine.resolve_asset("models/qwen2.5-0.5b-q4_k_m.gguf"))
        ...     session = engine.lease_session()
        ...     print(engine.generate_text(session, "What is a GGUF file?"))
        ...     engine.release_session(session)
    """

    def __init__(
        self,
        backend: Optional[NativeBackend] = None,
        config: Optional[RuntimeConfig] = None,
        registry: Optional[RuntimeRegistry] = None,
        manifest: Optional[Manifest] = None,
        tokenizer=None,
        formatter: Optional[PromptFormatter] = None,
        memory_probe: Callable[[], int] = process_memory_bytes,
        setup_logging: bool = False,
    ) -> None:
        """Initialize inference engine.

        Args:
            backend: Native backend; defaults to TransformersGGUFBackend
            config: Runtime configuration; defaults to RuntimeConfig()
            registry: Process runtime registry; defaults to the module singleton
            manifest: Expected checksums/sizes used by ``resolve_asset``
            tokenizer: Tokenizer for the text helpers; loaded from the GGUF
                file on first use when omitted
            formatter: Prompt template for the text helpers
            memory_probe: Memory probe handed to the health monitor
            setup_logging: Install a stream handler at ``config.log_level``
        """
        self.backend = backend or TransformersGGUFBackend()
        self.config = config or RuntimeConfig()
        self.registry = registry or REGISTRY
        self.manifest = manifest
        self.tokenizer = tokenizer
        self.formatter = formatter
        self.memory_probe = memory_probe

        if setup_logging:
            configure_logging(self.config.log_level)

        self._lock = threading.RLock()
        self.handle: Optional[RuntimeHandle] = None
        self.pool: Optional[SessionPool] = None
        self.pipeline: Optional[InferencePipeline] = None
        self.monitor: Optional[HealthMonitor] = None
        self._text: Optional[TextPipeline] = None

    # --- assets & runtime ---
    def resolve_asset(
        self, path: str, expected_checksum: Optional[str] = None
    ) -> ModelAsset:
        """Locate and validate a model file (see ``assets.resolve``)."""
        return resolve(path, manifest=self.manifest, expected_checksum=expected_checksum)

    def load_runtime(self, asset: ModelAsset) -> RuntimeHandle:
        """Load ``asset`` into the process runtime and open the session pool.

        Raises:
            LoadFailed: If the load fails or another runtime is live
        """
        with self._lock:
            handle = self.registry.acquire(self.backend, self.config)
            if handle is not self.handle:
                self._detach()
                self.handle = handle
                self.monitor = HealthMonitor(
                    handle, config=self.config, memory_probe=self.memory_probe
                )
                handle.add_listener(self._on_runtime_transition)

        handle.load(asset)

        with self._lock:
            new_pool = None
            if self.pool is None:
                new_pool = self.pool = SessionPool(handle, self.config)
                self.pipeline = InferencePipeline(handle, self.pool)
                self._text = None
            monitor = self.monitor
        # The monitor lock is never taken while holding the engine lock
        if new_pool is not None and monitor is not None:
            monitor.attach_pool(new_pool)
        return handle

    def unload_runtime(self) -> None:
        """Unload the runtime; leased sessions are cancelled and closed."""
        with self._lock:
            handle = self.handle
        if handle is None:
            return
        handle.unload()
        self._close_pool()

    # --- sessions & generation ---
    def lease_session(self, timeout: Optional[float] = None) -> Session:
        """Lease a session (see ``SessionPool.lease``).

        Raises:
            RuntimeNotReady: If no runtime is loaded and READY
            PoolExhausted: If no slot frees up within ``timeout``
        """
        return self._require_pool().lease(timeout)

    def release_session(self, session: Session) -> None:
        pool = self.pool
        if pool is not None:
            pool.release(session)
        else:
            session.close("released")

    def generate(self, session: Session, request: InferenceRequest) -> TokenStream:
        """Start a generation (see ``InferencePipeline.generate``)."""
        pipeline = self.pipeline
        if pipeline is None:
            raise RuntimeNotReady(self._state().value)
        return pipeline.generate(session, request)

    def cancel(self, session: Session) -> None:
        """Cooperatively cancel the session's running generation."""
        pipeline = self.pipeline
        if pipeline is not None:
            pipeline.cancel(session)
        else:
            session.request_cancel()

    def generate_text(
        self,
        session: Session,
        prompt: str,
        max_tokens: int = 150,
        sampling: Optional[SamplingParams] = None,
        stop_strings: Optional[Sequence[str]] = None,
        timeout_ms: Optional[int] = None,
    ) -> str:
        """Generate a complete text response for a user prompt.

        The prompt is wrapped in the assistant template before tokenizing.
        """
        return self._text_pipeline().generate(
            session,
            prompt,
            max_tokens=max_tokens,
            sampling=sampling,
            stop_strings=stop_strings,
            timeout_ms=timeout_ms,
        )

    def stream_text(
        self,
        session: Session,
        prompt: str,
        max_tokens: int = 150,
        sampling: Optional[SamplingParams] = None,
        stop_strings: Optional[Sequence[str]] = None,
        timeout_ms: Optional[int] = None,
    ) -> Iterator[str]:
        """Like ``generate_text`` but yields text pieces as they are decoded."""
        return self._text_pipeline().stream(
            session,
            prompt,
            max_tokens=max_tokens,
            sampling=sampling,
            stop_strings=stop_strings,
            timeout_ms=timeout_ms,
        )

    # --- diagnostics ---
    def get_health(self) -> HealthSnapshot:
        """Observe memory pressure and report (see ``HealthMonitor.observe``)."""
        monitor = self.monitor
        if monitor is None:
            return HealthSnapshot(
                memory_used_bytes=int(self.memory_probe()),
                active_sessions=0,
                generating_sessions=0,
                runtime_state=RuntimeState.UNLOADED,
                last_failure=None,
            )
        return monitor.observe()

    def is_model_loaded(self) -> bool:
        return self._state() == RuntimeState.READY

    def get_model_info(self) -> Dict[str, Any]:
        """Describe the runtime and the model it holds.

        Returns:
            Dictionary with keys:
            - loaded: True when the runtime is READY
            - state: State of the runtime
            - model: File name of the loaded asset, or None
            - quantization: Quantization tag of the asset, or None
            - backend: Name of the native backend
            - load_time_ms: Duration of the last load attempt, or None
            - last_error: Reason of the last failure, or None
        """
        handle = self.handle
        asset = handle.asset if handle is not None else None
        return {
            "loaded": self.is_model_loaded(),
            "state": self._state().value,
            "model": asset.name if asset is not None else None,
            "quantization": asset.quantization if asset is not None else None,
            "backend": self.backend.name,
            "load_time_ms": handle.load_time_ms if handle is not None else None,
            "last_error": handle.last_error if handle is not None else None,
        }

    def list_available_models(self) -> List[Dict[str, Any]]:
        """List the models named in the manifest, sorted by file name.

        Returns:
            One dictionary per entry with ``name``, ``checksum``,
            ``size_bytes`` and ``quantization``; empty without a manifest.
        """
        if self.manifest is None:
            return []
        return [
            {
                "name": name,
                "checksum": entry.checksum,
                "size_bytes": entry.size_bytes,
                "quantization": entry.quantization,
            }
            for name, entry in sorted(self.manifest.entries.items())
        ]

    def get_device_capabilities(self) -> Dict[str, Any]:
        return query_device_capabilities().to_dict()

    def get_memory_stats(self) -> Dict[str, Any]:
        """Get process, system and runtime memory statistics.

        Returns:
            ``utils.device.get_memory_stats()`` plus:
            - model_bytes: Backend estimate for the loaded model
            - runtime_state: State of the runtime
            - sessions: Session pool statistics (empty when unloaded)
        """
        stats: Dict[str, Any] = dict(get_memory_stats())
        handle = self.handle
        stats["model_bytes"] = handle.memory_bytes() if handle is not None else 0
        stats["runtime_state"] = self._state().value
        stats["sessions"] = self.pool.get_stats() if self.pool is not None else {}
        return stats

    # --- teardown ---
    def dispose(self) -> None:
        """Unload the runtime and release everything this engine holds."""
        self.unload_runtime()
        with self._lock:
            handle = self.handle
            self._detach()
            if handle is not None and self.registry.current() is handle:
                self.registry.reset()
        log.info("engine disposed")

    def __enter__(self) -> "InferenceEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    # --- internals ---
    def _state(self) -> RuntimeState:
        handle = self.handle
        return handle.state if handle is not None else RuntimeState.UNLOADED

    def _require_pool(self) -> SessionPool:
        pool = self.pool
        if pool is None:
            raise RuntimeNotReady(self._state().value)
        return pool

    def _text_pipeline(self) -> TextPipeline:
        with self._lock:
            pipeline = self.pipeline
            if pipeline is None:
                raise RuntimeNotReady(self._state().value)
            if self._text is None or self._text.pipeline is not pipeline:
                if self.tokenizer is None:
                    directory, file_name = os.path.split(self.handle.asset.path)
                    self._text = TextPipeline.from_pretrained(
                        pipeline, directory, gguf_file=file_name, formatter=self.formatter
                    )
                    self.tokenizer = self._text.tokenizer
                else:
                    self._text = TextPipeline(pipeline, self.tokenizer, self.formatter)
            return self._text

    def _close_pool(self) -> None:
        with self._lock:
            pool = self.pool
            self.pool = None
            self.pipeline = None
            self._text = None
        if pool is not None:
            pool.close()

    def _detach(self) -> None:
        # Caller holds self._lock
        self._close_pool()
        if self.monitor is not None:
            self.monitor.close()
            self.monitor = None
        if self.handle is not None:
            self.handle.remove_listener(self._on_runtime_transition)
            self.handle = None

    def _on_runtime_transition(
        self, handle: RuntimeHandle, old: RuntimeState, new: RuntimeState
    ) -> None:
        # An unload not driven by this engine (e.g. the monitor's auto-unload)
        if new == RuntimeState.UNLOADED:
            self._close_pool()
