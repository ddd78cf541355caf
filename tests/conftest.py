"""
Pytest configuration and shared fixtures for llm-runtime-lite tests.

This module provides reusable fixtures for testing, including:
- A scripted, torch-backed fake native backend
- GGUF-like model files written to tmp_path
- Runtime configuration, handle, pool and pipeline wiring
"""

import os
from pathlib import Path
from typing import Callable

import pytest

from llm_runtime_lite.assets.resolver import ModelAsset, resolve
from llm_runtime_lite.config import RuntimeConfig
from llm_runtime_lite.pipeline.generator import InferencePipeline
from llm_runtime_lite.runtime.handle import RuntimeHandle, RuntimeRegistry
from llm_runtime_lite.sessions.pool import SessionPool
from tests.helpers import ScriptedBackend, write_gguf


# Force CPU-only testing by disabling CUDA
os.environ["CUDA_VISIBLE_DEVICES"] = ""


@pytest.fixture
def make_gguf(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing GGUF-like files into tmp_path.

    Example:
        def test_resolve(make_gguf):
            path = make_gguf("model-Q4_K_M.gguf")
    """

    def _make(name: str = "tiny-model-Q4_K_M.gguf", **kwargs) -> Path:
        return write_gguf(tmp_path / name, **kwargs)

    return _make


@pytest.fixture
def gguf_file(make_gguf) -> Path:
    """A valid GGUF-like model file."""
    return make_gguf()


@pytest.fixture
def asset(gguf_file: Path) -> ModelAsset:
    """Resolved asset for gguf_file."""
    return resolve(gguf_file)


@pytest.fixture
def config() -> RuntimeConfig:
    """Small timeouts so blocking paths finish quickly."""
    return RuntimeConfig(
        max_concurrent_sessions=2,
        load_timeout_ms=5_000,
        lease_timeout_ms=1_000,
        generation_grace_ms=500,
    )


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def registry() -> RuntimeRegistry:
    """A fresh registry so tests never share the process singleton."""
    reg = RuntimeRegistry()
    yield reg
    reg.reset()


@pytest.fixture
def handle(backend: ScriptedBackend, config: RuntimeConfig) -> RuntimeHandle:
    h = RuntimeHandle(backend, config)
    yield h
    h.unload()


@pytest.fixture
def ready_handle(handle: RuntimeHandle, asset: ModelAsset) -> RuntimeHandle:
    """Handle loaded with asset."""
    return handle.load(asset)


@pytest.fixture
def pool(ready_handle: RuntimeHandle, config: RuntimeConfig) -> SessionPool:
    p = SessionPool(ready_handle, config)
    yield p
    p.close()


@pytest.fixture
def pipeline(ready_handle: RuntimeHandle, pool: SessionPool) -> InferencePipeline:
    return InferencePipeline(ready_handle, pool)




@pytest.fixture
def make_pipeline(asset: ModelAsset, config: RuntimeConfig):
    """Factory wiring a loaded pipeline around a custom ScriptedBackend.

    Example:
        def test_script(make_pipeline):
            pipeline, backend = make_pipeline(script=[5, 6])
            session = pipeline.pool.lease()
    """
    created = []

    def _make(**backend_kwargs):
        backend = ScriptedBackend(**backend_kwargs)
        handle = RuntimeHandle(backend, config).load(asset)
        pool = SessionPool(handle, config)
        created.append((handle, pool))
        return InferencePipeline(handle, pool), backend

    yield _make

    for handle, pool in created:
        pool.close()
        handle.unload()
