"""
llm_runtime_lite: An in-process loader and session manager for quantized LLMs.

This package locates, verifies and loads a GGUF model once per process and
shares it between callers:
- Asset resolution with size, header and checksum validation
- A load/unload state machine that owns the single live runtime
- A bounded, FIFO-fair session pool
- Lazy token streams with cooperative cancellation and stop sequences
- A health monitor that evicts idle sessions under memory pressure
"""

__version__ = "0.1.0"
__author__ = "llm-runtime-lite contributors"

from llm_runtime_lite.config import RuntimeConfig
from llm_runtime_lite.errors import (
    AssetCorrupt,
    AssetNotFound,
    GenerationTimeout,
    InvalidRequest,
    LoadFailed,
    PoolExhausted,
    RuntimeErrorBase,
    RuntimeNotReady,
)
from llm_runtime_lite.assets import Manifest, ModelAsset, resolve
from llm_runtime_lite.runtime import (
    REGISTRY,
    NativeBackend,
    RuntimeHandle,
    RuntimeState,
    TransformersGGUFBackend,
)
from llm_runtime_lite.sampling import SamplingParams
from llm_runtime_lite.sessions import Session, SessionPool, SessionState
from llm_runtime_lite.pipeline import (
    GenerationConfig,
    InferencePipeline,
    InferenceRequest,
    TokenStream,
)
from llm_runtime_lite.monitor import HealthMonitor, HealthSnapshot, Recommendation
from llm_runtime_lite.core import InferenceEngine
from llm_runtime_lite.utils import configure_logging

__all__ = [
    "AssetCorrupt",
    "AssetNotFound",
    "GenerationConfig",
    "GenerationTimeout",
    "HealthMonitor",
    "HealthSnapshot",
    "InferenceEngine",
    "InferencePipeline",
    "InferenceRequest",
    "InvalidRequest",
    "LoadFailed",
    "Manifest",
    "ModelAsset",
    "NativeBackend",
    "PoolExhausted",
    "REGISTRY",
    "Recommendation",
    "RuntimeConfig",
    "RuntimeErrorBase",
    "RuntimeHandle",
    "RuntimeNotReady",
    "RuntimeState",
    "SamplingParams",
    "Session",
    "SessionPool",
    "SessionState",
    "TokenStream",
    "TransformersGGUFBackend",
    "configure_logging",
    "resolve",
]
