"""
Model runtime ownership.

Provides:
- NativeBackend: Interface to the opaque native inference capability
- TransformersGGUFBackend: GGUF models through transformers and torch
- RuntimeHandle: Load/unload state machine for one loaded model
- RuntimeRegistry / REGISTRY: Process-wide single-model ownership
"""

from llm_runtime_lite.runtime.backend import NativeBackend
from llm_runtime_lite.runtime.handle import (
    REGISTRY,
    RuntimeHandle,
    RuntimeRegistry,
    RuntimeState,
)
from llm_runtime_lite.runtime.transformers_backend import TransformersGGUFBackend

__all__ = [
    "NativeBackend",
    "REGISTRY",
    "RuntimeHandle",
    "RuntimeRegistry",
    "RuntimeState",
    "TransformersGGUFBackend",
]
