"""
Core inference engine module.

Provides the application-facing API:
- InferenceEngine: Resolve, load, lease, generate, monitor and dispose
"""

from llm_runtime_lite.core.inference_engine import InferenceEngine

__all__ = ["InferenceEngine"]
