"""
Inference request pipeline.

Provides:
- InferenceRequest / GenerationConfig: What to generate and how
- TokenStream: Lazy, single-use stream of generated token ids
- InferencePipeline: generate() and cooperative cancel()
- PromptFormatter / TextPipeline: Prompt templating and text streaming
"""

from llm_runtime_lite.pipeline.request import GenerationConfig, InferenceRequest
from llm_runtime_lite.pipeline.generator import InferencePipeline, TokenStream
from llm_runtime_lite.pipeline.text import PromptFormatter, TextPipeline

__all__ = [
    "GenerationConfig",
    "InferenceRequest",
    "InferencePipeline",
    "TokenStream",
    "PromptFormatter",
    "TextPipeline",
]
