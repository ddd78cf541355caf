"""
InferenceRequest dataclass.
"""

import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from llm_runtime_lite.sampling.sampling import SamplingParams


@dataclass
class GenerationConfig:
    """How a generation runs.

    Attributes:
        max_tokens: Maximum number of tokens to generate (0 yields nothing)
        stop_sequences: Token-id sequences that end the generation; the
            matched sequence itself is not emitted
        sampling: Sampling parameters for each decode step
    """

    max_tokens: int = 150
    stop_sequences: List[List[int]] = field(default_factory=list)
    sampling: SamplingParams = field(default_factory=SamplingParams)


@dataclass
class InferenceRequest:
    """A single generation request.

    Attributes:
        prompt_tokens: Prompt token ids, in order
        config: Generation configuration
        timeout_ms: Wall-clock budget for the whole generation, or None
        request_id: Identifier used in logs
    """

    prompt_tokens: List[int]
    config: GenerationConfig = field(default_factory=GenerationConfig)
    timeout_ms: Optional[int] = None
    request_id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:8]}")
