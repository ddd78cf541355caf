"""
Token sampling strategies and generation control.

Provides:
- SamplingParams: Sampling configuration dataclass
- sample: Temperature / top-k / top-p sampling over a logits vector
- Penalties: Repetition penalty
- StopChecker: Stop sequence detection over generated token ids
"""

from llm_runtime_lite.sampling.sampling import (
    SamplingParams,
    StopChecker,
    make_generator,
    sample,
)

__all__ = ["SamplingParams", "StopChecker", "make_generator", "sample"]
