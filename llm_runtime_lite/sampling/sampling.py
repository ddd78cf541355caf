"""
Sampling strategies for text generation.

This module implements the sampler chain applied to one session's logits at
each decode step (repetition penalty, temperature, top-k, top-p, then a draw
from the resulting distribution) and the stop-sequence check applied to the
generated token ids.
"""

import torch
from dataclasses import dataclass
from typing import List, Optional, Sequence


@dataclass
class SamplingParams:
    """Parameters for sampling strategies."""
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    repetition_penalty: float = 1.0
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.temperature < 0.0:
            raise ValueError(f"temperature must be non-negative, got {self.temperature}")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError(f"top_p must be in (0, 1], got {self.top_p}")
        if self.top_k < 0:
            raise ValueError(f"top_k must be non-negative, got {self.top_k}")
        if self.repetition_penalty <= 0.0:
            raise ValueError(
                f"repetition_penalty must be positive, got {self.repetition_penalty}"
            )


def make_generator(seed: Optional[int]) -> Optional[torch.Generator]:
    """Create a CPU generator for a seeded generation, or None when unseeded."""
    if seed is None:
        return None
    generator = torch.Generator()
    generator.manual_seed(seed)
    return generator


def greedy_sampling(logits: torch.Tensor) -> torch.Tensor:
    """Greedy sampling (argmax)."""
    return logits.argmax(dim=-1)


def temperature_scaling(logits: torch.Tensor, temperature: float) -> torch.Tensor:
    """Apply temperature scaling."""
    return logits / temperature


def top_k_filtering(logits: torch.Tensor, k: int) -> torch.Tensor:
    """Keep the k largest logits, masking the rest to -inf."""
    if k <= 0 or k >= logits.shape[-1]:
        return logits

    top_k_logits, top_k_indices = torch.topk(logits, k, dim=-1)
    mask = torch.full_like(logits, float("-inf"))
    mask.scatter_(-1, top_k_indices, top_k_logits)
    return mask


def top_p_filtering(logits: torch.Tensor, p: float) -> torch.Tensor:
    """Nucleus filtering: keep the smallest set of tokens whose mass reaches p."""
    if p >= 1.0:
        return logits

    sorted_logits, sorted_indices = torch.sort(logits, descending=True, dim=-1)
    cumulative_probs = torch.cumsum(torch.softmax(sorted_logits, dim=-1), dim=-1)

    # Shift right so the token crossing the threshold is kept; always keep one
    sorted_to_remove = cumulative_probs > p
    sorted_to_remove[..., 1:] = sorted_to_remove[..., :-1].clone()
    sorted_to_remove[..., 0] = False

    to_remove = sorted_to_remove.scatter(-1, sorted_indices, sorted_to_remove)
    return logits.masked_fill(to_remove, float("-inf"))


def apply_repetition_penalty(
    logits: torch.Tensor, previous_tokens: Sequence[int], penalty: float
) -> torch.Tensor:
    """Apply repetition penalty to tokens already seen in this generation."""
    if penalty == 1.0 or not previous_tokens:
        return logits

    logits = logits.clone()
    index = torch.tensor(sorted(set(previous_tokens)), dtype=torch.long)
    selected = logits[..., index]
    logits[..., index] = torch.where(selected > 0, selected / penalty, selected * penalty)
    return logits


def sample(
    logits: torch.Tensor,
    params: SamplingParams,
    previous_tokens: Sequence[int] = (),
    generator: Optional[torch.Generator] = None,
) -> int:
    """Sample the next token id from a ``[vocab_size]`` logits vector.

    Args:
        logits: Unnormalized scores for the next token.
        params: Sampling parameters.
        previous_tokens: Token ids seen so far (for the repetition penalty).
        generator: Optional seeded generator for reproducible draws.

    Returns:
        The sampled token id.
    """
    logits = logits.detach().float().reshape(-1)
    logits = apply_repetition_penalty(logits, previous_tokens, params.repetition_penalty)

    if params.temperature == 0.0:
        return int(greedy_sampling(logits))

    if params.temperature != 1.0:
        logits = temperature_scaling(logits, params.temperature)

    if params.top_k > 0:
        logits = top_k_filtering(logits, params.top_k)

    if params.top_p < 1.0:
        logits = top_p_filtering(logits, params.top_p)

    probs = torch.softmax(logits, dim=-1)
    return int(torch.multinomial(probs, num_samples=1, generator=generator))


class StopChecker:
    """Detects stop sequences at the tail of a generated token stream."""

    def __init__(self, stop_sequences: Optional[Sequence[Sequence[int]]] = None) -> None:
        self.stop_sequences: List[List[int]] = [
            list(seq) for seq in (stop_sequences or ()) if len(seq) > 0
        ]
        self.max_len = max((len(seq) for seq in self.stop_sequences), default=0)

    def match(self, tokens: Sequence[int]) -> int:
        """Return the length of the stop sequence ending ``tokens``, or 0."""
        for seq in self.stop_sequences:
            n = len(seq)
            if n <= len(tokens) and list(tokens[-n:]) == seq:
                return n
        return 0

    def partial_match(self, tokens: Sequence[int]) -> int:
        """Return how many tail tokens could still grow into a stop sequence.

        Those tokens must be held back from the consumer until the next token
        either completes the stop sequence or rules it out.
        """
        longest = 0
        for seq in self.stop_sequences:
            for k in range(min(len(seq) - 1, len(tokens)), longest, -1):
                if list(tokens[-k:]) == seq[:k]:
                    longest = k
                    break
        return longest

    def __bool__(self) -> bool:
        return bool(self.stop_sequences)
