"""
NativeBackend that runs GGUF models through transformers and torch.

transformers dequantizes the GGUF tensors into a regular torch model
(``from_pretrained(..., gguf_file=...)``). Decoding is one forward pass per
token with the KV cache carried in the generation state, and the next token
is drawn with ``sampling.sample``.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Set, Tuple

import torch
from transformers import AutoModelForCausalLM

from llm_runtime_lite.assets.resolver import ModelAsset
from llm_runtime_lite.runtime.backend import NativeBackend
from llm_runtime_lite.sampling.sampling import SamplingParams, make_generator, sample

log = logging.getLogger("llm_runtime_lite.runtime")


@dataclass
class TransformersModelState:
    """A loaded causal LM and what decoding needs to know about it."""
    model: Any
    device: str
    eos_token_ids: Set[int] = field(default_factory=set)


@dataclass
class TransformersGenerationState:
    """Per-generation decode state (KV cache, sampling, history)."""
    model_state: TransformersModelState
    sampling: SamplingParams
    past_key_values: Any = None
    next_logits: Optional[torch.Tensor] = None
    pending_token: Optional[int] = None
    history: List[int] = field(default_factory=list)
    generator: Optional[torch.Generator] = None
    finished: bool = False


def _eos_ids(model) -> Set[int]:
    ids: Set[int] = set()
    for config in (getattr(model, "generation_config", None), model.config):
        eos = getattr(config, "eos_token_id", None) if config is not None else None
        if eos is None:
            continue
        if isinstance(eos, int):
            ids.add(eos)
        else:
            ids.update(int(i) for i in eos)
    return ids


class TransformersGGUFBackend(NativeBackend):
    """Loads ``.gguf`` assets with transformers and decodes with torch."""

    def __init__(
        self,
        device: str = "cpu",
        torch_dtype: torch.dtype = torch.float32,
        supported_abis: Optional[Tuple[str, ...]] = None,
    ) -> None:
        """Initialize TransformersGGUFBackend.

        Args:
            device: Device to run inference on ("cpu" or "cuda")
            torch_dtype: dtype the GGUF weights are dequantized to
            supported_abis: Restrict loading to these ABIs (None allows any)
        """
        self.device = device
        self.torch_dtype = torch_dtype
        self.supported_abis = supported_abis

    @property
    def name(self) -> str:
        return "transformers-gguf"

    def native_load(self, asset: ModelAsset) -> TransformersModelState:
        directory, file_name = os.path.split(asset.path)
        log.debug("from_pretrained(%s, gguf_file=%s)", directory, file_name)
        model = AutoModelForCausalLM.from_pretrained(
            directory, gguf_file=file_name, dtype=self.torch_dtype
        )
        model.to(self.device)
        model.eval()
        return TransformersModelState(
            model=model, device=self.device, eos_token_ids=_eos_ids(model)
        )

    def native_begin(
        self,
        model_state: TransformersModelState,
        prompt_tokens: Sequence[int],
        sampling: SamplingParams,
    ) -> TransformersGenerationState:
        input_ids = torch.tensor([list(prompt_tokens)], dtype=torch.long, device=model_state.device)
        with torch.no_grad():
            outputs = model_state.model(input_ids=input_ids, use_cache=True)
        return TransformersGenerationState(
            model_state=model_state,
            sampling=sampling,
            past_key_values=outputs.past_key_values,
            next_logits=outputs.logits[0, -1, :],
            history=list(prompt_tokens),
            generator=make_generator(sampling.seed),
        )

    def native_generate_next(self, state: TransformersGenerationState) -> Optional[int]:
        if state.finished:
            return None

        # The previous token is fed lazily so it reaches the consumer first
        if state.pending_token is not None:
            input_ids = torch.tensor(
                [[state.pending_token]], dtype=torch.long, device=state.model_state.device
            )
            with torch.no_grad():
                outputs = state.model_state.model(
                    input_ids=input_ids,
                    past_key_values=state.past_key_values,
                    use_cache=True,
                )
            state.past_key_values = outputs.past_key_values
            state.next_logits = outputs.logits[0, -1, :]
            state.pending_token = None

        token = sample(
            state.next_logits.cpu(),
            state.sampling,
            previous_tokens=state.history,
            generator=state.generator,
        )
        if token in state.model_state.eos_token_ids:
            state.finished = True
            return None

        state.history.append(token)
        state.pending_token = token
        return token

    def native_end(self, state: TransformersGenerationState) -> None:
        state.past_key_values = None
        state.next_logits = None

    def native_unload(self, model_state: TransformersModelState) -> None:
        model_state.model = None
        if model_state.device.startswith("cuda") and torch.cuda.is_available():
            torch.cuda.empty_cache()

    def memory_bytes(self, model_state: TransformersModelState) -> int:
        if model_state.model is None:
            return 0
        return sum(p.numel() * p.element_size() for p in model_state.model.parameters())
