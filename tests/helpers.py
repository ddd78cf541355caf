"""
Test helpers for llm-runtime-lite tests.

This module provides:
- write_gguf: GGUF-like model files with a valid header
- ScriptedBackend: Deterministic, torch-backed fake native backend
- run_in_threads: Run a callable concurrently and collect outcomes
- ByteTokenizer: Byte-level stand-in for a transformers tokenizer
"""

import struct
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import torch

from llm_runtime_lite.assets.resolver import ModelAsset
from llm_runtime_lite.runtime.backend import NativeBackend
from llm_runtime_lite.sampling.sampling import SamplingParams, sample


def write_gguf(path: Path, version: int = 3, payload: bytes = b"\x00" * 64) -> Path:
    """Write a file with a GGUF header followed by ``payload``."""
    path.write_bytes(b"GGUF" + struct.pack("<I", version) + payload)
    return path


class ScriptedBackend(NativeBackend):
    """Deterministic in-memory backend.

    Each generation counts upward from the last prompt token: the next token
    is the argmax of a one-hot logits vector over ``vocab_size`` ids. With
    ``script`` the tokens are taken from the script instead and the stream
    ends (``None``) when the script runs out.

    Args:
        vocab_size: Size of the fake vocabulary
        script: Fixed token sequence returned by every generation
        token_delay: Seconds slept inside each decode step
        load_delay: Seconds slept inside ``native_load``
        load_error: Exception raised by ``native_load``
        decode_error_at: Decode step index that raises RuntimeError
        supported_abis: ABIs the backend accepts (None allows any)
    """

    def __init__(
        self,
        vocab_size: int = 32,
        script: Optional[Sequence[Optional[int]]] = None,
        token_delay: float = 0.0,
        load_delay: float = 0.0,
        load_error: Optional[BaseException] = None,
        decode_error_at: Optional[int] = None,
        supported_abis=None,
    ) -> None:
        self.vocab_size = vocab_size
        self.script = list(script) if script is not None else None
        self.token_delay = token_delay
        self.load_delay = load_delay
        self.load_error = load_error
        self.decode_error_at = decode_error_at
        self.supported_abis = supported_abis

        self.load_calls = 0
        self.unload_calls = 0
        self.begin_calls = 0
        self.end_calls = 0
        self.decode_calls = 0
        self.load_started = threading.Event()
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "scripted"

    def native_load(self, asset: ModelAsset):
        with self._lock:
            self.load_calls += 1
        self.load_started.set()
        if self.load_delay:
            time.sleep(self.load_delay)
        if self.load_error is not None:
            raise self.load_error
        return {"asset": asset, "embedding": torch.eye(self.vocab_size)}

    def native_begin(self, model_state, prompt_tokens, sampling):
        with self._lock:
            self.begin_calls += 1
        return {
            "model": model_state,
            "last": int(prompt_tokens[-1]),
            "step": 0,
        }

    def native_generate_next(self, state) -> Optional[int]:
        with self._lock:
            self.decode_calls += 1
        step = state["step"]
        state["step"] += 1
        if self.token_delay:
            time.sleep(self.token_delay)
        if self.decode_error_at is not None and step == self.decode_error_at:
            raise RuntimeError("native decode error")

        if self.script is not None:
            if step >= len(self.script):
                return None
            return self.script[step]

        embedding = state["model"]["embedding"]
        logits = embedding[(state["last"] + 1) % self.vocab_size]
        token = sample(logits, SamplingParams(temperature=0.0))
        state["last"] = token
        return token

    def native_end(self, state) -> None:
        with self._lock:
            self.end_calls += 1

    def native_unload(self, model_state) -> None:
        with self._lock:
            self.unload_calls += 1

    def memory_bytes(self, model_state) -> int:
        embedding = model_state["embedding"]
        return embedding.numel() * embedding.element_size()


def run_in_threads(target: Callable[[], object], count: int) -> List[object]:
    """Run ``target`` in ``count`` threads; return results or raised exceptions."""
    results: List[object] = [None] * count

    def _run(i: int) -> None:
        try:
            results[i] = target()
        except Exception as e:
            results[i] = e

    threads = [threading.Thread(target=_run, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return results


class ByteTokenizer:
    """UTF-8 byte-level tokenizer with the ``encode``/``decode`` surface of a
    transformers tokenizer. Ids 0-255 are bytes, 256 is BOS."""

    bos_token_id = 256

    def encode(self, text: str, add_special_tokens: bool = True) -> List[int]:
        ids = list(text.encode("utf-8"))
        return [self.bos_token_id] + ids if add_special_tokens else ids

    def decode(self, ids: Sequence[int], skip_special_tokens: bool = False) -> str:
        data = bytes(i for i in ids if i < 256)
        text = data.decode("utf-8", errors="replace")
        if not skip_special_tokens and self.bos_token_id in ids:
            text = "<s>" + text
        return text
