"""
Text layer on top of the token pipeline.

PromptFormatter applies the assistant prompt template; TextPipeline wraps a
transformers tokenizer to turn user text into an InferenceRequest and the
resulting token stream back into text pieces.
"""

import logging
from typing import Iterator, List, Optional, Sequence

from transformers import AutoTokenizer

from llm_runtime_lite.errors import InvalidRequest
from llm_runtime_lite.pipeline.generator import InferencePipeline, TokenStream
from llm_runtime_lite.pipeline.request import GenerationConfig, InferenceRequest
from llm_runtime_lite.sampling.sampling import SamplingParams
from llm_runtime_lite.sessions.session import Session

log = logging.getLogger("llm_runtime_lite.pipeline")

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. "
    "Answer the user's question completely and accurately."
)


class PromptFormatter:
    """Formats a user message into a single-turn assistant prompt.

    Long prompts are kept small for constrained devices: when the formatted
    prompt exceeds ``max_prompt_chars``, the user text is cut to
    ``truncate_user_chars`` characters followed by ``...``.
    """

    def __init__(
        self,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        max_prompt_chars: int = 300,
        truncate_user_chars: int = 200,
    ) -> None:
        if truncate_user_chars <= 0:
            raise ValueError(
                f"truncate_user_chars must be positive, got {truncate_user_chars}"
            )
        self.system_prompt = system_prompt
        self.max_prompt_chars = max_prompt_chars
        self.truncate_user_chars = truncate_user_chars

    @property
    def stop_strings(self) -> List[str]:
        """Strings that mark the model starting a new user turn."""
        return ["\n\nUser:"]

    def _render(self, user_text: str) -> str:
        return f"{self.system_prompt}\n\nUser: {user_text}\n\nAssistant:"

    def format(self, user_text: str) -> str:
        prompt = self._render(user_text)
        if len(prompt) > self.max_prompt_chars and len(user_text) > self.truncate_user_chars:
            prompt = self._render(user_text[: self.truncate_user_chars] + "...")
        return prompt


class TextPipeline:
    """Text-in, text-out generation over an InferencePipeline.

    Example:
        >>> text = TextPipeline(pipeline, tokenizer)
        >>> for piece in text.stream(session, "What is GGUF?"):
        ...     print(piece, end="")
    """

    def __init__(
        self,
        pipeline: InferencePipeline,
        tokenizer,
        formatter: Optional[PromptFormatter] = None,
    ) -> None:
        """Initialize TextPipeline.

        Args:
            pipeline: Token pipeline the requests are run on
            tokenizer: transformers tokenizer (``encode`` / ``decode``)
            formatter: Prompt template; defaults to PromptFormatter()
        """
        self.pipeline = pipeline
        self.tokenizer = tokenizer
        self.formatter = formatter or PromptFormatter()

    @classmethod
    def from_pretrained(
        cls,
        pipeline: InferencePipeline,
        model_name_or_path: str,
        gguf_file: Optional[str] = None,
        formatter: Optional[PromptFormatter] = None,
    ) -> "TextPipeline":
        """Load the tokenizer with ``AutoTokenizer.from_pretrained``.

        Args:
            pipeline: Token pipeline the requests are run on
            model_name_or_path: HuggingFace model name or local directory
            gguf_file: GGUF file inside ``model_name_or_path`` to read the
                vocabulary from
            formatter: Prompt template
        """
        kwargs = {"gguf_file": gguf_file} if gguf_file else {}
        tokenizer = AutoTokenizer.from_pretrained(model_name_or_path, **kwargs)
        return cls(pipeline, tokenizer, formatter)

    def tokenize(self, text: str) -> List[int]:
        """Tokenize input text.

        Raises:
            InvalidRequest: If text is empty or produces no tokens
        """
        if not text or not text.strip():
            raise InvalidRequest("prompt is empty")
        tokens = list(self.tokenizer.encode(text))
        if not tokens:
            raise InvalidRequest("prompt produced no tokens")
        return tokens

    def detokenize(self, tokens: Sequence[int]) -> str:
        return self.tokenizer.decode(list(tokens), skip_special_tokens=True)

    def encode_stop_strings(self, stop_strings: Sequence[str]) -> List[List[int]]:
        """Encode stop strings as token-id sequences (no special tokens)."""
        sequences = []
        for stop in stop_strings:
            if not stop:
                continue
            ids = list(self.tokenizer.encode(stop, add_special_tokens=False))
            if ids:
                sequences.append(ids)
        return sequences

    def build_request(
        self,
        prompt: str,
        max_tokens: int = 150,
        sampling: Optional[SamplingParams] = None,
        stop_strings: Optional[Sequence[str]] = None,
        timeout_ms: Optional[int] = None,
        apply_template: bool = True,
    ) -> InferenceRequest:
        """Turn user text into an InferenceRequest.

        Args:
            prompt: User text
            max_tokens: Maximum number of tokens to generate
            sampling: Sampling parameters
            stop_strings: Stop strings; defaults to the formatter's
            timeout_ms: Wall-clock budget for the generation
            apply_template: Wrap the prompt in the assistant template

        Raises:
            InvalidRequest: If the prompt is empty
        """
        if not prompt or not prompt.strip():
            raise InvalidRequest("prompt is empty")
        text = self.formatter.format(prompt) if apply_template else prompt
        if stop_strings is None:
            stop_strings = self.formatter.stop_strings if apply_template else []

        config = GenerationConfig(
            max_tokens=max_tokens,
            stop_sequences=self.encode_stop_strings(stop_strings),
            sampling=sampling or SamplingParams(),
        )
        return InferenceRequest(
            prompt_tokens=self.tokenize(text), config=config, timeout_ms=timeout_ms
        )

    def stream(self, session: Session, prompt: str, **kwargs) -> Iterator[str]:
        """Generate text and yield it piece by piece.

        Keyword arguments are forwarded to ``build_request``.
        """
        request = self.build_request(prompt, **kwargs)
        return self.decode_stream(self.pipeline.generate(session, request))

    def decode_stream(self, stream: TokenStream) -> Iterator[str]:
        """Incrementally decode a token stream into text pieces.

        The full output is re-decoded after each token and only the new
        suffix is yielded; a suffix ending in a partial UTF-8 character is
        held back until the character is complete.
        """
        tokens: List[int] = []
        emitted = ""
        try:
            for token in stream:
                tokens.append(token)
                text = self.detokenize(tokens)
                if text.endswith("\ufffd"):
                    continue
                if len(text) > len(emitted) and text.startswith(emitted):
                    piece = text[len(emitted):]
                    emitted = text
                    yield piece
            text = self.detokenize(tokens)
            if text != emitted and text.startswith(emitted):
                yield text[len(emitted):]
        finally:
            stream.close()

    def generate(self, session: Session, prompt: str, **kwargs) -> str:
        """Generate a complete response for ``prompt``."""
        request = self.build_request(prompt, **kwargs)
        stream = self.pipeline.generate(session, request)
        tokens = stream.collect()
        log.debug(
            "generated %d tokens for session %s (finish_reason=%s)",
            len(tokens),
            session.session_id,
            stream.finish_reason,
        )
        return self.detokenize(tokens).strip()
