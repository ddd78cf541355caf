"""Abstract base class for native inference backends."""

from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence, Tuple

from llm_runtime_lite.assets.resolver import ModelAsset
from llm_runtime_lite.sampling.sampling import SamplingParams


class NativeBackend(ABC):
    """Opaque native inference capability.

    A backend turns a validated asset into a loaded model state and drives
    token-by-token decoding on it. The runtime never looks inside the states
    it gets back; it only hands them to the other backend operations:

    - ``native_load``: memory-map or read the model file
    - ``native_begin``: prefill a prompt, returning a per-generation state
    - ``native_generate_next``: decode one token, or None at end of generation
    - ``native_unload``: release everything ``native_load`` acquired

    ``native_generate_next`` is called from the consumer's thread, possibly
    from several sessions at once, so per-generation data must live in the
    state returned by ``native_begin``.
    """

    #: ABIs the backend's native code is built for; None means any
    supported_abis: Optional[Tuple[str, ...]] = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the backend name.

        Returns:
            Backend name string
        """
        pass

    @abstractmethod
    def native_load(self, asset: ModelAsset) -> Any:
        """Load the model described by ``asset``.

        Args:
            asset: Validated model asset

        Returns:
            Opaque model state
        """
        pass

    @abstractmethod
    def native_begin(
        self,
        model_state: Any,
        prompt_tokens: Sequence[int],
        sampling: SamplingParams,
    ) -> Any:
        """Prefill ``prompt_tokens`` and prepare to decode.

        Args:
            model_state: State returned by ``native_load``
            prompt_tokens: Prompt token ids
            sampling: Sampling parameters for this generation

        Returns:
            Opaque generation state
        """
        pass

    @abstractmethod
    def native_generate_next(self, state: Any) -> Optional[int]:
        """Decode one token.

        Args:
            state: Generation state returned by ``native_begin``

        Returns:
            The next token id, or None when the model emitted end-of-generation
        """
        pass

    @abstractmethod
    def native_unload(self, model_state: Any) -> None:
        """Release the native resources held by ``model_state``."""
        pass

    def native_end(self, state: Any) -> None:
        """Release a generation state. Backends without per-generation resources
        need not override this."""

    def memory_bytes(self, model_state: Any) -> int:
        """Estimated native memory held by ``model_state`` (0 if unknown)."""
        return 0
