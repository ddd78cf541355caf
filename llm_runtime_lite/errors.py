"""Error taxonomy for asset resolution, runtime loading, and sessions.

Every error raised across the public API derives from ``RuntimeErrorBase`` so
an application layer can catch the whole family at its boundary.
"""

from typing import Optional


class RuntimeErrorBase(Exception):
    """Base class for all llm_runtime_lite errors."""


class AssetNotFound(RuntimeErrorBase):
    """The model file does not exist or is not a regular file."""

    def __init__(self, path: str) -> None:
        super().__init__(f"model asset not found: {path}")
        self.path = path


class AssetCorrupt(RuntimeErrorBase):
    """The model file exists but fails size, header, or checksum validation."""

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"model asset corrupt: {path}: {detail}")
        self.path = path
        self.detail = detail


class LoadFailed(RuntimeErrorBase):
    """The native runtime could not load the asset."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"runtime load failed: {reason}")
        self.reason = reason


class RuntimeNotReady(RuntimeErrorBase):
    """An operation needs a Ready runtime but the handle is in another state."""

    def __init__(self, state: Optional[str] = None) -> None:
        message = "runtime is not ready"
        if state is not None:
            message += f" (state={state})"
        super().__init__(message)
        self.state = state


class PoolExhausted(RuntimeErrorBase):
    """No session slot became free before the lease timeout elapsed."""

    def __init__(self, max_sessions: int, timeout: float) -> None:
        super().__init__(
            f"no session slot free within {timeout:.3f}s (max_sessions={max_sessions})"
        )
        self.max_sessions = max_sessions
        self.timeout = timeout


class InvalidRequest(RuntimeErrorBase):
    """The inference request or the session it targets is not usable."""


class GenerationTimeout(RuntimeErrorBase):
    """A generation exceeded its deadline and was terminated."""

    def __init__(self, session_id: str, timeout_ms: int) -> None:
        super().__init__(
            f"generation on session {session_id} exceeded {timeout_ms}ms"
        )
        self.session_id = session_id
        self.timeout_ms = timeout_ms


def is_out_of_memory(e: BaseException) -> bool:
    """
    Check if an exception raised by a backend signals memory exhaustion.

    Args:
        e: Exception to inspect

    Returns:
        True for ``MemoryError`` and for CUDA/allocator out-of-memory errors

    Example:
        >>> try:
        ...     state = backend.native_load(asset)
        ... except Exception as e:
        ...     if is_out_of_memory(e):
        ...         raise LoadFailed("insufficient memory")
    """
    if isinstance(e, MemoryError):
        return True
    msg = repr(e).lower()
    return (
        "out of memory" in msg
        or "cuda oom" in msg
        or "failed to allocate" in msg
    )


__all__ = [
    "RuntimeErrorBase",
    "AssetNotFound",
    "AssetCorrupt",
    "LoadFailed",
    "RuntimeNotReady",
    "PoolExhausted",
    "InvalidRequest",
    "GenerationTimeout",
    "is_out_of_memory",
]
