"""
Runtime configuration.

This module defines the RuntimeConfig class which stores the tunables of the
loader and session manager: session concurrency, load/lease timeouts, memory
pressure threshold, and the grace period granted to in-flight generations
when the runtime is unloaded.
"""

import logging
import os
from typing import Any, Dict, Mapping, Optional

log = logging.getLogger("llm_runtime_lite.config")

ENV_PREFIX = "LLM_RUNTIME_"

# camelCase option names accepted by from_dict()
_CAMEL_CASE_KEYS = {
    "maxConcurrentSessions": "max_concurrent_sessions",
    "loadTimeoutMs": "load_timeout_ms",
    "leaseTimeoutMs": "lease_timeout_ms",
    "memoryPressureThresholdBytes": "memory_pressure_threshold_bytes",
    "generationGraceMs": "generation_grace_ms",
    "failFastConcurrentLoad": "fail_fast_concurrent_load",
    "pressureSustainSamples": "pressure_sustain_samples",
    "autoUnloadOnPressure": "auto_unload_on_pressure",
    "verifyChecksumOnLoad": "verify_checksum_on_load",
    "logLevel": "log_level",
}

_INT_FIELDS = (
    "max_concurrent_sessions",
    "load_timeout_ms",
    "lease_timeout_ms",
    "memory_pressure_threshold_bytes",
    "generation_grace_ms",
    "pressure_sustain_samples",
)
_BOOL_FIELDS = (
    "fail_fast_concurrent_load",
    "auto_unload_on_pressure",
    "verify_checksum_on_load",
)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


class RuntimeConfig:
    """Configuration for the model runtime and its session pool.

    Attributes:
        max_concurrent_sessions: Upper bound on simultaneously leased sessions.
        load_timeout_ms: How long a concurrent ``load`` waits for an in-flight load.
        lease_timeout_ms: Default time a ``lease`` waits for a free slot.
        memory_pressure_threshold_bytes: Memory usage above which the health
            monitor considers the process under pressure.
        generation_grace_ms: Time granted to in-flight generations to reach a
            cancellation checkpoint before ``unload`` terminates them.
        fail_fast_concurrent_load: Fail a concurrent ``load`` immediately
            instead of waiting for the in-flight one.
        pressure_sustain_samples: Consecutive over-threshold observations that
            count as sustained pressure.
        auto_unload_on_pressure: Let the monitor unload the runtime itself when
            pressure persists and nothing is generating.
        verify_checksum_on_load: Re-hash the asset at load time so a file
            modified after resolve is caught before the backend sees it.
        log_level: Level name applied by ``configure_logging``.
    """

    def __init__(
        self,
        max_concurrent_sessions: int = 2,
        load_timeout_ms: int = 60_000,
        lease_timeout_ms: int = 30_000,
        memory_pressure_threshold_bytes: int = 3 * 1024**3,
        generation_grace_ms: int = 2_000,
        fail_fast_concurrent_load: bool = False,
        pressure_sustain_samples: int = 3,
        auto_unload_on_pressure: bool = False,
        verify_checksum_on_load: bool = True,
        log_level: str = "INFO",
        **kwargs: Any,
    ) -> None:
        """Initialize RuntimeConfig.

        Args:
            max_concurrent_sessions: Upper bound on simultaneously leased sessions.
            load_timeout_ms: Wait limit for a concurrent ``load``.
            lease_timeout_ms: Default wait limit for ``lease``.
            memory_pressure_threshold_bytes: Memory pressure threshold.
            generation_grace_ms: Drain grace period used by ``unload``.
            fail_fast_concurrent_load: Fail concurrent loads immediately.
            pressure_sustain_samples: Observations needed for sustained pressure.
            auto_unload_on_pressure: Allow the monitor to unload the runtime.
            verify_checksum_on_load: Re-hash the asset before handing it to the backend.
            log_level: Logging level name.
            **kwargs: Unknown options (logged and ignored).
        """
        self.max_concurrent_sessions = max_concurrent_sessions
        self.load_timeout_ms = load_timeout_ms
        self.lease_timeout_ms = lease_timeout_ms
        self.memory_pressure_threshold_bytes = memory_pressure_threshold_bytes
        self.generation_grace_ms = generation_grace_ms
        self.fail_fast_concurrent_load = fail_fast_concurrent_load
        self.pressure_sustain_samples = pressure_sustain_samples
        self.auto_unload_on_pressure = auto_unload_on_pressure
        self.verify_checksum_on_load = verify_checksum_on_load
        self.log_level = log_level.upper()

        if kwargs:
            log.warning("ignoring unknown runtime options: %s", sorted(kwargs))

        self._validate()

    def _validate(self) -> None:
        """Validate option values.

        Raises:
            ValueError: If an option is out of range.
        """
        if self.max_concurrent_sessions <= 0:
            raise ValueError(
                f"max_concurrent_sessions must be positive, got {self.max_concurrent_sessions}"
            )
        for name in ("load_timeout_ms", "lease_timeout_ms", "generation_grace_ms"):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")
        if self.memory_pressure_threshold_bytes <= 0:
            raise ValueError(
                "memory_pressure_threshold_bytes must be positive, "
                f"got {self.memory_pressure_threshold_bytes}"
            )
        if self.pressure_sustain_samples <= 0:
            raise ValueError(
                f"pressure_sustain_samples must be positive, got {self.pressure_sustain_samples}"
            )
        if logging.getLevelName(self.log_level) == f"Level {self.log_level}":
            raise ValueError(f"unknown log_level {self.log_level!r}")

    @property
    def load_timeout(self) -> float:
        return self.load_timeout_ms / 1000.0

    @property
    def lease_timeout(self) -> float:
        return self.lease_timeout_ms / 1000.0

    @property
    def generation_grace(self) -> float:
        return self.generation_grace_ms / 1000.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RuntimeConfig":
        """Build a configuration from a mapping.

        Both snake_case and the camelCase names used by application layers
        (``maxConcurrentSessions``, ``leaseTimeoutMs``, ...) are accepted.

        Args:
            data: Option mapping.

        Returns:
            RuntimeConfig instance.
        """
        options = {_CAMEL_CASE_KEYS.get(key, key): value for key, value in data.items()}
        return cls(**options)

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None
    ) -> "RuntimeConfig":
        """Build a configuration from ``LLM_RUNTIME_*`` environment variables.

        Invalid values are logged and replaced by the default.

        Args:
            environ: Mapping to read instead of ``os.environ``.

        Returns:
            RuntimeConfig instance.
        """
        environ = os.environ if environ is None else environ
        options: Dict[str, Any] = {}
        for name in _INT_FIELDS + _BOOL_FIELDS + ("log_level",):
            env_name = ENV_PREFIX + name.upper()
            raw = environ.get(env_name)
            if raw is None:
                continue
            try:
                if name in _INT_FIELDS:
                    options[name] = int(raw)
                elif name in _BOOL_FIELDS:
                    options[name] = _parse_bool(raw)
                else:
                    options[name] = raw
            except ValueError:
                log.warning("invalid %s value %r; using default", env_name, raw)
        return cls(**options)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a dictionary.

        Returns:
            Dictionary containing all configuration options.
        """
        return {
            "max_concurrent_sessions": self.max_concurrent_sessions,
            "load_timeout_ms": self.load_timeout_ms,
            "lease_timeout_ms": self.lease_timeout_ms,
            "memory_pressure_threshold_bytes": self.memory_pressure_threshold_bytes,
            "generation_grace_ms": self.generation_grace_ms,
            "fail_fast_concurrent_load": self.fail_fast_concurrent_load,
            "pressure_sustain_samples": self.pressure_sustain_samples,
            "auto_unload_on_pressure": self.auto_unload_on_pressure,
            "verify_checksum_on_load": self.verify_checksum_on_load,
            "log_level": self.log_level,
        }

    def __repr__(self) -> str:
        return (
            f"RuntimeConfig("
            f"max_concurrent_sessions={self.max_concurrent_sessions}, "
            f"load_timeout_ms={self.load_timeout_ms}, "
            f"lease_timeout_ms={self.lease_timeout_ms}, "
            f"memory_pressure_threshold_bytes={self.memory_pressure_threshold_bytes}, "
            f"generation_grace_ms={self.generation_grace_ms}"
            f")"
        )
