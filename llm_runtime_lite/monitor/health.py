"""
Health monitor for the runtime and its session pool.

Each ``observe()`` samples memory usage. Pressure counts as sustained once
usage stays above ``memory_pressure_threshold_bytes`` for
``pressure_sustain_samples`` consecutive observations; then every further
observation evicts the oldest idle session (by lease time). When no idle
session is left the monitor recommends a runtime reload, and unloads the
runtime itself only if ``auto_unload_on_pressure`` is set and nothing is
generating. Reloading is always left to the caller.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from llm_runtime_lite.config import RuntimeConfig
from llm_runtime_lite.runtime.handle import RuntimeHandle, RuntimeState
from llm_runtime_lite.sessions.pool import SessionPool
from llm_runtime_lite.utils.device import process_memory_bytes

log = logging.getLogger("llm_runtime_lite.monitor")


class Recommendation(Enum):
    """What the monitor did or suggests after an observation."""

    NONE = "none"
    EVICTED_IDLE = "evicted_idle"
    RELOAD_RUNTIME = "reload_runtime"


@dataclass
class HealthSnapshot:
    """Point-in-time health of the runtime and its sessions.

    Attributes:
        memory_used_bytes: Memory reported by the probe
        active_sessions: Leased sessions
        generating_sessions: Sessions producing tokens
        runtime_state: State of the RuntimeHandle
        last_failure: Reason of the most recent load or runtime failure
        evicted_sessions: Session ids evicted during this observation
        forced_cancellations: Sessions terminated without the caller asking,
            since the monitor was created
        recommendation: Action taken or suggested
        timestamp: When the observation was made
    """

    memory_used_bytes: int
    active_sessions: int
    generating_sessions: int
    runtime_state: RuntimeState
    last_failure: Optional[str]
    evicted_sessions: List[str] = field(default_factory=list)
    forced_cancellations: int = 0
    recommendation: Recommendation = Recommendation.NONE
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["runtime_state"] = self.runtime_state.value
        data["recommendation"] = self.recommendation.value
        return data


class HealthMonitor:
    """Observes memory pressure and keeps the runtime within budget.

    Example:
        >>> monitor = HealthMonitor(handle, pool)
        >>> snapshot = monitor.observe()
        >>> if snapshot.recommendation is Recommendation.RELOAD_RUNTIME:
        ...     engine.unload_runtime()
    """

    def __init__(
        self,
        handle: RuntimeHandle,
        pool: Optional[SessionPool] = None,
        config: Optional[RuntimeConfig] = None,
        memory_probe: Callable[[], int] = process_memory_bytes,
    ) -> None:
        """Initialize HealthMonitor.

        Args:
            handle: Runtime to watch
            pool: Session pool to evict from (may be attached later)
            config: Thresholds; defaults to the handle's configuration
            memory_probe: Returns the memory currently used, in bytes
        """
        self.handle = handle
        self.config = config or handle.config
        self.memory_probe = memory_probe

        self._lock = threading.Lock()
        self._pool: Optional[SessionPool] = None
        self._retired_cancellations = 0
        self._pressure_samples = 0
        self._last_failure: Optional[str] = handle.last_error
        self._last_failure_at: Optional[float] = handle.last_error_at

        self.attach_pool(pool)
        handle.add_listener(self._on_runtime_transition)

    @property
    def pool(self) -> Optional[SessionPool]:
        return self._pool

    @property
    def last_failure(self) -> Optional[str]:
        return self._last_failure

    @property
    def pressure_samples(self) -> int:
        """Consecutive observations above the memory threshold."""
        return self._pressure_samples

    def attach_pool(self, pool: Optional[SessionPool]) -> None:
        """Watch ``pool`` instead of the current one (e.g. after a reload)."""
        with self._lock:
            if self._pool is not None and self._pool is not pool:
                self._retired_cancellations += self._pool.get_stats()["forced_cancellations"]
            self._pool = pool

    def close(self) -> None:
        self.handle.remove_listener(self._on_runtime_transition)

    def forced_cancellations(self) -> int:
        """Sessions terminated after a runtime failure or an expired unload
        grace period, across every pool this monitor has watched."""
        count = self._retired_cancellations + self.handle.forced_terminations
        if self._pool is not None:
            count += self._pool.get_stats()["forced_cancellations"]
        return count

    def observe(self) -> HealthSnapshot:
        """Sample memory usage, act on sustained pressure, and report.

        The runtime is unloaded outside the monitor lock, since unload
        listeners may take locks of their own.

        Returns:
            HealthSnapshot for this observation.
        """
        unload = False
        with self._lock:
            used = int(self.memory_probe())
            threshold = self.config.memory_pressure_threshold_bytes
            if used > threshold:
                self._pressure_samples += 1
            else:
                self._pressure_samples = 0

            pool = self._pool
            evicted: List[str] = []
            recommendation = Recommendation.NONE

            if self._pressure_samples >= self.config.pressure_sustain_samples:
                victim = pool.evict_oldest_idle() if pool is not None else None
                if victim is not None:
                    evicted.append(victim)
                    recommendation = Recommendation.EVICTED_IDLE
                    log.warning(
                        "memory pressure (%d > %d bytes for %d samples); evicted %s",
                        used,
                        threshold,
                        self._pressure_samples,
                        victim,
                    )
                elif self.handle.state in (RuntimeState.READY, RuntimeState.FAILED):
                    recommendation = Recommendation.RELOAD_RUNTIME
                    log.warning(
                        "memory pressure persists with no idle session (%d bytes); "
                        "runtime reload recommended",
                        used,
                    )
                    if self.config.auto_unload_on_pressure and self._generating(pool) == 0:
                        unload = True
                        self._pressure_samples = 0
            elif self.handle.state == RuntimeState.FAILED:
                recommendation = Recommendation.RELOAD_RUNTIME

        if unload:
            log.warning("auto-unloading runtime under memory pressure")
            self.handle.unload()

        with self._lock:
            stats = self._pool.get_stats() if self._pool is not None else None
            snapshot = HealthSnapshot(
                memory_used_bytes=used,
                active_sessions=stats["active"] if stats else 0,
                generating_sessions=stats["generating"] if stats else 0,
                runtime_state=self.handle.state,
                last_failure=self._last_failure,
                evicted_sessions=evicted,
                forced_cancellations=self.forced_cancellations(),
                recommendation=recommendation,
            )

        log.debug("health: %s", snapshot)
        return snapshot

    @staticmethod
    def _generating(pool: Optional[SessionPool]) -> int:
        if pool is None:
            return 0
        return pool.get_stats()["generating"]

    def _on_runtime_transition(
        self, handle: RuntimeHandle, old: RuntimeState, new: RuntimeState
    ) -> None:
        if new == RuntimeState.FAILED:
            self._last_failure = handle.last_error
            self._last_failure_at = handle.last_error_at
