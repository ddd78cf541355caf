"""
Diagnostics and health monitoring.

Provides:
- HealthMonitor: Memory-pressure observation, idle-session eviction and
  reload recommendations
- HealthSnapshot: Result of one observation
- Recommendation: Action the monitor suggests to the caller
"""

from llm_runtime_lite.monitor.health import HealthMonitor, HealthSnapshot, Recommendation

__all__ = ["HealthMonitor", "HealthSnapshot", "Recommendation"]
