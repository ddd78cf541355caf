"""
Utilities and helper functions.

Provides:
- Logging configuration for the package logger
- Device capability and memory queries (CPU/GPU, ABI, RAM)
"""

from llm_runtime_lite.utils.logging import configure_logging
from llm_runtime_lite.utils.device import (
    DeviceCapabilities,
    current_abi,
    get_memory_stats,
    process_memory_bytes,
    query_device_capabilities,
)

__all__ = [
    "configure_logging",
    "DeviceCapabilities",
    "current_abi",
    "get_memory_stats",
    "process_memory_bytes",
    "query_device_capabilities",
]
