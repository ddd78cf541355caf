"""Device capability and memory queries.

Provides the information an application needs before picking a model:
whether a GPU is usable, how much memory the device has, and which CPU ABI
the process runs on.
"""

import logging
import platform
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import psutil
import torch

log = logging.getLogger("llm_runtime_lite.device")

# platform.machine() spellings normalized to Android ABI names
_ABI_ALIASES = {
    "aarch64": "arm64-v8a",
    "arm64": "arm64-v8a",
    "armv8l": "arm64-v8a",
    "armv7l": "armeabi-v7a",
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "i686": "x86",
    "i386": "x86",
}


@dataclass
class DeviceCapabilities:
    """What the current device offers to a model runtime."""
    abi: str
    supports_gpu: bool
    gpu_name: Optional[str]
    vram_bytes: int
    total_memory_bytes: int
    available_memory_bytes: int
    cpu_count: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def current_abi(machine: Optional[str] = None) -> str:
    """Return the ABI name of this process (``arm64-v8a``, ``x86_64``, ...)."""
    machine = (machine or platform.machine()).lower()
    return _ABI_ALIASES.get(machine, machine)


def query_device_capabilities() -> DeviceCapabilities:
    """
    Query GPU availability, VRAM and system memory.

    Returns:
        DeviceCapabilities for the current process.

    Example:
        >>> caps = query_device_capabilities()
        >>> caps.abi in ("arm64-v8a", "x86_64")
        True
    """
    supports_gpu = torch.cuda.is_available()
    gpu_name = None
    vram_bytes = 0
    if supports_gpu:
        props = torch.cuda.get_device_properties(0)
        gpu_name = props.name
        vram_bytes = int(props.total_memory)

    vm = psutil.virtual_memory()
    caps = DeviceCapabilities(
        abi=current_abi(),
        supports_gpu=supports_gpu,
        gpu_name=gpu_name,
        vram_bytes=vram_bytes,
        total_memory_bytes=int(vm.total),
        available_memory_bytes=int(vm.available),
        cpu_count=psutil.cpu_count(logical=True) or 1,
    )
    log.debug("device capabilities: %s", caps)
    return caps


def process_memory_bytes() -> int:
    """Resident set size of this process plus CUDA memory allocated by torch."""
    used = int(psutil.Process().memory_info().rss)
    if torch.cuda.is_available():
        used += int(torch.cuda.memory_allocated())
    return used


def get_memory_stats() -> Dict[str, int]:
    """
    Get process and system memory statistics.

    Returns:
        Dictionary with keys:
        - process_rss_bytes: Resident memory of this process
        - system_total_bytes: Physical memory of the device
        - system_available_bytes: Memory available to new allocations
        - vram_used_bytes: CUDA memory allocated by torch (0 without GPU)
        - vram_total_bytes: CUDA device memory (0 without GPU)
    """
    vm = psutil.virtual_memory()
    vram_used = 0
    vram_total = 0
    if torch.cuda.is_available():
        vram_used = int(torch.cuda.memory_allocated())
        vram_total = int(torch.cuda.get_device_properties(0).total_memory)
    return {
        "process_rss_bytes": int(psutil.Process().memory_info().rss),
        "system_total_bytes": int(vm.total),
        "system_available_bytes": int(vm.available),
        "vram_used_bytes": vram_used,
        "vram_total_bytes": vram_total,
    }
