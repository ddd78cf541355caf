"""
Tests for device capability and memory queries.
"""

import pytest

from llm_runtime_lite.utils.device import (
    DeviceCapabilities,
    current_abi,
    get_memory_stats,
    process_memory_bytes,
    query_device_capabilities,
)


@pytest.mark.unit
@pytest.mark.parametrize(
    "machine,abi",
    [
        ("aarch64", "arm64-v8a"),
        ("ARM64", "arm64-v8a"),
        ("armv7l", "armeabi-v7a"),
        ("AMD64", "x86_64"),
        ("i686", "x86"),
        ("riscv64", "riscv64"),
    ],
)
def test_current_abi(machine, abi) -> None:
    assert current_abi(machine) == abi


@pytest.mark.unit
def test_query_device_capabilities() -> None:
    caps = query_device_capabilities()

    assert isinstance(caps, DeviceCapabilities)
    assert caps.abi == current_abi()
    assert caps.total_memory_bytes >= caps.available_memory_bytes > 0
    assert caps.cpu_count >= 1
    if not caps.supports_gpu:
        assert caps.gpu_name is None
        assert caps.vram_bytes == 0
    assert caps.to_dict()["abi"] == caps.abi


@pytest.mark.unit
def test_get_memory_stats() -> None:
    stats = get_memory_stats()

    assert set(stats) == {
        "process_rss_bytes",
        "system_total_bytes",
        "system_available_bytes",
        "vram_used_bytes",
        "vram_total_bytes",
    }
    assert stats["process_rss_bytes"] > 0
    assert process_memory_bytes() >= stats["process_rss_bytes"] // 2
