"""
ModelAsset resolver.

This module locates a model file on disk and validates it before any load is
attempted: the file must exist, be non-empty, carry a well-formed GGUF header
when it is a ``.gguf`` file, and match the checksum (and size) recorded in a
manifest when one is supplied.

Validation is read-only. Files are hashed in fixed-size chunks so multi-GB
models are never held in memory.
"""

import hashlib
import json
import logging
import os
import re
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

from llm_runtime_lite.errors import AssetCorrupt, AssetNotFound

log = logging.getLogger("llm_runtime_lite.assets")

GGUF_MAGIC = b"GGUF"
SUPPORTED_GGUF_VERSIONS = (1, 2, 3)
CHUNK_SIZE = 1024 * 1024

# Quantization tags as they appear in GGUF file names, e.g. "qwen2-0_5b-Q4_K_M.gguf"
_QUANT_PATTERN = re.compile(
    r"(?:^|[-_.])((?:IQ|Q)\d(?:_[0-9A-Z]+)*|F16|BF16|F32)(?=[-_.]|$)",
    re.IGNORECASE,
)

PathLike = Union[str, "os.PathLike[str]"]


@dataclass(frozen=True)
class ModelAsset:
    """A validated model file.

    Attributes:
        path: Absolute path of the model file.
        size_bytes: File size in bytes.
        checksum: Hex sha256 digest of the file content.
        quantization: Quantization tag (e.g. "Q4_K_M"), or None if unknown.
        format: "gguf" for GGUF files, "unknown" otherwise.
    """

    path: str
    size_bytes: int
    checksum: str
    quantization: Optional[str] = None
    format: str = "unknown"

    @property
    def name(self) -> str:
        return os.path.basename(self.path)


@dataclass(frozen=True)
class ManifestEntry:
    """Expected properties of one model file."""
    checksum: str
    size_bytes: Optional[int] = None
    quantization: Optional[str] = None


@dataclass
class Manifest:
    """Expected checksums keyed by model file name."""

    entries: Dict[str, ManifestEntry] = field(default_factory=dict)

    def get(self, path: PathLike) -> Optional[ManifestEntry]:
        """Look up the entry for ``path`` by base name."""
        return self.entries.get(os.path.basename(os.fspath(path)))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Manifest":
        """Build a manifest from ``{"models": {name: {"checksum": ...}}}``.

        A flat ``{name: {...}}`` mapping is accepted as well.
        """
        models = data.get("models", data)
        entries = {}
        for name, entry in models.items():
            if isinstance(entry, str):
                entries[name] = ManifestEntry(checksum=entry.lower())
                continue
            entries[name] = ManifestEntry(
                checksum=str(entry["checksum"]).lower(),
                size_bytes=entry.get("size_bytes"),
                quantization=entry.get("quantization"),
            )
        return cls(entries=entries)

    @classmethod
    def from_json(cls, path: PathLike) -> "Manifest":
        """Load a manifest from a JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


def compute_checksum(path: PathLike, chunk_size: int = CHUNK_SIZE) -> str:
    """Calculate the hex SHA256 digest of a file, reading it in chunks."""
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def parse_quantization(file_name: str) -> Optional[str]:
    """Extract the quantization tag from a model file name, if present."""
    stem = os.path.splitext(os.path.basename(file_name))[0]
    match = _QUANT_PATTERN.search(stem)
    if match is None:
        return None
    return match.group(1).upper()


def _check_gguf_header(path: str) -> None:
    with open(path, "rb") as f:
        header = f.read(8)
    if len(header) < 8:
        raise AssetCorrupt(path, "truncated GGUF header")
    magic, version = header[:4], struct.unpack("<I", header[4:8])[0]
    if magic != GGUF_MAGIC:
        raise AssetCorrupt(path, f"bad GGUF magic {magic!r}")
    if version not in SUPPORTED_GGUF_VERSIONS:
        raise AssetCorrupt(path, f"unsupported GGUF version {version}")


def resolve(
    path: PathLike,
    manifest: Optional[Manifest] = None,
    expected_checksum: Optional[str] = None,
) -> ModelAsset:
    """Locate and validate a model file.

    Args:
        path: Path to the model file.
        manifest: Optional manifest holding the expected checksum for the file.
        expected_checksum: Optional hex sha256 digest; takes precedence over
            the manifest entry.

    Returns:
        The validated ModelAsset.

    Raises:
        AssetNotFound: If the path does not exist or is not a regular file.
        AssetCorrupt: If the file is empty, has a malformed GGUF header, or
            does not match the expected checksum or size.
    """
    path = os.path.abspath(os.fspath(path))
    if not os.path.isfile(path):
        raise AssetNotFound(path)

    size = os.path.getsize(path)
    if size <= 0:
        raise AssetCorrupt(path, "file is empty")

    is_gguf = path.lower().endswith(".gguf")
    if is_gguf:
        _check_gguf_header(path)

    entry = manifest.get(path) if manifest is not None else None
    if entry is not None and entry.size_bytes is not None and entry.size_bytes != size:
        raise AssetCorrupt(
            path, f"size mismatch (expected {entry.size_bytes}, got {size})"
        )

    checksum = compute_checksum(path)
    expected = expected_checksum or (entry.checksum if entry is not None else None)
    if expected is not None and checksum != expected.lower():
        raise AssetCorrupt(
            path, f"checksum mismatch (expected {expected.lower()}, got {checksum})"
        )

    quantization = entry.quantization if entry is not None else None
    asset = ModelAsset(
        path=path,
        size_bytes=size,
        checksum=checksum,
        quantization=quantization or parse_quantization(path),
        format="gguf" if is_gguf else "unknown",
    )
    log.info(
        "resolved asset %s (size=%d quant=%s verified=%s)",
        asset.name,
        size,
        asset.quantization,
        expected is not None,
    )
    return asset
