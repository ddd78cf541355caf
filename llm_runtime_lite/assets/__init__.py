"""
Model asset resolution and validation.

Provides:
- ModelAsset: Validated, immutable description of a model file
- Manifest / ManifestEntry: Expected checksums and sizes per file
- resolve: Locate and validate a model file before load
"""

from llm_runtime_lite.assets.resolver import (
    Manifest,
    ManifestEntry,
    ModelAsset,
    compute_checksum,
    resolve,
)

__all__ = ["Manifest", "ManifestEntry", "ModelAsset", "compute_checksum", "resolve"]
