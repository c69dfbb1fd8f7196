"""
File Utilities
==============
Result paths and the cached-artifact check that lets a rerun reuse fitted
models instead of retraining them.
"""
from __future__ import annotations

from pathlib import Path


def has_artifact(path: Path | str, min_size_bytes: int = 1) -> bool:
    """True when ``path`` is a file of at least ``min_size_bytes`` (a usable cache)."""
    path = Path(path)
    return path.is_file() and path.stat().st_size >= min_size_bytes


def result_path(results_dir: Path, stem: str, suffix: str) -> Path:
    """Build ``<results_dir>/<stem><suffix>``, creating the directory."""
    results_dir = Path(results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)
    return results_dir / f"{stem}{suffix}"
