"""
Unit scanner — finds the source files the pipeline will harden.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

import config
from models.errors import DiscoveryError
from models.schemas import Unit

log = logging.getLogger(__name__)

ExcludePredicate = Callable[[Path], bool]

SKIP_DIRS = {
    ".git", ".venv", "venv", "__pycache__", "node_modules", "tmp", "vendor",
}


def default_exclude(path: Path) -> bool:
    """Skip the base controller, shared concerns, and vendored or generated dirs."""
    if path.stem in config.UNIT_EXCLUDE_NAMES:
        return True
    return any(
        part in config.UNIT_EXCLUDE_DIRS or part in SKIP_DIRS
        for part in path.parent.parts
    )


def discover_units(
    root: Path | str,
    source_dir: str | None = None,
    pattern: str | None = None,
    exclude: ExcludePredicate | None = None,
    sidecar_dir: str | None = None,
) -> dict[str, Unit]:
    """
    Scan ``root/source_dir`` for files matching ``pattern``.

    Returns a new registry {name: Unit} keyed by file stem, every unit
    pending. A later file with the same stem replaces an earlier one.
    Files under ``sidecar_dir`` are pipeline artifacts and always skipped;
    every other exclusion is up to ``exclude``.

    Raises:
        DiscoveryError: if the source directory does not exist.
    """
    root = Path(root)
    source_dir = config.UNIT_SOURCE_DIR if source_dir is None else source_dir
    pattern = pattern or config.UNIT_PATTERN
    exclude = exclude or default_exclude
    sidecar_dir = sidecar_dir or config.SIDECAR_DIR

    scan_dir = root / source_dir
    if not scan_dir.is_dir():
        raise DiscoveryError(f"Source directory not found: {scan_dir}")

    units: dict[str, Unit] = {}
    for path in sorted(scan_dir.rglob(pattern)):
        rel = path.relative_to(root)
        if sidecar_dir in rel.parts:
            continue
        if not path.is_file() or exclude(rel):
            continue

        units[path.stem] = Unit(
            name=path.stem,
            path=str(rel),
            full_path=str(path.resolve()),
        )

    log.info("Discovered %d units under %s", len(units), scan_dir)
    return units


FENCE_LANGUAGES = {
    ".rb": "ruby", ".py": "python", ".js": "javascript", ".ts": "typescript",
    ".go": "go", ".java": "java", ".php": "php", ".ex": "elixir",
}


def read_source(unit: Unit) -> str:
    return Path(unit.full_path).read_text(errors="replace")


def fence_language(unit: Unit) -> str:
    """Code fence tag for the unit's source, e.g. ``ruby`` for .rb files."""
    return FENCE_LANGUAGES.get(Path(unit.full_path).suffix.lower(), "")
