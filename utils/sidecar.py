"""
Sidecar store — per-unit phase artifacts written next to the unit's source.

    app/controllers/blog/posts_controller.rb
    app/controllers/blog/.harden/posts_controller/analysis.json

Each unit owns its directory, so concurrent workers never write the same file.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import config
from models.errors import SidecarPathError

log = logging.getLogger(__name__)

ANALYSIS = "analysis.json"
DECISION = "decision.json"
HARDENED = "hardened.json"
VERIFICATION = "verification.json"


def preview_name(full_path: str | Path) -> str:
    """Artifact name for the hardened source preview, e.g. hardened_preview.rb."""
    return f"hardened_preview{Path(full_path).suffix}"


class SidecarStore:
    def __init__(self, root: str | Path, dirname: str | None = None):
        self.root = Path(root)
        self.dirname = dirname or config.SIDECAR_DIR

    def directory(self, full_path: str | Path) -> Path:
        source = Path(full_path)
        return source.parent / self.dirname / source.stem

    def path(self, full_path: str | Path, artifact: str) -> Path:
        return self.directory(full_path) / artifact

    def write(self, full_path: str | Path, artifact: str, content: Any) -> Path:
        """Write an artifact, creating the unit's sidecar directory if needed.

        Dicts and lists are stored as indented JSON; strings verbatim with a
        trailing newline.
        """
        if not isinstance(content, str):
            content = json.dumps(content, indent=2, default=str)

        target = self.path(full_path, artifact)
        self._check_inside_root(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content if content.endswith("\n") else content + "\n")
        log.debug("Wrote sidecar %s", target)
        return target

    def read(self, full_path: str | Path, artifact: str) -> str | None:
        target = self.path(full_path, artifact)
        if not target.is_file():
            return None
        return target.read_text()

    def _check_inside_root(self, target: Path) -> None:
        root = os.path.realpath(self.root)
        real = os.path.realpath(target.parent)
        if real != root and not real.startswith(root + os.sep):
            raise SidecarPathError(f"Sidecar path {target} escapes {self.root}")
