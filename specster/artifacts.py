"""Phase document storage for specifications.

Each specification owns a directory under the specs directory holding one
markdown document per artifact phase (``requirements.md``, ``design.md``,
``tasks.md``).
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from .errors import PersistenceError, SpecValidationError
from .models import ARTIFACT_PHASES, FileInfo, Phase, utc_now
from .specster_logging import log_error_with_context, log_operation
from .store import is_valid_spec_name

logger = logging.getLogger("specster.artifacts")

ContentGenerator = Callable[[str, Phase, str], str]


def skeleton_content(name: str, phase: Phase, description: str = "") -> str:
    """Minimal document for a newly entered phase."""
    title = name.replace("-", " ").replace("_", " ").title()
    lines = [f"# {title}: {Phase(phase).value.capitalize()}", ""]
    if description:
        lines.extend([description.strip(), ""])
    return "\n".join(lines)


class ArtifactStore:
    """Read and write phase documents under ``specs_dir/<name>/``."""

    def __init__(self, specs_dir: Path | str):
        self.specs_dir = Path(specs_dir)

    def artifact_path(self, name: str, phase: Phase) -> Path:
        phase = Phase(phase)
        if not is_valid_spec_name(name):
            raise SpecValidationError(f"Invalid specification name '{name}'", spec_name=name)
        if phase not in ARTIFACT_PHASES:
            raise SpecValidationError(f"Phase '{phase.value}' has no document", spec_name=name)
        return self.specs_dir / name / f"{phase.value}.md"

    def _write(self, path: Path, content: str) -> FileInfo:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".md")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        return FileInfo(
            path=str(path),
            size=path.stat().st_size,
            last_modified=utc_now(),
            exists=True,
        )

    async def write_artifact(self, name: str, phase: Phase, content: str) -> FileInfo:
        """Write a phase document and describe what landed on disk."""
        path = self.artifact_path(name, phase)
        loop = asyncio.get_running_loop()
        try:
            with log_operation("write_artifact", spec_name=name, phase=Phase(phase).value):
                info = await loop.run_in_executor(None, partial(self._write, path, content))
        except OSError as e:
            log_error_with_context(e, {"operation": "write_artifact", "spec_name": name, "path": str(path)})
            raise PersistenceError(f"Could not write {path}: {e}", spec_name=name)
        logger.info(f"Saved {Phase(phase).value} document for '{name}' ({info.size} bytes)")
        return info

    async def read_artifact(self, name: str, phase: Phase) -> Optional[str]:
        """Return the document text, or ``None`` if it was never written."""
        path = self.artifact_path(name, phase)
        if not path.is_file():
            return None
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(path.read_text, encoding="utf-8"))
        except OSError as e:
            raise PersistenceError(f"Could not read {path}: {e}", spec_name=name)

    def delete_artifacts(self, name: str) -> int:
        """Remove every phase document of ``name``; return how many existed."""
        removed = 0
        for phase in ARTIFACT_PHASES:
            path = self.artifact_path(name, phase)
            if path.is_file():
                path.unlink()
                removed += 1
        directory = self.specs_dir / name
        if directory.is_dir() and not any(directory.iterdir()):
            directory.rmdir()
        return removed
