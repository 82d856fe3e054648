"""Project root discovery and the project index given to the model.

The index is a ctags file when ``ctags`` is installed, otherwise a plain
file listing. Either way it ends up in the system prompt as
``<project-details>``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from parley.config import Settings
from parley.errors import ProjectRootNotFound

logger = logging.getLogger(__name__)

TAGS_FILE = "tags"
MAX_LISTED_FILES = 2000
_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache"}


def find_project_root(start: str | Path) -> Path:
    """Walk up from ``start`` to the nearest directory holding ``.git``."""
    path = Path(start).expanduser().resolve()
    for candidate in (path, *path.parents):
        if (candidate / ".git").exists():
            return candidate
    raise ProjectRootNotFound(f"Not in a git repository: {start}", start_dir=str(start))


def list_project_files(root: Path, data_dir_name: str = ".parley", limit: int = MAX_LISTED_FILES) -> list[str]:
    """Relative paths of project files, sorted, skipping VCS and tool directories."""
    skip = _SKIP_DIRS | {data_dir_name}
    files: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in skip)
        rel_dir = Path(dirpath).relative_to(root)
        for name in sorted(filenames):
            files.append((rel_dir / name).as_posix())
            if len(files) >= limit:
                return files
    return files


class ProjectIndex:
    """Builds and caches the project index under ``<root>/<data_dir_name>``."""

    def __init__(self, root: Path, settings: Settings) -> None:
        self.root = root
        self._settings = settings
        self.data_dir = root / settings.data_dir_name
        self._info: dict[str, str] | None = None
        self._lock = asyncio.Lock()

    @property
    def tags_path(self) -> Path:
        return self.data_dir / TAGS_FILE

    def project_info(self) -> dict[str, str] | None:
        """``{"type": "ctags" | "file-listing", "content": ...}`` from the last refresh."""
        return self._info

    async def refresh(self) -> dict[str, str]:
        """Regenerate the index. Falls back to a file listing if ctags fails."""
        async with self._lock:
            await asyncio.to_thread(self.data_dir.mkdir, parents=True, exist_ok=True)
            content = await self._run_ctags() if self._settings.ctags_enabled else None
            if content:
                self._info = {"type": "ctags", "content": content}
            else:
                files = await asyncio.to_thread(list_project_files, self.root, self._settings.data_dir_name)
                self._info = {"type": "file-listing", "content": "\n".join(files)}
            logger.debug("Project index refreshed (%s) for %s", self._info["type"], self.root)
            return self._info

    async def _run_ctags(self) -> str | None:
        cmd = [
            "ctags",
            "-R",
            "--fields=+l",
            f"--exclude={self._settings.data_dir_name}",
            "--exclude=.git",
            "-f",
            str(self.tags_path),
            ".",
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.root),
            )
        except FileNotFoundError:
            logger.info("ctags not installed; using file listing for %s", self.root)
            return None

        try:
            async with asyncio.timeout(self._settings.ctags_timeout):
                _, stderr = await proc.communicate()
        except TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("ctags timed out after %ss for %s", self._settings.ctags_timeout, self.root)
            return None

        if proc.returncode != 0:
            logger.warning("ctags failed (exit %s): %s", proc.returncode, stderr.decode(errors="replace").strip())
            return None

        try:
            return await asyncio.to_thread(self.tags_path.read_text, encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning("Could not read ctags output %s: %s", self.tags_path, e)
            return None
