"""Patch Manager: apply model-authored diffs to project files and undo them.

Every applied patch is logged together with the file's full content before
the patch (its pre-image), so ``revert_last`` can restore the file exactly
when nothing touched it since, and otherwise undo only that patch's change.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from parley.editor.diff import PatchApplyError, apply_patch, create_patch, parse_patch, reverse_hunks
from parley.editor.index import ProjectIndex
from parley.errors import (
    FileAccessDenied,
    FileHandlingError,
    FileNotFound,
    FilePermissionDenied,
    PatchConflict,
    PatchLogEmpty,
    RevertConflict,
)
from parley.storage.persistence import ConversationPersistence, PatchLogEntry

logger = logging.getLogger(__name__)


def _read_text(path: Path) -> str:
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


def _write_text(path: Path, content: str) -> None:
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)


class PatchManager:
    """Applies and reverts patches for one conversation within one project."""

    def __init__(
        self,
        project_root: Path,
        persistence: ConversationPersistence,
        conversation_id: str,
        index: ProjectIndex | None = None,
        fuzz_factor: int = 2,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self._persistence = persistence
        self.conversation_id = conversation_id
        self._index = index
        self.fuzz_factor = fuzz_factor
        self._refresh_tasks: set[asyncio.Task] = set()

    def resolve(self, file_path: str, operation: str) -> Path:
        """Resolve ``file_path`` against the project root, refusing escapes."""
        resolved = (self.project_root / file_path).resolve()
        if not resolved.is_relative_to(self.project_root):
            raise FileAccessDenied(
                f"Access denied: {file_path} is outside the project directory",
                file_path=file_path,
                operation=operation,
                conversation_id=self.conversation_id,
            )
        return resolved

    def relative(self, path: Path) -> str:
        return path.relative_to(self.project_root).as_posix()

    async def read(self, file_path: str, operation: str = "read") -> tuple[Path, str]:
        path = self.resolve(file_path, operation)
        try:
            return path, await asyncio.to_thread(_read_text, path)
        except FileNotFoundError as e:
            raise FileNotFound(
                f"File not found: {file_path}",
                file_path=file_path,
                operation="read",
                conversation_id=self.conversation_id,
            ) from e
        except PermissionError as e:
            raise FilePermissionDenied(
                f"Permission denied for file: {file_path}",
                file_path=file_path,
                operation="read",
                conversation_id=self.conversation_id,
            ) from e
        except (OSError, UnicodeDecodeError) as e:
            raise FileHandlingError(
                f"Failed to read {file_path}: {e}",
                file_path=file_path,
                operation="read",
                conversation_id=self.conversation_id,
            ) from e

    async def _write(self, path: Path, content: str, file_path: str) -> None:
        try:
            await asyncio.to_thread(_write_text, path, content)
        except PermissionError as e:
            raise FilePermissionDenied(
                f"Permission denied for file: {file_path}",
                file_path=file_path,
                operation="write",
                conversation_id=self.conversation_id,
            ) from e
        except OSError as e:
            raise FileHandlingError(
                f"Failed to write {file_path}: {e}",
                file_path=file_path,
                operation="write",
                conversation_id=self.conversation_id,
            ) from e

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply(self, file_path: str, patch: str) -> PatchLogEntry:
        """Apply ``patch`` to ``file_path`` and log it. The file is untouched on failure."""
        path, current = await self.read(file_path, operation="patch")
        try:
            patched = apply_patch(current, patch, fuzz_factor=self.fuzz_factor)
        except PatchApplyError as e:
            raise PatchConflict(
                f"Failed to apply patch. The patch does not match the current file content. ({e})",
                file_path=file_path,
                operation="patch",
                conversation_id=self.conversation_id,
            ) from e

        entry = await asyncio.shield(self._commit_apply(path, patched, patch, current))
        logger.info("Patch applied to file: %s", entry.file_path)
        self._schedule_refresh()
        return entry

    async def _commit_apply(self, path: Path, patched: str, patch: str, pre_image: str) -> PatchLogEntry:
        rel = self.relative(path)
        await self._write(path, patched, rel)
        return await self._persistence.log_patch(self.conversation_id, rel, patch, pre_image=pre_image)

    # ------------------------------------------------------------------
    # Revert
    # ------------------------------------------------------------------

    async def revert_last(self) -> PatchLogEntry:
        """Undo the most recent patch of this conversation and pop it from the log."""
        entry = await self._persistence.last_patch(self.conversation_id)
        if entry is None:
            raise PatchLogEmpty(
                "No patches to revert.",
                operation="revert",
                conversation_id=self.conversation_id,
            )

        path, current = await self.read(entry.file_path, operation="revert")
        reverted = self._reverted_content(entry, current)

        await asyncio.shield(self._commit_revert(path, reverted, entry))
        logger.info("Last patch reverted for file: %s", entry.file_path)
        self._schedule_refresh()
        return entry

    def _reverted_content(self, entry: PatchLogEntry, current: str) -> str:
        expected_post: str | None = None
        if entry.pre_image is not None:
            try:
                expected_post = apply_patch(entry.pre_image, entry.patch, fuzz_factor=self.fuzz_factor)
            except PatchApplyError:
                logger.warning("Logged patch no longer applies to its pre-image: %s", entry.file_path)

        try:
            if expected_post is not None:
                if current == expected_post:
                    return entry.pre_image
                if expected_post == entry.pre_image:
                    return current
                inverse = create_patch(entry.file_path, expected_post, entry.pre_image)
                return apply_patch(current, inverse, fuzz_factor=0)
            # No usable pre-image: undo the logged hunks directly.
            return apply_patch(current, reverse_hunks(parse_patch(entry.patch)), fuzz_factor=0)
        except PatchApplyError as e:
            raise RevertConflict(
                "Failed to revert patch. The current file content may have changed.",
                file_path=entry.file_path,
                operation="revert",
                conversation_id=self.conversation_id,
            ) from e

    async def _commit_revert(self, path: Path, content: str, entry: PatchLogEntry) -> None:
        await self._write(path, content, entry.file_path)
        await self._persistence.remove_last_patch(self.conversation_id)

    # ------------------------------------------------------------------
    # Index refresh
    # ------------------------------------------------------------------

    def _schedule_refresh(self) -> None:
        if self._index is None:
            return
        task = asyncio.create_task(self._index.refresh())
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_done)

    def _refresh_done(self, task: asyncio.Task) -> None:
        self._refresh_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Project index refresh failed: %s", exc, exc_info=exc)

    async def wait_for_refresh(self) -> None:
        """Wait for outstanding index refreshes (shutdown and tests)."""
        if self._refresh_tasks:
            await asyncio.gather(*self._refresh_tasks, return_exceptions=True)
