"""Project editing: turn loop, tool dispatch, patching and the project index."""

from parley.editor.diff import PatchApplyError, apply_patch, create_patch, parse_patch
from parley.editor.index import ProjectIndex, find_project_root
from parley.editor.patches import PatchManager
from parley.editor.project import ProjectEditor
from parley.editor.tools import EmbeddingSearch, NullEmbeddingSearch, ToolDispatcher, ToolOutcome

__all__ = [
    "EmbeddingSearch",
    "NullEmbeddingSearch",
    "PatchApplyError",
    "PatchManager",
    "ProjectEditor",
    "ProjectIndex",
    "ToolDispatcher",
    "ToolOutcome",
    "apply_patch",
    "create_patch",
    "find_project_root",
    "parse_patch",
]
