"""Tests for project root discovery and the project index."""

import asyncio

import pytest

from parley.editor.index import ProjectIndex, find_project_root, list_project_files
from parley.errors import ProjectRootNotFound


def test_find_root_from_nested_directory(project):
    nested = project / "src" / "deep"
    nested.mkdir()

    assert find_project_root(nested) == project.resolve()


def test_no_git_directory(tmp_path):
    plain = tmp_path / "plain"
    plain.mkdir()

    with pytest.raises(ProjectRootNotFound) as exc_info:
        find_project_root(plain)

    assert exc_info.value.context["start_dir"] == str(plain)


def test_listing_skips_tool_directories(project):
    (project / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (project / ".parley").mkdir()
    (project / ".parley" / "tags").write_text("")
    (project / "node_modules" / "x").mkdir(parents=True)
    (project / "node_modules" / "x" / "index.js").write_text("")

    assert list_project_files(project) == ["a.txt", "src/main.py"]


def test_listing_is_capped(project):
    for i in range(5):
        (project / f"f{i}.txt").write_text("")

    assert len(list_project_files(project, limit=3)) == 3


@pytest.mark.asyncio
async def test_refresh_without_ctags_lists_files(project, settings):
    index = ProjectIndex(project, settings)

    info = await index.refresh()

    assert info == {"type": "file-listing", "content": "a.txt\nsrc/main.py"}
    assert index.project_info() == info
    assert index.data_dir.is_dir()


@pytest.mark.asyncio
async def test_missing_ctags_binary_falls_back(project, settings, monkeypatch):
    settings.ctags_enabled = True

    async def no_ctags(*args, **kwargs):
        raise FileNotFoundError("ctags")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", no_ctags)

    info = await ProjectIndex(project, settings).refresh()

    assert info["type"] == "file-listing"


@pytest.mark.asyncio
async def test_ctags_output_is_used(project, settings, monkeypatch):
    settings.ctags_enabled = True
    index = ProjectIndex(project, settings)

    async def fake_ctags():
        return "main\tsrc/main.py\t1;\"\tf\tlanguage:Python\n"

    monkeypatch.setattr(index, "_run_ctags", fake_ctags)

    info = await index.refresh()

    assert info["type"] == "ctags"
    assert info["content"].startswith("main\tsrc/main.py")
