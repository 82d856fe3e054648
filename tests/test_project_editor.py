"""Tests for the conversation turn loop (ProjectEditor.speak_with_llm).

The provider is a ScriptedProvider so each test controls exactly what the
model "says"; the project is a real temp git directory and persistence a
temp SQLite database.
"""

import asyncio
import logging

import pytest
from helpers import ScriptedProvider, StaticFactory, text_response, tool_response

from parley.editor.project import ProjectEditor
from parley.errors import ConversationCancelled, ConversationNotFound, ProjectRootNotFound, SpeakRetryExhausted
from parley.llm.schemas import TextPart, ToolResultPart

PATCH_A = "@@ -1,3 +1,3 @@\n one\n-two\n+TWO\n three\n"


def _editor(project, settings, persistence, *responses) -> tuple[ProjectEditor, ScriptedProvider]:
    provider = ScriptedProvider(settings, list(responses))
    return ProjectEditor(project, settings, StaticFactory(provider), persistence), provider


@pytest.mark.asyncio
async def test_plain_answer_ends_after_one_request(project, settings, persistence):
    editor, provider = _editor(project, settings, persistence, text_response("Hello there."))

    response = await editor.speak_with_llm("hi")

    assert response.answer == "Hello there."
    assert len(provider.payloads) == 1
    conversation = editor.conversation
    assert conversation.turn_count == 0
    assert [m.role for m in conversation.messages] == ["user", "assistant"]
    assert conversation.project_info["type"] == "file-listing"
    assert "<file-listing>" in provider.payloads[0]["system"]
    assert provider.payloads[0]["tools"] == ["apply_patch", "request_files", "vector_search"]

    saved = await persistence.load(conversation.id)
    assert len(saved.messages) == 2


@pytest.mark.asyncio
async def test_tool_turn_sends_results_and_feedback(project, settings, persistence):
    editor, provider = _editor(
        project,
        settings,
        persistence,
        tool_response(("request_files", {"fileNames": ["a.txt"]})),
        text_response("Read it."),
    )

    response = await editor.speak_with_llm("look at a.txt")

    assert response.answer == "Read it."
    assert editor.conversation.turn_count == 1
    follow_up = editor.conversation.messages[2]
    assert follow_up.role == "user"
    result, feedback = follow_up.content
    assert isinstance(result, ToolResultPart)
    assert result.tool_use_id == editor.conversation.messages[1].content[0].id
    assert "one\ntwo\nthree\n" in result.content[0].text
    assert feedback == TextPart(
        text=(
            "Tool use feedback:\nFiles added to the conversation: a.txt\n\n"
            "Please acknowledge this feedback and continue the conversation."
        )
    )


@pytest.mark.asyncio
async def test_patch_applied_through_turn_loop(project, settings, persistence):
    editor, _ = _editor(
        project,
        settings,
        persistence,
        tool_response(("apply_patch", {"filePath": "a.txt", "patch": PATCH_A})),
        text_response("Patched."),
    )

    await editor.speak_with_llm("uppercase two")
    await editor.patches.wait_for_refresh()

    assert (project / "a.txt").read_text() == "one\nTWO\nthree\n"
    log = await persistence.get_patch_log(editor.conversation.id)
    assert [e.file_path for e in log] == ["a.txt"]


@pytest.mark.asyncio
async def test_patch_failure_is_fed_back_to_model(project, settings, persistence):
    editor, provider = _editor(
        project,
        settings,
        persistence,
        tool_response(("apply_patch", {"filePath": "a.txt", "patch": "@@ -1 +1 @@\n-four\n+FOUR\n"})),
        text_response("Sorry."),
    )

    await editor.speak_with_llm("change four")

    last_user = provider.payloads[1]["messages"][-1]["content"]
    assert last_user[0]["type"] == "tool_result"
    assert last_user[0]["is_error"] is True
    assert "Error using tool apply_patch: Failed to apply patch." in last_user[1]["text"]
    assert (project / "a.txt").read_text() == "one\ntwo\nthree\n"


@pytest.mark.asyncio
async def test_turn_limit_stops_the_loop(project, settings, persistence, caplog):
    reads = [tool_response(("request_files", {"fileNames": ["a.txt"]})) for _ in range(5)]
    editor, provider = _editor(project, settings, persistence, *reads)

    with caplog.at_level(logging.WARNING, logger="parley.editor.project"):
        response = await editor.speak_with_llm("keep reading")

    assert len(provider.payloads) == settings.max_turns + 1
    assert editor.conversation.turn_count == settings.max_turns
    assert response.tools_used
    assert "Reached maximum number of turns (3)" in caplog.text


@pytest.mark.asyncio
async def test_resume_answers_unexecuted_tool_calls(project, settings, persistence):
    settings.max_turns = 1
    editor, _ = _editor(
        project,
        settings,
        persistence,
        tool_response(("request_files", {"fileNames": ["a.txt"]})),
        tool_response(("request_files", {"fileNames": ["src/main.py"]})),
    )
    await editor.speak_with_llm("read")
    conversation_id = editor.conversation.id

    resumed, provider = _editor(project, settings, persistence, text_response("ok"))
    await resumed.speak_with_llm("go on", conversation_id=conversation_id)

    assert resumed.conversation.id == conversation_id
    content = provider.payloads[0]["messages"][-1]["content"]
    assert content[0]["type"] == "tool_result"
    assert content[0]["is_error"] is True
    assert content[0]["content"][0]["text"] == "Tool call was not executed."
    assert content[-1] == {"type": "text", "text": "go on"}


@pytest.mark.asyncio
async def test_unknown_conversation_id_starts_fresh(project, settings, persistence):
    editor, _ = _editor(project, settings, persistence, text_response())

    await editor.speak_with_llm("hi", conversation_id="does-not-exist")

    assert editor.conversation.id != "does-not-exist"
    assert len(editor.conversation.messages) == 2


@pytest.mark.asyncio
async def test_validation_exhaustion_still_saves(project, settings, persistence):
    editor, _ = _editor(project, settings, persistence, *[tool_response(("nope", {})) for _ in range(3)])

    with pytest.raises(SpeakRetryExhausted):
        await editor.speak_with_llm("hi")

    saved = await persistence.load(editor.conversation.id)
    assert saved is not None
    assert saved.provider_requests == 3
    assert saved.messages[0].content[0].text == "hi"


@pytest.mark.asyncio
async def test_cancellation_between_turns(project, settings, persistence):
    cancel = asyncio.Event()
    editor, provider = _editor(
        project,
        settings,
        persistence,
        tool_response(("apply_patch", {"filePath": "a.txt", "patch": PATCH_A})),
        text_response(),
    )
    provider.on_send = lambda count: cancel.set()

    with pytest.raises(ConversationCancelled):
        await editor.speak_with_llm("patch it", cancel_event=cancel)

    assert len(provider.payloads) == 1
    # The pending tool call was never executed.
    assert (project / "a.txt").read_text() == "one\ntwo\nthree\n"
    assert await persistence.load(editor.conversation.id) is not None


@pytest.mark.asyncio
async def test_revert_last_patch(project, settings, persistence):
    editor, _ = _editor(
        project,
        settings,
        persistence,
        tool_response(("apply_patch", {"filePath": "a.txt", "patch": PATCH_A})),
        text_response("Patched."),
    )
    await editor.speak_with_llm("uppercase two")
    await editor.patches.wait_for_refresh()

    entry = await editor.revert_last_patch(editor.conversation.id)

    assert entry.file_path == "a.txt"
    assert (project / "a.txt").read_text() == "one\ntwo\nthree\n"


@pytest.mark.asyncio
async def test_revert_for_unknown_conversation(project, settings, persistence):
    editor, _ = _editor(project, settings, persistence)

    with pytest.raises(ConversationNotFound):
        await editor.revert_last_patch("missing")


def test_start_dir_outside_git_project(tmp_path, settings):
    plain = tmp_path / "plain"
    plain.mkdir()

    with pytest.raises(ProjectRootNotFound):
        ProjectEditor(plain, settings, StaticFactory(None), None)


def test_nested_start_dir_finds_root(project, settings):
    editor = ProjectEditor(project / "src", settings, StaticFactory(None), None)
    assert editor.project_root == project.resolve()
