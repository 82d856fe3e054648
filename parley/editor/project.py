"""ProjectEditor: runs the bounded conversation turn loop for one project.

A turn is one model response plus the execution of every tool it asked
for. Tool feedback goes back to the model as the next prompt until the
model stops asking for tools or the turn limit is reached.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from parley.config import Settings
from parley.editor.index import ProjectIndex, find_project_root
from parley.editor.patches import PatchManager
from parley.editor.tools import EmbeddingSearch, ToolDispatcher, register_default_tools
from parley.errors import ConversationCancelled, ConversationNotFound
from parley.llm.factory import ProviderFactory
from parley.llm.provider import BaseProvider
from parley.llm.schemas import (
    Conversation,
    Message,
    ProviderResponse,
    SpeakOptions,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)
from parley.storage.persistence import ConversationPersistence, PatchLogEntry

logger = logging.getLogger(__name__)

FEEDBACK_PROMPT = "Tool use feedback:\n{feedback}\nPlease acknowledge this feedback and continue the conversation."


def pending_tool_results(conversation: Conversation, reason: str) -> list[ToolResultPart]:
    """Error tool_results for tool_use blocks in the last message that never got an answer."""
    if not conversation.messages or conversation.messages[-1].role != "assistant":
        return []
    return [
        ToolResultPart(tool_use_id=part.id, content=[TextPart(text=reason)], is_error=True)
        for part in conversation.messages[-1].content
        if isinstance(part, ToolUsePart)
    ]


class ProjectEditor:
    """Conversation driver bound to the git project containing ``start_dir``."""

    def __init__(
        self,
        start_dir: str | Path,
        settings: Settings,
        factory: ProviderFactory,
        persistence: ConversationPersistence,
        embedding_search: EmbeddingSearch | None = None,
    ) -> None:
        self.start_dir = Path(start_dir)
        self.project_root = find_project_root(start_dir)
        self._settings = settings
        self._factory = factory
        self._persistence = persistence
        self._embedding_search = embedding_search
        self.index = ProjectIndex(self.project_root, settings)
        self.conversation: Conversation | None = None
        self.patches: PatchManager | None = None

    def patch_manager(self, conversation_id: str) -> PatchManager:
        return PatchManager(
            self.project_root,
            self._persistence,
            conversation_id,
            index=self.index,
            fuzz_factor=self._settings.patch_fuzz_factor,
        )

    async def _start_conversation(self, llm: BaseProvider, model: str | None) -> Conversation:
        conversation = llm.create_conversation(model=model, base_system=self._settings.system_prompt)
        try:
            conversation.project_info = await self.index.refresh()
        except OSError as e:
            logger.warning("Project index unavailable for %s: %s", self.project_root, e)
        logger.info("Created new conversation: %s", conversation.id)
        return conversation

    async def _load_conversation(self, conversation_id: str) -> Conversation | None:
        conversation = await self._persistence.load(conversation_id)
        if conversation is None:
            logger.warning("Failed to load conversation %s; starting a new one", conversation_id)
        else:
            logger.info("Loaded existing conversation: %s", conversation_id)
        return conversation

    async def _speak(
        self,
        llm: BaseProvider,
        conversation: Conversation,
        options: SpeakOptions,
        cancel_event: asyncio.Event | None,
    ) -> ProviderResponse:
        try:
            return await llm.speak_with_retry(conversation, options, cancel_event)
        finally:
            await self._persistence.save(conversation)

    async def speak_with_llm(
        self,
        prompt: str,
        provider: str | None = None,
        model: str | None = None,
        conversation_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ProviderResponse:
        """Send ``prompt`` and run tool turns until the model is done.

        Returns the last model response. The conversation is saved after
        every exchange, including failed ones.
        """
        conversation = await self._load_conversation(conversation_id) if conversation_id else None
        if conversation is None:
            llm = await self._factory.get_provider(provider)
            conversation = await self._start_conversation(llm, model)
        else:
            llm = await self._factory.get_provider(provider or conversation.provider_name)
            if model:
                conversation.model = model
        self.conversation = conversation

        self.patches = self.patch_manager(conversation.id)
        dispatcher = register_default_tools(ToolDispatcher(), self.patches, self._embedding_search)
        for tool in dispatcher.tools():
            conversation.add_tool(tool)

        options = SpeakOptions(temperature=self._settings.temperature, max_tokens=self._settings.max_tokens)
        leftovers = pending_tool_results(conversation, "Tool call was not executed.")
        conversation.add_message(Message(role="user", content=[*leftovers, TextPart(text=prompt)]))

        response = await self._speak(llm, conversation, options, cancel_event)
        logger.info("Saved conversation: %s", conversation.id)

        max_turns = self._settings.max_turns
        turn = 0
        while response.tools_used:
            if turn >= max_turns:
                logger.warning("Reached maximum number of turns (%d) in conversation %s.", max_turns, conversation.id)
                break
            if cancel_event is not None and cancel_event.is_set():
                await self._persistence.save(conversation)
                raise ConversationCancelled("Conversation cancelled", conversation_id=conversation.id)

            feedback = ""
            results: list[ToolResultPart] = []
            for tool_use in response.tools_used:
                logger.info("Handling tool %s (%s)", tool_use.tool_name, tool_use.tool_use_id)
                outcome = await dispatcher.dispatch(tool_use)
                feedback += outcome.feedback + "\n"
                results.append(
                    ToolResultPart(
                        tool_use_id=tool_use.tool_use_id,
                        content=outcome.parts or [TextPart(text=outcome.feedback)],
                        is_error=outcome.is_error,
                    )
                )

            turn += 1
            conversation.turn_count += 1
            conversation.project_info = self.index.project_info() or conversation.project_info
            conversation.add_message(
                Message(role="user", content=[*results, TextPart(text=FEEDBACK_PROMPT.format(feedback=feedback))])
            )
            response = await self._speak(llm, conversation, options, cancel_event)
            logger.info("Saved conversation after turn %d: %s", turn, conversation.id)

        return response

    async def revert_last_patch(self, conversation_id: str) -> PatchLogEntry:
        """Undo the newest patch applied in ``conversation_id``."""
        conversation = await self._persistence.load(conversation_id)
        if conversation is None:
            raise ConversationNotFound(f"Conversation not found: {conversation_id}", conversation_id=conversation_id)
        patches = self.patch_manager(conversation_id)
        entry = await patches.revert_last()
        await patches.wait_for_refresh()
        return entry
