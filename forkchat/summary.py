"""Thread summaries generated by the internal preset."""

from forkchat.exceptions import LLMError
from forkchat.llm import StreamComplete, StreamError
from forkchat.logging import get_logger
from forkchat.runtime_context import AppContext
from forkchat.session.models import Message, Role

log = get_logger(__name__)

EMPTY_SUMMARY = "[empty]"


class ThreadSummarizer:
    """Produces short, list-friendly thread summaries."""

    def __init__(self, context: AppContext):
        self.context = context
        config = context.config
        self.preset_name, self.preset = config.get_preset(config.internal.preset or None)

    def build_prompt(self, messages: list[Message]) -> str:
        prompt = self.context.config.internal.summary_prompt
        for message in messages:
            prompt += f"{message.role.value}: {message.content}\n"
        return prompt

    async def generate(self, messages: list[Message]) -> str:
        """Summarize ``messages`` without storing anything."""
        if not messages:
            return EMPTY_SUMMARY

        request = Message(
            thread_id=messages[0].thread_id,
            role=Role.HUMAN,
            content=self.build_prompt(messages),
        )
        provider = self.context.create_provider(self.preset)
        text: str | None = None
        try:
            async for event in provider.generate([request], None, ""):
                if isinstance(event, StreamComplete):
                    text = event.content
                elif isinstance(event, StreamError):
                    raise event.error
        finally:
            await provider.close()
        if text is None:
            raise LLMError("Summary stream ended without a completed message")
        return text.strip()

    async def summarize(self, thread_id: str) -> str:
        """Summarize the current branch of a thread and store the summary."""
        messages = await self.context.repository.get_messages(thread_id)
        summary = await self.generate(messages)
        await self.context.repository.set_thread_summary(thread_id, summary)
        log.info("Thread summary updated", thread_id=thread_id, preset=self.preset_name)
        return summary
