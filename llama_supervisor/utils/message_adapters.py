"""
Model-family message adapters.

Some chat templates have no system role. An adapter rewrites the message
list for such models before it is sent to llama-server. The supervisor gets
an adapter injected; nothing here is wired to a specific model by default.

Usage:
    adapter = SystemPromptEmbeddingAdapter(families=("gemma",))
    messages = adapter.adapt("gemma-2-9b-it.gguf", messages)
"""

import logging
from typing import List, Protocol, Sequence

from ..schemas.chat import ChatMessage


logger = logging.getLogger(__name__)


class MessageAdapter(Protocol):
    def adapt(self, model_name: str, messages: List[ChatMessage]) -> List[ChatMessage]:
        ...


class PassthroughAdapter:
    """Sends messages unchanged."""

    def adapt(self, model_name: str, messages: List[ChatMessage]) -> List[ChatMessage]:
        return messages


class SystemPromptEmbeddingAdapter:
    """
    Moves the system prompt into the first user message.

    Applies only to models whose file name contains one of `families`.
    If there is no user message, the instructions become a leading user
    message of their own.
    """

    def __init__(
        self,
        families: Sequence[str] = ("gemma",),
        header: str = "[SYSTEM INSTRUCTIONS - YOU MUST FOLLOW THESE]",
        footer: str = "[END OF SYSTEM INSTRUCTIONS]"
    ):
        self.families = tuple(f.lower() for f in families)
        self.header = header
        self.footer = footer

    def applies_to(self, model_name: str) -> bool:
        name = model_name.lower()
        return any(family in name for family in self.families)

    def adapt(self, model_name: str, messages: List[ChatMessage]) -> List[ChatMessage]:
        if not messages or not self.applies_to(model_name):
            return messages

        system_parts = [m.content for m in messages if m.role == "system" and m.content]
        if not system_parts:
            return messages
        system_prompt = "\n\n".join(system_parts)

        result: List[ChatMessage] = []
        embedded = False
        for message in messages:
            if message.role == "system":
                continue
            if message.role == "user" and not embedded:
                content = (
                    f"{self.header}\n{system_prompt}\n{self.footer}\n\n"
                    f"User message: {message.content or ''}"
                )
                result.append(message.model_copy(update={"content": content}))
                embedded = True
            else:
                result.append(message)

        if not embedded:
            result.insert(0, ChatMessage(
                role="user",
                content=f"{self.header}\n{system_prompt}\n{self.footer}"
            ))

        logger.debug(
            f"[Adapter] Embedded system prompt ({len(system_prompt)} chars) for {model_name}"
        )
        return result
