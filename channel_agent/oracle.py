"""
Reply oracle: turns a user message plus short-term history into reply text.

The orchestrator only depends on the ``GenerateReplyFn`` shape, so any async
callable works::

    async def echo(user_text: str, history: Sequence[ConversationRecord]) -> str:
        return f"You said: {user_text}"

    orchestrator = PollOrchestrator(..., generate_reply=echo)

``OpenAIReplyOracle`` is the default implementation.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Sequence

from openai import AsyncOpenAI, OpenAIError

from channel_agent.content_safety import UNTRUSTED_CONTENT_INSTRUCTION, sanitize_for_prompt
from channel_agent.exceptions import ReplyGenerationError
from channel_agent.types import ConversationRecord

logger = logging.getLogger(__name__)

GenerateReplyFn = Callable[[str, Sequence[ConversationRecord]], Awaitable[str]]

DEFAULT_MAX_REPLY_CHARS = 400
ELLIPSIS = "..."

DEFAULT_SYSTEM_PROMPT = f"""You are a friendly developer-relations assistant answering questions in an \
end-to-end encrypted group chat.

**All responses MUST be under {DEFAULT_MAX_REPLY_CHARS} characters. Be concise and direct.**

- Give short, clear answers to basic questions about the app and the network it runs on.
- Point people to documentation or demos when they want to learn more.
- If a question is complex or you are unsure, say so and suggest asking a human on the team.
- Use short sentences or bullet points.

{UNTRUSTED_CONTENT_INSTRUCTION}"""


def truncate_reply(text: str, limit: int = DEFAULT_MAX_REPLY_CHARS) -> str:
    """Cut ``text`` to ``limit`` characters, marking the cut with ``...``."""
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[: limit - len(ELLIPSIS)] + ELLIPSIS


class OpenAIReplyOracle:
    """Chat-completions backed reply generation."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        temperature: float = 0.7,
        max_tokens: int = 500,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.model = model
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens

    def build_messages(
        self,
        user_text: str,
        history: Sequence[ConversationRecord],
    ) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [{"role": "system", "content": self.system_prompt}]
        for record in history:
            role = "assistant" if record.role == "agent" else "user"
            content = record.text if role == "assistant" else sanitize_for_prompt(record.text)
            messages.append({"role": role, "content": content})
        messages.append({"role": "user", "content": sanitize_for_prompt(user_text)})
        return messages

    async def generate(self, user_text: str, history: Sequence[ConversationRecord]) -> str:
        """Generate a reply.

        Raises:
            ReplyGenerationError: On API failure or an empty completion.
        """
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=self.build_messages(user_text, history),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OpenAIError as exc:
            raise ReplyGenerationError(f"OpenAI API error: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        text = (content or "").strip()
        if not text:
            raise ReplyGenerationError("No response from OpenAI")
        return text
