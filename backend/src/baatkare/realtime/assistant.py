"""AI participant that answers mentions and messages in its own chats."""

from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence
from uuid import UUID

from app.monitoring.metrics import assistant_replies_total

from .errors import RealtimeError
from .events import new_message_event
from .managers import Broadcaster, RealtimeState
from .store import ChatStore, MessageRecord

logger = logging.getLogger(__name__)

TextGenerator = Callable[[str, Sequence[str]], Awaitable[str]]

FALLBACK_REPLIES: tuple[str, ...] = (
    "I'm having trouble connecting right now 😔 But I'm here for you! Could you try sending that again?",
    "Oops! I'm experiencing some technical difficulties. Can you give me a moment and try again? 🔧",
    "Sorry, I'm having connection issues! Let me try to help you anyway - what would you like to talk about? 💭",
    "My AI brain seems to be taking a break! 🤖 Try sending your message again in a moment.",
    "Technical hiccup on my end! 😅 I really want to help - could you resend that?",
)


@dataclass(slots=True)
class AssistantConfig:
    """Tuning knobs for the mention responder."""

    bot_user_id: UUID
    mention: str = "@smartbot"
    context_messages: int = 10
    timeout_seconds: float = 20.0
    typing_ms_per_char: float = 20.0
    min_delay_seconds: float = 1.0
    max_delay_seconds: float = 3.0

    def __post_init__(self) -> None:
        if self.min_delay_seconds <= 0:
            raise ValueError("min_delay_seconds must be positive")
        if self.max_delay_seconds < self.min_delay_seconds:
            raise ValueError("max_delay_seconds must not be lower than min_delay_seconds")


class MentionResponder:
    """Generate and deliver bot replies without blocking the sender.

    Each triggering message gets its own background task: the reply is
    generated (bounded by ``timeout_seconds``, replaced by a fallback on any
    failure), held back for a typing delay proportional to its length and then
    persisted and broadcast under the chat's ordering lock.
    """

    def __init__(
        self,
        store: ChatStore,
        state: RealtimeState,
        broadcaster: Broadcaster,
        generator: TextGenerator,
        config: AssistantConfig,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._state = state
        self._broadcaster = broadcaster
        self._generator = generator
        self._config = config
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._mention_pattern = re.compile(re.escape(config.mention), re.IGNORECASE)
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def config(self) -> AssistantConfig:
        return self._config

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def mentions_bot(self, content: str) -> bool:
        return self._config.mention.lower() in content.lower()

    def should_respond(self, *, sender_id: UUID, content: str, member_ids: Sequence[UUID]) -> bool:
        if sender_id == self._config.bot_user_id:
            return False
        return self.mentions_bot(content) or self._config.bot_user_id in member_ids

    def strip_mention(self, content: str) -> str:
        return self._mention_pattern.sub("", content).strip()

    def typing_delay(self, reply: str) -> float:
        raw = len(reply) * self._config.typing_ms_per_char / 1000.0
        return min(max(raw, self._config.min_delay_seconds), self._config.max_delay_seconds)

    def fallback_reply(self) -> str:
        return self._rng.choice(FALLBACK_REPLIES)

    async def maybe_respond(self, message: MessageRecord) -> asyncio.Task[None] | None:
        """Schedule a reply to *message* when it is directed at the bot."""

        if message.author_id == self._config.bot_user_id:
            return None
        try:
            member_ids = await self._store.member_ids(message.chat_id)
        except RealtimeError:
            logger.warning("Could not load members of chat %s for assistant check", message.chat_id)
            member_ids = []
        if not self.should_respond(
            sender_id=message.author_id, content=message.content, member_ids=member_ids
        ):
            return None
        return self.schedule(message)

    def schedule(self, message: MessageRecord) -> asyncio.Task[None]:
        task = asyncio.create_task(self._respond(message), name=f"assistant-reply-{message.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _history(self, chat_id: UUID, skip_message_id: UUID | None = None) -> list[str]:
        try:
            messages = await self._store.recent_messages(chat_id, self._config.context_messages)
        except RealtimeError:
            logger.warning("Could not load context for assistant reply in chat %s", chat_id)
            return []
        lines = []
        for item in messages:
            if item.is_deleted or item.id == skip_message_id:
                continue
            name = item.author_display_name or item.author_username or str(item.author_id)
            lines.append(f"{name}: {item.content}")
        return lines

    async def generate_reply(
        self, chat_id: UUID, content: str, *, skip_message_id: UUID | None = None
    ) -> tuple[str, str]:
        """Return the reply text and an outcome label (``generated``/``fallback``).

        ``skip_message_id`` keeps the triggering message out of the context lines.
        """

        prompt = self.strip_mention(content) or content.strip()
        history = await self._history(chat_id, skip_message_id)
        try:
            reply = await asyncio.wait_for(
                self._generator(prompt, history), timeout=self._config.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("Assistant generation timed out after %.1fs", self._config.timeout_seconds)
            return self.fallback_reply(), "fallback"
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Assistant generation failed: %s", exc)
            return self.fallback_reply(), "fallback"

        reply = (reply or "").strip()
        if not reply:
            return self.fallback_reply(), "fallback"
        return reply, "generated"

    async def _respond(self, message: MessageRecord) -> None:
        chat_id = message.chat_id
        try:
            reply, outcome = await self.generate_reply(
                chat_id, message.content, skip_message_id=message.id
            )
            await self._sleep(self.typing_delay(reply))
            async with self._state.rooms.sequence(chat_id):
                record = await self._store.create_message(chat_id, self._config.bot_user_id, reply)
                await self._store.touch_chat(chat_id, record.created_at)
                await self._broadcaster.to_chat(chat_id, new_message_event(record.to_payload()))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Failed to deliver assistant reply in chat %s", chat_id)
            assistant_replies_total.labels("failed").inc()
            return
        assistant_replies_total.labels(outcome).inc()

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


__all__ = ["AssistantConfig", "FALLBACK_REPLIES", "MentionResponder", "TextGenerator"]
