"""SmartBot integration: Gemini text generation and bot account bootstrap."""

from __future__ import annotations

import logging
from typing import Sequence

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session, aliased

from baatkare.realtime.errors import ExternalServiceError

from app.config import ASSISTANT_USER_ID, get_settings
from app.core.ids import utcnow
from app.models import Chat, ChatMember, ChatRole, Message, MessageType, PresenceStatus, User

logger = logging.getLogger(__name__)

settings = get_settings()

ASSISTANT_USERNAME = "smartbot"
ASSISTANT_NAME = "SmartBot"
ASSISTANT_EMAIL = "bot@baatkare.com"
ASSISTANT_AVATAR = "🤖"
ASSISTANT_BIO = (
    "AI-powered assistant ready to help you anytime! "
    "Mention me with @smartbot or chat with me directly."
)

PERSONA_PROMPT = """You are SmartBot, an empathetic and intelligent AI companion in the BaatKare chat application. Your role is to:

1. Be a friendly companion - Chat naturally like a close friend
2. Provide helpful solutions - Offer practical advice and problem-solving assistance
3. Understand emotions - Recognize and respond to the user's emotional state with empathy
4. Be supportive - Encourage, motivate, and provide emotional support when needed
5. Be knowledgeable - Share information, explain concepts, and answer questions

Communication Style:
- Keep responses conversational and warm
- Use simple, clear language
- Be concise but thorough
- Add personality with appropriate emojis

User message: {message}

Analyze the emotional context and respond empathetically as SmartBot:"""


def build_prompt(message: str, history: Sequence[str], *, context_messages: int = 10) -> str:
    prompt = ""
    if history:
        prompt += "Previous conversation:\n"
        prompt += "\n".join(history[-context_messages:])
        prompt += "\n\n"
    return prompt + PERSONA_PROMPT.format(message=message)


def welcome_message(name: str) -> str:
    return (
        f"👋 Hello {name}! I'm SmartBot, your AI companion on BaatKare.\n\n"
        "I'm here to:\n"
        "✨ Chat with you anytime\n"
        "💡 Help solve problems\n"
        "🎯 Provide suggestions and advice\n"
        "❤️ Understand your emotions\n\n"
        "Just send me a message! How can I help you today?"
    )


class GeminiTextGenerator:
    """Generates SmartBot replies through the Gemini REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str | None = None,
        base_url: str | None = None,
        context_messages: int | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model = model or settings.gemini_model
        self.base_url = (base_url or settings.gemini_api_base_url).rstrip("/")
        self.context_messages = context_messages or settings.assistant_context_messages
        self.timeout = timeout
        self._transport = transport

    async def __call__(self, message: str, history: Sequence[str]) -> str:
        """
        Generate a reply to *message*.

        Args:
            message: User message with the bot mention removed
            history: Recent chat lines formatted as ``Name: content``

        Returns:
            Generated reply text

        Raises:
            ExternalServiceError: If the key is missing or the API call fails
        """
        if not self.api_key:
            raise ExternalServiceError("Gemini API key is not configured")

        body = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {
                            "text": build_prompt(
                                message, history, context_messages=self.context_messages
                            )
                        }
                    ],
                }
            ]
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/models/{self.model}:generateContent",
                    params={"key": self.api_key},
                    json=body,
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Gemini request failed: %s", exc)
            raise ExternalServiceError("Gemini request failed") from exc

        return self.extract_text(data)

    @staticmethod
    def extract_text(data: dict) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            raise ExternalServiceError("Gemini returned no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        return text.strip()


def ensure_assistant_user(db: Session) -> User:
    """Create the SmartBot account on first start and mark it online."""

    bot = db.get(User, ASSISTANT_USER_ID)
    now = utcnow()
    if bot is None:
        bot = User(
            id=ASSISTANT_USER_ID,
            username=ASSISTANT_USERNAME,
            email=ASSISTANT_EMAIL,
            name=ASSISTANT_NAME,
            hashed_password="",
            avatar=ASSISTANT_AVATAR,
            bio=ASSISTANT_BIO,
        )
        db.add(bot)
        logger.info("Created SmartBot user %s", ASSISTANT_USER_ID)
    bot.presence_status = PresenceStatus.ONLINE
    bot.last_seen = now
    db.commit()
    db.refresh(bot)
    return bot


def find_assistant_chat(db: Session, user_id) -> Chat | None:
    mine = aliased(ChatMember)
    bots = aliased(ChatMember)
    stmt = (
        select(Chat)
        .join(mine, (mine.chat_id == Chat.id) & (mine.user_id == user_id))
        .join(bots, (bots.chat_id == Chat.id) & (bots.user_id == ASSISTANT_USER_ID))
        .where(Chat.is_group.is_(False))
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


def ensure_assistant_chat(db: Session, user: User) -> Chat | None:
    """Give *user* a one-to-one chat with SmartBot, greeting them once."""

    if user.id == ASSISTANT_USER_ID:
        return None
    existing = find_assistant_chat(db, user.id)
    if existing is not None:
        return existing

    if db.get(User, ASSISTANT_USER_ID) is None:
        ensure_assistant_user(db)

    chat = Chat(is_group=False)
    db.add(chat)
    db.flush()
    db.add_all(
        [
            ChatMember(chat_id=chat.id, user_id=user.id, role=ChatRole.MEMBER),
            ChatMember(chat_id=chat.id, user_id=ASSISTANT_USER_ID, role=ChatRole.MEMBER),
            Message(
                chat_id=chat.id,
                author_id=ASSISTANT_USER_ID,
                content=welcome_message(user.name),
                message_type=MessageType.TEXT,
            ),
        ]
    )
    db.commit()
    db.refresh(chat)
    logger.info("Created SmartBot chat %s for user %s", chat.id, user.id)
    return chat


__all__ = [
    "ASSISTANT_USERNAME",
    "GeminiTextGenerator",
    "build_prompt",
    "ensure_assistant_chat",
    "ensure_assistant_user",
    "find_assistant_chat",
    "welcome_message",
]
