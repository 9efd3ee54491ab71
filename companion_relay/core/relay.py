# companion_relay/core/relay.py

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Protocol, Sequence, Tuple

from companion_relay.clients.openai_client import FALLBACK_REPLY, GeneratedReply
from companion_relay.core.errors import (
    ConversationNotFoundError,
    InvalidMessageError,
    RelayError,
    StoreError,
)
from companion_relay.core.registry import ConnectionRegistry
from companion_relay.memory.models import Conversation, Message, MessageRole
from companion_relay.memory.repository import ConversationStore
from companion_relay.utils.logging import get_logger

logger = get_logger(__name__)

# Bounds on a single user message
MAX_CONTENT_CHARS = 8000


class CounterpartGenerator(Protocol):
    async def generate_counterpart_message(
        self,
        content: str,
        conversation_id: int,
        continuation_token: Optional[str] = None,
        history: Optional[Sequence[Message]] = None,
    ) -> GeneratedReply: ...


class _TurnLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class RelayEngine:
    """
    Turns one inbound user message into a stored (user, counterpart) pair and
    broadcasts both to the conversation's live connections.

    Turns for the same conversation run one at a time, so broadcast order
    follows submission order. The generator call is bounded by
    `generator_timeout_seconds`; any generator failure yields FALLBACK_REPLY.
    """

    def __init__(
        self,
        store: ConversationStore,
        generator: CounterpartGenerator,
        registry: ConnectionRegistry,
        history_window: int = 20,
        generator_timeout_seconds: float = 30.0,
        max_content_chars: int = MAX_CONTENT_CHARS,
    ) -> None:
        self._store = store
        self._generator = generator
        self._registry = registry
        self._history_window = max(0, history_window)
        self._generator_timeout = generator_timeout_seconds
        self._max_content_chars = max_content_chars
        self._turn_locks: Dict[int, _TurnLock] = {}

    @asynccontextmanager
    async def _conversation_turn(self, conversation_id: int) -> AsyncIterator[None]:
        entry = self._turn_locks.get(conversation_id)
        if entry is None:
            entry = self._turn_locks[conversation_id] = _TurnLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._turn_locks.pop(conversation_id, None)

    def _validate(self, conversation_id: int, content: Optional[str]) -> str:
        if isinstance(conversation_id, bool) or not isinstance(conversation_id, int) or conversation_id <= 0:
            raise InvalidMessageError(
                f"Invalid conversation id: {conversation_id!r}",
                public_message="A valid conversationId is required",
            )

        cleaned = (content or "").strip()
        if not cleaned:
            raise InvalidMessageError("Empty or whitespace-only message content.")

        if len(cleaned) > self._max_content_chars:
            logger.warning(
                "[relay] conversation_id=%s content length %d exceeds max %d; truncating.",
                conversation_id,
                len(cleaned),
                self._max_content_chars,
            )
            cleaned = cleaned[: self._max_content_chars]
        return cleaned

    async def _generate(self, conversation: Conversation, content: str, history: Sequence[Message],
                        turn_id: str) -> GeneratedReply:
        t0 = time.monotonic()
        try:
            reply = await asyncio.wait_for(
                self._generator.generate_counterpart_message(
                    content,
                    conversation.id,
                    continuation_token=conversation.continuation_token,
                    history=history,
                ),
                timeout=self._generator_timeout,
            )
            text = (reply.content or "").strip() if reply is not None else ""
            if not text:
                raise ValueError("generator returned empty content")
            return GeneratedReply(content=text, continuation_token=reply.continuation_token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            latency_ms = int((time.monotonic() - t0) * 1000)
            logger.error(
                "[relay] turn_id=%s conversation_id=%s stage=generate FAILED latency_ms=%d err_type=%s err=%s; using fallback reply",
                turn_id, conversation.id, latency_ms, type(e).__name__, e,
            )
            return GeneratedReply(content=FALLBACK_REPLY, continuation_token=None)

    async def submit_message(self, conversation_id: int, content: Optional[str]) -> Tuple[Message, Message]:
        """
        Run one turn and return (user_message, counterpart_message).

        Raises InvalidMessageError before anything is stored,
        ConversationNotFoundError after the user message is stored, and
        StoreError on any store failure. Generator failures never raise.
        """
        cleaned = self._validate(conversation_id, content)
        turn_id = uuid.uuid4().hex[:12]
        start_time = time.monotonic()

        async with self._conversation_turn(conversation_id):
            stage = "persist_user"
            try:
                user_message = await asyncio.to_thread(
                    self._store.create_message, conversation_id, MessageRole.USER.value, cleaned
                )

                stage = "load_conversation"
                conversation = await asyncio.to_thread(self._store.get_conversation, conversation_id)
                if conversation is None:
                    raise ConversationNotFoundError(f"Conversation {conversation_id} does not exist.")

                stage = "load_history"
                history = []
                if self._history_window:
                    # fetch one extra: the window excludes the message just stored
                    recent = await asyncio.to_thread(
                        self._store.get_messages, conversation_id, self._history_window + 1
                    )
                    history = [m for m in recent if m.id != user_message.id][-self._history_window:]

                stage = "generate"
                reply = await self._generate(conversation, cleaned, history, turn_id)

                stage = "persist_counterpart"
                role = MessageRole.COMPANION if conversation.is_ai_companion else MessageRole.ASSISTANT
                counterpart_message = await asyncio.to_thread(
                    self._store.create_message, conversation_id, role.value, reply.content
                )

                if reply.continuation_token and not conversation.continuation_token:
                    stage = "persist_token"
                    await asyncio.to_thread(
                        self._store.update_conversation_continuation_token,
                        conversation_id,
                        reply.continuation_token,
                    )
            except RelayError as e:
                logger.error("[relay] turn_id=%s conversation_id=%s stage=%s FAILED err_type=%s err=%s",
                             turn_id, conversation_id, stage, type(e).__name__, e)
                raise
            except Exception as e:
                logger.error("[relay] turn_id=%s conversation_id=%s stage=%s unexpected error: %r",
                             turn_id, conversation_id, stage, e)
                raise StoreError(f"Unexpected failure at stage {stage}: {e}") from e

            delivered = await self._registry.broadcast(
                conversation_id,
                [user_message.to_wire(), counterpart_message.to_wire()],
            )

        latency_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "[relay] turn_id=%s conversation_id=%s OK latency_ms=%d user_message_id=%s counterpart_message_id=%s fallback=%s delivered=%d",
            turn_id,
            conversation_id,
            latency_ms,
            user_message.id,
            counterpart_message.id,
            reply.content == FALLBACK_REPLY,
            delivered,
        )
        return user_message, counterpart_message
