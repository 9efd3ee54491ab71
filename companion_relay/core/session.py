# companion_relay/core/session.py

import asyncio
import json
import uuid
from enum import Enum
from typing import Literal, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from companion_relay.core.errors import RelayError
from companion_relay.core.registry import ConnectionRegistry
from companion_relay.core.relay import RelayEngine
from companion_relay.utils.logging import get_logger

logger = get_logger(__name__)

INVALID_FRAME_ERROR = "Invalid message format"
GENERIC_ERROR = "Failed to process message"


class SessionState(str, Enum):
    UNBOUND = "unbound"
    BOUND = "bound"
    CLOSED = "closed"


class InboundFrame(BaseModel):
    """One client -> server frame: {type, conversationId, content?}."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["message", "typing"]
    conversation_id: int = Field(..., alias="conversationId", gt=0)
    content: Optional[str] = None


class ClientSession:
    """
    Lifecycle of one WebSocket connection.

    UNBOUND until the first valid frame names a conversation, then BOUND to
    that conversation for the rest of its life, CLOSED once the transport
    goes away. The registry hangs up on peers it drops after a failed send,
    which ends this loop the same way a client disconnect does. Message
    frames run as background turns so a slow reply never stalls this
    connection's receive loop.
    """

    def __init__(self, websocket: WebSocket, registry: ConnectionRegistry, relay: RelayEngine) -> None:
        self.websocket = websocket
        self.session_id = uuid.uuid4().hex[:12]
        self.state = SessionState.UNBOUND
        self.conversation_id: Optional[int] = None
        self._registry = registry
        self._relay = relay
        self._turns: Set["asyncio.Task[None]"] = set()

    async def run(self) -> None:
        await self.websocket.accept()
        logger.info("[ws] session_id=%s connection established", self.session_id)
        try:
            while True:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None and message.get("bytes") is not None:
                    raw = message["bytes"].decode("utf-8", errors="replace")
                await self.handle_frame(raw or "")
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("[ws] session_id=%s conversation_id=%s transport error: %r",
                         self.session_id, self.conversation_id, e)
        finally:
            await self.close()

    async def handle_frame(self, raw: str) -> None:
        try:
            frame = InboundFrame.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("[ws] session_id=%s malformed frame (%d errors): %r",
                           self.session_id, e.error_count(), raw[:200])
            await self._send_error(INVALID_FRAME_ERROR)
            return

        if self.state is SessionState.UNBOUND:
            await self._bind(frame.conversation_id)
        elif frame.conversation_id != self.conversation_id:
            logger.warning("[ws] session_id=%s frame for conversation_id=%s on connection bound to %s; rejected",
                           self.session_id, frame.conversation_id, self.conversation_id)
            await self._send_error("conversationId does not match this connection")
            return

        if frame.type == "typing":
            return

        content = (frame.content or "").strip()
        if not content:
            # bind-only frame
            return

        task = asyncio.create_task(self._run_turn(frame.conversation_id, content))
        self._turns.add(task)
        task.add_done_callback(self._turns.discard)

    async def _bind(self, conversation_id: int) -> None:
        if self.state is not SessionState.UNBOUND:
            return
        await self._registry.register(conversation_id, self.websocket)
        self.conversation_id = conversation_id
        self.state = SessionState.BOUND
        logger.info("[ws] session_id=%s associated with conversation_id=%s", self.session_id, conversation_id)

    async def _run_turn(self, conversation_id: int, content: str) -> None:
        try:
            await self._relay.submit_message(conversation_id, content)
        except RelayError as e:
            await self._send_error(e.public_message)
        except Exception as e:
            logger.error("[ws] session_id=%s conversation_id=%s unexpected turn failure: %r",
                         self.session_id, conversation_id, e)
            await self._send_error(GENERIC_ERROR)

    async def _send_error(self, text: str) -> None:
        if self.state is SessionState.CLOSED:
            return
        try:
            await self.websocket.send_text(json.dumps({"error": text}))
        except Exception as e:
            logger.info("[ws] session_id=%s could not deliver error frame: %r", self.session_id, e)

    async def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        await self._registry.deregister(self.websocket)
        logger.info("[ws] session_id=%s conversation_id=%s connection closed (turns_in_flight=%d)",
                    self.session_id, self.conversation_id, len(self._turns))

    async def wait_for_turns(self) -> None:
        """Wait for every turn this session started (used on shutdown and in tests)."""
        if self._turns:
            await asyncio.gather(*list(self._turns), return_exceptions=True)
