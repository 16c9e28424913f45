"""
Completion streaming relay.

Bridges a chat client and the upstream completion endpoint:

    1. Resolve the conversation (load by id, or create one for the model)
    2. Persist input turns that do not carry an id yet, in order
    3. Forward {model, messages: [{role, content}], stream} upstream
    4. On a 2xx reply, insert an empty assistant turn before relaying anything
    5. Relay the upstream body line by line while buffering the same lines
    6. At EOF, assemble the final text and usage from the buffer and write
       them to the assistant turn (content first, then usage if reported)

The work is split into ``open()`` (steps 1-4) and iterating the returned
``RelayStream`` (steps 5-6) so the HTTP layer can turn early failures into
JSON error responses before any streaming response has started.
``submit()`` runs both against any async byte sink.

Partial writes are never rolled back. An assistant turn left with empty
content is the record of a stream that failed or was abandoned.

Last Grunted: 10/16/2026 05:40:00 PM UTC
"""
import asyncio
import json
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple

import httpx
import structlog
from pydantic import BaseModel

from playground_api.config import Settings
from playground_api.db.models import Conversation
from playground_api.db.store import ConversationStore
from playground_api.services.errors import (
    InputError,
    UpstreamConnectError,
    UpstreamStatusError,
    UpstreamStreamError,
)
from playground_api.services.stream_assembler import (
    AssembledReply,
    StreamAccumulator,
    Usage,
    iter_lines,
    tee_lines,
)

logger = structlog.get_logger(__name__)

VALID_ROLES = ("system", "user", "assistant")


# ============================================================================
# Request / Result Models
# ============================================================================

class TurnInput(BaseModel):
    """
    One turn of a submitted conversation.

    Attributes:
        id: Id of an already-persisted turn; None for a new turn
        role: Message author role ('system', 'user', 'assistant')
        content: Message text
        model_name: Model the client associates with the turn (informational)
    """
    id: Optional[int] = None
    role: str
    content: str = ""
    model_name: Optional[str] = None


class ChatRequest(BaseModel):
    """
    Conversation-completion request.

    Attributes:
        model: Upstream model identifier. Required, non-empty.
        messages: Ordered conversation turns. Required, non-empty.
        stream: Whether the upstream should stream its reply
        chat_id: Existing conversation id; None or 0 starts a new conversation
    """
    model: str
    messages: List[TurnInput]
    stream: bool = False
    chat_id: Optional[int] = None


@dataclass
class RelayResult:
    conversation_id: int
    created: bool
    assistant_turn_id: int
    content: str
    usage: Optional[Usage]


def build_upstream_payload(request: ChatRequest) -> dict:
    """Upstream body: ids, stars and timestamps never leave the relay."""
    return {
        "model": request.model,
        "messages": [{"role": m.role, "content": m.content} for m in request.messages],
        "stream": request.stream,
    }


# ============================================================================
# Relay Stream
# ============================================================================

class RelayStream:
    """
    An accepted upstream reply, ready to be relayed.

    Iterate it to receive the upstream body line by line. When iteration
    reaches EOF the assembled reply has been persisted and ``result`` is set.
    If iteration stops early (caller gone, read error) the upstream response
    is closed and the assistant turn keeps its empty content.
    """

    def __init__(
        self,
        relay: "CompletionRelay",
        response: httpx.Response,
        conversation_id: int,
        created: bool,
        assistant_turn_id: int,
        stream: bool,
    ):
        self._relay = relay
        self._response = response
        self.conversation_id = conversation_id
        self.created = created
        self.assistant_turn_id = assistant_turn_id
        self.stream = stream
        self.result: Optional[RelayResult] = None

    @property
    def media_type(self) -> str:
        return "text/event-stream" if self.stream else "application/json"

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.lines()

    async def _read_lines(self) -> AsyncIterator[bytes]:
        try:
            async for line in iter_lines(self._response.aiter_bytes()):
                yield line
        except httpx.TransportError as e:
            logger.warning(
                "relay.stream.read_error",
                conversation_id=self.conversation_id,
                error=str(e),
            )
            raise UpstreamStreamError(f"Error reading upstream stream: {e}") from e

    async def lines(self) -> AsyncIterator[bytes]:
        accumulator = StreamAccumulator()
        try:
            async for line in tee_lines(self._read_lines(), accumulator.feed):
                yield line
        except asyncio.CancelledError:
            logger.warning(
                "relay.stream.cancelled",
                conversation_id=self.conversation_id,
                bytes_relayed=accumulator.bytes_seen,
            )
            raise
        finally:
            await self._response.aclose()

        self.result = await self._relay.finalize(self, accumulator.assemble())

    async def aclose(self) -> None:
        """Release the upstream connection without relaying."""
        await self._response.aclose()


# ============================================================================
# Completion Relay
# ============================================================================

class CompletionRelay:
    """
    Relays conversation completions to the upstream endpoint and persists
    the exchange.

    Args:
        store: Conversation store the relay writes turns to
        client: Shared httpx client used for the upstream call
        settings: Upstream URL, credential and attribution headers
    """

    def __init__(self, store: ConversationStore, client: httpx.AsyncClient, settings: Settings):
        self.store = store
        self.client = client
        self.settings = settings

    async def submit(
        self,
        request: ChatRequest,
        write: Callable[[bytes], Awaitable[None]],
    ) -> RelayResult:
        """
        Run a full submission, writing every upstream line to ``write``.

        Args:
            request: The conversation-completion request
            write: Async sink receiving each relayed line as it arrives

        Returns:
            RelayResult: Conversation id, assistant turn id, final content and usage

        Raises:
            RelayError: Any error of the relay taxonomy; writes already
                committed are kept
        """
        stream = await self.open(request)
        try:
            async with aclosing(stream.lines()) as lines:
                async for line in lines:
                    await write(line)
        finally:
            await stream.aclose()
        return stream.result

    async def open(self, request: ChatRequest) -> RelayStream:
        """
        Persist the input and start the upstream call.

        Returns once the upstream has accepted the request and the assistant
        placeholder exists; no body bytes have been read yet.

        Raises:
            InputError: Empty model or messages, or an unknown role
            NotFoundError: ``chat_id`` does not name a live conversation
            PersistenceError: A store write failed
            UpstreamConnectError: The upstream could not be reached
            UpstreamStatusError: The upstream answered with a non-2xx status

        Last Grunted: 10/16/2026 05:40:00 PM UTC
        """
        self._validate(request)

        conversation, created = await self._resolve_conversation(request)
        log = logger.bind(conversation_id=conversation.id, model=request.model)
        log.info(
            "relay.submit.start",
            created=created,
            stream=request.stream,
            messages=len(request.messages),
        )

        await self._persist_new_turns(conversation.id, request)

        response = await self._send(build_upstream_payload(request))
        if not response.is_success:
            await self._raise_for_status(response)

        try:
            placeholder = await self.store.create_turn(
                conversation.id, "assistant", "", request.model
            )
        except BaseException:
            await response.aclose()
            raise

        log.info("relay.upstream.accepted", assistant_turn_id=placeholder.id)
        return RelayStream(
            relay=self,
            response=response,
            conversation_id=conversation.id,
            created=created,
            assistant_turn_id=placeholder.id,
            stream=request.stream,
        )

    async def finalize(self, stream: RelayStream, reply: AssembledReply) -> RelayResult:
        """Write the assembled content, then the usage counts if any were seen."""
        await self.store.update_turn_content(stream.assistant_turn_id, reply.content)
        if reply.usage is not None:
            await self.store.update_turn_usage(
                stream.assistant_turn_id,
                reply.usage.prompt_tokens,
                reply.usage.completion_tokens,
                reply.usage.total_tokens,
            )

        logger.info(
            "relay.stream.complete",
            conversation_id=stream.conversation_id,
            assistant_turn_id=stream.assistant_turn_id,
            content_length=len(reply.content),
            records=reply.records,
            skipped_records=reply.skipped,
            total_tokens=reply.usage.total_tokens if reply.usage else None,
        )
        return RelayResult(
            conversation_id=stream.conversation_id,
            created=stream.created,
            assistant_turn_id=stream.assistant_turn_id,
            content=reply.content,
            usage=reply.usage,
        )

    # ------------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------------

    @staticmethod
    def _validate(request: ChatRequest) -> None:
        if not request.model or not request.model.strip():
            raise InputError("'model' is a required property", param="model")
        if not request.messages:
            raise InputError("'messages' must contain at least one message", param="messages")
        for index, message in enumerate(request.messages):
            if message.role not in VALID_ROLES:
                raise InputError(
                    f"Invalid role '{message.role}', expected one of {', '.join(VALID_ROLES)}",
                    param=f"messages.{index}.role",
                )

    async def _resolve_conversation(self, request: ChatRequest) -> Tuple[Conversation, bool]:
        if request.chat_id:
            return await self.store.find_conversation(request.chat_id), False
        return await self.store.create_conversation(request.model), True

    async def _persist_new_turns(self, conversation_id: int, request: ChatRequest) -> None:
        for message in request.messages:
            if message.id:
                continue
            await self.store.create_turn(
                conversation_id, message.role, message.content, request.model
            )

    async def _send(self, payload: dict) -> httpx.Response:
        upstream_request = self.client.build_request(
            "POST",
            self.settings.completions_url,
            json=payload,
            headers=self.settings.upstream_headers(),
        )
        try:
            return await self.client.send(upstream_request, stream=True)
        except httpx.TransportError as e:
            logger.warning(
                "relay.upstream.unreachable",
                url=self.settings.completions_url,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise UpstreamConnectError(f"Error making request: {e}") from e

    @staticmethod
    async def _raise_for_status(response: httpx.Response) -> None:
        try:
            body = await response.aread()
        except httpx.TransportError:
            body = b""
        finally:
            await response.aclose()

        message = code = None
        try:
            error = json.loads(body).get("error")
        except (ValueError, AttributeError):
            error = None
        if isinstance(error, dict):
            message = error.get("message")
            code = error.get("code")

        logger.warning(
            "relay.upstream.error",
            status_code=response.status_code,
            upstream_message=message,
            upstream_code=code,
        )
        raise UpstreamStatusError(response.status_code, message, code)
