"""
Chat completion relay router.

Implements POST /api/chat:
    - Accepts {model, messages, stream, chat_id}
    - Persists new user turns and forwards the conversation upstream
    - Relays the upstream body to the client as it arrives
      (Server-Sent Events when stream=true, the JSON body otherwise)
    - Returns the new conversation id in the X-Chat-ID header when the
      request started a conversation

Request Schema:
{
    "model": "openai/gpt-4o-mini",          # Required
    "messages": [                           # Required
        {"id": 12, "role": "user", "content": "..."},   # already stored
        {"role": "user", "content": "..."}              # new turn
    ],
    "stream": true,                         # Optional, default false
    "chat_id": 7                            # Optional, omit or 0 for a new chat
}

Errors raised before the first byte is relayed (unknown chat, unreachable
upstream, upstream rejection) are returned as JSON error bodies. Once
streaming has started, a failure ends the stream without an error marker.

Last Grunted: 10/17/2026 11:05:00 AM UTC
"""
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from playground_api.dependencies import get_relay
from playground_api.services.relay import ChatRequest, CompletionRelay, RelayStream

router = APIRouter(prefix="/api")


class RelayResponse(StreamingResponse):
    """
    Streaming response over an opened ``RelayStream``.

    The upstream response is released when the ASGI call ends, including
    when the client goes away before the first line is pulled and the
    line generator never starts.
    """

    def __init__(self, stream: RelayStream, headers: Optional[dict] = None):
        self._lines = stream.lines()
        super().__init__(self._lines, media_type=stream.media_type, headers=headers)
        self.relay_stream = stream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._lines.aclose()
            await self.relay_stream.aclose()


@router.post("/chat")
async def create_chat_completion(
    request: ChatRequest,
    relay: CompletionRelay = Depends(get_relay),
) -> RelayResponse:
    """
    Relay a conversation completion.

    Args:
        request: ChatRequest with model, messages, stream flag and chat_id
        relay: Completion relay (injected)

    Returns:
        RelayResponse carrying the upstream body verbatim

    Raises:
        RelayError: Mapped to a JSON error response by the app's handler

    Example SSE Stream:
        data: {"choices":[{"delta":{"content":"Hel"}}]}

        data: {"choices":[{"delta":{"content":"lo"}}]}

        data: [DONE]
    """
    stream = await relay.open(request)

    headers = {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",  # Disable nginx buffering
    }
    if stream.stream:
        headers["Connection"] = "keep-alive"
    if stream.created:
        headers["X-Chat-ID"] = str(stream.conversation_id)

    return RelayResponse(stream, headers=headers)
