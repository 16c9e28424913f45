"""
Conversation history router.

Browsing, starring, deleting and forking of stored conversations:
    - GET    /api/chat?page=N                            - Paginated root conversations
    - POST   /api/chat/new                               - Create an empty conversation
    - GET    /api/chat/{chat_id}                         - Conversation with its messages
    - POST   /api/chat/{chat_id}/star                    - Toggle conversation star
    - DELETE /api/chat/{chat_id}                         - Soft delete
    - POST   /api/chat/fork                              - Fork before a message
    - GET    /api/chat/{chat_id}/forks                   - Forks taken from a conversation
    - GET    /api/chat/{chat_id}/fork-message/{message_id} - Message a fork started from
    - POST   /api/message/{message_id}/star              - Toggle message star

Last Grunted: 10/17/2026 02:30:00 PM UTC
"""
from datetime import datetime
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, ConfigDict, Field

from playground_api.config import Settings
from playground_api.db.models import Conversation, Turn
from playground_api.db.store import ConversationStore
from playground_api.dependencies import get_app_settings, get_store

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api")


# ============================================================================
# Request/Response Models
# ============================================================================

class NewChatRequest(BaseModel):
    model: str = ""


class NewChatResponse(BaseModel):
    id: int


class ForkChatRequest(BaseModel):
    """Fork a conversation before ``messageId``.

    ``newContent`` is the edited text the client is about to send in the
    fork; it is not stored here, the client submits it through /api/chat.
    Snake-case field names are accepted as well.
    """
    model_config = ConfigDict(populate_by_name=True)

    chat_id: int = Field(alias="chatId")
    message_id: int = Field(alias="messageId")
    new_content: Optional[str] = Field(default=None, alias="newContent")


class StarResponse(BaseModel):
    starred: bool


class MessageResponse(BaseModel):
    """
    Stored message.

    Attributes:
        id: Message id
        chat_id: Owning conversation id
        role: Message role (user, assistant, system)
        content: Message content
        model_name: Model used for the exchange
        starred: Star flag
        prompt_tokens / completion_tokens / total_tokens: Upstream usage
        created_at / updated_at: Timestamps
    """
    id: int
    chat_id: int
    role: str
    content: str
    model_name: Optional[str]
    starred: bool
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    created_at: datetime
    updated_at: datetime


class ConversationResponse(BaseModel):
    id: int
    model_name: str
    starred: bool
    parent_id: Optional[int]
    fork_message_id: Optional[int]
    created_at: datetime
    updated_at: datetime
    messages: List[MessageResponse] = []


class ConversationSummary(ConversationResponse):
    model_config = ConfigDict(populate_by_name=True)

    message_count: int = Field(alias="messageCount")


class ConversationListResponse(BaseModel):
    # Paging fields keep the camelCase names the browser client reads
    model_config = ConfigDict(populate_by_name=True)

    chats: List[ConversationSummary]
    total: int
    page: int
    page_size: int = Field(alias="pageSize")
    has_more: bool = Field(alias="hasMore")


class ForkResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: Optional[int] = Field(alias="messageId")
    fork_id: int = Field(alias="forkId")


class ForkMessageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    message_content: str = Field(alias="messageContent")
    chat_id: int = Field(alias="chatId")
    created_at: datetime = Field(alias="createdAt")


def _message_response(turn: Turn) -> MessageResponse:
    return MessageResponse(
        id=turn.id,
        chat_id=turn.conversation_id,
        role=turn.role,
        content=turn.content,
        model_name=turn.model_name,
        starred=turn.starred,
        prompt_tokens=turn.prompt_tokens,
        completion_tokens=turn.completion_tokens,
        total_tokens=turn.total_tokens,
        created_at=turn.created_at,
        updated_at=turn.updated_at,
    )


def _conversation_fields(conversation: Conversation) -> dict:
    return {
        "id": conversation.id,
        "model_name": conversation.model_name,
        "starred": conversation.starred,
        "parent_id": conversation.parent_id,
        "fork_message_id": conversation.fork_turn_id,
        "created_at": conversation.created_at,
        "updated_at": conversation.updated_at,
    }


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/chat", response_model=ConversationListResponse)
async def list_chats(
    page: int = 1,
    store: ConversationStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    """
    List root conversations, newest first.

    Forks are reachable from their parent and are not listed here.

    Args:
        page: 1-based page number; values below 1 are treated as 1
        store: Conversation store (injected)
        settings: Service settings (injected, provides the page size)

    Returns:
        ConversationListResponse: Page of conversations with message counts
    """
    result = await store.list_conversations(max(page, 1), settings.chat_page_size)
    return ConversationListResponse(
        chats=[
            ConversationSummary(
                **_conversation_fields(c),
                message_count=result.message_counts.get(c.id, 0),
            )
            for c in result.conversations
        ],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        has_more=result.has_more,
    )


@router.post("/chat/new", response_model=NewChatResponse)
async def new_chat(
    request: NewChatRequest,
    store: ConversationStore = Depends(get_store),
):
    """Create an empty conversation for ``model``."""
    conversation = await store.create_conversation(request.model)
    logger.info("conversation.created", conversation_id=conversation.id, model=request.model)
    return NewChatResponse(id=conversation.id)


@router.post("/chat/fork", response_model=NewChatResponse)
async def fork_chat(
    request: ForkChatRequest,
    response: Response,
    store: ConversationStore = Depends(get_store),
):
    """
    Fork a conversation at a message.

    The new conversation records its parent and the message it was forked
    at, and receives copies of every message strictly before that message.

    Raises:
        NotFoundError: Unknown conversation, or the message is not part of it
    """
    fork = await store.fork_conversation(request.chat_id, request.message_id)
    logger.info(
        "conversation.forked",
        conversation_id=request.chat_id,
        message_id=request.message_id,
        fork_id=fork.id,
    )
    response.headers["X-Fork-Chat-ID"] = str(fork.id)
    return NewChatResponse(id=fork.id)


@router.get("/chat/{chat_id}", response_model=ConversationResponse)
async def get_chat(
    chat_id: int,
    store: ConversationStore = Depends(get_store),
):
    """Return a conversation with its messages in insertion order."""
    conversation = await store.find_conversation(chat_id)
    turns = await store.list_turns(chat_id)
    return ConversationResponse(
        **_conversation_fields(conversation),
        messages=[_message_response(t) for t in turns],
    )


@router.post("/chat/{chat_id}/star", response_model=StarResponse)
async def toggle_chat_star(
    chat_id: int,
    store: ConversationStore = Depends(get_store),
):
    return StarResponse(starred=await store.toggle_conversation_star(chat_id))


@router.delete("/chat/{chat_id}")
async def delete_chat(
    chat_id: int,
    store: ConversationStore = Depends(get_store),
):
    """Soft delete a conversation; its messages stay in the store."""
    await store.delete_conversation(chat_id)
    logger.info("conversation.deleted", conversation_id=chat_id)
    return {"message": "Chat deleted successfully"}


@router.get("/chat/{chat_id}/forks", response_model=List[ForkResponse])
async def list_chat_forks(
    chat_id: int,
    store: ConversationStore = Depends(get_store),
):
    forks = await store.list_forks(chat_id)
    return [ForkResponse(message_id=f.fork_turn_id, fork_id=f.id) for f in forks]


@router.get("/chat/{chat_id}/fork-message/{message_id}", response_model=ForkMessageResponse)
async def get_fork_message(
    chat_id: int,
    message_id: int,
    store: ConversationStore = Depends(get_store),
):
    """Return the parent message a fork was taken at."""
    turn = await store.get_turn(message_id)
    return ForkMessageResponse(
        id=turn.id,
        message_content=turn.content,
        chat_id=turn.conversation_id,
        created_at=turn.created_at,
    )


@router.post("/message/{message_id}/star", response_model=StarResponse)
async def toggle_message_star(
    message_id: int,
    store: ConversationStore = Depends(get_store),
):
    return StarResponse(starred=await store.toggle_turn_star(message_id))
