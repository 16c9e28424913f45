"""
SQLModel database models for the Playground API.

Defines the database schema for:
    - Conversation: A chat thread with fork lineage and a soft-delete marker
    - Turn: A single user or assistant message within a conversation

Both models use integer primary keys and UTC timestamps. Turns are ordered
by insertion (ascending id) within their conversation.

Last Grunted: 10/14/2026 03:40:00 PM UTC
"""
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(SQLModel, table=True):
    """
    Conversation model.

    Represents a single chat thread. A forked conversation records the
    conversation it was copied from and the turn the fork was taken at.

    Attributes:
        id: Conversation identifier (assigned by the store)
        model_name: Model the conversation was started with
        starred: Whether the user starred the conversation
        parent_id: Conversation this one was forked from (nullable)
        fork_turn_id: Turn in the parent at which the fork was taken (nullable)
        created_at: UTC timestamp of creation
        updated_at: UTC timestamp of last update
        deleted_at: Soft-delete marker (nullable)

    Table: conversation

    Last Grunted: 10/14/2026 03:40:00 PM UTC
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    model_name: str = Field(default="")
    starred: bool = Field(default=False)
    parent_id: Optional[int] = Field(default=None, foreign_key="conversation.id", index=True)
    # Lookup-only reference, the origin turn belongs to the parent conversation
    fork_turn_id: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = Field(default=None, index=True)


class Turn(SQLModel, table=True):
    """
    Chat message model.

    Assistant turns are inserted with empty content as soon as the upstream
    accepts the request and are filled in once the stream completes.

    Attributes:
        id: Turn identifier (assigned by the store)
        conversation_id: Owning conversation (foreign key)
        role: Message author role ('user', 'assistant', 'system')
        content: Message text content
        model_name: Model used for the exchange
        starred: Whether the user starred the message
        prompt_tokens / completion_tokens / total_tokens: Upstream usage, 0 until known
        created_at: UTC timestamp of creation
        updated_at: UTC timestamp of last update

    Table: turn
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    conversation_id: int = Field(foreign_key="conversation.id", index=True)
    role: str
    content: str = Field(default="")
    model_name: Optional[str] = Field(default=None)
    starred: bool = Field(default=False)
    prompt_tokens: int = Field(default=0)
    completion_tokens: int = Field(default=0)
    total_tokens: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
