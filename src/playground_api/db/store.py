"""
Conversation store implementations.

The completion relay and the history routes talk to the store through the
``ConversationStore`` protocol. Two implementations are provided:

    - SQLConversationStore: SQLModel tables on an async SQLAlchemy engine.
      Every operation runs in its own session and commits immediately, so the
      two-phase assistant write (insert empty, update at stream end) is
      visible to other readers as it happens.
    - MemoryConversationStore: dict-backed store selected with
      STORE_BACKEND=memory, used for local runs and tests.

Store failures surface as PersistenceError and unknown ids as NotFoundError.

Last Grunted: 10/15/2026 11:30:00 AM UTC
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncGenerator, Dict, List, Optional, Protocol

import structlog
from sqlalchemy import func, select as sa_select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlmodel import select

from playground_api.config import Settings
from playground_api.db.engine import check_db_health, create_session_factory
from playground_api.db.models import Conversation, Turn, utcnow
from playground_api.services.errors import NotFoundError, PersistenceError

logger = structlog.get_logger(__name__)


@dataclass
class ConversationPage:
    """One page of root conversations with their message counts."""
    conversations: List[Conversation]
    message_counts: Dict[int, int]
    total: int
    page: int
    page_size: int

    @property
    def has_more(self) -> bool:
        return (self.page - 1) * self.page_size + len(self.conversations) < self.total


class ConversationStore(Protocol):
    # Operations the completion relay depends on
    async def find_conversation(self, conversation_id: int) -> Conversation: ...
    async def create_conversation(self, model: str) -> Conversation: ...
    async def create_turn(self, conversation_id: int, role: str, content: str, model: Optional[str]) -> Turn: ...
    async def update_turn_content(self, turn_id: int, content: str) -> None: ...
    async def update_turn_usage(self, turn_id: int, prompt: int, completion: int, total: int) -> None: ...

    # History operations used by the conversation routes
    async def list_conversations(self, page: int, page_size: int) -> ConversationPage: ...
    async def list_turns(self, conversation_id: int) -> List[Turn]: ...
    async def get_turn(self, turn_id: int) -> Turn: ...
    async def toggle_conversation_star(self, conversation_id: int) -> bool: ...
    async def toggle_turn_star(self, turn_id: int) -> bool: ...
    async def delete_conversation(self, conversation_id: int) -> None: ...
    async def fork_conversation(self, conversation_id: int, turn_id: int) -> Conversation: ...
    async def list_forks(self, conversation_id: int) -> List[Conversation]: ...
    async def ping(self) -> bool: ...


# ============================================================================
# SQL Store
# ============================================================================

class SQLConversationStore:
    """Conversation store backed by the ``conversation`` and ``turn`` tables."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory = create_session_factory(engine)

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("store.operation_failed", operation=operation, error=str(e))
                raise PersistenceError(f"Failed to {operation}: {e}") from e

    async def _get_live_conversation(self, session: AsyncSession, conversation_id: int) -> Conversation:
        conversation = await session.get(Conversation, conversation_id)
        if conversation is None or conversation.deleted_at is not None:
            raise NotFoundError("conversation", conversation_id)
        return conversation

    async def find_conversation(self, conversation_id: int) -> Conversation:
        async with self._session("load conversation") as session:
            return await self._get_live_conversation(session, conversation_id)

    async def create_conversation(self, model: str) -> Conversation:
        async with self._session("create conversation") as session:
            conversation = Conversation(model_name=model)
            session.add(conversation)
            await session.commit()
            await session.refresh(conversation)
            return conversation

    async def create_turn(
        self,
        conversation_id: int,
        role: str,
        content: str,
        model: Optional[str],
    ) -> Turn:
        async with self._session("save message") as session:
            turn = Turn(
                conversation_id=conversation_id,
                role=role,
                content=content,
                model_name=model,
            )
            session.add(turn)
            await session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(updated_at=utcnow())
            )
            await session.commit()
            await session.refresh(turn)
            return turn

    async def _update_turn(self, operation: str, turn_id: int, **values) -> None:
        async with self._session(operation) as session:
            result = await session.execute(
                update(Turn).where(Turn.id == turn_id).values(updated_at=utcnow(), **values)
            )
            if result.rowcount == 0:
                raise NotFoundError("message", turn_id)
            await session.commit()

    async def update_turn_content(self, turn_id: int, content: str) -> None:
        await self._update_turn("update assistant message", turn_id, content=content)

    async def update_turn_usage(self, turn_id: int, prompt: int, completion: int, total: int) -> None:
        await self._update_turn(
            "update assistant message with usage",
            turn_id,
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=total,
        )

    async def list_conversations(self, page: int, page_size: int) -> ConversationPage:
        async with self._session("fetch conversations") as session:
            root = (Conversation.parent_id.is_(None)) & (Conversation.deleted_at.is_(None))
            total = (
                await session.execute(sa_select(func.count(Conversation.id)).where(root))
            ).scalar() or 0

            result = await session.execute(
                select(Conversation)
                .where(root)
                .order_by(Conversation.created_at.desc(), Conversation.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            conversations = list(result.scalars().all())

            counts: Dict[int, int] = {}
            ids = [c.id for c in conversations]
            if ids:
                count_rows = await session.execute(
                    sa_select(Turn.conversation_id, func.count(Turn.id))
                    .where(Turn.conversation_id.in_(ids))
                    .group_by(Turn.conversation_id)
                )
                counts = {conversation_id: count for conversation_id, count in count_rows.all()}

            return ConversationPage(
                conversations=conversations,
                message_counts={cid: counts.get(cid, 0) for cid in ids},
                total=total,
                page=page,
                page_size=page_size,
            )

    async def list_turns(self, conversation_id: int) -> List[Turn]:
        async with self._session("fetch messages") as session:
            await self._get_live_conversation(session, conversation_id)
            result = await session.execute(
                select(Turn).where(Turn.conversation_id == conversation_id).order_by(Turn.id)
            )
            return list(result.scalars().all())

    async def get_turn(self, turn_id: int) -> Turn:
        async with self._session("fetch message") as session:
            turn = await session.get(Turn, turn_id)
            if turn is None:
                raise NotFoundError("message", turn_id)
            return turn

    async def toggle_conversation_star(self, conversation_id: int) -> bool:
        async with self._session("star conversation") as session:
            conversation = await self._get_live_conversation(session, conversation_id)
            conversation.starred = not conversation.starred
            conversation.updated_at = utcnow()
            await session.commit()
            return conversation.starred

    async def toggle_turn_star(self, turn_id: int) -> bool:
        async with self._session("star message") as session:
            turn = await session.get(Turn, turn_id)
            if turn is None:
                raise NotFoundError("message", turn_id)
            turn.starred = not turn.starred
            turn.updated_at = utcnow()
            await session.commit()
            return turn.starred

    async def delete_conversation(self, conversation_id: int) -> None:
        async with self._session("delete conversation") as session:
            conversation = await self._get_live_conversation(session, conversation_id)
            conversation.deleted_at = utcnow()
            await session.commit()

    async def fork_conversation(self, conversation_id: int, turn_id: int) -> Conversation:
        async with self._session("fork conversation") as session:
            parent = await self._get_live_conversation(session, conversation_id)
            result = await session.execute(
                select(Turn).where(Turn.conversation_id == conversation_id).order_by(Turn.id)
            )
            turns = list(result.scalars().all())
            if not any(t.id == turn_id for t in turns):
                raise NotFoundError("message", turn_id)

            fork = Conversation(
                model_name=parent.model_name,
                parent_id=parent.id,
                fork_turn_id=turn_id,
            )
            session.add(fork)
            await session.flush()  # Get ID without committing

            for turn in turns:
                if turn.id == turn_id:
                    break
                session.add(_copy_turn(turn, fork.id))

            await session.commit()
            await session.refresh(fork)
            return fork

    async def list_forks(self, conversation_id: int) -> List[Conversation]:
        async with self._session("fetch forks") as session:
            result = await session.execute(
                select(Conversation)
                .where(Conversation.parent_id == conversation_id)
                .where(Conversation.deleted_at.is_(None))
                .order_by(Conversation.id)
            )
            return list(result.scalars().all())

    async def ping(self) -> bool:
        return await check_db_health(self.engine)


def _copy_turn(turn: Turn, conversation_id: int) -> Turn:
    return Turn(
        conversation_id=conversation_id,
        role=turn.role,
        content=turn.content,
        model_name=turn.model_name,
        prompt_tokens=turn.prompt_tokens,
        completion_tokens=turn.completion_tokens,
        total_tokens=turn.total_tokens,
    )


# ============================================================================
# In-Memory Store
# ============================================================================

@dataclass
class MemoryConversationStore:
    """Dict-backed store with the same semantics as the SQL store."""

    conversations: Dict[int, Conversation] = field(default_factory=dict)
    turns: Dict[int, Turn] = field(default_factory=dict)
    _next_ids: Dict[str, int] = field(default_factory=lambda: {"conversation": 1, "turn": 1})

    def _allocate(self, kind: str) -> int:
        next_id = self._next_ids[kind]
        self._next_ids[kind] = next_id + 1
        return next_id

    def _live(self, conversation_id: int) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None or conversation.deleted_at is not None:
            raise NotFoundError("conversation", conversation_id)
        return conversation

    def _turn(self, turn_id: int) -> Turn:
        turn = self.turns.get(turn_id)
        if turn is None:
            raise NotFoundError("message", turn_id)
        return turn

    def _turns_of(self, conversation_id: int) -> List[Turn]:
        return sorted(
            (t for t in self.turns.values() if t.conversation_id == conversation_id),
            key=lambda t: t.id,
        )

    def _add_turn(self, turn: Turn) -> Turn:
        turn.id = self._allocate("turn")
        self.turns[turn.id] = turn
        return turn

    async def find_conversation(self, conversation_id: int) -> Conversation:
        return self._live(conversation_id)

    async def create_conversation(self, model: str) -> Conversation:
        conversation = Conversation(id=self._allocate("conversation"), model_name=model)
        self.conversations[conversation.id] = conversation
        return conversation

    async def create_turn(
        self,
        conversation_id: int,
        role: str,
        content: str,
        model: Optional[str],
    ) -> Turn:
        if conversation_id not in self.conversations:
            raise PersistenceError(f"Failed to save message: no conversation {conversation_id}")
        self.conversations[conversation_id].updated_at = utcnow()
        return self._add_turn(
            Turn(conversation_id=conversation_id, role=role, content=content, model_name=model)
        )

    async def update_turn_content(self, turn_id: int, content: str) -> None:
        turn = self._turn(turn_id)
        turn.content = content
        turn.updated_at = utcnow()

    async def update_turn_usage(self, turn_id: int, prompt: int, completion: int, total: int) -> None:
        turn = self._turn(turn_id)
        turn.prompt_tokens = prompt
        turn.completion_tokens = completion
        turn.total_tokens = total
        turn.updated_at = utcnow()

    async def list_conversations(self, page: int, page_size: int) -> ConversationPage:
        roots = sorted(
            (
                c for c in self.conversations.values()
                if c.parent_id is None and c.deleted_at is None
            ),
            key=lambda c: (c.created_at, c.id),
            reverse=True,
        )
        start = (page - 1) * page_size
        conversations = roots[start:start + page_size]
        return ConversationPage(
            conversations=conversations,
            message_counts={c.id: len(self._turns_of(c.id)) for c in conversations},
            total=len(roots),
            page=page,
            page_size=page_size,
        )

    async def list_turns(self, conversation_id: int) -> List[Turn]:
        self._live(conversation_id)
        return self._turns_of(conversation_id)

    async def get_turn(self, turn_id: int) -> Turn:
        return self._turn(turn_id)

    async def toggle_conversation_star(self, conversation_id: int) -> bool:
        conversation = self._live(conversation_id)
        conversation.starred = not conversation.starred
        conversation.updated_at = utcnow()
        return conversation.starred

    async def toggle_turn_star(self, turn_id: int) -> bool:
        turn = self._turn(turn_id)
        turn.starred = not turn.starred
        turn.updated_at = utcnow()
        return turn.starred

    async def delete_conversation(self, conversation_id: int) -> None:
        self._live(conversation_id).deleted_at = utcnow()

    async def fork_conversation(self, conversation_id: int, turn_id: int) -> Conversation:
        parent = self._live(conversation_id)
        turns = self._turns_of(conversation_id)
        if not any(t.id == turn_id for t in turns):
            raise NotFoundError("message", turn_id)

        fork = Conversation(
            id=self._allocate("conversation"),
            model_name=parent.model_name,
            parent_id=parent.id,
            fork_turn_id=turn_id,
        )
        self.conversations[fork.id] = fork
        for turn in turns:
            if turn.id == turn_id:
                break
            self._add_turn(_copy_turn(turn, fork.id))
        return fork

    async def list_forks(self, conversation_id: int) -> List[Conversation]:
        return sorted(
            (
                c for c in self.conversations.values()
                if c.parent_id == conversation_id and c.deleted_at is None
            ),
            key=lambda c: c.id,
        )

    async def ping(self) -> bool:
        return True


def create_store(settings: Settings, engine: Optional[AsyncEngine] = None) -> ConversationStore:
    """
    Build the store selected by ``settings.store_backend``.

    Args:
        settings: Service settings
        engine: Async engine, required for the SQL backend

    Returns:
        ConversationStore: The configured store
    """
    if settings.store_backend == "memory":
        logger.info("store.init", backend="memory")
        return MemoryConversationStore()
    if engine is None:
        raise ValueError("SQL store requires an engine")
    logger.info("store.init", backend="sql")
    return SQLConversationStore(engine)
