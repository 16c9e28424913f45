from contextlib import asynccontextmanager

import pytest

from conftest import DONE_RECORD, data_record, delta_record, streaming_upstream
from playground_api.config import Settings
from playground_api.db.engine import close_db, create_engine, init_db
from playground_api.db.store import SQLConversationStore
from playground_api.services.errors import NotFoundError
from playground_api.services.relay import ChatRequest, CompletionRelay, TurnInput


@asynccontextmanager
async def sql_store(tmp_path):
    settings = Settings(_env_file=None, database_url=f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}")
    engine = create_engine(settings)
    try:
        await init_db(engine)
        yield SQLConversationStore(engine)
    finally:
        await close_db(engine)


async def _seed(store, contents=("q1", "a1", "q2", "a2")):
    conversation = await store.create_conversation("m1")
    turns = []
    for index, content in enumerate(contents):
        role = "user" if index % 2 == 0 else "assistant"
        turns.append(await store.create_turn(conversation.id, role, content, "m1"))
    return conversation, turns


@pytest.mark.asyncio
async def test_two_phase_assistant_write(tmp_path):
    async with sql_store(tmp_path) as store:
        conversation = await store.create_conversation("m1")
        placeholder = await store.create_turn(conversation.id, "assistant", "", "m1")
        assert (await store.get_turn(placeholder.id)).content == ""

        await store.update_turn_content(placeholder.id, "Hello")
        await store.update_turn_usage(placeholder.id, 4, 2, 6)

        turn = await store.get_turn(placeholder.id)
        assert turn.content == "Hello"
        assert (turn.prompt_tokens, turn.completion_tokens, turn.total_tokens) == (4, 2, 6)


@pytest.mark.asyncio
async def test_updates_to_unknown_turn_raise_not_found(tmp_path):
    async with sql_store(tmp_path) as store:
        with pytest.raises(NotFoundError):
            await store.update_turn_content(12345, "x")
        with pytest.raises(NotFoundError):
            await store.get_turn(12345)


@pytest.mark.asyncio
async def test_turns_listed_in_insertion_order(tmp_path):
    async with sql_store(tmp_path) as store:
        conversation, turns = await _seed(store)
        listed = await store.list_turns(conversation.id)
        assert [t.id for t in listed] == [t.id for t in turns]
        assert [t.content for t in listed] == ["q1", "a1", "q2", "a2"]


@pytest.mark.asyncio
async def test_fork_copies_turns_before_the_fork_point(tmp_path):
    async with sql_store(tmp_path) as store:
        conversation, turns = await _seed(store)

        fork = await store.fork_conversation(conversation.id, turns[2].id)

        assert fork.parent_id == conversation.id
        assert fork.fork_turn_id == turns[2].id
        copied = await store.list_turns(fork.id)
        assert [t.content for t in copied] == ["q1", "a1"]
        assert all(t.conversation_id == fork.id for t in copied)
        assert [f.id for f in await store.list_forks(conversation.id)] == [fork.id]


@pytest.mark.asyncio
async def test_fork_at_foreign_turn_is_rejected(tmp_path):
    async with sql_store(tmp_path) as store:
        conversation, _ = await _seed(store)
        _, other_turns = await _seed(store, ("elsewhere",))

        with pytest.raises(NotFoundError):
            await store.fork_conversation(conversation.id, other_turns[0].id)
        assert await store.list_forks(conversation.id) == []


@pytest.mark.asyncio
async def test_list_conversations_pages_roots_newest_first(tmp_path):
    async with sql_store(tmp_path) as store:
        created = []
        for _ in range(4):
            conversation, _ = await _seed(store, ("q",))
            created.append(conversation)
        first_turn = (await store.list_turns(created[0].id))[0]
        # Forks are not listed as roots
        await store.fork_conversation(created[0].id, first_turn.id)

        first = await store.list_conversations(1, 3)
        assert first.total == 4
        assert [c.id for c in first.conversations] == [c.id for c in reversed(created)][:3]
        assert first.has_more is True
        assert first.message_counts[created[3].id] == 1

        second = await store.list_conversations(2, 3)
        assert [c.id for c in second.conversations] == [created[0].id]
        assert second.has_more is False


@pytest.mark.asyncio
async def test_stars_toggle(tmp_path):
    async with sql_store(tmp_path) as store:
        conversation, turns = await _seed(store, ("q",))

        assert await store.toggle_conversation_star(conversation.id) is True
        assert await store.toggle_conversation_star(conversation.id) is False
        assert await store.toggle_turn_star(turns[0].id) is True
        assert (await store.get_turn(turns[0].id)).starred is True


@pytest.mark.asyncio
async def test_soft_delete_hides_conversation(tmp_path):
    async with sql_store(tmp_path) as store:
        conversation, turns = await _seed(store, ("q",))

        await store.delete_conversation(conversation.id)

        with pytest.raises(NotFoundError):
            await store.find_conversation(conversation.id)
        with pytest.raises(NotFoundError):
            await store.delete_conversation(conversation.id)
        assert (await store.list_conversations(1, 15)).total == 0
        # Turns stay in the table
        assert (await store.get_turn(turns[0].id)).content == "q"


@pytest.mark.asyncio
async def test_ping(tmp_path):
    async with sql_store(tmp_path) as store:
        assert await store.ping() is True


@pytest.mark.asyncio
async def test_full_relay_over_sql_store(tmp_path, settings):
    body = (
        delta_record("Hel")
        + delta_record("lo")
        + data_record({"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}})
        + DONE_RECORD
    )
    upstream = streaming_upstream(body, chunk_size=7)
    relayed = []

    async def write(line: bytes) -> None:
        relayed.append(line)

    async with sql_store(tmp_path) as store:
        relay = CompletionRelay(store=store, client=upstream.client(), settings=settings)
        request = ChatRequest(model="m1", messages=[TurnInput(role="user", content="hi")], stream=True)

        result = await relay.submit(request, write)

        assert b"".join(relayed) == body
        turns = await store.list_turns(result.conversation_id)
        assert [(t.role, t.content) for t in turns] == [("user", "hi"), ("assistant", "Hello")]
        assert turns[1].total_tokens == 7
