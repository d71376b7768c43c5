import pytest
from sqlalchemy import func, select

from conftest import make_project, make_user
from db import fragments_table, messages_table
from errors import ERROR_MESSAGE_BODY, PersistenceFailure
from persistence import TurnResult, insert_message, persist_outcome, sanitize_files, sanitize_text
from snapshot import KIND_ERROR, KIND_RESULT, ROLE_ASSISTANT, ROLE_USER, load_history


@pytest.fixture
def turn(engine):
    async def _make():
        user_id = await make_user(engine)
        project_id = await make_project(engine, user_id)
        async with engine.begin() as conn:
            message = await insert_message(conn, project_id, ROLE_USER, KIND_RESULT, "build a todo app")
        return project_id, message.id

    return _make


def success(files=None, **overrides):
    values = dict(
        kind=KIND_RESULT,
        summary="<task_summary>Todo app</task_summary>",
        files=files if files is not None else {"app/page.tsx": "export default function Page() {}"},
        title="Todo App",
        response="Here's your todo app.",
        sandbox_url="https://3000-abc.e2b.dev",
    )
    values.update(overrides)
    return TurnResult(**values)


def test_sanitize_strips_control_characters_but_keeps_whitespace():
    assert sanitize_text("a\x00b\x07c\td\ne\rf\x7f") == "abc\td\ne\rf"
    assert sanitize_text(None) == ""
    assert sanitize_files({"a\x00.txt": "x\x1by"}) == {"a.txt": "xy"}


@pytest.mark.asyncio
async def test_success_writes_message_and_fragment(engine, turn):
    project_id, turn_id = await turn()

    message = await persist_outcome(engine, project_id, turn_id, success())

    assert message.role == ROLE_ASSISTANT
    assert message.type == KIND_RESULT
    assert message.content == "Here's your todo app."
    assert message.turn_id == turn_id
    assert message.fragment.title == "Todo App"
    assert message.fragment.sandbox_url == "https://3000-abc.e2b.dev"

    history = await load_history(engine, project_id)
    assert history[-1].id == message.id
    assert history[-1].fragment.files == {"app/page.tsx": "export default function Page() {}"}


@pytest.mark.asyncio
async def test_error_writes_fixed_body_without_fragment(engine, turn):
    project_id, turn_id = await turn()

    message = await persist_outcome(engine, project_id, turn_id, TurnResult.failure("sandbox exploded: secret"))

    assert message.type == KIND_ERROR
    assert message.content == ERROR_MESSAGE_BODY
    assert message.fragment is None
    async with engine.connect() as conn:
        assert await conn.scalar(select(func.count()).select_from(fragments_table)) == 0


@pytest.mark.asyncio
async def test_persisted_text_is_sanitized(engine, turn):
    project_id, turn_id = await turn()

    await persist_outcome(
        engine,
        project_id,
        turn_id,
        success(files={"app/page\x00.tsx": "line1\nline2\x00"}, title="Todo\x00 App", response="Done\x01!"),
    )

    stored = (await load_history(engine, project_id))[-1]
    assert stored.content == "Done!"
    assert stored.fragment.title == "Todo App"
    assert stored.fragment.files == {"app/page.tsx": "line1\nline2"}


@pytest.mark.asyncio
async def test_second_outcome_for_same_turn_is_rejected(engine, turn):
    project_id, turn_id = await turn()
    await persist_outcome(engine, project_id, turn_id, success())

    with pytest.raises(PersistenceFailure):
        await persist_outcome(engine, project_id, turn_id, TurnResult.failure("retry"))

    async with engine.connect() as conn:
        count = await conn.scalar(
            select(func.count()).select_from(messages_table).where(messages_table.c.role == ROLE_ASSISTANT)
        )
    assert count == 1


@pytest.mark.asyncio
async def test_outcome_is_ordered_after_its_turn(engine, turn):
    project_id, turn_id = await turn()

    message = await persist_outcome(engine, project_id, turn_id, success())

    history = await load_history(engine, project_id)
    assert [m.id for m in history] == [turn_id, message.id]
    assert history[0].created_at < history[1].created_at
