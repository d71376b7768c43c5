import asyncio

import pytest

from conftest import make_project, make_user
from errors import ERROR_MESSAGE_BODY
from persistence import TurnResult, insert_message, persist_outcome
from snapshot import KIND_ERROR, KIND_RESULT, ROLE_USER, load_history, resolve_files


async def add_user_message(engine, project_id, content="make it"):
    async with engine.begin() as conn:
        return await insert_message(conn, project_id, ROLE_USER, KIND_RESULT, content)


async def add_success(engine, project_id, files, title="Fragment"):
    turn = await add_user_message(engine, project_id)
    result = TurnResult(
        kind=KIND_RESULT,
        summary="<task_summary>done</task_summary>",
        files=files,
        title=title,
        response="Here you go",
        sandbox_url="https://3000-sbx.e2b.dev",
    )
    return await persist_outcome(engine, project_id, turn.id, result)


async def add_failure(engine, project_id):
    turn = await add_user_message(engine, project_id)
    return await persist_outcome(engine, project_id, turn.id, TurnResult.failure("no summary"))


@pytest.fixture
def project(engine):
    async def _make():
        user_id = await make_user(engine)
        return await make_project(engine, user_id)

    return _make


@pytest.mark.asyncio
async def test_new_project_resolves_to_empty_map(engine, project):
    project_id = await project()
    assert await resolve_files(engine, project_id) == {}


@pytest.mark.asyncio
async def test_resolves_latest_successful_turn(engine, project):
    project_id = await project()
    await add_success(engine, project_id, {"app/page.tsx": "v1"})
    await add_success(engine, project_id, {"app/page.tsx": "v2", "app/Button.tsx": "button"})

    assert await resolve_files(engine, project_id) == {"app/page.tsx": "v2", "app/Button.tsx": "button"}


@pytest.mark.asyncio
async def test_error_turns_never_contribute_files(engine, project):
    project_id = await project()
    await add_success(engine, project_id, {"app/page.tsx": "good"})
    await add_failure(engine, project_id)
    await add_failure(engine, project_id)

    assert await resolve_files(engine, project_id) == {"app/page.tsx": "good"}


@pytest.mark.asyncio
async def test_only_errors_resolve_to_empty(engine, project):
    project_id = await project()
    await add_failure(engine, project_id)

    assert await resolve_files(engine, project_id) == {}


@pytest.mark.asyncio
async def test_resolve_is_idempotent_and_returns_copies(engine, project):
    project_id = await project()
    await add_success(engine, project_id, {"a.txt": "A"})

    first = await resolve_files(engine, project_id)
    first["a.txt"] = "mutated"
    first["b.txt"] = "new"
    second = await resolve_files(engine, project_id)

    assert second == {"a.txt": "A"}
    assert await resolve_files(engine, project_id) == second


@pytest.mark.asyncio
async def test_projects_are_isolated(engine, project):
    first = await project()
    second = await project()
    await add_success(engine, first, {"first.txt": "1"})

    assert await resolve_files(engine, second) == {}


@pytest.mark.asyncio
async def test_history_is_ordered_with_fragments_attached(engine, project):
    project_id = await project()
    await add_success(engine, project_id, {"a.txt": "A"}, title="Landing Page")
    await add_failure(engine, project_id)

    history = await load_history(engine, project_id)

    assert [(m.role, m.type) for m in history] == [
        ("user", "result"),
        ("assistant", "result"),
        ("user", "result"),
        ("assistant", "error"),
    ]
    assert history[1].fragment.title == "Landing Page"
    assert history[1].fragment.files == {"a.txt": "A"}
    assert history[3].fragment is None
    assert history[3].content == ERROR_MESSAGE_BODY
    assert history[3].type == KIND_ERROR


@pytest.mark.asyncio
async def test_timestamps_strictly_increase_under_concurrent_inserts(engine, project):
    project_id = await project()

    await asyncio.gather(*(add_user_message(engine, project_id, f"m{i}") for i in range(20)))
    history = await load_history(engine, project_id)

    stamps = [m.created_at for m in history]
    assert len(stamps) == 20
    assert all(earlier < later for earlier, later in zip(stamps, stamps[1:]))
