import asyncio
import json
from typing import Dict, List, Optional
from uuid import uuid4

import pytest
import pytest_asyncio

from db import create_engine_for, init_db, projects_table, users_table, utcnow_iso
from errors import CommandFailed, ToolFailure
from llm import AssistantReply, ToolCall
from sandbox import CommandOutput, normalize_path


# --- Database ---

@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite database per test, schema created."""
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


async def make_user(engine, plan: str = "free", email: Optional[str] = None) -> str:
    user_id = str(uuid4())
    async with engine.begin() as conn:
        await conn.execute(
            users_table.insert().values(
                id=user_id,
                email=email or f"{user_id}@example.com",
                password="not-a-real-hash",
                name="Test User",
                plan=plan,
                created_at=utcnow_iso(),
            )
        )
    return user_id


async def make_project(engine, user_id: str, name: str = "test-project") -> str:
    project_id = str(uuid4())
    async with engine.begin() as conn:
        await conn.execute(
            projects_table.insert().values(id=project_id, user_id=user_id, name=name, created_at=utcnow_iso())
        )
    return project_id


# --- Sandbox ---

class FakeSession:
    """In-memory stand-in for ExecutionSession."""

    def __init__(self, commands: Optional[Dict[str, object]] = None, fail_writes: bool = False):
        self.sandbox_id = f"fake-{uuid4().hex[:8]}"
        self.files: Dict[str, str] = {}
        self.seeded: Optional[Dict[str, str]] = None
        self.commands = commands or {}
        self.executed: List[str] = []
        self.fail_writes = fail_writes
        self.closed = False
        self.detached = False

    async def seed(self, files):
        self.seeded = dict(files)
        await self.write_files(files)

    async def exec(self, command):
        self.executed.append(command)
        outcome = self.commands.get(command, CommandOutput(stdout="ok", stderr="", exit_code=0))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def write_files(self, files):
        if self.fail_writes and files:
            raise RuntimeError("sandbox write failed")
        written = []
        for path, content in files.items():
            rel = normalize_path(path)
            self.files[rel] = content
            written.append(rel)
        return written

    async def read_files(self, paths):
        contents = {}
        for path in paths:
            rel = normalize_path(path)
            if rel not in self.files:
                raise ToolFailure(f"File not found: {path}")
            contents[rel] = self.files[rel]
        return contents

    def preview_url(self, port=None):
        return f"https://{port or 3000}-{self.sandbox_id}.sandbox.test"

    async def detach(self, ttl_seconds=None):
        self.detached = True

    async def close(self):
        self.closed = True


@pytest.fixture
def sessions():
    """Every FakeSession handed out by ``session_factory``."""
    return []


@pytest.fixture
def session_factory(sessions):
    async def factory():
        session = FakeSession()
        sessions.append(session)
        return session

    return factory


# --- Agent backend ---

def tool_call(name: str, **arguments) -> ToolCall:
    return ToolCall(id=f"call_{uuid4().hex[:8]}", name=name, arguments=json.dumps(arguments))


def write_files_call(files: Dict[str, str]) -> ToolCall:
    return tool_call("createOrUpdateFiles", files=[{"path": p, "content": c} for p, c in files.items()])


def summary_reply(text: str = "Built it.") -> AssistantReply:
    return AssistantReply(content=f"<task_summary>\n{text}\n</task_summary>")


class ScriptedBackend:
    """
    ChatBackend replacement that replays scripted agent replies.

    Items in ``replies`` are AssistantReply objects or exceptions to raise.
    ``texts`` maps a system prompt to the text (or exception) ``complete_text`` returns.
    """

    def __init__(self, replies=None, texts=None, hold: Optional[asyncio.Event] = None):
        self.replies = list(replies or [])
        self.texts = texts or {}
        self.hold = hold
        self.started = asyncio.Event()
        self.calls: List[List[dict]] = []
        self.text_calls: List[tuple] = []

    async def complete(self, messages, tools=None, **kwargs):
        self.calls.append([dict(m) for m in messages])
        self.started.set()
        if self.hold is not None:
            await self.hold.wait()
        if not self.replies:
            return AssistantReply(content="Still working on it.")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def complete_text(self, system, prompt, max_tokens=256):
        self.text_calls.append((system, prompt))
        value = self.texts.get(system, "Generated Text")
        if isinstance(value, BaseException):
            raise value
        return value


def command_failure(stdout: str = "", stderr: str = "boom", exit_code: int = 1) -> CommandFailed:
    return CommandFailed(f"Command exited with code {exit_code}", stdout=stdout, stderr=stderr, exit_code=exit_code)
