import json

import pytest

from conftest import FakeSession, command_failure, tool_call, write_files_call
from llm import ToolCall
from sandbox import CommandOutput
from tools import TOOL_SPECS, ToolRunner, tool_definitions


def test_tool_definitions_expose_three_tools_with_schemas():
    definitions = {d["function"]["name"]: d["function"] for d in tool_definitions()}

    assert set(definitions) == {"terminal", "createOrUpdateFiles", "readFiles"}
    assert definitions["terminal"]["parameters"]["required"] == ["command"]
    assert "files" in definitions["createOrUpdateFiles"]["parameters"]["properties"]
    assert set(definitions) == set(TOOL_SPECS)


@pytest.mark.asyncio
async def test_writes_are_mirrored_into_working_files():
    session = FakeSession()
    files = {"app/page.tsx": "old"}
    runner = ToolRunner(session, files)

    output = await runner.dispatch(
        write_files_call({"app/page.tsx": "new", "/home/user/app/Button.tsx": "button", "./lib/x.ts": "x"})
    )

    assert output == "Updated files: app/page.tsx, app/Button.tsx, lib/x.ts"
    assert files == {"app/page.tsx": "new", "app/Button.tsx": "button", "lib/x.ts": "x"}
    assert session.files == {"app/page.tsx": "new", "app/Button.tsx": "button", "lib/x.ts": "x"}


@pytest.mark.asyncio
async def test_failed_write_is_reported_and_not_mirrored():
    session = FakeSession(fail_writes=True)
    files = {}
    runner = ToolRunner(session, files)

    output = await runner.dispatch(write_files_call({"app/page.tsx": "new"}))

    assert output.startswith("Error: sandbox write failed")
    assert files == {}


@pytest.mark.asyncio
async def test_path_escaping_home_is_rejected():
    files = {}
    runner = ToolRunner(FakeSession(), files)

    output = await runner.dispatch(write_files_call({"../etc/passwd": "x"}))

    assert output.startswith("Error: Invalid file path")
    assert files == {}


@pytest.mark.asyncio
async def test_terminal_returns_stdout():
    session = FakeSession(commands={"npm install zod --yes": CommandOutput("added 1 package", "", 0)})
    runner = ToolRunner(session, {})

    output = await runner.dispatch(tool_call("terminal", command="npm install zod --yes"))

    assert output == "added 1 package"
    assert session.executed == ["npm install zod --yes"]


@pytest.mark.asyncio
async def test_terminal_failure_includes_streams():
    session = FakeSession(commands={"npm test": command_failure(stdout="1 failing", stderr="AssertionError")})
    runner = ToolRunner(session, {})

    output = await runner.dispatch(tool_call("terminal", command="npm test"))

    assert output.startswith("Command failed: Command exited with code 1")
    assert "stdout: 1 failing" in output
    assert "stderr: AssertionError" in output


@pytest.mark.asyncio
async def test_read_files_returns_json_list():
    session = FakeSession()
    session.files = {"app/page.tsx": "page"}
    runner = ToolRunner(session, {})

    output = await runner.dispatch(tool_call("readFiles", files=["/home/user/app/page.tsx"]))

    assert json.loads(output) == [{"path": "app/page.tsx", "content": "page"}]


@pytest.mark.asyncio
async def test_read_missing_file_is_a_tool_error():
    runner = ToolRunner(FakeSession(), {})

    output = await runner.dispatch(tool_call("readFiles", files=["app/missing.tsx"]))

    assert output == "Error: File not found: app/missing.tsx"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "call",
    [
        ToolCall(id="1", name="terminal", arguments="{not json"),
        ToolCall(id="2", name="terminal", arguments="{}"),
        ToolCall(id="3", name="createOrUpdateFiles", arguments='{"files": []}'),
        ToolCall(id="4", name="readFiles", arguments='{"files": "app/page.tsx"}'),
    ],
)
async def test_invalid_arguments_are_reported_to_agent(call):
    runner = ToolRunner(FakeSession(), {})

    output = await runner.dispatch(call)

    assert output.startswith(f"Error: invalid arguments for {call.name}")


@pytest.mark.asyncio
async def test_unknown_tool():
    runner = ToolRunner(FakeSession(), {})

    assert await runner.dispatch(tool_call("deploy")) == "Error: unknown tool 'deploy'"
