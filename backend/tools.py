import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Tuple, Type

from pydantic import BaseModel, Field, ValidationError

from errors import CommandFailed, ToolFailure
from llm import ToolCall
from sandbox import ExecutionSession, normalize_path

logger = logging.getLogger(__name__)


class TerminalArgs(BaseModel):
    command: str = Field(..., min_length=1, description="Shell command to run inside the sandbox")


class FileWrite(BaseModel):
    path: str = Field(..., min_length=1, description="Path relative to the project root, e.g. app/page.tsx")
    content: str = Field(..., description="Full new content of the file")


class CreateOrUpdateFilesArgs(BaseModel):
    files: List[FileWrite] = Field(..., min_length=1)


class ReadFilesArgs(BaseModel):
    files: List[str] = Field(..., min_length=1, description="Paths of the files to read")


TOOL_SPECS: Dict[str, Tuple[Type[BaseModel], str]] = {
    "terminal": (TerminalArgs, "Use the terminal to run commands"),
    "createOrUpdateFiles": (CreateOrUpdateFilesArgs, "Create or update files in the sandbox"),
    "readFiles": (ReadFilesArgs, "Read files from the sandbox"),
}


def tool_definitions() -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": name,
                "description": description,
                "parameters": model.model_json_schema(),
            },
        }
        for name, (model, description) in TOOL_SPECS.items()
    ]


def format_command_failure(error: CommandFailed) -> str:
    return f"Command failed: {error}\nstdout: {error.stdout}\nstderr: {error.stderr}"


class ToolRunner:
    """
    Executes tool calls for one turn.

    ``files`` is the turn's working file map; every file the sandbox accepted is
    mirrored into it. Failures never raise out of ``dispatch``: they are turned
    into text and handed back to the agent as the tool result.
    """

    def __init__(self, session: ExecutionSession, files: Dict[str, str]):
        self.session = session
        self.files = files
        self._handlers: Dict[str, Callable[[Any], Awaitable[str]]] = {
            "terminal": self._terminal,
            "createOrUpdateFiles": self._create_or_update_files,
            "readFiles": self._read_files,
        }

    async def dispatch(self, call: ToolCall) -> str:
        spec = TOOL_SPECS.get(call.name)
        if spec is None:
            return f"Error: unknown tool '{call.name}'"
        model, _ = spec
        try:
            args = model.model_validate_json(call.arguments or "{}")
        except ValidationError as e:
            return f"Error: invalid arguments for {call.name}: {e}"
        try:
            return await self._handlers[call.name](args)
        except CommandFailed as e:
            return format_command_failure(e)
        except ToolFailure as e:
            return f"Error: {e}"
        except Exception as e:
            logger.warning("Tool %s failed in sandbox %s: %s", call.name, self.session.sandbox_id, e)
            return f"Error: {e}"

    async def _terminal(self, args: TerminalArgs) -> str:
        output = await self.session.exec(args.command)
        return output.stdout

    async def _create_or_update_files(self, args: CreateOrUpdateFilesArgs) -> str:
        updates = {normalize_path(item.path): item.content for item in args.files}
        for path, content in updates.items():
            await self.session.write_files({path: content})
            self.files[path] = content
        return "Updated files: " + ", ".join(updates)

    async def _read_files(self, args: ReadFilesArgs) -> str:
        contents = await self.session.read_files(args.files)
        return json.dumps([{"path": path, "content": content} for path, content in contents.items()])
