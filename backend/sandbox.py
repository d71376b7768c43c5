import logging
import posixpath
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from e2b import CommandExitException
from e2b_code_interpreter import AsyncSandbox

import config
from errors import CommandFailed, SessionUnavailable, ToolFailure

logger = logging.getLogger(__name__)

SANDBOX_HOME = "/home/user"


@dataclass
class CommandOutput:
    stdout: str
    stderr: str
    exit_code: int = 0


def normalize_path(raw: str) -> str:
    """
    Map an agent-supplied path to a path relative to the sandbox home directory.

    Accepts relative paths and absolute paths under /home/user. Anything that would
    escape the home directory is rejected.
    """
    path = (raw or "").strip().replace("\\", "/")
    if path.startswith(SANDBOX_HOME + "/"):
        path = path[len(SANDBOX_HOME) + 1:]
    elif path.startswith("/"):
        raise ToolFailure(f"Path must be relative or inside {SANDBOX_HOME}: {raw}")
    normalized = posixpath.normpath(path)
    if normalized in ("", ".") or normalized == ".." or normalized.startswith("../"):
        raise ToolFailure(f"Invalid file path: {raw}")
    return normalized


class ExecutionSession:
    """
    One turn's remote sandbox.

    Created fresh for every turn. A failed turn closes it; a successful turn
    detaches it so the preview URL stays reachable until the sandbox expires.
    The session is never the system of record for files; the orchestrator keeps
    its own copy.
    """

    def __init__(self, sandbox: AsyncSandbox, command_timeout: Optional[float] = None):
        self._sandbox = sandbox
        self._closed = False
        self.command_timeout = config.COMMAND_TIMEOUT_SECONDS if command_timeout is None else command_timeout

    @property
    def sandbox_id(self) -> str:
        return self._sandbox.sandbox_id

    @classmethod
    async def open(
        cls,
        template: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> "ExecutionSession":
        template = template or config.SANDBOX_TEMPLATE
        timeout_seconds = timeout_seconds or config.TURN_TIMEOUT_SECONDS
        try:
            kwargs = {"timeout": int(timeout_seconds)}
            if template:
                kwargs["template"] = template
            if config.E2B_API_KEY:
                kwargs["api_key"] = config.E2B_API_KEY
            sandbox = await AsyncSandbox.create(**kwargs)
        except Exception as e:
            raise SessionUnavailable(f"Failed to create sandbox: {e}") from e
        logger.info("Sandbox %s opened (template=%s)", sandbox.sandbox_id, template or "default")
        return cls(sandbox)

    async def seed(self, files: Dict[str, str]) -> None:
        await self.write_files(files)
        logger.debug("Sandbox %s seeded with %d files", self.sandbox_id, len(files))

    async def exec(self, command: str) -> CommandOutput:
        stdout: List[str] = []
        stderr: List[str] = []
        try:
            result = await self._sandbox.commands.run(
                command,
                on_stdout=stdout.append,
                on_stderr=stderr.append,
                timeout=self.command_timeout,
            )
        except CommandExitException as e:
            raise CommandFailed(
                f"Command exited with code {e.exit_code}",
                stdout="".join(stdout) or e.stdout,
                stderr="".join(stderr) or e.stderr,
                exit_code=e.exit_code,
            ) from e
        return CommandOutput(
            stdout="".join(stdout) or result.stdout,
            stderr="".join(stderr) or result.stderr,
            exit_code=result.exit_code,
        )

    async def write_files(self, files: Dict[str, str]) -> List[str]:
        written = []
        for path, content in files.items():
            rel = normalize_path(path)
            await self._sandbox.files.write(f"{SANDBOX_HOME}/{rel}", content)
            written.append(rel)
        return written

    async def read_files(self, paths: Iterable[str]) -> Dict[str, str]:
        contents: Dict[str, str] = {}
        for path in paths:
            rel = normalize_path(path)
            contents[rel] = await self._sandbox.files.read(f"{SANDBOX_HOME}/{rel}")
        return contents

    def preview_url(self, port: Optional[int] = None) -> str:
        host = self._sandbox.get_host(port or config.SANDBOX_PORT)
        return f"https://{host}"

    async def detach(self, ttl_seconds: Optional[int] = None) -> None:
        """
        Hand the sandbox over to its preview: stop managing it and let it expire
        after ``ttl_seconds``. A later ``close`` is a no-op.
        """
        if self._closed:
            return
        self._closed = True
        ttl_seconds = ttl_seconds or config.PREVIEW_TTL_SECONDS
        try:
            await self._sandbox.set_timeout(ttl_seconds)
            logger.info("Sandbox %s detached for preview (ttl=%ss)", self.sandbox_id, ttl_seconds)
        except Exception:
            logger.warning("Failed to extend sandbox %s for preview", self.sandbox_id, exc_info=True)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._sandbox.kill()
            logger.info("Sandbox %s closed", self.sandbox_id)
        except Exception:
            logger.warning("Failed to kill sandbox %s; it will expire on its own timeout", self.sandbox_id, exc_info=True)

    async def __aenter__(self) -> "ExecutionSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
