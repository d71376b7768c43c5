import asyncio
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

import config
from credits import ConsumeStatus, CreditLedger
from db import projects_table, utcnow_iso
from errors import (
    CreditStorageError,
    GenerationFailed,
    LLMError,
    PersistenceFailure,
    ProjectNotFound,
    QuotaExhausted,
    SessionUnavailable,
    Unauthenticated,
)
from llm import ChatBackend
from persistence import TurnResult, insert_message, persist_outcome
from prompts import FRAGMENT_TITLE_PROMPT, PROJECT_NAME_PROMPT, RESPONSE_PROMPT, SUMMARY_TAG, SYSTEM_PROMPT
from sandbox import ExecutionSession
from snapshot import KIND_RESULT, ROLE_ASSISTANT, ROLE_USER, MessageRecord, get_owned_project, load_history, resolve_files
from tools import ToolRunner, tool_definitions

logger = logging.getLogger(__name__)

SUMMARY_PATTERN = re.compile(rf"<{SUMMARY_TAG}>(.*?)(?:</{SUMMARY_TAG}>|$)", re.DOTALL)

DEFAULT_TITLE = "Fragment"
DEFAULT_RESPONSE = "Here you go"
MAX_PROJECT_NAME_LEN = 50

CONTINUE_NUDGE = f"Continue. When everything is done, reply with the <{SUMMARY_TAG}> block."

_SLUG_ADJECTIVES = ["amber", "brave", "calm", "clever", "eager", "gentle", "lucky", "misty", "quiet", "swift"]
_SLUG_NOUNS = ["badger", "canyon", "comet", "falcon", "harbor", "lantern", "meadow", "otter", "river", "willow"]


def provisional_name() -> str:
    return f"{random.choice(_SLUG_ADJECTIVES)}-{random.choice(_SLUG_NOUNS)}"


def extract_summary(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = SUMMARY_PATTERN.search(text)
    if not match:
        return None
    return match.group(0).strip()


def clean_project_name(raw: str) -> str:
    name = " ".join(raw.replace('"', "").replace("'", "").split())
    if len(name) > MAX_PROJECT_NAME_LEN:
        name = name[: MAX_PROJECT_NAME_LEN - 3].strip() + "..."
    return name


def format_user_prompt(prompt: str, images: Optional[List[str]] = None) -> str:
    if not images:
        return prompt
    refs = "\n".join(f"- {url}" for url in images)
    return f"{prompt}\n\nAttached images:\n{refs}"


def format_file_context(files: Dict[str, str], budget: int) -> str:
    if not files:
        return "The project has no files yet."
    parts = ["Current project files (edit these rather than starting over):"]
    remaining = budget
    omitted = []
    for path in sorted(files):
        content = files[path]
        if len(content) > remaining:
            omitted.append(path)
            continue
        parts.append(f"--- {path} ---\n{content}")
        remaining -= len(content)
    if omitted:
        parts.append("Other files (read them with readFiles if needed): " + ", ".join(omitted))
    return "\n\n".join(parts)


@dataclass
class AgentState:
    messages: List[Dict[str, Any]]
    files: Dict[str, str]
    summary: Optional[str] = None
    iterations: int = 0


@dataclass
class TurnContext:
    project_id: str
    turn_id: str
    prompt: str
    images: List[str] = field(default_factory=list)


SessionFactory = Callable[[], Awaitable[ExecutionSession]]


class TurnOrchestrator:
    def __init__(
        self,
        engine: AsyncEngine,
        backend: ChatBackend,
        ledger: Optional[CreditLedger] = None,
        session_factory: Optional[SessionFactory] = None,
        max_iterations: Optional[int] = None,
        turn_timeout: Optional[float] = None,
        sandbox_port: Optional[int] = None,
    ):
        self.engine = engine
        self.backend = backend
        self.ledger = ledger or CreditLedger(engine)
        self.session_factory = session_factory or ExecutionSession.open
        self.max_iterations = config.AGENT_MAX_ITERATIONS if max_iterations is None else max_iterations
        self.turn_timeout = config.TURN_TIMEOUT_SECONDS if turn_timeout is None else turn_timeout
        self.sandbox_port = sandbox_port or config.SANDBOX_PORT
        self.tools = tool_definitions()

    # --- Gating ---

    async def _gate(self, conn: AsyncConnection, user_id: str) -> None:
        decision = await self.ledger.try_consume(user_id, conn=conn)
        if decision.allowed:
            return
        if decision.status is ConsumeStatus.UNAUTHENTICATED:
            raise Unauthenticated("Unknown user")
        if decision.status is ConsumeStatus.QUOTA_EXHAUSTED:
            raise QuotaExhausted(reset_at=decision.reset_at, remaining=decision.remaining)
        raise CreditStorageError("Credit store unavailable")

    async def begin_turn(
        self, user_id: Optional[str], project_id: str, prompt: str, images: Optional[List[str]] = None
    ) -> MessageRecord:
        """
        Accept a turn: consume a credit and record the user message, atomically.

        Any denial raises inside the transaction, so a denied turn leaves nothing behind.
        """
        if not user_id:
            raise Unauthenticated("Missing identity")
        async with self.engine.begin() as conn:
            if await get_owned_project(conn, project_id, user_id) is None:
                raise ProjectNotFound(project_id)
            await self._gate(conn, user_id)
            message = await insert_message(conn, project_id, ROLE_USER, KIND_RESULT, prompt, images)
        logger.info("Turn %s accepted for project %s", message.id, project_id)
        return message

    async def start_project(
        self, user_id: Optional[str], prompt: str, images: Optional[List[str]] = None
    ) -> Tuple[Dict[str, Any], MessageRecord]:
        if not user_id:
            raise Unauthenticated("Missing identity")
        project = {
            "id": str(uuid4()),
            "user_id": user_id,
            "name": provisional_name(),
            "created_at": utcnow_iso(),
        }
        async with self.engine.begin() as conn:
            await self._gate(conn, user_id)
            await conn.execute(projects_table.insert().values(**project))
            message = await insert_message(conn, project["id"], ROLE_USER, KIND_RESULT, prompt, images)
        logger.info("Project %s created with turn %s", project["id"], message.id)
        return project, message

    async def run_turn(
        self, user_id: Optional[str], project_id: str, prompt: str, images: Optional[List[str]] = None
    ) -> TurnResult:
        message = await self.begin_turn(user_id, project_id, prompt, images)
        return await self.execute_turn(project_id, message.id, prompt, images)

    # --- Execution ---

    async def execute_turn(
        self, project_id: str, turn_id: str, prompt: str, images: Optional[List[str]] = None
    ) -> TurnResult:
        ctx = TurnContext(project_id=project_id, turn_id=turn_id, prompt=prompt, images=list(images or []))
        try:
            result = await self._generate(ctx)
        except Exception as e:
            logger.exception("Turn %s in project %s crashed", turn_id, project_id)
            result = TurnResult.failure(f"unexpected error: {e}")

        if not result.succeeded:
            logger.warning(
                "Turn %s in project %s failed after %d iterations: %s",
                turn_id,
                project_id,
                result.iterations,
                result.error_reason,
            )
        try:
            await persist_outcome(self.engine, project_id, turn_id, result)
        except PersistenceFailure:
            logger.exception("Outcome lost for turn %s in project %s", turn_id, project_id)
        return result

    async def _generate(self, ctx: TurnContext) -> TurnResult:
        try:
            return await asyncio.wait_for(self._session_turn(ctx), timeout=self.turn_timeout)
        except GenerationFailed as e:
            return TurnResult.failure(e.reason, e.iterations)
        except SessionUnavailable as e:
            logger.error("No sandbox for turn %s in project %s: %s", ctx.turn_id, ctx.project_id, e)
            return TurnResult.failure("sandbox unavailable")
        except asyncio.TimeoutError:
            return TurnResult.failure(f"turn timed out after {self.turn_timeout}s")

    async def _session_turn(self, ctx: TurnContext) -> TurnResult:
        history = [m for m in await load_history(self.engine, ctx.project_id) if m.id != ctx.turn_id]
        files = await resolve_files(self.engine, ctx.project_id)
        session = await self.session_factory()
        keep_for_preview = False
        try:
            await session.seed(files)
            state = AgentState(messages=self._build_transcript(ctx, history, files), files=dict(files))
            await self._agent_loop(ctx, session, state)

            if not state.summary:
                raise GenerationFailed("no task summary within iteration budget", state.iterations)
            if not state.files:
                raise GenerationFailed("task summary without any files", state.iterations)

            sandbox_url = session.preview_url(self.sandbox_port)
            title, response = await asyncio.gather(
                self._best_effort_text(FRAGMENT_TITLE_PROMPT, state.summary, DEFAULT_TITLE),
                self._best_effort_text(RESPONSE_PROMPT, state.summary, DEFAULT_RESPONSE),
            )
            keep_for_preview = True
            return TurnResult(
                kind=KIND_RESULT,
                summary=state.summary,
                files=dict(state.files),
                title=title,
                response=response,
                sandbox_url=sandbox_url,
                iterations=state.iterations,
            )
        finally:
            if keep_for_preview:
                await session.detach()
            else:
                await session.close()

    def _build_transcript(
        self, ctx: TurnContext, history: List[MessageRecord], files: Dict[str, str]
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": SYSTEM_PROMPT}]
        for message in history[-config.MAX_HISTORY_MESSAGES:]:
            if message.role == ROLE_USER:
                messages.append({"role": "user", "content": format_user_prompt(message.content, message.images)})
            elif message.role == ROLE_ASSISTANT and message.content:
                messages.append({"role": "assistant", "content": message.content})
        messages.append({"role": "user", "content": format_user_prompt(ctx.prompt, ctx.images)})
        messages.append({"role": "user", "content": format_file_context(files, config.MAX_CONTEXT_FILE_CHARS)})
        return messages

    async def _agent_loop(self, ctx: TurnContext, session: ExecutionSession, state: AgentState) -> None:
        runner = ToolRunner(session, state.files)
        for iteration in range(1, self.max_iterations + 1):
            state.iterations = iteration
            try:
                reply = await self.backend.complete(state.messages, tools=self.tools)
            except LLMError as e:
                logger.warning(
                    "Inference failed for turn %s in project %s (iteration %d): %s",
                    ctx.turn_id,
                    ctx.project_id,
                    iteration,
                    e,
                )
                continue

            state.messages.append(reply.to_message())
            for call in reply.tool_calls:
                output = await runner.dispatch(call)
                logger.debug("Turn %s tool %s -> %d chars", ctx.turn_id, call.name, len(output))
                state.messages.append({"role": "tool", "tool_call_id": call.id, "content": output})

            summary = extract_summary(reply.content)
            if summary:
                state.summary = summary
                return
            if not reply.tool_calls:
                state.messages.append({"role": "user", "content": CONTINUE_NUDGE})

    async def _best_effort_text(self, system: str, summary: str, fallback: str) -> str:
        try:
            return await self.backend.complete_text(system, summary)
        except Exception as e:
            logger.warning("Falling back to %r: %s", fallback, e)
            return fallback

    # --- Project naming ---

    async def name_project(self, project_id: str, prompt: str) -> Optional[str]:
        """Replace the provisional name with a generated one. Keeps the old name on any failure."""
        try:
            raw = await self.backend.complete_text(PROJECT_NAME_PROMPT, prompt, max_tokens=20)
        except LLMError as e:
            logger.warning("Project naming failed for %s: %s", project_id, e)
            return None
        name = clean_project_name(raw)
        if len(name) < 2:
            return None
        async with self.engine.begin() as conn:
            await conn.execute(update(projects_table).where(projects_table.c.id == project_id).values(name=name))
        logger.info("Project %s renamed to %r", project_id, name)
        return name
