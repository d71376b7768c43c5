import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from db import fragments_table, messages_table, next_timestamp, projects_table
from errors import ERROR_MESSAGE_BODY, PersistenceFailure
from snapshot import KIND_ERROR, KIND_RESULT, ROLE_ASSISTANT, FragmentRecord, MessageRecord

logger = logging.getLogger(__name__)

# C0 controls except tab/newline/carriage return, plus DEL.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_text(value: Optional[str]) -> str:
    if not value:
        return ""
    return _CONTROL_CHARS.sub("", value)


def sanitize_files(files: Dict[str, str]) -> Dict[str, str]:
    return {sanitize_text(path): sanitize_text(content) for path, content in files.items()}


@dataclass
class TurnResult:
    kind: str
    summary: Optional[str] = None
    files: Dict[str, str] = field(default_factory=dict)
    title: Optional[str] = None
    response: Optional[str] = None
    sandbox_url: Optional[str] = None
    error_reason: Optional[str] = None
    iterations: int = 0

    @property
    def succeeded(self) -> bool:
        return self.kind == KIND_RESULT

    @classmethod
    def failure(cls, reason: str, iterations: int = 0) -> "TurnResult":
        return cls(kind=KIND_ERROR, error_reason=reason, iterations=iterations)


async def insert_message(
    conn: AsyncConnection,
    project_id: str,
    role: str,
    kind: str,
    content: str,
    images: Optional[List[str]] = None,
    turn_id: Optional[str] = None,
) -> MessageRecord:
    """
    Append a message to a project inside the caller's transaction.

    The project row is locked first so the timestamp bump below sees every
    committed message; creation times stay strictly increasing per project.
    """
    await conn.execute(
        select(projects_table.c.id).where(projects_table.c.id == project_id).with_for_update()
    )
    latest = await conn.scalar(
        select(func.max(messages_table.c.created_at)).where(messages_table.c.project_id == project_id)
    )
    message = MessageRecord(
        id=str(uuid4()),
        project_id=project_id,
        role=role,
        type=kind,
        content=sanitize_text(content),
        created_at=next_timestamp(latest),
        images=[sanitize_text(url) for url in images or []],
        turn_id=turn_id,
    )
    await conn.execute(
        messages_table.insert().values(
            id=message.id,
            project_id=message.project_id,
            role=message.role,
            type=message.type,
            content=message.content,
            images=message.images,
            turn_id=message.turn_id,
            created_at=message.created_at,
        )
    )
    return message


async def persist_outcome(engine: AsyncEngine, project_id: str, turn_id: str, result: TurnResult) -> MessageRecord:
    """
    Write the single assistant message of a turn, with its fragment on success.

    Message and fragment go in one transaction. ``turn_id`` is unique on messages,
    so a second outcome for the same turn fails instead of appending twice.
    """
    try:
        async with engine.begin() as conn:
            if result.succeeded:
                message = await insert_message(
                    conn, project_id, ROLE_ASSISTANT, KIND_RESULT, result.response or "", turn_id=turn_id
                )
                fragment = FragmentRecord(
                    id=str(uuid4()),
                    message_id=message.id,
                    sandbox_url=sanitize_text(result.sandbox_url),
                    title=sanitize_text(result.title),
                    files=sanitize_files(result.files),
                    created_at=message.created_at,
                )
                await conn.execute(
                    fragments_table.insert().values(
                        id=fragment.id,
                        message_id=fragment.message_id,
                        sandbox_url=fragment.sandbox_url,
                        title=fragment.title,
                        files=fragment.files,
                        created_at=fragment.created_at,
                    )
                )
                message.fragment = fragment
            else:
                message = await insert_message(
                    conn, project_id, ROLE_ASSISTANT, KIND_ERROR, ERROR_MESSAGE_BODY, turn_id=turn_id
                )
    except SQLAlchemyError as e:
        raise PersistenceFailure(f"Could not persist outcome of turn {turn_id} in project {project_id}") from e
    logger.info(
        "Persisted %s outcome for project %s turn %s (message %s)", message.type, project_id, turn_id, message.id
    )
    return message
