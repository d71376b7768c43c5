import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from db import fragments_table, messages_table, projects_table

logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
KIND_RESULT = "result"
KIND_ERROR = "error"


@dataclass
class FragmentRecord:
    id: str
    message_id: str
    sandbox_url: str
    title: str
    files: Dict[str, str]
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "messageId": self.message_id,
            "sandboxUrl": self.sandbox_url,
            "title": self.title,
            "files": self.files,
            "createdAt": self.created_at,
        }


@dataclass
class MessageRecord:
    id: str
    project_id: str
    role: str
    type: str
    content: str
    created_at: str
    images: List[str] = field(default_factory=list)
    turn_id: Optional[str] = None
    fragment: Optional[FragmentRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "role": self.role,
            "type": self.type,
            "content": self.content,
            "images": self.images,
            "turnId": self.turn_id,
            "createdAt": self.created_at,
            "fragment": self.fragment.to_dict() if self.fragment else None,
        }


def _history_query(project_id: str):
    return (
        select(
            messages_table,
            fragments_table.c.id.label("fragment_id"),
            fragments_table.c.sandbox_url,
            fragments_table.c.title,
            fragments_table.c.files,
            fragments_table.c.created_at.label("fragment_created_at"),
        )
        .select_from(
            messages_table.outerjoin(fragments_table, fragments_table.c.message_id == messages_table.c.id)
        )
        .where(messages_table.c.project_id == project_id)
        .order_by(messages_table.c.created_at.asc())
    )


def _row_to_message(row) -> MessageRecord:
    fragment = None
    if row["fragment_id"] is not None:
        fragment = FragmentRecord(
            id=row["fragment_id"],
            message_id=row["id"],
            sandbox_url=row["sandbox_url"],
            title=row["title"],
            files=dict(row["files"] or {}),
            created_at=row["fragment_created_at"],
        )
    return MessageRecord(
        id=row["id"],
        project_id=row["project_id"],
        role=row["role"],
        type=row["type"],
        content=row["content"],
        created_at=row["created_at"],
        images=list(row["images"] or []),
        turn_id=row["turn_id"],
        fragment=fragment,
    )


async def load_history(engine: AsyncEngine, project_id: str) -> List[MessageRecord]:
    async with engine.connect() as conn:
        rows = (await conn.execute(_history_query(project_id))).mappings().all()
    return [_row_to_message(row) for row in rows]


async def resolve_files(engine: AsyncEngine, project_id: str) -> Dict[str, str]:
    stmt = (
        select(fragments_table.c.files)
        .select_from(messages_table.join(fragments_table, fragments_table.c.message_id == messages_table.c.id))
        .where(messages_table.c.project_id == project_id)
        .order_by(messages_table.c.created_at.desc())
        .limit(1)
    )
    async with engine.connect() as conn:
        files = await conn.scalar(stmt)
    if not files:
        return {}
    return {str(path): str(content) for path, content in files.items()}


async def get_owned_project(conn: AsyncConnection, project_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    row = (
        await conn.execute(
            select(projects_table).where(
                (projects_table.c.id == project_id) & (projects_table.c.user_id == user_id)
            )
        )
    ).mappings().first()
    return dict(row) if row else None


def project_to_dict(project: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": project.get("id"),
        "userId": project.get("user_id"),
        "name": project.get("name"),
        "createdAt": project.get("created_at"),
    }
