import logging
import time
from collections import deque
from typing import Deque, Dict, List
from uuid import uuid4

from fastapi import BackgroundTasks, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine

import config
from auth import check_password, create_token, hash_password, require_user
from credits import PLAN_FREE, ConsumeStatus, CreditLedger
from db import dispose_engine, get_engine, init_db, projects_table, users_table, utcnow_iso
from errors import CreditStorageError, ProjectNotFound, QuotaExhausted, Unauthenticated
from filetree import convert_files_to_tree
from llm import ChatBackend, get_chat_backend
from orchestrator import TurnOrchestrator
from snapshot import get_owned_project, load_history, project_to_dict, resolve_files
from storage import URL_PREFIX, ensure_uploads_root, save_image

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# --- FastAPI ---
app = FastAPI()

origins_env = config.CORS_ORIGINS
if origins_env.strip() == "*":
    allow_origins = ["*"]
    allow_credentials = False
else:
    allow_origins = [o.strip() for o in origins_env.split(",") if o.strip()]
    allow_credentials = True

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(URL_PREFIX, StaticFiles(directory=config.UPLOADS_ROOT, check_dir=False), name="uploads")


# --- Rate Limiting ---
_RATE_LIMIT_WINDOW = 60
_rate_limit_store: Dict[str, Deque[float]] = {}


def _client_id(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def enforce_rate_limit(request: Request) -> None:
    if config.RATE_LIMIT_PER_MIN <= 0:
        return
    now = time.time()
    client_id = _client_id(request)
    bucket = _rate_limit_store.get(client_id)
    if bucket is None:
        bucket = deque()
        _rate_limit_store[client_id] = bucket
    while bucket and now - bucket[0] > _RATE_LIMIT_WINDOW:
        bucket.popleft()
    if len(bucket) >= config.RATE_LIMIT_PER_MIN:
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Please try again later.")
    bucket.append(now)


# --- Dependencies ---
def get_ledger(engine: AsyncEngine = Depends(get_engine)) -> CreditLedger:
    return CreditLedger(engine)


def get_orchestrator(
    engine: AsyncEngine = Depends(get_engine),
    backend: ChatBackend = Depends(get_chat_backend),
) -> TurnOrchestrator:
    return TurnOrchestrator(engine, backend)


async def _owned_project(engine: AsyncEngine, project_id: str, user_id: str) -> dict:
    async with engine.connect() as conn:
        project = await get_owned_project(conn, project_id, user_id)
    if not project:
        raise ProjectNotFound(project_id)
    return project


# --- Error mapping ---
@app.exception_handler(Unauthenticated)
async def unauthenticated_handler(request: Request, exc: Unauthenticated):
    return JSONResponse({"detail": "Unauthorized"}, status_code=401)


@app.exception_handler(QuotaExhausted)
async def quota_exhausted_handler(request: Request, exc: QuotaExhausted):
    return JSONResponse(
        {"detail": str(exc), "code": "TOO_MANY_REQUESTS", "resetAt": exc.reset_at, "remaining": exc.remaining},
        status_code=429,
    )


@app.exception_handler(ProjectNotFound)
async def project_not_found_handler(request: Request, exc: ProjectNotFound):
    return JSONResponse({"detail": "Project not found"}, status_code=404)


@app.exception_handler(CreditStorageError)
async def credit_storage_handler(request: Request, exc: CreditStorageError):
    return JSONResponse({"detail": "Usage service unavailable. Please try again."}, status_code=503)


@app.on_event("startup")
async def on_startup():
    ensure_uploads_root()
    await init_db(get_engine())


@app.on_event("shutdown")
async def on_shutdown():
    await dispose_engine()


# --- Auth Handlers ---
@app.post("/api/auth/register")
async def auth_register(request: Request, engine: AsyncEngine = Depends(get_engine)):
    body = await request.json()
    email = (body.get("email") or "").strip().lower()
    password = body.get("password") or ""
    name = (body.get("name") or "").strip()

    if not email or not password or not name:
        raise HTTPException(status_code=400, detail="Email, password, and name are required")
    if len(password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")

    async with engine.begin() as conn:
        existing_user = (
            await conn.execute(select(users_table).where(users_table.c.email == email))
        ).mappings().first()
        if existing_user:
            raise HTTPException(status_code=409, detail="Email already registered")

        user = {
            "id": str(uuid4()),
            "email": email,
            "password": hash_password(password),
            "name": name,
            "plan": PLAN_FREE,
            "created_at": utcnow_iso(),
        }
        await conn.execute(users_table.insert().values(**user))

    logger.info("Registered user %s", user["id"])
    return JSONResponse(
        {
            "token": create_token(user["id"]),
            "user": {"id": user["id"], "email": user["email"], "name": user["name"], "plan": user["plan"]},
        },
        status_code=201,
    )


@app.post("/api/auth/login")
async def auth_login(request: Request, engine: AsyncEngine = Depends(get_engine)):
    body = await request.json()
    email = (body.get("email") or "").strip().lower()
    password = body.get("password") or ""

    if not email or not password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    async with engine.connect() as conn:
        user = (await conn.execute(select(users_table).where(users_table.c.email == email))).mappings().first()
    if not user or not check_password(password, user["password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    return {
        "token": create_token(user["id"]),
        "user": {"id": user["id"], "email": user["email"], "name": user["name"], "plan": user["plan"]},
    }


@app.get("/api/auth/me")
async def auth_me(user_id: str = Depends(require_user), engine: AsyncEngine = Depends(get_engine)):
    async with engine.connect() as conn:
        user = (await conn.execute(select(users_table).where(users_table.c.id == user_id))).mappings().first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": {"id": user["id"], "email": user["email"], "name": user["name"], "plan": user["plan"]}}


# --- Turn Handlers ---
class PromptBody(BaseModel):
    value: str = Field(..., min_length=1, max_length=config.MAX_PROMPT_LEN)
    images: List[str] = Field(default_factory=list)


@app.post("/api/projects", dependencies=[Depends(enforce_rate_limit)])
async def create_project(
    body: PromptBody,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(require_user),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
):
    project, message = await orchestrator.start_project(user_id, body.value, body.images)
    background_tasks.add_task(orchestrator.name_project, project["id"], body.value)
    background_tasks.add_task(orchestrator.execute_turn, project["id"], message.id, body.value, body.images)
    return JSONResponse({"project": project_to_dict(project)}, status_code=201)


@app.post("/api/projects/{project_id}/messages", dependencies=[Depends(enforce_rate_limit)])
async def create_message(
    project_id: str,
    body: PromptBody,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(require_user),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
):
    message = await orchestrator.begin_turn(user_id, project_id, body.value, body.images)
    background_tasks.add_task(orchestrator.execute_turn, project_id, message.id, body.value, body.images)
    return JSONResponse({"message": message.to_dict()}, status_code=201)


# --- Project Handlers ---
@app.get("/api/projects")
async def list_projects(user_id: str = Depends(require_user), engine: AsyncEngine = Depends(get_engine)):
    async with engine.connect() as conn:
        rows = (
            await conn.execute(
                select(projects_table)
                .where(projects_table.c.user_id == user_id)
                .order_by(projects_table.c.created_at.desc())
            )
        ).mappings().all()
    return {"projects": [project_to_dict(dict(p)) for p in rows]}


@app.get("/api/projects/{project_id}")
async def get_project(
    project_id: str, user_id: str = Depends(require_user), engine: AsyncEngine = Depends(get_engine)
):
    project = await _owned_project(engine, project_id, user_id)
    return {"project": project_to_dict(project)}


@app.delete("/api/projects/{project_id}")
async def delete_project(
    project_id: str, user_id: str = Depends(require_user), engine: AsyncEngine = Depends(get_engine)
):
    async with engine.begin() as conn:
        result = await conn.execute(
            delete(projects_table).where(
                (projects_table.c.id == project_id) & (projects_table.c.user_id == user_id)
            )
        )
    if result.rowcount == 0:
        raise ProjectNotFound(project_id)
    return {"success": True}


@app.get("/api/projects/{project_id}/messages")
async def list_messages(
    project_id: str, user_id: str = Depends(require_user), engine: AsyncEngine = Depends(get_engine)
):
    await _owned_project(engine, project_id, user_id)
    history = await load_history(engine, project_id)
    return {"messages": [m.to_dict() for m in history]}


@app.get("/api/projects/{project_id}/files")
async def project_files(
    project_id: str, user_id: str = Depends(require_user), engine: AsyncEngine = Depends(get_engine)
):
    await _owned_project(engine, project_id, user_id)
    files = await resolve_files(engine, project_id)
    return {"files": files, "tree": convert_files_to_tree(files)}


# --- Usage ---
@app.get("/api/usage")
async def usage(user_id: str = Depends(require_user), ledger: CreditLedger = Depends(get_ledger)):
    decision = await ledger.status(user_id)
    if decision.status in (ConsumeStatus.STORAGE_FAILURE, ConsumeStatus.UNAUTHENTICATED):
        return {"usage": None}
    return {
        "usage": {
            "remainingPoints": decision.remaining,
            "quota": decision.quota,
            "resetAt": decision.reset_at,
        }
    }


# --- Uploads ---
@app.post("/api/uploads/images")
async def upload_image(file: UploadFile = File(...), user_id: str = Depends(require_user)):
    data = await file.read()
    try:
        url = save_image(data, file.content_type or "", user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"url": url, "size": len(data), "type": file.content_type}


# --- Health ---
@app.get("/api/health")
async def health():
    return {"status": "ok", "timestamp": utcnow_iso()}
