"""FastAPI server: diagram generation, revision history, threads, credits."""

from __future__ import annotations

import hashlib
import hmac
import logging
import threading
import time
from dataclasses import asdict

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from mermaidsmith import config
from mermaidsmith.credits import CreditLedger
from mermaidsmith.errors import DiagramError
from mermaidsmith.generator import DiagramGenerator
from mermaidsmith.llm.provider import GeminiProvider
from mermaidsmith.llm.scheduler import RateLimitedScheduler
from mermaidsmith.pipeline import GenerationPipeline
from mermaidsmith.storage.sqlite_store import Diagram, DiagramThread, Owner, SqliteStore
from mermaidsmith.validation import create_validator

# Configure logging on import, before anything else logs
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Mermaidsmith", description="Prompt-to-Mermaid diagram service")

STATUS_BY_CODE = {
    "invalid_input": 400,
    "anonymous_quota_exceeded": 401,
    "insufficient_credits": 403,
    "not_found": 404,
    "generation_exhausted": 502,
    "provider_error": 502,
}

# One scheduler (and so one rate budget) per process, created on first use
_scheduler: RateLimitedScheduler | None = None
_generator: DiagramGenerator | None = None
_init_lock = threading.Lock()


def _get_scheduler() -> RateLimitedScheduler:
    global _scheduler
    with _init_lock:
        if _scheduler is None:
            _scheduler = RateLimitedScheduler()
        return _scheduler


def _get_generator() -> DiagramGenerator:
    global _generator
    scheduler = _get_scheduler()
    with _init_lock:
        if _generator is None:
            logger.info("Initializing generator (model %s, validator %s)...", config.GEMINI_MODEL, config.VALIDATOR)
            t0 = time.perf_counter()
            _generator = DiagramGenerator(
                provider=GeminiProvider(),
                scheduler=scheduler,
                validator=create_validator(),
            )
            logger.info("Generator ready (%.2fs)", time.perf_counter() - t0)
        return _generator


def _get_sqlite_store() -> SqliteStore:
    """Fresh connection per request (sqlite connections are per-thread)."""
    store = SqliteStore(config.SQLITE_PATH)
    store.init_db()
    return store


def _get_pipeline() -> GenerationPipeline:
    store = _get_sqlite_store()
    return GenerationPipeline(store=store, ledger=CreditLedger(store), generator=_get_generator())


def _owner(user_id: str | None, anonymous_id: str | None) -> Owner:
    """Identity comes from the auth layer in front of us as opaque headers."""
    if user_id:
        return Owner(user_id=user_id)
    if anonymous_id:
        return Owner(anonymous_id=anonymous_id)
    raise HTTPException(status_code=401, detail="X-User-Id or X-Anonymous-Id header required")


@app.exception_handler(DiagramError)
def _diagram_error_handler(request: Request, exc: DiagramError) -> JSONResponse:
    status = STATUS_BY_CODE.get(exc.code, 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc), "code": exc.code})


# ── Schemas ──


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)
    is_complex: bool = False


class FollowUpRequest(BaseModel):
    prompt: str = Field(min_length=1)
    is_complex: bool = False
    change_description: str | None = None


class UpdateDiagramRequest(BaseModel):
    code: str | None = None
    prompt: str | None = None


class RenameThreadRequest(BaseModel):
    name: str = Field(min_length=1)


class DiagramResponse(BaseModel):
    id: str
    prompt: str
    code: str
    diagram_type: str
    is_complex: bool
    parent_diagram_id: str | None
    thread_id: str | None
    created_at: str
    updated_at: str


class ThreadResponse(BaseModel):
    id: str
    name: str
    root_diagram_id: str | None
    created_at: str
    updated_at: str
    latest_diagram: DiagramResponse | None = None


class ThreadDetailResponse(ThreadResponse):
    diagrams: list[DiagramResponse]


class GenerateResponse(BaseModel):
    diagram: DiagramResponse
    thread: ThreadResponse | None
    attempts: int
    enhanced_text: str | None = None
    credits_remaining: int | None = None


class LineageEntry(BaseModel):
    id: str
    prompt: str
    code: str


class DeleteResponse(BaseModel):
    deleted: int


def _diagram_response(d: Diagram) -> DiagramResponse:
    return DiagramResponse(
        id=d.id,
        prompt=d.prompt,
        code=d.code,
        diagram_type=d.diagram_type,
        is_complex=d.is_complex,
        parent_diagram_id=d.parent_diagram_id,
        thread_id=d.thread_id,
        created_at=d.created_at,
        updated_at=d.updated_at,
    )


def _thread_response(t: DiagramThread, latest: Diagram | None = None) -> ThreadResponse:
    data = asdict(t)
    data.pop("user_id")
    data.pop("anonymous_id")
    return ThreadResponse(**data, latest_diagram=_diagram_response(latest) if latest else None)


# ── Health ──


@app.get("/health")
def health():
    return {"status": "ok", "scheduler": _get_scheduler().stats()}


# ── Generation ──


@app.post("/diagrams", response_model=GenerateResponse)
def generate_diagram(
    req: GenerateRequest,
    x_user_id: str | None = Header(default=None),
    x_anonymous_id: str | None = Header(default=None),
):
    owner = _owner(x_user_id, x_anonymous_id)
    logger.info("POST /diagrams prompt=%r complex=%s", req.prompt[:120], req.is_complex)
    t0 = time.perf_counter()
    result = _get_pipeline().generate_root(req.prompt, req.is_complex, owner)
    logger.info("Generation complete: %s, %.2fs total", result.diagram.diagram_type, time.perf_counter() - t0)
    return GenerateResponse(
        diagram=_diagram_response(result.diagram),
        thread=_thread_response(result.thread) if result.thread else None,
        attempts=result.attempts,
        enhanced_text=result.enhanced_text,
        credits_remaining=result.credits_remaining,
    )


@app.post("/diagrams/{diagram_id}/follow-ups", response_model=GenerateResponse)
def generate_follow_up(
    diagram_id: str,
    req: FollowUpRequest,
    x_user_id: str | None = Header(default=None),
    x_anonymous_id: str | None = Header(default=None),
):
    owner = _owner(x_user_id, x_anonymous_id)
    logger.info("POST /diagrams/%s/follow-ups prompt=%r", diagram_id, req.prompt[:120])
    result = _get_pipeline().generate_follow_up(
        diagram_id, req.prompt, req.is_complex, req.change_description, owner,
    )
    return GenerateResponse(
        diagram=_diagram_response(result.diagram),
        thread=_thread_response(result.thread) if result.thread else None,
        attempts=result.attempts,
        credits_remaining=result.credits_remaining,
    )


# ── Diagrams ──


@app.get("/diagrams", response_model=list[DiagramResponse])
def list_diagrams(
    limit: int | None = None,
    x_user_id: str | None = Header(default=None),
    x_anonymous_id: str | None = Header(default=None),
):
    owner = _owner(x_user_id, x_anonymous_id)
    return [_diagram_response(d) for d in _get_pipeline().list_diagrams(owner, limit=limit)]


@app.get("/diagrams/{diagram_id}", response_model=DiagramResponse)
def get_diagram(
    diagram_id: str,
    x_user_id: str | None = Header(default=None),
    x_anonymous_id: str | None = Header(default=None),
):
    owner = _owner(x_user_id, x_anonymous_id)
    return _diagram_response(_get_pipeline().get_diagram(diagram_id, owner))


@app.get("/diagrams/{diagram_id}/lineage", response_model=list[LineageEntry])
def get_lineage(
    diagram_id: str,
    x_user_id: str | None = Header(default=None),
    x_anonymous_id: str | None = Header(default=None),
):
    owner = _owner(x_user_id, x_anonymous_id)
    return [LineageEntry(**entry) for entry in _get_pipeline().get_lineage(diagram_id, owner)]


@app.patch("/diagrams/{diagram_id}", response_model=DiagramResponse)
def update_diagram(
    diagram_id: str,
    req: UpdateDiagramRequest,
    x_user_id: str | None = Header(default=None),
    x_anonymous_id: str | None = Header(default=None),
):
    owner = _owner(x_user_id, x_anonymous_id)
    updated = _get_pipeline().update_diagram(diagram_id, owner, code=req.code, prompt=req.prompt)
    return _diagram_response(updated)


@app.delete("/diagrams/{diagram_id}", response_model=DeleteResponse)
def delete_diagram(
    diagram_id: str,
    x_user_id: str | None = Header(default=None),
    x_anonymous_id: str | None = Header(default=None),
):
    owner = _owner(x_user_id, x_anonymous_id)
    return DeleteResponse(deleted=_get_pipeline().delete_diagram(diagram_id, owner))


# ── Threads ──


@app.get("/threads", response_model=list[ThreadResponse])
def list_threads(
    x_user_id: str | None = Header(default=None),
    x_anonymous_id: str | None = Header(default=None),
):
    owner = _owner(x_user_id, x_anonymous_id)
    return [_thread_response(t, latest) for t, latest in _get_pipeline().list_threads(owner)]


@app.get("/threads/{thread_id}", response_model=ThreadDetailResponse)
def get_thread(
    thread_id: str,
    x_user_id: str | None = Header(default=None),
    x_anonymous_id: str | None = Header(default=None),
):
    owner = _owner(x_user_id, x_anonymous_id)
    thread, diagrams = _get_pipeline().get_thread(thread_id, owner)
    base = _thread_response(thread, diagrams[0] if diagrams else None)
    return ThreadDetailResponse(
        **base.model_dump(exclude={"latest_diagram"}),
        latest_diagram=base.latest_diagram,
        diagrams=[_diagram_response(d) for d in diagrams],
    )


@app.patch("/threads/{thread_id}", response_model=ThreadResponse)
def rename_thread(
    thread_id: str,
    req: RenameThreadRequest,
    x_user_id: str | None = Header(default=None),
    x_anonymous_id: str | None = Header(default=None),
):
    owner = _owner(x_user_id, x_anonymous_id)
    return _thread_response(_get_pipeline().rename_thread(thread_id, req.name, owner))


@app.delete("/threads/{thread_id}", response_model=DeleteResponse)
def delete_thread(
    thread_id: str,
    x_user_id: str | None = Header(default=None),
    x_anonymous_id: str | None = Header(default=None),
):
    owner = _owner(x_user_id, x_anonymous_id)
    return DeleteResponse(deleted=_get_pipeline().delete_thread(thread_id, owner))


# ── Credits ──


@app.get("/credits")
def get_credits(
    x_user_id: str | None = Header(default=None),
    x_anonymous_id: str | None = Header(default=None),
):
    owner = _owner(x_user_id, x_anonymous_id)
    return _get_pipeline().get_credits(owner)


# ── Billing ──


class SubscriptionEvent(BaseModel):
    user_id: str = Field(min_length=1)
    event_name: str = "subscription_created"


@app.post("/webhooks/subscription")
async def subscription_webhook(request: Request, x_signature: str | None = Header(default=None)):
    """Billing webhook: grant a subscriber's monthly credits.

    The body must be signed with HMAC-SHA256 using ``WEBHOOK_SECRET``.
    """
    payload = await request.body()
    if not config.WEBHOOK_SECRET or not x_signature:
        raise HTTPException(status_code=401, detail="Invalid signature")
    digest = hmac.new(config.WEBHOOK_SECRET.encode(), payload, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(digest, x_signature):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = SubscriptionEvent.model_validate_json(payload)
    except ValidationError as e:
        logger.warning("Malformed webhook payload (%d errors)", e.error_count())
        raise HTTPException(status_code=400, detail="Malformed webhook payload") from e
    if event.event_name not in ("subscription_created", "subscription_payment_success"):
        logger.info("Ignoring webhook event %s", event.event_name)
        return {"status": "ignored"}

    def _grant():
        return CreditLedger(_get_sqlite_store()).grant_monthly(event.user_id)

    row = await run_in_threadpool(_grant)
    return {
        "status": "ok",
        "credits": row.credits,
        "last_monthly_grant": row.last_monthly_grant.isoformat() if row.last_monthly_grant else None,
    }
