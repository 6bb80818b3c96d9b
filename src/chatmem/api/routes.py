"""FastAPI HTTP API for chatmem."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from chatmem.config import Config
from chatmem.exceptions import (
    ConfigError,
    NotFoundError,
    TaskAlreadyRunningError,
    ValidationError,
)
from chatmem.stack import MemoryStack
from chatmem.types import (
    CacheStats,
    ConsolidationResult,
    ConversationSession,
    IndexContentResult,
    IndexedSession,
    IndexingResult,
    IndexingStats,
    MemoryFact,
    MemoryFile,
    MemoryFileContent,
    SearchResult,
)


# --- Request/Response Models ---

class SearchRequest(BaseModel):
    query: str
    max_results: int | None = None
    min_score: float | None = None
    sources: list[str] | None = None
    vector_weight: float | None = None
    text_weight: float | None = None


class SearchResponse(BaseModel):
    results: list[SearchResult]
    count: int


class IndexFileRequest(BaseModel):
    path: str
    content: str
    source: str = "memory"


class FileListResponse(BaseModel):
    files: list[MemoryFile]
    count: int


class IndexSessionRequest(BaseModel):
    session: ConversationSession
    consolidate: bool = False
    force_reindex: bool = False


class SessionListResponse(BaseModel):
    sessions: list[IndexedSession]
    count: int


class FactListResponse(BaseModel):
    facts: list[MemoryFact]
    count: int


class FactSearchRequest(BaseModel):
    query: str
    limit: int = 10
    min_score: float = 0.5


class ConsolidateRequest(BaseModel):
    session_ids: list[str] | None = None
    update_memory_file: bool = True
    min_confidence: float | None = None
    deduplicate_facts: bool = True


class CacheCleanupRequest(BaseModel):
    max_entries: int | None = Field(default=None, gt=0)
    ttl_days: float | None = None


class IntervalRequest(BaseModel):
    seconds: float = Field(gt=0)


# --- App factory ---

def get_stack(request: Request) -> MemoryStack:
    return request.app.state.stack


def create_app(
    config: Config | None = None,
    stack: MemoryStack | None = None,
    start_scheduler: bool = False,
) -> FastAPI:
    """Build the API around ``stack`` (or a new one built from ``config``).

    A stack built here is closed on shutdown; a passed-in one is left to
    its owner.
    """
    owns_stack = stack is None
    stack = stack or MemoryStack(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_scheduler:
            stack.scheduler.start()
        yield
        stack.scheduler.stop()
        if owns_stack:
            await stack.close()

    app = FastAPI(
        title="chatmem API",
        version="0.1.0",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.stack = stack

    # Bearer token auth middleware
    token = stack.config.api.bearer_token

    @app.middleware("http")
    async def auth_middleware(request: Request, call_next):
        if request.url.path in ("/api/v1/health", "/docs", "/openapi.json"):
            return await call_next(request)
        if token:
            auth = request.headers.get("Authorization", "")
            if not auth.startswith("Bearer ") or auth[7:] != token:
                return ORJSONResponse({"detail": "Unauthorized"}, status_code=401)
        return await call_next(request)

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return ORJSONResponse({"detail": str(exc)}, status_code=404)

    @app.exception_handler(ValidationError)
    @app.exception_handler(ConfigError)
    async def invalid(request: Request, exc: Exception):
        return ORJSONResponse({"detail": str(exc)}, status_code=422)

    @app.exception_handler(TaskAlreadyRunningError)
    async def conflict(request: Request, exc: TaskAlreadyRunningError):
        return ORJSONResponse({"detail": str(exc)}, status_code=409)

    # --- Routes ---

    @app.get("/api/v1/health")
    async def health():
        return {"status": "ok", "service": "chatmem"}

    @app.get("/api/v1/status")
    async def get_status(stack: MemoryStack = Depends(get_stack)) -> dict[str, Any]:
        return stack.status()

    # --- Memory files and search ---

    @app.post("/api/v1/users/{user_id}/search", response_model=SearchResponse)
    async def memory_search(user_id: str, req: SearchRequest, stack: MemoryStack = Depends(get_stack)):
        results = await stack.engine.search_memory(
            user_id,
            req.query,
            max_results=req.max_results,
            min_score=req.min_score,
            sources=req.sources,
            vector_weight=req.vector_weight,
            text_weight=req.text_weight,
        )
        return SearchResponse(results=results, count=len(results))

    @app.post("/api/v1/users/{user_id}/files", response_model=IndexContentResult)
    async def file_index(user_id: str, req: IndexFileRequest, stack: MemoryStack = Depends(get_stack)):
        return await stack.engine.index_content(user_id, req.path, req.content, req.source)

    @app.get("/api/v1/users/{user_id}/files", response_model=FileListResponse)
    async def file_list(user_id: str, source: str | None = None, stack: MemoryStack = Depends(get_stack)):
        files = stack.engine.list_memory_files(user_id, source)
        return FileListResponse(files=files, count=len(files))

    @app.get("/api/v1/users/{user_id}/file", response_model=MemoryFileContent)
    async def file_read(
        user_id: str,
        path: str,
        from_line: int | None = None,
        lines: int | None = None,
        stack: MemoryStack = Depends(get_stack),
    ):
        return stack.engine.get_memory_file(user_id, path, from_line=from_line, lines=lines)

    @app.delete("/api/v1/users/{user_id}/file")
    async def file_delete(user_id: str, path: str, stack: MemoryStack = Depends(get_stack)):
        await stack.engine.delete_memory_file(user_id, path)
        return {"deleted": path}

    # --- Sessions ---

    @app.post("/api/v1/sessions/index", response_model=IndexingResult)
    async def session_index(req: IndexSessionRequest, stack: MemoryStack = Depends(get_stack)):
        return await stack.indexer.index_conversation(
            req.session, consolidate=req.consolidate, force_reindex=req.force_reindex
        )

    @app.get("/api/v1/users/{user_id}/sessions", response_model=SessionListResponse)
    async def session_list(user_id: str, limit: int = 50, stack: MemoryStack = Depends(get_stack)):
        sessions = stack.indexer.get_indexed_sessions(user_id, limit=limit)
        return SessionListResponse(sessions=sessions, count=len(sessions))

    @app.get("/api/v1/users/{user_id}/sessions/stats", response_model=IndexingStats)
    async def session_stats(user_id: str, stack: MemoryStack = Depends(get_stack)):
        return stack.indexer.get_indexing_stats(user_id)

    @app.delete("/api/v1/users/{user_id}/sessions/{session_id}")
    async def session_delete(user_id: str, session_id: str, stack: MemoryStack = Depends(get_stack)):
        await stack.indexer.delete_indexed_session(user_id, session_id)
        return {"deleted": session_id}

    # --- Facts ---

    @app.get("/api/v1/users/{user_id}/facts", response_model=FactListResponse)
    async def fact_list(
        user_id: str,
        fact_type: str | None = None,
        limit: int = 100,
        min_importance: float = 0.0,
        stack: MemoryStack = Depends(get_stack),
    ):
        facts = stack.consolidator.get_facts(
            user_id, fact_type=fact_type, limit=limit, min_importance=min_importance
        )
        return FactListResponse(facts=facts, count=len(facts))

    @app.post("/api/v1/users/{user_id}/facts/search", response_model=FactListResponse)
    async def fact_search(user_id: str, req: FactSearchRequest, stack: MemoryStack = Depends(get_stack)):
        facts = await stack.consolidator.search_facts(
            user_id, req.query, limit=req.limit, min_score=req.min_score
        )
        return FactListResponse(facts=facts, count=len(facts))

    @app.delete("/api/v1/users/{user_id}/facts/{fact_id}")
    async def fact_delete(user_id: str, fact_id: int, stack: MemoryStack = Depends(get_stack)):
        await stack.consolidator.delete_fact(user_id, fact_id)
        return {"deleted": fact_id}

    @app.post("/api/v1/users/{user_id}/facts/rescore")
    async def fact_rescore(user_id: str, stack: MemoryStack = Depends(get_stack)):
        updated = await stack.consolidator.update_importance_scores(user_id)
        return {"updated": updated}

    @app.post("/api/v1/users/{user_id}/consolidate", response_model=ConsolidationResult)
    async def consolidate(user_id: str, req: ConsolidateRequest, stack: MemoryStack = Depends(get_stack)):
        return await stack.consolidator.consolidate(
            user_id,
            session_ids=req.session_ids,
            update_memory_file=req.update_memory_file,
            min_confidence=req.min_confidence,
            deduplicate_facts=req.deduplicate_facts,
        )

    # --- Cache ---

    @app.get("/api/v1/cache/stats", response_model=CacheStats)
    async def cache_stats(stack: MemoryStack = Depends(get_stack)):
        return stack.engine.get_cache_stats()

    @app.post("/api/v1/cache/cleanup")
    async def cache_cleanup(req: CacheCleanupRequest, stack: MemoryStack = Depends(get_stack)):
        cfg = stack.config.cache
        removed = await stack.engine.cleanup_cache(
            req.max_entries or cfg.max_entries,
            ttl_days=req.ttl_days if req.ttl_days is not None else cfg.ttl_days,
        )
        return {"removed": removed}

    # --- Scheduler ---

    @app.get("/api/v1/scheduler/stats")
    async def scheduler_stats(stack: MemoryStack = Depends(get_stack)) -> dict[str, Any]:
        return stack.scheduler.get_stats()

    @app.post("/api/v1/scheduler/tasks/{name}/trigger")
    async def scheduler_trigger(name: str, stack: MemoryStack = Depends(get_stack)):
        await stack.scheduler.trigger_task(name)
        return stack.scheduler.tasks[name].to_dict()

    @app.put("/api/v1/scheduler/tasks/{name}/interval")
    async def scheduler_interval(name: str, req: IntervalRequest, stack: MemoryStack = Depends(get_stack)):
        task = stack.scheduler.update_task_interval(name, req.seconds)
        return task.to_dict()

    return app
