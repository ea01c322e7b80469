from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from http import HTTPStatus

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..container import Container
from ..errors import MemoryServiceError
from .auth import require_api_key
from .llm_setup import apply_setup
from .schemas import EntityOut, IngestIn, QueryIn, RelationOut, SetupIn, SetupOut

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "INVALID_INPUT": 400,
    "AUTH_FAILED": 401,
    "NOT_FOUND": 404,
    "EMBED_FAILED": 502,
    "PROVIDER_FAILED": 502,
}


def error_body(status: int, message: str) -> dict:
    return {
        "timestamp": datetime.now(UTC).isoformat(),
        "status": status,
        "error": HTTPStatus(status).phrase,
        "message": message,
    }


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(MemoryServiceError)
    async def service_error(_request: Request, exc: MemoryServiceError):
        status = STATUS_BY_KIND.get(exc.kind, 500)
        if status >= 500:
            logger.error("%s: %s", exc.kind, exc.message)
        return JSONResponse(status_code=status, content=error_body(status, exc.message))

    @app.exception_handler(RequestValidationError)
    async def validation_error(_request: Request, exc: RequestValidationError):
        msg = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
        return JSONResponse(status_code=400, content=error_body(400, msg or "invalid request"))

    @app.exception_handler(StarletteHTTPException)
    async def http_error(_request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.status_code, str(exc.detail)))

    @app.exception_handler(Exception)
    async def unexpected(_request: Request, exc: Exception):
        logger.exception("Unhandled error")
        return JSONResponse(status_code=500, content=error_body(500, "internal error"))


def create_app(container: Container) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await container.start(run_pool=container.settings.worker_in_process)
        try:
            yield
        finally:
            await container.stop()

    app = FastAPI(title="VectorNode Memory Service", version=__version__, lifespan=lifespan)
    app.state.container = container
    _install_error_handlers(app)

    ingest = container.ingest
    auth = [Depends(require_api_key)]

    engine = container.query

    @app.get("/health")
    async def health():
        return container.health()

    # --- ingest ---

    @app.post("/api/ingest/document", dependencies=auth)
    async def ingest_document(payload: IngestIn):
        receipt = await ingest.ingest(
            user_id=payload.user_id, role=payload.role, content=payload.content, metadata=payload.metadata
        )
        return receipt.to_dict()

    # --- semantic ---

    @app.post("/api/query/contexts", dependencies=auth)
    async def search_contexts(payload: QueryIn):
        res = await engine.search_contexts(payload.query, payload.limit, payload.min_relevance)
        return res.to_dict()

    @app.post("/api/query/entities", dependencies=auth)
    async def search_entities(payload: QueryIn):
        res = await engine.search_entities(payload.query, payload.limit, payload.min_relevance)
        return res.to_dict()

    @app.post("/api/query/history", dependencies=auth)
    async def search_history(payload: QueryIn):
        res = await engine.search_history(payload.query, payload.limit, payload.min_relevance)
        return res.to_dict()

    @app.post("/api/query/hybrid", dependencies=auth)
    async def hybrid(payload: QueryIn, dedupe: bool = False):
        res = await engine.hybrid_search(payload.query, payload.limit, payload.min_relevance, dedupe=dedupe)
        return res.to_dict()

    # --- contexts ---

    @app.get("/api/query/contexts/recent", dependencies=auth)
    async def recent_contexts(days: int = 7, limit: int | None = None):
        return (await engine.recent_contexts(days, limit)).to_dict()

    @app.post("/api/query/contexts/recent", dependencies=auth)
    async def search_recent_contexts(payload: QueryIn, days: int = 7):
        res = await engine.search_recent_contexts(payload.query, days, payload.limit, payload.min_relevance)
        return res.to_dict()

    @app.get("/api/query/contexts/range", dependencies=auth)
    async def contexts_by_range(start: datetime, end: datetime, limit: int | None = None):
        return (await engine.contexts_by_range(start, end, limit)).to_dict()

    @app.get("/api/query/contexts/siblings/{context_id}", dependencies=auth)
    async def siblings(context_id: str):
        return (await engine.siblings(context_id)).to_dict()

    @app.get("/api/query/contexts/kb/{kb_id}", dependencies=auth)
    async def contexts_of_kb(kb_id: str):
        return (await engine.contexts_of_kb(kb_id)).to_dict()

    @app.get("/api/query/contexts/{context_id}/entities", dependencies=auth)
    async def entities_of_context(context_id: str):
        return (await engine.entities_of_context(context_id)).to_dict()

    # --- entities ---

    @app.get("/api/query/entities/name/{name}", dependencies=auth, response_model=EntityOut)
    async def entity_by_name(name: str):
        return EntityOut.of(await engine.entity_by_name(name))

    @app.get("/api/query/entities/name-ignore-case/{name}", dependencies=auth, response_model=EntityOut)
    async def entity_by_name_ignore_case(name: str):
        return EntityOut.of(await engine.entity_by_name(name, ignore_case=True))

    @app.get("/api/query/entities/id/{name}", dependencies=auth)
    async def entity_id_by_name(name: str):
        return {"name": name, "id": await engine.entity_id_by_name(name)}

    @app.post("/api/query/entities/disambiguate", dependencies=auth, response_model=EntityOut)
    async def disambiguate(payload: QueryIn, entity_name: str = Query(...)):
        return EntityOut.of(await engine.disambiguate(entity_name, payload.query))

    @app.post("/api/query/entities/merge", dependencies=auth)
    async def merge(source: str = Query(...), target: str = Query(...)):
        await engine.merge_entities(source, target)
        return {"success": True, "message": f"Merged {source} into {target}"}

    @app.get("/api/query/entities/{entity_id}/contexts", dependencies=auth)
    async def contexts_of_entity(entity_id: str):
        return (await engine.contexts_of_entity(entity_id)).to_dict()

    @app.get("/api/query/entities/{entity_id}", dependencies=auth, response_model=EntityOut)
    async def get_entity(entity_id: str):
        return EntityOut.of(await engine.get_entity(entity_id))

    # --- history ---

    @app.get("/api/query/history/user/{user_id}", dependencies=auth)
    async def history_by_user(user_id: str, limit: int | None = None):
        return (await engine.history_by_user(user_id, limit)).to_dict()

    @app.delete("/api/query/history/user/{user_id}", dependencies=auth)
    async def delete_user(user_id: str):
        deleted = await engine.delete_user_data(user_id)
        return {"success": True, "deleted": deleted, "message": f"Deleted all data for user {user_id}"}

    @app.get("/api/query/history/recent", dependencies=auth)
    async def recent_history(hours: int = 24, limit: int | None = None):
        return (await engine.recent_kbs(hours, limit)).to_dict()

    @app.get("/api/query/history/since", dependencies=auth)
    async def history_since(since: datetime, limit: int | None = None):
        return (await engine.kbs_since(since, limit)).to_dict()

    # --- graph ---

    @app.get("/api/query/graph/outgoing/{entity_id}", dependencies=auth)
    async def outgoing(entity_id: str):
        return (await engine.outgoing(entity_id)).to_dict()

    @app.get("/api/query/graph/incoming/{entity_id}", dependencies=auth)
    async def incoming(entity_id: str):
        return (await engine.incoming(entity_id)).to_dict()

    @app.get("/api/query/graph/2hop/{entity_id}", dependencies=auth)
    async def two_hop(entity_id: str):
        return (await engine.two_hop(entity_id)).to_dict()

    @app.get("/api/query/graph/top", dependencies=auth)
    async def top(limit: int = 10):
        return (await engine.top_relations(limit)).to_dict()

    @app.get("/api/query/graph/source/{entity_id}", dependencies=auth, response_model=list[RelationOut])
    async def relations_by_source(entity_id: str):
        return [RelationOut.of(r) for r in await engine.relations_by_source(entity_id)]

    @app.get("/api/query/graph/target/{entity_id}", dependencies=auth, response_model=list[RelationOut])
    async def relations_by_target(entity_id: str):
        return [RelationOut.of(r) for r in await engine.relations_by_target(entity_id)]

    @app.get("/api/query/graph/type/{relation_type}", dependencies=auth, response_model=list[RelationOut])
    async def relations_by_type(relation_type: str):
        return [RelationOut.of(r) for r in await engine.relations_by_type(relation_type)]

    # --- provider setup ---

    @app.post("/api/setup", dependencies=auth, response_model=SetupOut)
    async def setup(payload: SetupIn):
        return await apply_setup(container, payload)

    @app.get("/api/setup", dependencies=auth)
    async def setup_status():
        cfg = container.llm.config
        if cfg is None:
            return {"configured": False}
        return {
            "configured": True,
            "provider": cfg.provider.value,
            "chat_model": cfg.chat_model,
            "embed_model": cfg.embed_model,
            "base_url": cfg.resolved_base_url,
        }

    return app
