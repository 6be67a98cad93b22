"""
Concierge Query Engine - HTTP API
Answers customer questions for a business and manages its rules and content
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
import structlog

from .config import settings
from .errors import ConciergeError, NotFoundError, RateLimitError
from .metrics import metrics_endpoint
from .orchestrator.factory import Components, build_pipeline, initialize
from .orchestrator.models import QueryRequest, QueryResponse, StreamEvent
from .rag.models import ContentItem, ContentType
from .rules.models import BusinessRule, RuleDraft
from .schemas import (
    ContentBatchRequest,
    ContentBatchResponse,
    RuleResponse,
    RuleTestRequest,
    RuleTestResponse,
    RuleUpdateRequest,
)
from .utils.logging import setup_logging

setup_logging()
logger = structlog.get_logger(__name__)

SESSION_CLEANUP_INTERVAL = 60  # seconds


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("🍽️ Starting Concierge Query Engine")

    # A wiring may be injected before startup
    if getattr(app.state, "components", None) is None:
        app.state.components = build_pipeline(settings)
    await initialize(app.state.components)

    app.state.cleanup_task = asyncio.create_task(cleanup_sessions(app.state.components))

    logger.info("✅ Query engine initialized")

    yield

    logger.info("🛑 Shutting down Concierge Query Engine")
    app.state.cleanup_task.cancel()
    await asyncio.gather(app.state.cleanup_task, return_exceptions=True)
    await app.state.components.analytics.close()


async def cleanup_sessions(components: Components):
    """Periodically drop idle sessions and rate limit windows"""
    while True:
        await asyncio.sleep(SESSION_CLEANUP_INTERVAL)
        try:
            await components.sessions.cleanup_expired()
            await components.rate_limiter.cleanup_expired()
        except Exception as e:
            logger.error("Session cleanup failed", error=str(e))


app = FastAPI(
    title="Concierge Query Engine",
    description="Customer query answering with retrieval, intent detection and business rules",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_components() -> Components:
    return app.state.components


# Queries

@app.post("/businesses/{business_id}/query", response_model=QueryResponse)
async def process_query(business_id: str, request: QueryRequest):
    """Answer a customer query"""
    return await get_components().pipeline.process_query(business_id, request)


@app.post("/businesses/{business_id}/query/stream")
async def process_streaming_query(business_id: str, request: QueryRequest):
    """Answer a customer query as server-sent events"""
    components = get_components()
    if not components.settings.enable_streaming:
        raise NotFoundError("Streaming is disabled")

    events = components.pipeline.process_streaming_query(business_id, request)
    return StreamingResponse(
        sse_stream(events),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )


async def sse_stream(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    try:
        async for event in events:
            yield event.to_sse()
    finally:
        # Client went away or the stream finished; release the pipeline
        await events.aclose()


# Rules

@app.post("/businesses/{business_id}/rules", response_model=RuleResponse, status_code=201)
async def create_rule(business_id: str, draft: RuleDraft):
    """Create a business rule"""
    draft = draft.model_copy(update={"business_id": business_id})
    result = await get_components().rules_engine.create_rule(draft)
    return RuleResponse(rule=result.rule, warnings=result.warnings)


@app.get("/businesses/{business_id}/rules", response_model=List[BusinessRule])
async def list_rules(business_id: str, active_only: bool = False):
    return await get_components().rules_engine.list_rules(business_id, active_only=active_only)


@app.get("/businesses/{business_id}/rules/{rule_id}", response_model=BusinessRule)
async def get_rule(business_id: str, rule_id: str):
    return await _owned_rule(business_id, rule_id)


@app.put("/businesses/{business_id}/rules/{rule_id}", response_model=RuleResponse)
async def update_rule(business_id: str, rule_id: str, request: RuleUpdateRequest):
    """Write a new version of a rule"""
    await _owned_rule(business_id, rule_id)
    result = await get_components().rules_engine.update_rule(
        rule_id,
        request.updates,
        expected_version=request.expected_version,
    )
    return RuleResponse(rule=result.rule, warnings=result.warnings)


@app.delete("/businesses/{business_id}/rules/{rule_id}")
async def delete_rule(business_id: str, rule_id: str):
    await _owned_rule(business_id, rule_id)
    await get_components().rules_engine.delete_rule(rule_id)
    return {"message": "Rule deleted", "rule_id": rule_id}


@app.post("/businesses/{business_id}/rules/test", response_model=RuleTestResponse)
async def test_rule(business_id: str, request: RuleTestRequest):
    """Dry-run a draft rule against sample contexts"""
    draft = request.rule.model_copy(update={"business_id": business_id})
    results = await get_components().rules_engine.test_rule(draft, request.scenarios)

    expectations = [r.passed for r in results if r.passed is not None]
    return RuleTestResponse(
        results=results,
        passed=all(expectations) if expectations else None,
    )


async def _owned_rule(business_id: str, rule_id: str) -> BusinessRule:
    rule = await get_components().rules_engine.get_rule(rule_id)
    if rule.business_id != business_id:
        raise NotFoundError(f"Rule {rule_id} not found")
    return rule


# Content

@app.post("/businesses/{business_id}/content", response_model=ContentBatchResponse)
async def index_content(business_id: str, request: ContentBatchRequest):
    """Vectorize and index business content"""
    indexer = get_components().indexer
    items = [
        ContentItem(
            business_id=business_id,
            content_type=item.content_type,
            content_id=item.content_id,
            raw_fields=item.raw_fields,
        )
        for item in request.items
    ]

    if request.replace_all:
        summary = await indexer.reindex_business(business_id, items)
        return ContentBatchResponse(**summary)

    results = await indexer.index_batch(items)
    return ContentBatchResponse(
        indexed=sum(1 for r in results if r.success),
        failed=sum(1 for r in results if not r.success),
        results=results,
    )


@app.delete("/businesses/{business_id}/content/{content_type}/{content_id}")
async def remove_content(business_id: str, content_type: ContentType, content_id: str):
    await get_components().indexer.remove_item(business_id, content_type, content_id)
    return {"message": "Content removed", "content_type": content_type.value, "content_id": content_id}


@app.get("/businesses/{business_id}/content/stats")
async def content_stats(business_id: str):
    return get_components().indexer.get_stats(business_id)


# Service

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    components = get_components()
    checks = await components.pipeline.health_check()
    degraded = any(check.get("status") not in ("healthy", "disabled") for check in checks.values())

    return {
        "status": "degraded" if degraded else "healthy",
        "service": "concierge",
        "components": checks,
        "total_queries": components.pipeline.total_queries,
        "active_sessions": len(components.sessions.sessions),
        "rules_cache": components.rules_engine.cache.stats(),
    }


app.add_api_route("/metrics", metrics_endpoint, methods=["GET"], include_in_schema=False)


@app.exception_handler(ConciergeError)
async def concierge_exception_handler(request: Request, exc: ConciergeError):
    """Map engine errors onto their HTTP status"""
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after)}

    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_dict(), "path": request.url.path},
        headers=headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error("Unhandled exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred",
            "path": request.url.path
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
