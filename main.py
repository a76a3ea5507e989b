# =============================================================================
# SEO Gap Analysis - FastAPI Backend
# =============================================================================
# Website → competitor gap → generated content
#
# Stages:
#   1. Scrape              - discover and fetch up to 5 pages of the site
#   2. Embed               - reserved placeholder, distinct transition only
#   3. Query generation    - company profile + 10-15 search queries
#   4. Competitor analysis - who ranks for each of the top 5 queries, and why
#   5. Content generation  - guideline + HTML page per analysed query
#
# Run:  python main.py
# Test: curl http://localhost:8000/health
# =============================================================================

import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Any, Optional

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

load_dotenv()                       # must run before project modules read os.environ

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from jose import JWTError, jwt as jose_jwt
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException

import providers
from database import delete_result, get_result, init_db, list_results, save_completed_run
from pipeline import PipelineOrchestrator, PipelineRun
from quota import DEMO_USER_ID, QuotaGate
from services import LocalStages, OperationResult, RequestContext, StageServices

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger("seo-gap")

JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_ALGORITHM = "HS256"
APP_VERSION = "1.0.0"

if not providers.FIRECRAWL_API_KEY:
    logger.warning("⚠️  FIRECRAWL_API_KEY is not set - scraping will fail")
if not providers.ANTHROPIC_API_KEY:
    logger.warning("⚠️  ANTHROPIC_API_KEY is not set - query and content generation will fail")
if not providers.PERPLEXITY_API_KEY:
    logger.warning("⚠️  PERPLEXITY_API_KEY is not set - competitor analysis will fail")
if not JWT_SECRET:
    logger.warning("⚠️  JWT_SECRET is not set - every caller is anonymous")

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SEO Gap Analysis API",
    version=APP_VERSION,
    description="Scrape a site, find competitor gaps, generate content",
)

ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=ALLOWED_ORIGINS != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, x-demo-mode",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
}

gate = QuotaGate()
services = StageServices(gate)


@app.on_event("startup")
async def startup_event():
    init_db()
    logger.info("Database tables ready")


# =============================================================================
# Error bodies - every failure is {"success": false, "error": "..."}
# =============================================================================

def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:]) or "body"
    return _error(400, f"Invalid request: {field} {first.get('msg', 'is invalid')}".strip())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return _error(500, "Internal server error")


# =============================================================================
# Identity - bearer JWT subject, or the demo identity
# =============================================================================

def _token_subject(authorization: Optional[str]) -> Optional[str]:
    if not JWT_SECRET or not authorization or not authorization.startswith("Bearer "):
        return None
    try:
        payload = jose_jwt.decode(authorization[len("Bearer "):], JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub") or None


def get_request_context(
    authorization: Optional[str] = Header(default=None),
    x_demo_mode: Optional[str] = Header(default=None),
) -> RequestContext:
    """Anonymous callers are allowed; they bypass quota."""
    if (x_demo_mode or "").lower() == "true":
        return RequestContext.for_demo()
    subject = _token_subject(authorization)
    if subject == DEMO_USER_ID:
        return RequestContext.for_demo()
    return RequestContext(identity=subject)


def require_user(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
    if not ctx.is_authenticated:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return ctx


# =============================================================================
# Request models - camelCase on the wire
# =============================================================================

class _Camel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ScrapeRequest(_Camel):
    url: str = ""


class AnalyzeRequest(_Camel):
    content: str = ""
    url: str = ""


class SearchRequest(_Camel):
    query: str = ""
    company_url: str = ""


class GenerateQueryRequest(_Camel):
    query: str = ""
    company_description: str = ""
    target_audience: str = ""
    company_url: str = ""
    current_content: str = ""
    competitor_analysis: Optional[dict[str, Any]] = None


class GenerateRequest(_Camel):
    company_description: str = ""
    target_audience: str = ""
    queries: list[str] = []
    competitor_analysis: list[dict[str, Any]] = []
    url: str = ""


class CompareRequest(_Camel):
    query: str = ""


class PipelineRequest(_Camel):
    url: str = ""


def _respond(result: OperationResult) -> JSONResponse:
    headers = {}
    if result.remaining is not None and result.remaining >= 0:
        headers["X-Quota-Remaining"] = str(result.remaining)
    return JSONResponse(result.body, status_code=result.status, headers=headers)


# =============================================================================
# Stage endpoints
# =============================================================================

@app.options("/seo/{operation}")
@app.options("/pipeline/run")
async def preflight(operation: str = ""):
    return Response(status_code=200, headers=CORS_HEADERS)


@app.post("/seo/scrape")
async def seo_scrape(body: ScrapeRequest, ctx: RequestContext = Depends(get_request_context)):
    return _respond(await services.scrape(ctx, body.url))


@app.post("/seo/analyze")
async def seo_analyze(body: AnalyzeRequest, ctx: RequestContext = Depends(get_request_context)):
    return _respond(await services.analyze(ctx, body.content, body.url))


@app.post("/seo/search")
async def seo_search(body: SearchRequest, ctx: RequestContext = Depends(get_request_context)):
    return _respond(await services.search(ctx, body.query, body.company_url))


@app.post("/seo/generate-query")
async def seo_generate_query(body: GenerateQueryRequest, ctx: RequestContext = Depends(get_request_context)):
    return _respond(await services.generate_query_content(
        ctx,
        body.query,
        body.company_description,
        body.target_audience,
        body.company_url,
        body.current_content,
        body.competitor_analysis,
    ))


@app.post("/seo/generate")
async def seo_generate(body: GenerateRequest, ctx: RequestContext = Depends(get_request_context)):
    return _respond(await services.generate_site_content(
        ctx,
        body.company_description,
        body.target_audience,
        body.queries,
        body.competitor_analysis,
        body.url,
    ))


@app.post("/seo/llm-compare")
async def seo_llm_compare(body: CompareRequest, ctx: RequestContext = Depends(get_request_context)):
    return _respond(await services.compare_across_models(ctx, body.query))


# =============================================================================
# Full pipeline - NDJSON stream of run snapshots
# =============================================================================

@app.post("/pipeline/run")
async def pipeline_run(body: PipelineRequest, ctx: RequestContext = Depends(get_request_context)):
    """
    Stream one snapshot per state transition, one JSON object per line.
    Completed runs are stored for authenticated (non-demo) callers.
    """
    if not body.url.strip():
        return _error(400, "URL is required")

    on_complete = None
    if ctx.is_authenticated:
        async def on_complete(run: PipelineRun) -> None:
            # Blocking DB write - keep it off the event loop
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, save_completed_run, ctx.identity, run)

    orchestrator = PipelineOrchestrator(
        LocalStages(services, ctx),
        on_complete=on_complete,
        cancel=asyncio.Event(),
    )

    async def ndjson():
        async for snapshot in orchestrator.stream(body.url):
            yield json.dumps(snapshot, default=str) + "\n"

    return StreamingResponse(ndjson(), media_type="application/x-ndjson")


# =============================================================================
# Stored results (owner only)
# =============================================================================

@app.get("/runs")
async def runs_list(limit: int = 20, offset: int = 0, ctx: RequestContext = Depends(require_user)):
    loop = asyncio.get_event_loop()
    rows = await loop.run_in_executor(None, list_results, ctx.identity, limit, offset)
    return {"success": True, "data": rows}


@app.get("/runs/{result_id}")
async def runs_get(result_id: str, ctx: RequestContext = Depends(require_user)):
    loop = asyncio.get_event_loop()
    row = await loop.run_in_executor(None, get_result, ctx.identity, result_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Result not found")
    return {"success": True, "data": row}


@app.delete("/runs/{result_id}")
async def runs_delete(result_id: str, ctx: RequestContext = Depends(require_user)):
    loop = asyncio.get_event_loop()
    deleted = await loop.run_in_executor(None, delete_result, ctx.identity, result_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Result not found")
    return {"success": True, "data": {"id": result_id}}


# =============================================================================
# Health & info
# =============================================================================

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
        "firecrawl_key_set": bool(providers.FIRECRAWL_API_KEY),
        "perplexity_key_set": bool(providers.PERPLEXITY_API_KEY),
        "anthropic_key_set": bool(providers.ANTHROPIC_API_KEY),
        "quota_backend_set": bool(gate.api_key),
    }


@app.get("/info")
async def info():
    return {
        "name": "SEO Gap Analysis API",
        "version": APP_VERSION,
        "model": providers.CLAUDE_MODEL,
        "compare_providers": list(providers.configured_providers()),
        "endpoints": {
            "scrape": "POST /seo/scrape",
            "analyze": "POST /seo/analyze",
            "search": "POST /seo/search",
            "generate_query": "POST /seo/generate-query",
            "generate": "POST /seo/generate",
            "llm_compare": "POST /seo/llm-compare",
            "pipeline": "POST /pipeline/run",
            "runs": "GET /runs",
            "health": "GET /health",
        },
    }


# =============================================================================
# Run
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
