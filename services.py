# =============================================================================
# Stage services - one request handler per pipeline operation
# =============================================================================
#
# Shared by the HTTP endpoints (main.py) and the in-process orchestrator
# (LocalStages). Each handler:
#   1. validates required fields                          → 400
#   2. consults the quota gate for the operation class    → 429 with gate reason
#   3. calls the provider client                          → provider status on failure
#   4. records one usage unit only after success, releases the
#      gate's hold otherwise
# and returns OperationResult(status, body) where body is always
# {"success": True, "data": ...} or {"success": False, "error": "..."}.
# =============================================================================

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import providers
from providers import ProviderResult
from quota import (
    ANALYZE_REQUESTS,
    DEMO_USER_ID,
    GENERATE_REQUESTS,
    SCRAPE_REQUESTS,
    SEARCH_REQUESTS,
    QuotaGate,
)

logger = logging.getLogger("seo-gap.services")


@dataclass(frozen=True)
class RequestContext:
    """Who is acting. Resolved once per request and passed down explicitly."""
    identity: Optional[str] = None
    demo: bool = False

    @classmethod
    def for_demo(cls) -> "RequestContext":
        return cls(identity=DEMO_USER_ID, demo=True)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.identity) and not self.demo


@dataclass
class OperationResult:
    status: int
    body: dict = field(default_factory=dict)
    remaining: Optional[int] = None

    @property
    def success(self) -> bool:
        return bool(self.body.get("success"))

    @property
    def data(self):
        return self.body.get("data")

    @property
    def error(self) -> Optional[str]:
        return self.body.get("error")

    @classmethod
    def ok(cls, data, remaining: Optional[int] = None) -> "OperationResult":
        return cls(200, {"success": True, "data": data}, remaining)

    @classmethod
    def fail(cls, status: int, error: str, remaining: Optional[int] = None) -> "OperationResult":
        return cls(status, {"success": False, "error": error}, remaining)


class StageServices:
    def __init__(self, gate: QuotaGate):
        self.gate = gate

    async def _gated(self, ctx: RequestContext, operation: str, call) -> OperationResult:
        decision = await self.gate.check(ctx.identity, operation, demo=ctx.demo)
        if not decision.allowed:
            logger.info(f"Quota denied {operation} for {ctx.identity}: {decision.reason}")
            return OperationResult.fail(
                429,
                decision.reason or "Rate limit exceeded. Please upgrade your plan.",
                remaining=0,
            )

        succeeded = False
        try:
            result: ProviderResult = await call()
            if not result.success:
                return OperationResult.fail(result.status, result.error or "Unknown error")
            succeeded = True
        finally:
            if not succeeded:
                self.gate.release(ctx.identity, operation, demo=ctx.demo)

        await self.gate.record(ctx.identity, operation, demo=ctx.demo)
        remaining = decision.remaining - 1 if decision.remaining > 0 else decision.remaining
        return OperationResult.ok(result.data, remaining=remaining)

    # -----------------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------------

    async def scrape(self, ctx: RequestContext, url: str) -> OperationResult:
        if not (url or "").strip():
            return OperationResult.fail(400, "URL is required")
        return await self._gated(ctx, SCRAPE_REQUESTS, lambda: providers.scrape(url))

    async def analyze(self, ctx: RequestContext, content: str, url: str = "") -> OperationResult:
        if not (content or "").strip():
            return OperationResult.fail(400, "Content is required")
        return await self._gated(ctx, ANALYZE_REQUESTS, lambda: providers.analyze(content, url))

    async def search(self, ctx: RequestContext, query: str, company_url: str = "") -> OperationResult:
        if not (query or "").strip():
            return OperationResult.fail(400, "Query is required")
        return await self._gated(ctx, SEARCH_REQUESTS, lambda: providers.search(query, company_url))

    async def generate_query_content(
        self,
        ctx: RequestContext,
        query: str,
        company_description: str,
        target_audience: str,
        company_url: str,
        current_content: str,
        competitor_analysis: Optional[dict],
    ) -> OperationResult:
        if not query or not company_description or not competitor_analysis:
            return OperationResult.fail(400, "Missing required data")
        return await self._gated(
            ctx,
            GENERATE_REQUESTS,
            lambda: providers.generate_query_content(
                query,
                company_description,
                target_audience,
                company_url,
                current_content,
                competitor_analysis,
            ),
        )

    async def generate_site_content(
        self,
        ctx: RequestContext,
        company_description: str,
        target_audience: str,
        queries: list[str],
        competitor_analysis: list[dict],
        url: str,
    ) -> OperationResult:
        if not company_description or not queries or not competitor_analysis:
            return OperationResult.fail(400, "Missing required data")
        return await self._gated(
            ctx,
            GENERATE_REQUESTS,
            lambda: providers.generate_site_content(
                company_description, target_audience, queries, competitor_analysis, url,
            ),
        )

    async def compare_across_models(self, ctx: RequestContext, query: str) -> OperationResult:
        # Not billed: each provider is called with the operator's own keys.
        if not (query or "").strip():
            return OperationResult.fail(400, "Query is required")
        result = await providers.compare_across_models(query)
        if not result.success:
            return OperationResult.fail(result.status, result.error or "Unknown error")
        return OperationResult.ok({
            "query": query,
            "results": result.data,
            "timestamp": datetime.now().isoformat(),
        })


class LocalStages:
    """Orchestrator backend that runs every stage in-process for one request context."""

    def __init__(self, services: StageServices, ctx: RequestContext):
        self.services = services
        self.ctx = ctx

    async def scrape(self, url: str) -> OperationResult:
        return await self.services.scrape(self.ctx, url)

    async def analyze(self, content: str, url: str) -> OperationResult:
        return await self.services.analyze(self.ctx, content, url)

    async def search(self, query: str, company_url: str) -> OperationResult:
        return await self.services.search(self.ctx, query, company_url)

    async def generate_query_content(
        self,
        query: str,
        company_description: str,
        target_audience: str,
        company_url: str,
        current_content: str,
        competitor_analysis: dict,
    ) -> OperationResult:
        return await self.services.generate_query_content(
            self.ctx,
            query,
            company_description,
            target_audience,
            company_url,
            current_content,
            competitor_analysis,
        )
