# =============================================================================
# Remote stages - orchestrator backend over the HTTP stage endpoints
# =============================================================================
#
# Lets PipelineOrchestrator run client-side while every stage executes on a
# server exposing /seo/*. Responses are mapped back onto OperationResult so the
# orchestrator sees the same shape as with LocalStages. Transport failures become
# failed results; nothing raises past this boundary.
# =============================================================================

import logging
from typing import Optional

import httpx

from providers import GENERATE_TIMEOUT
from services import OperationResult

logger = logging.getLogger("seo-gap.client")


class RemoteStages:
    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        demo: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = GENERATE_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = {"Content-Type": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        if demo:
            self.headers["X-Demo-Mode"] = "true"
        self.transport = transport
        self.timeout = timeout

    async def _post(self, path: str, payload: dict) -> OperationResult:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self.transport,
            ) as http:
                resp = await http.post(path, json=payload)
        except httpx.TimeoutException:
            logger.error(f"{path} timed out")
            return OperationResult.fail(504, f"Request to {path} timed out")
        except httpx.HTTPError as e:
            logger.error(f"{path} failed: {e}")
            return OperationResult.fail(502, f"Request to {path} failed")

        try:
            body = resp.json()
        except ValueError:
            logger.error(f"{path} returned non-JSON ({resp.status_code})")
            return OperationResult.fail(resp.status_code if resp.status_code >= 400 else 502, "Invalid response from server")

        if not isinstance(body, dict):
            return OperationResult.fail(502, "Invalid response from server")
        if resp.status_code >= 400 and body.get("success") is not False:
            body = {"success": False, "error": body.get("error") or body.get("detail") or f"HTTP {resp.status_code}"}
        return OperationResult(resp.status_code, body)

    async def scrape(self, url: str) -> OperationResult:
        return await self._post("/seo/scrape", {"url": url})

    async def analyze(self, content: str, url: str) -> OperationResult:
        return await self._post("/seo/analyze", {"content": content, "url": url})

    async def search(self, query: str, company_url: str) -> OperationResult:
        return await self._post("/seo/search", {"query": query, "companyUrl": company_url})

    async def generate_query_content(
        self,
        query: str,
        company_description: str,
        target_audience: str,
        company_url: str,
        current_content: str,
        competitor_analysis: dict,
    ) -> OperationResult:
        return await self._post("/seo/generate-query", {
            "query": query,
            "companyDescription": company_description,
            "targetAudience": target_audience,
            "companyUrl": company_url,
            "currentContent": current_content,
            "competitorAnalysis": competitor_analysis,
        })
