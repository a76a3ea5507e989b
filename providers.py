# =============================================================================
# Provider Clients - one external call each
# =============================================================================
#
#   scrape()                  Firecrawl map + per-page scrape
#   analyze()                 Claude, forced tool call → company profile + queries
#   search()                  Perplexity sonar → competitor analysis + citations
#   generate_query_content()  Claude guideline, then Claude HTML constrained by it
#   generate_site_content()   Claude single article for the top queries
#   compare_across_models()   concurrent fan-out to every configured LLM
#
# Every function returns a ProviderResult and never raises past this module.
# There are no automatic retries here: a failed call is reported and the caller
# decides whether to invoke it again.
# =============================================================================

import asyncio
import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Any, Optional

import anthropic
import httpx
from anthropic import AsyncAnthropic
from bs4 import BeautifulSoup

from normalizer import (
    extract_insights,
    extract_key_topics,
    normalize_url,
    parse_analysis,
    parse_content,
    parse_guideline,
    parse_html,
)

logger = logging.getLogger("seo-gap.providers")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

FIRECRAWL_API_KEY = os.getenv("FIRECRAWL_API_KEY", "")
FIRECRAWL_API_URL = os.getenv("FIRECRAWL_API_URL", "https://api.firecrawl.dev/v1")
PERPLEXITY_API_KEY = os.getenv("PERPLEXITY_API_KEY", "")
PERPLEXITY_MODEL = os.getenv("PERPLEXITY_MODEL", "sonar")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
CLAUDE_MODEL = os.getenv("CLAUDE_MODEL", "claude-sonnet-4-6")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")

SCRAPE_TIMEOUT = float(os.getenv("SCRAPE_TIMEOUT_SECONDS", "45"))
SEARCH_TIMEOUT = float(os.getenv("SEARCH_TIMEOUT_SECONDS", "45"))
GENERATE_TIMEOUT = float(os.getenv("GENERATE_TIMEOUT_SECONDS", "120"))
COMPARE_TIMEOUT = float(os.getenv("COMPARE_TIMEOUT_SECONDS", "60"))

PERPLEXITY_URL = "https://api.perplexity.ai/chat/completions"
OPENAI_URL = "https://api.openai.com/v1/chat/completions"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

MAX_DISCOVERED_PAGES = 20
MAX_SCRAPED_PAGES = 5
ANALYZE_CONTENT_BUDGET = 15000
MIN_QUERIES = 10
MAX_QUERIES = 15
TOP_COMPETITORS = 5
PLACEHOLDER_COMPETITORS = 3

PROVIDER_ORDER = ["openai", "google", "perplexity", "xai", "anthropic"]
PROVIDER_NAMES = {
    "openai": "ChatGPT",
    "google": "Gemini",
    "perplexity": "Perplexity",
    "xai": "Grok",
    "anthropic": "Claude",
}


@dataclass
class ProviderResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    status: int = 200

    @classmethod
    def ok(cls, data) -> "ProviderResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, status: int = 500) -> "ProviderResult":
        return cls(success=False, error=error, status=status)


# ---------------------------------------------------------------------------
# Transport helpers
# ---------------------------------------------------------------------------

def _http(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        headers={"User-Agent": "SEOGapAnalyzer/1.0"},
    )


_claude: Optional[AsyncAnthropic] = None


def _claude_client() -> AsyncAnthropic:
    global _claude
    if _claude is None:
        _claude = AsyncAnthropic(api_key=ANTHROPIC_API_KEY or None, max_retries=0)
    return _claude


def classify_status(status: int, provider: str, fallback: str = "") -> ProviderResult:
    """Map an upstream non-2xx status to a user-facing failure."""
    if status in (401, 403):
        return ProviderResult.fail(f"{provider} rejected the credentials ({status}). Check your API key.", status)
    if status == 402:
        return ProviderResult.fail(f"{provider} credits exhausted. Please add more credits.", 402)
    if status == 429:
        return ProviderResult.fail(f"{provider} rate limit exceeded. Please try again later.", 429)
    return ProviderResult.fail(fallback or f"{provider} request failed ({status})", 500)


def _json_object(resp: httpx.Response) -> dict:
    """Response body as a JSON object; ValueError for anything else."""
    body = resp.json()
    if not isinstance(body, dict):
        raise ValueError(f"expected a JSON object, got {type(body).__name__}")
    return body


def _transport_failure(exc: Exception, provider: str) -> ProviderResult:
    if isinstance(exc, httpx.TimeoutException):
        logger.warning(f"{provider} timed out: {exc}")
        return ProviderResult.fail(f"{provider} request timed out")
    if isinstance(exc, httpx.HTTPError):
        logger.warning(f"{provider} connection error: {exc}")
        return ProviderResult.fail(f"{provider} connection failed")
    logger.error(f"{provider} returned an unreadable response: {type(exc).__name__}: {exc}")
    return ProviderResult.fail(f"{provider} returned an invalid response")


def _claude_failure(exc: Exception, fallback: str) -> ProviderResult:
    if isinstance(exc, anthropic.APITimeoutError):
        logger.warning(f"Claude timed out: {exc}")
        return ProviderResult.fail("Claude request timed out")
    if isinstance(exc, anthropic.APIConnectionError):
        logger.warning(f"Claude connection error: {exc}")
        return ProviderResult.fail("Claude connection failed")
    if isinstance(exc, anthropic.APIStatusError):
        logger.error(f"Claude API error {exc.status_code}: {exc}")
        return classify_status(exc.status_code, "Claude", fallback)
    logger.error(f"Claude call failed: {type(exc).__name__}: {exc}")
    return ProviderResult.fail(fallback)


async def _post_json(
    url: str,
    payload: dict,
    *,
    provider: str,
    timeout: float,
    headers: Optional[dict] = None,
    fallback: str = "",
) -> tuple[Optional[dict], Optional[ProviderResult]]:
    """POST a JSON body; returns (data, None) on 2xx or (None, failure)."""
    try:
        async with _http(timeout) as http:
            resp = await http.post(url, json=payload, headers=headers or {})
        if resp.status_code >= 400:
            logger.error(f"{provider} error {resp.status_code}: {resp.text[:300]}")
            return None, classify_status(resp.status_code, provider, fallback)
        return _json_object(resp), None
    except (httpx.HTTPError, ValueError) as e:
        return None, _transport_failure(e, provider)


def _chat_answer(data: dict) -> str:
    choices = data.get("choices")
    first = choices[0] if isinstance(choices, list) and choices else {}
    message = first.get("message") if isinstance(first, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    return content if isinstance(content, str) else ""


def _response_text(response) -> str:
    return "".join(
        getattr(block, "text", "") or ""
        for block in getattr(response, "content", None) or []
        if getattr(block, "type", "text") == "text"
    )


def _tool_input(response, name: str) -> Optional[dict]:
    for block in getattr(response, "content", None) or []:
        if getattr(block, "type", None) == "tool_use" and getattr(block, "name", None) == name:
            value = getattr(block, "input", None)
            return value if isinstance(value, dict) else None
    return None


async def _claude_text(
    prompt: str,
    *,
    system: str = "",
    max_tokens: int = 2048,
    temperature: float = 0.5,
    fallback: str = "Content generation failed",
) -> tuple[str, Optional[ProviderResult]]:
    try:
        kwargs = {
            "model": CLAUDE_MODEL,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
            "timeout": GENERATE_TIMEOUT,
        }
        if system:
            kwargs["system"] = system
        response = await _claude_client().messages.create(**kwargs)
        return _response_text(response), None
    except Exception as e:
        return "", _claude_failure(e, fallback)


# ---------------------------------------------------------------------------
# Scrape
# ---------------------------------------------------------------------------

def _html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "iframe", "nav", "footer"]):
        tag.decompose()
    return soup.get_text(separator="\n", strip=True)


async def _scrape_page(http: httpx.AsyncClient, page_url: str, headers: dict) -> str:
    """Main-content text for one page, or "" when the page could not be fetched."""
    try:
        resp = await http.post(
            f"{FIRECRAWL_API_URL}/scrape",
            json={"url": page_url, "formats": ["markdown", "html"], "onlyMainContent": True},
            headers=headers,
        )
        if resp.status_code >= 400:
            logger.warning(f"Scrape failed for {page_url}: HTTP {resp.status_code}")
            return ""
        body = _json_object(resp)
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"Scrape failed for {page_url}: {e}")
        return ""

    page = body.get("data") or body
    if not isinstance(page, dict):
        return ""
    markdown = (page.get("markdown") or "").strip()
    if markdown:
        return markdown
    html = page.get("html") or ""
    return _html_to_text(html) if html else ""


def _link_url(link) -> str:
    if isinstance(link, str):
        return link
    if isinstance(link, dict):
        return link.get("url") or ""
    return ""


async def scrape(url: str) -> ProviderResult:
    """
    Discover up to 20 URLs on the site (no subdomains), then fetch main-content
    text for the first 5. Individual page failures are skipped; only a failed
    discovery call fails the operation.
    """
    if not FIRECRAWL_API_KEY:
        logger.error("FIRECRAWL_API_KEY not configured")
        return ProviderResult.fail("Firecrawl not configured", 500)

    target = normalize_url(url)
    headers = {"Authorization": f"Bearer {FIRECRAWL_API_KEY}"}
    logger.info(f"Mapping {target}")

    try:
        async with _http(SCRAPE_TIMEOUT) as http:
            resp = await http.post(
                f"{FIRECRAWL_API_URL}/map",
                json={"url": target, "limit": MAX_DISCOVERED_PAGES, "includeSubdomains": False},
                headers=headers,
            )
            if resp.status_code >= 400:
                try:
                    detail = _json_object(resp).get("error") or ""
                except ValueError:
                    detail = ""
                logger.error(f"Firecrawl map error {resp.status_code}: {detail or resp.text[:300]}")
                if resp.status_code in (401, 402, 403, 429):
                    return classify_status(resp.status_code, "Firecrawl")
                return ProviderResult.fail(detail or "Failed to map website", resp.status_code)

            links = [_link_url(l) for l in _json_object(resp).get("links") or []]
            pages = [l for l in links if l][:MAX_DISCOVERED_PAGES] or [target]
            logger.info(f"Found {len(pages)} URLs, scraping up to {MAX_SCRAPED_PAGES}")

            blocks = []
            for page_url in pages[:MAX_SCRAPED_PAGES]:
                text = await _scrape_page(http, page_url, headers)
                if text:
                    blocks.append(f"--- Page: {page_url} ---\n{text}")
    except (httpx.HTTPError, ValueError) as e:
        return _transport_failure(e, "Firecrawl")

    logger.info(f"Scraped {len(blocks)} pages from {target}")
    return ProviderResult.ok({
        "url": target,
        "pages": pages,
        "content": "\n\n".join(blocks),
        "pageCount": len(blocks),
    })


# ---------------------------------------------------------------------------
# Analyze - company profile + candidate queries
# ---------------------------------------------------------------------------

ANALYZE_SYSTEM = f"""You are an SEO expert analyzing a company's website content. Your task is to:
1. Understand what the company does, their products/services, and target audience
2. Generate {MIN_QUERIES}-{MAX_QUERIES} strategic search queries that potential customers might use to find solutions like this company offers
3. Focus on high-intent, commercial queries that indicate buying intent

The queries should be:
- Specific enough to be actionable
- Include a mix of informational and transactional intent
- Cover different stages of the buyer journey

Always answer by calling the seo_analysis tool."""

ANALYZE_PROMPT = """Analyze this website content and generate SEO queries:

Website URL: {url}

Content:
{content}"""

ANALYZE_TOOL = {
    "name": "seo_analysis",
    "description": "Return the SEO analysis results",
    "input_schema": {
        "type": "object",
        "properties": {
            "companyDescription": {
                "type": "string",
                "description": "A brief 2-3 sentence description of what the company does",
            },
            "targetAudience": {
                "type": "string",
                "description": "Who the ideal customers are",
            },
            "queries": {
                "type": "array",
                "items": {"type": "string"},
                "minItems": MIN_QUERIES,
                "maxItems": MAX_QUERIES,
                "description": f"Array of {MIN_QUERIES}-{MAX_QUERIES} search queries",
            },
        },
        "required": ["companyDescription", "targetAudience", "queries"],
    },
}


async def analyze(content: str, url: str) -> ProviderResult:
    if not ANTHROPIC_API_KEY:
        logger.error("ANTHROPIC_API_KEY not configured")
        return ProviderResult.fail("AI not configured", 500)

    context = (content or "")[:ANALYZE_CONTENT_BUDGET]
    logger.info(f"Analyzing {len(context)} chars of content for {url}")

    try:
        response = await _claude_client().messages.create(
            model=CLAUDE_MODEL,
            max_tokens=2000,
            system=ANALYZE_SYSTEM,
            tools=[ANALYZE_TOOL],
            tool_choice={"type": "tool", "name": "seo_analysis"},
            messages=[{"role": "user", "content": ANALYZE_PROMPT.format(url=url, content=context)}],
            timeout=SEARCH_TIMEOUT,
        )
    except Exception as e:
        return _claude_failure(e, "AI analysis failed")

    payload = _tool_input(response, "seo_analysis") or _response_text(response)
    parsed = parse_analysis(payload, context, max_queries=MAX_QUERIES, url=url)
    logger.info(f"Generated {len(parsed.value.queries)} queries{' (degraded)' if parsed.degraded else ''}")

    data = asdict(parsed.value)
    data["degraded"] = parsed.degraded
    return ProviderResult.ok(data)


# ---------------------------------------------------------------------------
# Search - competitor analysis
# ---------------------------------------------------------------------------

SEARCH_SYSTEM = """You are analyzing search results for SEO purposes. For the given query, identify the top 5 ranking websites/pages and analyze why they rank well. Focus on:
- Content quality and depth
- Key topics covered
- SEO techniques used (headings, keywords, etc.)
- Unique value propositions

Return structured insights about each competitor."""

SEARCH_PROMPT = """Search query: "{query}"

The company {company_url} wants to rank for this query. Analyze the top 5 results and explain:
1. What are the top 5 ranking URLs for this query?
2. What key content elements make them rank well?
3. What content gaps could {company_url} fill to compete?

Be specific about URLs and content strategies."""


def placeholder_competitors(count: int = PLACEHOLDER_COMPETITORS) -> list[dict]:
    """Stand-ins when the search answer cites nothing; recognizable by URL and flag."""
    return [
        {
            "url": f"https://competitor{i}.example",
            "title": f"Competitor {i} (placeholder)",
            "position": i,
            "insights": ["Strong content relevance", "Good keyword optimization", "Quality backlinks"],
            "placeholder": True,
        }
        for i in range(1, count + 1)
    ]


def build_competitors(answer: str, sources: list[dict]) -> list[dict]:
    competitors = []
    for index, source in enumerate(sources[:TOP_COMPETITORS]):
        competitors.append({
            "url": source["url"],
            "title": source.get("title") or f"Result {index + 1}",
            "position": index + 1,
            "insights": extract_insights(answer, index),
            "placeholder": False,
        })
    return competitors or placeholder_competitors()


def _citation_sources(data: dict) -> list[dict]:
    results = data.get("search_results") or []
    sources = [
        {"url": r.get("url"), "title": r.get("title") or ""}
        for r in results
        if isinstance(r, dict) and r.get("url")
    ]
    if sources:
        return sources
    return [{"url": c, "title": ""} for c in data.get("citations") or [] if isinstance(c, str) and c]


async def search(query: str, company_url: str) -> ProviderResult:
    if not PERPLEXITY_API_KEY:
        logger.error("PERPLEXITY_API_KEY not configured")
        return ProviderResult.fail("Search not configured", 500)

    logger.info(f"Searching competitors for '{query}'")
    data, failure = await _post_json(
        PERPLEXITY_URL,
        {
            "model": PERPLEXITY_MODEL,
            "messages": [
                {"role": "system", "content": SEARCH_SYSTEM},
                {"role": "user", "content": SEARCH_PROMPT.format(query=query, company_url=company_url)},
            ],
        },
        provider="Perplexity",
        timeout=SEARCH_TIMEOUT,
        headers={"Authorization": f"Bearer {PERPLEXITY_API_KEY}"},
        fallback="Search failed",
    )
    if failure:
        return failure

    answer = _chat_answer(data)
    sources = _citation_sources(data)
    if not sources:
        logger.warning(f"No citations for '{query}', using placeholder competitors")

    return ProviderResult.ok({
        "query": query,
        "analysis": answer,
        "competitors": build_competitors(answer, sources),
    })


# ---------------------------------------------------------------------------
# Per-query content - guideline, then HTML
# ---------------------------------------------------------------------------

GUIDELINE_PROMPT = """You are an expert SEO strategist. Analyze the competitive landscape for this search query and create a detailed content guideline.

Query: "{query}"
Company: {company_description}
Target Audience: {target_audience}
Company URL: {company_url}

Current Company Content Summary:
{current_content}

Competitor Analysis:
{competitor_analysis}

Create a content guideline that identifies:
1. Gaps in the company's current content that competitors are filling
2. Strengths of top competitors that we need to match or exceed
3. Unique angles the company can take to differentiate
4. Specific recommendations for content structure and depth

Return a JSON object with this exact structure:
{{
  "title": "Guideline title for this query",
  "currentGaps": ["List of gaps in current content", "..."],
  "competitorStrengths": ["What competitors do well", "..."],
  "recommendedApproach": "Overall strategy recommendation",
  "keyDifferentiators": ["Unique angles to pursue", "..."],
  "targetWordCount": 1500,
  "primaryKeywords": ["main keywords to target"],
  "secondaryKeywords": ["supporting keywords"]
}}

Return ONLY valid JSON, no markdown."""

CONTENT_PROMPT = """You are an expert SEO content writer. Create high-quality HTML content for this search query based on the strategic guideline provided.

Query: "{query}"
Company: {company_description}
Target Audience: {target_audience}
Website: {company_url}

STRATEGIC GUIDELINE:
{guideline}

Create content that:
1. Directly addresses the gaps identified in the guideline
2. Matches or exceeds competitor strengths
3. Incorporates the key differentiators for unique value
4. Targets approximately {word_count} words
5. Naturally includes primary keywords: {primary_keywords}
6. Also incorporates secondary keywords where natural

Output a JSON object with this structure:
{{
  "html": "<!DOCTYPE html>...(complete HTML article)",
  "metaTitle": "SEO-optimized page title (under 60 chars)",
  "metaDescription": "Compelling meta description (under 160 chars)",
  "summary": "Brief 2-sentence summary of what this content provides that competitors don't"
}}

Return ONLY valid JSON, no markdown."""


async def generate_query_content(
    query: str,
    company_description: str,
    target_audience: str,
    company_url: str,
    current_content: str,
    competitor_analysis: dict,
) -> ProviderResult:
    if not ANTHROPIC_API_KEY:
        logger.error("ANTHROPIC_API_KEY not configured")
        return ProviderResult.fail("AI not configured", 500)

    logger.info(f"Generating guideline for '{query}'")
    guideline_text, failure = await _claude_text(
        GUIDELINE_PROMPT.format(
            query=query,
            company_description=company_description,
            target_audience=target_audience,
            company_url=company_url,
            current_content=current_content or "No existing content found for this topic.",
            competitor_analysis=json.dumps(competitor_analysis, indent=2, default=str),
        ),
        max_tokens=2048,
        temperature=0.5,
        fallback="Guideline generation failed",
    )
    if failure:
        return failure
    guideline = parse_guideline(guideline_text, query)

    logger.info(f"Generating content for '{query}'")
    content_text, failure = await _claude_text(
        CONTENT_PROMPT.format(
            query=query,
            company_description=company_description,
            target_audience=target_audience,
            company_url=company_url,
            guideline=json.dumps(asdict(guideline.value), indent=2),
            word_count=guideline.value.targetWordCount,
            primary_keywords=", ".join(guideline.value.primaryKeywords),
        ),
        max_tokens=6000,
        temperature=0.6,
        fallback="Content generation failed",
    )
    if failure:
        return failure
    content = parse_content(content_text, query, company_url)

    logger.info(f"Generated content for '{query}' - HTML length: {len(content.value.html)}")
    return ProviderResult.ok({
        "query": query,
        "guideline": asdict(guideline.value),
        "content": asdict(content.value),
        "degraded": guideline.degraded or content.degraded,
    })


SITE_CONTENT_SYSTEM = """You are an expert SEO content writer. Your task is to create high-quality HTML content that will help a website rank for specific search queries.

Create content that:
1. Naturally incorporates target keywords
2. Provides genuine value to readers
3. Follows SEO best practices (proper headings, meta descriptions, semantic HTML)
4. Addresses the content gaps identified in competitor analysis
5. Is well-structured with clear sections

Output valid HTML that can be directly inserted into a CMS or webpage."""

SITE_CONTENT_PROMPT = """Create SEO-optimized HTML content for this company:

Company: {company_description}
Target Audience: {target_audience}
Website: {url}

Target Search Queries:
{queries}

Competitor Analysis:
{competitor_analysis}

Create a comprehensive HTML article (1500-2000 words) that:
1. Targets the primary search queries
2. Fills the content gaps identified in competitor analysis
3. Provides unique value and insights
4. Includes proper SEO elements (title, meta description, headings, internal link suggestions)
5. Has clear calls-to-action

Return only valid HTML starting with <!DOCTYPE html>."""


async def generate_site_content(
    company_description: str,
    target_audience: str,
    queries: list[str],
    competitor_analysis: list[dict],
    url: str,
) -> ProviderResult:
    if not ANTHROPIC_API_KEY:
        logger.error("ANTHROPIC_API_KEY not configured")
        return ProviderResult.fail("AI not configured", 500)

    numbered = "\n".join(f"{i}. {q}" for i, q in enumerate(queries[:5], start=1))
    text, failure = await _claude_text(
        SITE_CONTENT_PROMPT.format(
            company_description=company_description,
            target_audience=target_audience,
            url=url,
            queries=numbered,
            competitor_analysis=json.dumps(competitor_analysis[:3], indent=2, default=str),
        ),
        system=SITE_CONTENT_SYSTEM,
        max_tokens=4096,
        temperature=0.6,
    )
    if failure:
        return failure

    html = parse_html(text)
    logger.info(f"Generated HTML content length: {len(html)}")
    return ProviderResult.ok({"html": html})


# ---------------------------------------------------------------------------
# Multi-model comparison
# ---------------------------------------------------------------------------

COMPARE_SYSTEM = (
    "You are a helpful assistant answering search queries. Provide concise, informative "
    "responses that would rank well for SEO. Include key topics and facts."
)


async def _ask_openai(query: str) -> ProviderResult:
    data, failure = await _post_json(
        OPENAI_URL,
        {
            "model": OPENAI_MODEL,
            "messages": [{"role": "system", "content": COMPARE_SYSTEM}, {"role": "user", "content": query}],
            "max_tokens": 500,
        },
        provider="OpenAI",
        timeout=COMPARE_TIMEOUT,
        headers={"Authorization": f"Bearer {OPENAI_API_KEY}"},
    )
    return failure or ProviderResult.ok(_chat_answer(data))


async def _ask_gemini(query: str) -> ProviderResult:
    data, failure = await _post_json(
        GEMINI_URL.format(model=GEMINI_MODEL),
        {
            "contents": [{"parts": [{"text": f"{COMPARE_SYSTEM}\n\nQuery: {query}"}]}],
            "generationConfig": {"maxOutputTokens": 500},
        },
        provider="Gemini",
        timeout=COMPARE_TIMEOUT,
        headers={"x-goog-api-key": GOOGLE_API_KEY},
    )
    if failure:
        return failure
    candidates = data.get("candidates") or [{}]
    parts = ((candidates[0] or {}).get("content") or {}).get("parts") or [{}]
    return ProviderResult.ok(parts[0].get("text") or "")


async def _ask_perplexity(query: str) -> ProviderResult:
    data, failure = await _post_json(
        PERPLEXITY_URL,
        {
            "model": PERPLEXITY_MODEL,
            "messages": [{"role": "system", "content": COMPARE_SYSTEM}, {"role": "user", "content": query}],
        },
        provider="Perplexity",
        timeout=COMPARE_TIMEOUT,
        headers={"Authorization": f"Bearer {PERPLEXITY_API_KEY}"},
    )
    return failure or ProviderResult.ok(_chat_answer(data))


async def _ask_claude(query: str) -> ProviderResult:
    text, failure = await _claude_text(query, system=COMPARE_SYSTEM, max_tokens=500, temperature=0.5)
    return failure or ProviderResult.ok(text)


def configured_providers() -> dict:
    """provider -> caller for every provider that has credentials; xAI is disabled."""
    callers = {
        "openai": _ask_openai if OPENAI_API_KEY else None,
        "google": _ask_gemini if GOOGLE_API_KEY else None,
        "perplexity": _ask_perplexity if PERPLEXITY_API_KEY else None,
        "xai": None,
        "anthropic": _ask_claude if ANTHROPIC_API_KEY else None,
    }
    return {p: c for p, c in callers.items() if c is not None}


async def compare_across_models(query: str) -> ProviderResult:
    """
    Ask every configured provider concurrently and wait for all of them to settle.
    The merge is keyed by PROVIDER_ORDER so output order never depends on which
    provider answered first, and unconfigured providers are always listed.
    """
    callers = configured_providers()
    live = [p for p in PROVIDER_ORDER if p in callers]
    logger.info(f"Comparing '{query}' across {len(live)} providers: {', '.join(live) or 'none'}")

    settled = await asyncio.gather(*(callers[p](query) for p in live), return_exceptions=True)
    outcomes = dict(zip(live, settled))

    results = []
    for provider in PROVIDER_ORDER:
        entry = {"provider": provider, "providerName": PROVIDER_NAMES[provider], "available": False}
        if provider == "xai":
            entry["error"] = "Currently disabled - API key unavailable"
        elif provider not in outcomes:
            entry["error"] = "API key not configured"
        else:
            outcome = outcomes[provider]
            if isinstance(outcome, BaseException):
                logger.error(f"Provider '{provider}' raised: {type(outcome).__name__}: {outcome}")
                entry["error"] = str(outcome) or type(outcome).__name__
            elif not outcome.success:
                entry["error"] = outcome.error
            else:
                entry.update(
                    available=True,
                    response=outcome.data,
                    keyTopics=extract_key_topics(outcome.data),
                )
        results.append(entry)

    return ProviderResult.ok(results)
