# =============================================================================
# Response Normalizer - defensive parsing of language-model output
# =============================================================================
#
# Model completions are free text. Everything that reads structured data out of
# them goes through here:
#   - strip_code_fences(): remove ```json / ```html / ``` wrappers
#   - extract_json():      fenced, prefixed, trailing-commentary or truncated JSON
#   - parse_*():           typed result with a deterministic fallback
#
# parse_* never raise. They return Normalized(value, degraded, reason); degraded
# results are logged so fallback synthesis is never silent.
# =============================================================================

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

logger = logging.getLogger("seo-gap.normalizer")

DEFAULT_TARGET_WORD_COUNT = 1500

_FENCE_RE = re.compile(r"```[a-zA-Z]*[ \t]*\n?")
_DOCTYPE_RE = re.compile(r"<!DOCTYPE html>[\s\S]*", re.IGNORECASE)


@dataclass
class Normalized:
    """Parsed(value) when degraded is False, Degraded(value, reason) otherwise."""
    value: Any
    degraded: bool = False
    reason: Optional[str] = None


@dataclass
class Guideline:
    title: str
    currentGaps: list[str] = field(default_factory=list)
    competitorStrengths: list[str] = field(default_factory=list)
    recommendedApproach: str = ""
    keyDifferentiators: list[str] = field(default_factory=list)
    targetWordCount: int = DEFAULT_TARGET_WORD_COUNT
    primaryKeywords: list[str] = field(default_factory=list)
    secondaryKeywords: list[str] = field(default_factory=list)


@dataclass
class QueryContent:
    html: str
    metaTitle: str
    metaDescription: str
    summary: str


@dataclass
class SiteAnalysis:
    companyDescription: str
    targetAudience: str
    queries: list[str]


# ---------------------------------------------------------------------------
# Fences and raw JSON
# ---------------------------------------------------------------------------

def strip_code_fences(text: str) -> str:
    """Remove Markdown code-fence markers. Idempotent; unfenced text only gets trimmed."""
    if not text:
        return ""
    return _FENCE_RE.sub("", text).strip()


def _scan(text: str, start: int = 0) -> tuple[list[tuple[int, str]], bool]:
    """Brackets outside string literals, and whether the text ends inside a string."""
    marks = []
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
        elif ch == "\\" and in_string:
            escape = True
        elif ch == '"':
            in_string = not in_string
        elif not in_string and ch in "{}[]":
            marks.append((i, ch))
    return marks, in_string


def extract_json(text: str) -> dict | list | None:
    """
    Robustly extract JSON from a model response.
    Handles markdown fences, preamble text, trailing commentary,
    and truncated JSON (from max_tokens cutoff).
    Returns None when nothing parseable is found.
    """
    text = strip_code_fences(text)
    if not text:
        return None

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Find the outermost JSON object or array
    obj_start = text.find("{")
    arr_start = text.find("[")

    if obj_start == -1 and arr_start == -1:
        return None

    if arr_start != -1 and (obj_start == -1 or arr_start < obj_start):
        start, open_c, close_c = arr_start, "[", "]"
    else:
        start, open_c, close_c = obj_start, "{", "}"

    depth = 0
    for i, ch in _scan(text, start)[0]:
        if ch == open_c:
            depth += 1
        elif ch == close_c:
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(text[start : i + 1])
                except json.JSONDecodeError:
                    break

    return _repair_truncated_json(text[start:])


_CLOSERS = {"[": "]", "{": "}"}


def _repair_truncated_json(fragment: str) -> dict | list | None:
    """Attempt to repair JSON truncated by a max_tokens cutoff."""
    trimmed = fragment.rstrip()
    if _scan(trimmed)[1]:
        trimmed += '"'
    trimmed = trimmed.rstrip().rstrip(",")

    stack = []
    for _, ch in _scan(trimmed)[0]:
        if ch in _CLOSERS:
            stack.append(ch)
        elif stack and _CLOSERS[stack[-1]] == ch:
            stack.pop()
    trimmed += "".join(_CLOSERS[opener] for opener in reversed(stack))

    try:
        return json.loads(trimmed)
    except json.JSONDecodeError:
        return None


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def _str_list(val) -> list[str]:
    if isinstance(val, list):
        return [str(v).strip() for v in val if v is not None and str(v).strip()]
    if isinstance(val, str) and val.strip():
        return [val.strip()]
    return []


def _int(val, default: int) -> int:
    try:
        n = int(val)
    except (TypeError, ValueError):
        return default
    return n if n > 0 else default


def _degraded(kind: str, value, reason: str) -> Normalized:
    logger.warning(f"Degraded {kind}: {reason}")
    return Normalized(value=value, degraded=True, reason=reason)


# ---------------------------------------------------------------------------
# Guideline
# ---------------------------------------------------------------------------

def fallback_guideline(query: str) -> Guideline:
    return Guideline(
        title=f'Content Strategy for "{query}"',
        currentGaps=["Content depth needs improvement", "Missing key topics covered by competitors"],
        competitorStrengths=["Comprehensive coverage", "Strong keyword optimization"],
        recommendedApproach="Create authoritative, in-depth content that addresses user intent comprehensively.",
        keyDifferentiators=["Unique industry expertise", "Practical actionable advice"],
        targetWordCount=DEFAULT_TARGET_WORD_COUNT,
        primaryKeywords=[query],
        secondaryKeywords=[],
    )


def parse_guideline(text: str, query: str) -> Normalized:
    data = extract_json(text)
    if not isinstance(data, dict):
        return _degraded("guideline", fallback_guideline(query), "guideline response was not a JSON object")

    approach = data.get("recommendedApproach")
    if not data.get("title") and not approach:
        return _degraded("guideline", fallback_guideline(query), "guideline JSON missing title and approach")

    guideline = Guideline(
        title=str(data.get("title") or f'Content Strategy for "{query}"'),
        currentGaps=_str_list(data.get("currentGaps")),
        competitorStrengths=_str_list(data.get("competitorStrengths")),
        recommendedApproach=str(approach or ""),
        keyDifferentiators=_str_list(data.get("keyDifferentiators")),
        targetWordCount=_int(data.get("targetWordCount"), DEFAULT_TARGET_WORD_COUNT),
        primaryKeywords=_str_list(data.get("primaryKeywords")) or [query],
        secondaryKeywords=_str_list(data.get("secondaryKeywords")),
    )
    return Normalized(value=guideline)


# ---------------------------------------------------------------------------
# Per-query HTML content
# ---------------------------------------------------------------------------

def _fallback_content(html: str, query: str, company_url: str) -> QueryContent:
    return QueryContent(
        html=html,
        metaTitle=f"{query} | {company_url}",
        metaDescription=f"Expert guide on {query} from {company_url}",
        summary="Comprehensive content created to fill competitive gaps and provide unique value.",
    )


def parse_content(text: str, query: str, company_url: str) -> Normalized:
    data = extract_json(text)
    if isinstance(data, dict) and isinstance(data.get("html"), str) and data["html"].strip():
        content = QueryContent(
            html=strip_code_fences(data["html"]),
            metaTitle=str(data.get("metaTitle") or f"{query} | {company_url}"),
            metaDescription=str(data.get("metaDescription") or f"Expert guide on {query} from {company_url}"),
            summary=str(data.get("summary") or ""),
        )
        return Normalized(value=content)

    body = strip_code_fences(text)
    match = _DOCTYPE_RE.search(body)
    html = match.group(0) if match else body
    reason = "content response was not JSON; used DOCTYPE fragment" if match else "content response was not JSON; used raw text"
    return _degraded("content", _fallback_content(html.strip(), query, company_url), reason)


def parse_html(text: str) -> str:
    """Plain HTML completion: drop fences, keep everything from <!DOCTYPE html> when present."""
    body = strip_code_fences(text)
    match = _DOCTYPE_RE.search(body)
    return (match.group(0) if match else body).strip()


# ---------------------------------------------------------------------------
# Site analysis (company profile + queries)
# ---------------------------------------------------------------------------

def parse_analysis(payload, context: str, max_queries: int = 15, url: str = "") -> Normalized:
    """
    payload is either the structured tool input (dict) or raw model text.
    context is the original input (the scraped content or its URL stand-in);
    the fallback keeps it as the single query so downstream stages still run.
    The description is never empty: content generation requires one.
    """
    data = payload if isinstance(payload, dict) else extract_json(payload or "")
    stub = f"Website: {url}" if url else "Company website"
    fallback = SiteAnalysis(
        companyDescription=stub,
        targetAudience="",
        queries=[context.strip()[:200] or "website analysis"],
    )
    if not isinstance(data, dict):
        return _degraded("analysis", fallback, "analysis response was not a JSON object")

    queries = _str_list(data.get("queries"))[:max_queries]
    description = str(data.get("companyDescription") or "").strip()
    audience = str(data.get("targetAudience") or "").strip()

    if not queries:
        fallback.companyDescription = description or stub
        fallback.targetAudience = audience
        return _degraded("analysis", fallback, "analysis returned no queries")

    return Normalized(value=SiteAnalysis(description or stub, audience, queries))


# ---------------------------------------------------------------------------
# Text mining
# ---------------------------------------------------------------------------

DEFAULT_INSIGHTS = [
    "Comprehensive content coverage",
    "Strong keyword optimization",
    "Quality backlink profile",
    "Good user experience signals",
]

_INSIGHT_PATTERNS = [
    re.compile(r"strong [\w\s]+? content", re.IGNORECASE),
    re.compile(r"comprehensive [\w\s]+", re.IGNORECASE),
    re.compile(r"high-quality [\w\s]+", re.IGNORECASE),
    re.compile(r"optimized [\w\s]+", re.IGNORECASE),
]


def extract_insights(answer: str, index: int) -> list[str]:
    """Pick the index-th match of each insight pattern; generic insights if fewer than 2 hit."""
    insights = []
    for pattern in _INSIGHT_PATTERNS:
        matches = pattern.findall(answer or "")
        if len(matches) > index:
            insights.append(matches[index].strip())
    if len(insights) < 2:
        return DEFAULT_INSIGHTS[:3]
    return insights[:3]


def extract_key_topics(answer: str, limit: int = 5) -> list[str]:
    """Quoted phrases, bold terms, then capitalized multi-word phrases, deduplicated in order."""
    topics: list[str] = []

    def add(items):
        for item in items:
            item = item.strip()
            if item and item not in topics:
                topics.append(item)

    answer = answer or ""
    add(re.findall(r'"([^"]+)"', answer)[:3])
    add(re.findall(r"\*\*([^*]+)\*\*", answer)[:3])
    add(re.findall(r"[A-Z][a-z]+(?:\s+[A-Z][a-z]+)+", answer)[:5])
    return topics[:limit]


# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------

def normalize_url(url: str) -> str:
    """Scheme-prefix a user-entered URL and strip the trailing slash."""
    url = (url or "").strip()
    if not url:
        return ""
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    p = urlparse(url)
    path = p.path.rstrip("/")
    return urlunparse((p.scheme, p.netloc.lower(), path, "", p.query, ""))
