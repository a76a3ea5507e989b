"""
Shared fixtures for the SEO gap analysis test suite.

Every external service (Firecrawl, Perplexity, Claude, the billing backend,
the database) is replaced here so the suite runs without network access.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import database
import providers
from services import OperationResult


# ---------------------------------------------------------------------------
# Outbound HTTP
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_http(monkeypatch):
    """
    Route every provider HTTP call through a MockTransport.
    Call the fixture with a handler(request) -> httpx.Response.
    """
    def install(handler):
        transport = httpx.MockTransport(handler)
        monkeypatch.setattr(
            providers,
            "_http",
            lambda timeout: httpx.AsyncClient(transport=transport, timeout=timeout),
        )
        return transport
    return install


@pytest.fixture
def provider_keys(monkeypatch):
    """All provider credentials configured."""
    monkeypatch.setattr(providers, "FIRECRAWL_API_KEY", "fc-test")
    monkeypatch.setattr(providers, "PERPLEXITY_API_KEY", "pplx-test")
    monkeypatch.setattr(providers, "ANTHROPIC_API_KEY", "sk-ant-test")
    monkeypatch.setattr(providers, "OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(providers, "GOOGLE_API_KEY", "g-test")


# ---------------------------------------------------------------------------
# Claude
# ---------------------------------------------------------------------------

def text_response(text: str):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


def tool_response(name: str, payload: dict):
    return SimpleNamespace(content=[SimpleNamespace(type="tool_use", name=name, input=payload)])


@pytest.fixture
def fake_claude(monkeypatch):
    """AsyncMock standing in for AsyncAnthropic().messages.create."""
    create = AsyncMock()
    client = MagicMock()
    client.messages.create = create
    monkeypatch.setattr(providers, "_claude_client", lambda: client)
    return create


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point the persistence layer at a throwaway SQLite file."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    database.Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "SessionLocal", sessionmaker(bind=engine, autocommit=False, autoflush=False))
    yield engine
    engine.dispose()


# ---------------------------------------------------------------------------
# Pipeline stage doubles
# ---------------------------------------------------------------------------

QUERIES = [f"query {i}" for i in range(1, 12)]
PAGE_CONTENT = "--- Page: https://example.com ---\nHome\n\n--- Page: https://example.com/about ---\nAbout us"


class FakeStages:
    """
    In-memory orchestrator backend. Individual calls can be made to fail
    (failing_searches) or to raise (raising_searches).
    """

    def __init__(self, *, content=PAGE_CONTENT, queries=None):
        self.content = content
        self.queries = list(QUERIES if queries is None else queries)
        self.failing_searches: set[str] = set()
        self.raising_searches: set[str] = set()
        self.scrape_result = None
        self.analyze_result = None
        self.calls: list[tuple] = []

    async def scrape(self, url):
        self.calls.append(("scrape", url))
        if self.scrape_result is not None:
            return self.scrape_result
        return OperationResult.ok({
            "url": url,
            "pages": ["https://example.com", "https://example.com/about"],
            "content": self.content,
            "pageCount": 2 if self.content else 0,
        })

    async def analyze(self, content, url):
        self.calls.append(("analyze", content))
        if self.analyze_result is not None:
            return self.analyze_result
        return OperationResult.ok({
            "companyDescription": "Example makes examples.",
            "targetAudience": "Developers",
            "queries": self.queries,
        })

    async def search(self, query, company_url):
        self.calls.append(("search", query))
        if query in self.raising_searches:
            raise RuntimeError(f"search blew up for {query}")
        if query in self.failing_searches:
            return OperationResult.fail(500, "Search failed")
        return OperationResult.ok({
            "query": query,
            "analysis": f"analysis of {query}",
            "competitors": [{"url": "https://rival.test", "title": "Rival", "position": 1,
                             "insights": ["Strong keyword optimization"], "placeholder": False}],
        })

    async def generate_query_content(self, query, company_description, target_audience,
                                     company_url, current_content, competitor_analysis):
        self.calls.append(("generate", query))
        return OperationResult.ok({
            "query": query,
            "guideline": {"title": f"Guide for {query}"},
            "content": {"html": f"<!DOCTYPE html><html><body>{query}</body></html>",
                        "metaTitle": query, "metaDescription": query, "summary": ""},
            "degraded": False,
        })

    def called(self, kind: str) -> list:
        return [arg for name, arg in self.calls if name == kind]


@pytest.fixture
def fake_stages():
    return FakeStages()
