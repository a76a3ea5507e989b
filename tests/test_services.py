"""Tests for services - validation, gate ordering and usage recording."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

import providers
from providers import ProviderResult
from quota import DEMO_USER_ID, SCRAPE_REQUESTS, SEARCH_REQUESTS, QuotaDecision, QuotaGate
from services import LocalStages, RequestContext, StageServices


@pytest.fixture
def gate():
    gate = MagicMock()
    gate.check = AsyncMock(return_value=QuotaDecision(True, 5))
    gate.record = AsyncMock(return_value=True)
    return gate


@pytest.fixture
def user():
    return RequestContext(identity="user-1")


class TestValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("call,message", [
        (lambda s, c: s.scrape(c, "  "), "URL is required"),
        (lambda s, c: s.analyze(c, "", "https://e.com"), "Content is required"),
        (lambda s, c: s.search(c, ""), "Query is required"),
        (lambda s, c: s.generate_query_content(c, "q", "", "a", "u", "", {"x": 1}), "Missing required data"),
        (lambda s, c: s.generate_query_content(c, "q", "d", "a", "u", "", None), "Missing required data"),
        (lambda s, c: s.generate_site_content(c, "d", "a", [], [{"x": 1}], "u"), "Missing required data"),
        (lambda s, c: s.compare_across_models(c, ""), "Query is required"),
    ])
    async def test_missing_fields(self, gate, user, call, message):
        result = await call(StageServices(gate), user)
        assert result.status == 400
        assert result.body == {"success": False, "error": message}
        gate.check.assert_not_called()


class TestGating:

    @pytest.mark.asyncio
    async def test_denied_call_never_reaches_provider(self, gate, user, monkeypatch):
        gate.check.return_value = QuotaDecision(False, 0, "API rate limit exceeded. Please upgrade your plan.")
        scrape = AsyncMock()
        monkeypatch.setattr(providers, "scrape", scrape)

        result = await StageServices(gate).scrape(user, "example.com")

        assert result.status == 429
        assert result.error == "API rate limit exceeded. Please upgrade your plan."
        scrape.assert_not_called()
        gate.record.assert_not_called()

    @pytest.mark.asyncio
    async def test_success_records_one_unit(self, gate, user, monkeypatch):
        monkeypatch.setattr(providers, "scrape", AsyncMock(return_value=ProviderResult.ok({"pageCount": 1})))

        result = await StageServices(gate).scrape(user, "example.com")

        assert result.status == 200
        assert result.body == {"success": True, "data": {"pageCount": 1}}
        assert result.remaining == 4
        gate.record.assert_awaited_once_with("user-1", SCRAPE_REQUESTS, demo=False)

    @pytest.mark.asyncio
    async def test_failure_does_not_consume_quota(self, gate, user, monkeypatch):
        monkeypatch.setattr(providers, "search", AsyncMock(return_value=ProviderResult.fail("Search failed", 500)))

        result = await StageServices(gate).search(user, "crm", "https://e.com")

        assert result.status == 500
        assert result.body == {"success": False, "error": "Search failed"}
        gate.record.assert_not_called()
        gate.release.assert_called_once_with("user-1", SEARCH_REQUESTS, demo=False)

    @pytest.mark.asyncio
    async def test_upstream_status_is_kept(self, gate, user, monkeypatch):
        monkeypatch.setattr(providers, "analyze", AsyncMock(return_value=ProviderResult.fail("slow", 429)))
        result = await StageServices(gate).analyze(user, "content", "https://e.com")
        assert result.status == 429

    @pytest.mark.asyncio
    async def test_compare_is_not_gated(self, gate, user, monkeypatch):
        monkeypatch.setattr(providers, "compare_across_models", AsyncMock(return_value=ProviderResult.ok([])))
        result = await StageServices(gate).compare_across_models(user, "crm")
        assert result.data["query"] == "crm"
        assert result.data["results"] == []
        assert "timestamp" in result.data
        gate.check.assert_not_called()


class TestRequestContext:

    def test_demo_is_not_authenticated(self):
        assert not RequestContext.for_demo().is_authenticated
        assert RequestContext.for_demo().demo

    def test_anonymous(self):
        assert not RequestContext().is_authenticated

    def test_user(self):
        assert RequestContext(identity="u").is_authenticated


class TestLocalStages:

    @pytest.mark.asyncio
    async def test_context_is_passed_through(self, gate, monkeypatch):
        monkeypatch.setattr(providers, "search", AsyncMock(return_value=ProviderResult.ok({"query": "q"})))
        ctx = RequestContext.for_demo()

        result = await LocalStages(StageServices(gate), ctx).search("q", "https://e.com")

        assert result.success
        gate.check.assert_awaited_once()
        assert gate.check.call_args.kwargs["demo"] is True


class TestDemoAllowance:

    @pytest.mark.asyncio
    async def test_concurrent_demo_calls_respect_the_limit(self, monkeypatch):
        async def slow_scrape(url):
            await asyncio.sleep(0.01)
            return ProviderResult.ok({"url": url})

        scrape = AsyncMock(side_effect=slow_scrape)
        monkeypatch.setattr(providers, "scrape", scrape)
        services = StageServices(QuotaGate(api_key="", demo_quota=3))

        results = await asyncio.gather(*[
            services.scrape(RequestContext.for_demo(), "example.com") for _ in range(6)
        ])

        assert sorted(r.status for r in results) == [200, 200, 200, 429, 429, 429]
        assert scrape.await_count == 3

    @pytest.mark.asyncio
    async def test_failed_call_gives_the_slot_back(self, monkeypatch):
        monkeypatch.setattr(providers, "search", AsyncMock(return_value=ProviderResult.fail("Search failed", 500)))
        gate = QuotaGate(api_key="", demo_quota=1)
        services = StageServices(gate)

        assert (await services.search(RequestContext.for_demo(), "crm")).status == 500
        assert (await services.search(RequestContext.for_demo(), "crm")).status == 500

        assert (await gate.check(DEMO_USER_ID, SEARCH_REQUESTS, demo=True)).allowed

    @pytest.mark.asyncio
    async def test_raising_call_gives_the_slot_back(self, monkeypatch):
        monkeypatch.setattr(providers, "scrape", AsyncMock(side_effect=RuntimeError("boom")))
        gate = QuotaGate(api_key="", demo_quota=1)

        with pytest.raises(RuntimeError):
            await StageServices(gate).scrape(RequestContext.for_demo(), "example.com")

        assert (await gate.check(DEMO_USER_ID, SCRAPE_REQUESTS, demo=True)).allowed
