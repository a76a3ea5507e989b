"""Tests for quota - demo allowance, billing meter lookups and fail-open behaviour."""

import json
from unittest.mock import MagicMock

import httpx
import pytest

from quota import (
    DEMO_EXCEEDED,
    DEMO_USER_ID,
    QUOTA_EXCEEDED,
    SCRAPE_REQUESTS,
    SEARCH_REQUESTS,
    STARTER_ALLOWANCE,
    QuotaGate,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _gate_with(handler, **kwargs) -> QuotaGate:
    gate = QuotaGate(api_key="fg-test", api_url="https://billing.test", **kwargs)
    transport = httpx.MockTransport(handler)
    gate._http = lambda: httpx.AsyncClient(transport=transport)
    return gate


# ===================================================================
# Demo allowance
# ===================================================================

class TestDemoAllowance:

    @pytest.mark.asyncio
    async def test_fourth_call_denied_without_backend(self):
        gate = QuotaGate(api_key="fg-test", demo_quota=3, clock=FakeClock())
        gate._http = MagicMock(side_effect=AssertionError("billing backend must not be called"))

        for expected_remaining in (3, 2, 1):
            decision = await gate.check(DEMO_USER_ID, SEARCH_REQUESTS, demo=True)
            assert decision.allowed
            assert decision.remaining == expected_remaining
            assert await gate.record(DEMO_USER_ID, SEARCH_REQUESTS, demo=True)

        decision = await gate.check(DEMO_USER_ID, SEARCH_REQUESTS, demo=True)
        assert not decision.allowed
        assert decision.remaining == 0
        assert decision.reason == DEMO_EXCEEDED
        gate._http.assert_not_called()

    @pytest.mark.asyncio
    async def test_allowance_is_per_operation_class(self):
        gate = QuotaGate(api_key="", demo_quota=1, clock=FakeClock())
        await gate.record(DEMO_USER_ID, SEARCH_REQUESTS, demo=True)
        assert not (await gate.check(DEMO_USER_ID, SEARCH_REQUESTS, demo=True)).allowed
        assert (await gate.check(DEMO_USER_ID, SCRAPE_REQUESTS, demo=True)).allowed

    @pytest.mark.asyncio
    async def test_window_slides(self):
        clock = FakeClock()
        gate = QuotaGate(api_key="", demo_quota=1, demo_window=60, clock=clock)
        await gate.record(DEMO_USER_ID, SCRAPE_REQUESTS, demo=True)
        assert not (await gate.check(DEMO_USER_ID, SCRAPE_REQUESTS, demo=True)).allowed

        clock.now += 61
        assert (await gate.check(DEMO_USER_ID, SCRAPE_REQUESTS, demo=True)).allowed

    @pytest.mark.asyncio
    async def test_allowed_check_holds_a_slot(self):
        gate = QuotaGate(api_key="", demo_quota=3, clock=FakeClock())
        decisions = [await gate.check(DEMO_USER_ID, SCRAPE_REQUESTS, demo=True) for _ in range(4)]
        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert decisions[-1].reason == DEMO_EXCEEDED

    @pytest.mark.asyncio
    async def test_release_returns_the_slot(self):
        gate = QuotaGate(api_key="", demo_quota=1, clock=FakeClock())
        assert (await gate.check(DEMO_USER_ID, SCRAPE_REQUESTS, demo=True)).allowed
        gate.release(DEMO_USER_ID, SCRAPE_REQUESTS, demo=True)

        decision = await gate.check(DEMO_USER_ID, SCRAPE_REQUESTS, demo=True)
        assert decision.allowed
        assert decision.remaining == 1

    @pytest.mark.asyncio
    async def test_demo_identity_detected_without_flag(self):
        gate = QuotaGate(api_key="", demo_quota=0, clock=FakeClock())
        decision = await gate.check(DEMO_USER_ID, SCRAPE_REQUESTS)
        assert decision.is_demo
        assert not decision.allowed


# ===================================================================
# Billing backend
# ===================================================================

class TestBillingBackend:

    @pytest.mark.asyncio
    async def test_anonymous_bypasses_quota(self):
        decision = await QuotaGate(api_key="fg-test").check(None, SCRAPE_REQUESTS)
        assert decision.allowed
        assert decision.remaining == -1

    @pytest.mark.asyncio
    async def test_unconfigured_fails_open(self):
        decision = await QuotaGate(api_key="").check("user-1", SCRAPE_REQUESTS)
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_unreachable_fails_open(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)
        decision = await _gate_with(handler).check("user-1", SCRAPE_REQUESTS)
        assert decision.allowed
        assert decision.remaining == -1

    @pytest.mark.asyncio
    async def test_server_error_fails_open(self):
        decision = await _gate_with(lambda r: httpx.Response(503, text="down")).check("user-1", SCRAPE_REQUESTS)
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_unknown_customer_gets_starter_allowance(self):
        decision = await _gate_with(lambda r: httpx.Response(404)).check("new-user", SCRAPE_REQUESTS)
        assert decision.allowed
        assert decision.remaining == STARTER_ALLOWANCE

    @pytest.mark.asyncio
    async def test_meter_balance(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"usageMeters": {
                SCRAPE_REQUESTS: {"availableBalance": 7},
                SEARCH_REQUESTS: {"availableBalance": 0},
            }})

        gate = _gate_with(handler)
        allowed = await gate.check("user-1", SCRAPE_REQUESTS)
        denied = await gate.check("user-1", SEARCH_REQUESTS)

        assert allowed.allowed and allowed.remaining == 7
        assert not denied.allowed
        assert denied.remaining == 0
        assert denied.reason == QUOTA_EXCEEDED
        assert seen[0].url.path == "/v1/customers/external/user-1/billing"
        assert seen[0].headers["Authorization"] == "Bearer fg-test"

    @pytest.mark.asyncio
    async def test_record_posts_usage_event(self):
        posted = []

        def handler(request):
            posted.append(json.loads(request.content))
            return httpx.Response(201, json={})

        assert await _gate_with(handler).record("user-1", SEARCH_REQUESTS)
        assert posted[0]["customerExternalId"] == "user-1"
        assert posted[0]["usageMeterSlug"] == SEARCH_REQUESTS
        assert posted[0]["amount"] == 1

    @pytest.mark.asyncio
    async def test_record_failure_reported(self):
        assert not await _gate_with(lambda r: httpx.Response(500)).record("user-1", SEARCH_REQUESTS)
