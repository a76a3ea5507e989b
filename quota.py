# =============================================================================
# Rate/Quota Gate
# =============================================================================
#
# check() before every billable operation, record() after it succeeds,
# release() when it does not. Failed operations never consume quota.
#
#   demo identity        → local allowance (DEMO_QUOTA per operation class inside
#                          a sliding window); the billing backend is never called
#   backend unconfigured → allow (fail open), logged
#   backend unreachable  → allow (fail open), logged
#   unknown customer     → starter allowance
#   otherwise            → allowed while the meter's availableBalance > 0
# =============================================================================

import logging
import os
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx

logger = logging.getLogger("seo-gap.quota")

FLOWGLAD_SECRET_KEY = os.getenv("FLOWGLAD_SECRET_KEY", "")
FLOWGLAD_API_URL = os.getenv("FLOWGLAD_API_URL", "https://api.flowglad.com")
QUOTA_TIMEOUT = float(os.getenv("QUOTA_TIMEOUT_SECONDS", "10"))

DEMO_USER_ID = "demo-user-12345"
DEMO_QUOTA = int(os.getenv("DEMO_QUOTA", "3"))
DEMO_WINDOW_SECONDS = int(os.getenv("DEMO_WINDOW_SECONDS", "86400"))
STARTER_ALLOWANCE = 10

SCRAPE_REQUESTS = "scrape-requests"
ANALYZE_REQUESTS = "analyze-requests"
SEARCH_REQUESTS = "search-requests"
GENERATE_REQUESTS = "generate-requests"
OPERATION_CLASSES = (SCRAPE_REQUESTS, ANALYZE_REQUESTS, SEARCH_REQUESTS, GENERATE_REQUESTS)

QUOTA_EXCEEDED = "API rate limit exceeded. Please upgrade your plan."
DEMO_EXCEEDED = "Demo limit reached. Sign up to keep analyzing."


@dataclass
class QuotaDecision:
    allowed: bool
    remaining: int
    reason: Optional[str] = None
    is_demo: bool = False


def is_demo_user(identity: Optional[str]) -> bool:
    return identity == DEMO_USER_ID


class QuotaGate:
    """One gate per process; the demo window is the only state held locally."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        demo_quota: Optional[int] = None,
        demo_window: Optional[int] = None,
        clock=time.monotonic,
    ):
        self.api_key = FLOWGLAD_SECRET_KEY if api_key is None else api_key
        self.api_url = (api_url or FLOWGLAD_API_URL).rstrip("/")
        self.demo_quota = DEMO_QUOTA if demo_quota is None else demo_quota
        self.demo_window = DEMO_WINDOW_SECONDS if demo_window is None else demo_window
        self._clock = clock
        self._demo_usage: dict[tuple[str, str], list[float]] = defaultdict(list)
        self._demo_pending: dict[tuple[str, str], list[float]] = defaultdict(list)

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=QUOTA_TIMEOUT)

    # -----------------------------------------------------------------------
    # Demo allowance
    # -----------------------------------------------------------------------

    def _demo_bucket(self, identity: str, operation: str) -> list[float]:
        now = self._clock()
        key = (identity, operation)
        self._demo_usage[key] = [t for t in self._demo_usage[key] if now - t < self.demo_window]
        return self._demo_usage[key]

    async def _check_demo(self, identity: str, operation: str) -> QuotaDecision:
        # An allowed check holds a slot until record() or release(), so
        # overlapping calls cannot all pass on the same free slot.
        key = (identity, operation)
        used = len(self._demo_bucket(identity, operation)) + len(self._demo_pending[key])
        remaining = max(0, self.demo_quota - used)
        if remaining == 0:
            logger.info(f"Demo allowance exhausted for {operation}")
            return QuotaDecision(False, 0, DEMO_EXCEEDED, is_demo=True)
        self._demo_pending[key].append(self._clock())
        return QuotaDecision(True, remaining, is_demo=True)

    def _record_demo(self, identity: str, operation: str, amount: int) -> None:
        bucket = self._demo_bucket(identity, operation)
        pending = self._demo_pending[(identity, operation)]
        for _ in range(amount):
            bucket.append(pending.pop(0) if pending else self._clock())

    # -----------------------------------------------------------------------
    # Billing backend
    # -----------------------------------------------------------------------

    async def _fetch_meter(self, identity: str, operation: str) -> QuotaDecision:
        try:
            async with self._http() as http:
                resp = await http.get(
                    f"{self.api_url}/v1/customers/external/{identity}/billing",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Billing backend unreachable, allowing {operation}: {e}")
            return QuotaDecision(True, -1)

        if resp.status_code == 404:
            logger.info(f"Unknown billing customer {identity}, granting starter allowance")
            return QuotaDecision(True, STARTER_ALLOWANCE)
        if resp.status_code >= 400:
            logger.error(f"Billing API error {resp.status_code}, allowing {operation}: {resp.text[:200]}")
            return QuotaDecision(True, -1)

        try:
            meters = resp.json().get("usageMeters") or {}
        except ValueError:
            logger.error(f"Billing API returned invalid JSON, allowing {operation}")
            return QuotaDecision(True, -1)

        meter = meters.get(operation)
        if not isinstance(meter, dict):
            return QuotaDecision(True, -1)

        available = int(meter.get("availableBalance") or 0)
        if available > 0:
            return QuotaDecision(True, available)
        return QuotaDecision(False, 0, QUOTA_EXCEEDED)

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def check(self, identity: Optional[str], operation: str, *, demo: bool = False) -> QuotaDecision:
        if not identity:
            return QuotaDecision(True, -1)
        if demo or is_demo_user(identity):
            return await self._check_demo(identity, operation)
        if not self.api_key:
            logger.warning(f"FLOWGLAD_SECRET_KEY not configured, skipping quota check for {operation}")
            return QuotaDecision(True, -1)
        return await self._fetch_meter(identity, operation)

    async def record(self, identity: Optional[str], operation: str, *, demo: bool = False, amount: int = 1) -> bool:
        """Record one usage event. Returns False when the event could not be recorded."""
        if not identity:
            return True
        if demo or is_demo_user(identity):
            self._record_demo(identity, operation, amount)
            return True
        if not self.api_key:
            return True

        try:
            async with self._http() as http:
                resp = await http.post(
                    f"{self.api_url}/v1/usage-events",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={
                        "customerExternalId": identity,
                        "usageMeterSlug": operation,
                        "amount": amount,
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"Failed to record {operation} usage for {identity}: {e}")
            return False

        if resp.status_code >= 400:
            logger.error(f"Usage event rejected {resp.status_code}: {resp.text[:200]}")
            return False
        return True

    def release(self, identity: Optional[str], operation: str, *, demo: bool = False) -> None:
        """Give back a slot held by an allowed check whose operation did not succeed."""
        if not identity or not (demo or is_demo_user(identity)):
            return
        pending = self._demo_pending[(identity, operation)]
        if pending:
            pending.pop()
