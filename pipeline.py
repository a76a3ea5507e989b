# =============================================================================
# Pipeline Orchestrator
# =============================================================================
#
#   IDLE → SCRAPING → EMBEDDING → QUERY_GEN → COMPETITOR_LOOP → CONTENT_LOOP → DONE
#                                                   any stage ↘ ERROR
#
# One logical thread of control per run. Stages, and the items inside the two
# loop stages, are awaited one at a time: each request embeds the previous
# stage's output, and the caller must be able to see which query is being
# processed. A snapshot of the run is published after every transition.
#
# Scraping and query generation are prerequisites: their failure halts the run.
# In the loop stages a failed item is skipped; only an unexpected exception
# halts the run. Completed stages and their data are never rolled back.
#
# The stages backend is anything with scrape / analyze / search /
# generate_query_content coroutines returning an object with .success, .data
# and .error (services.LocalStages in-process, client.RemoteStages over HTTP).
# =============================================================================

import asyncio
import copy
import inspect
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from normalizer import normalize_url

logger = logging.getLogger("seo-gap.pipeline")

EMBED_DELAY_SECONDS = float(os.getenv("EMBED_DELAY_SECONDS", "0.5"))
MAX_PROCESSED_QUERIES = 5
CONTENT_EXCERPT_CHARS = 2000
GENERIC_FAILURE = "An error occurred during analysis."
CANCELLED = "Run cancelled"


class Stage(str, Enum):
    SCRAPING = "scraping"
    EMBEDDING = "embedding"
    QUERY_GENERATION = "queryGeneration"
    COMPETITOR_ANALYSIS = "competitorAnalysis"
    CONTENT_GENERATION = "contentGeneration"


STAGES = list(Stage)


class StageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class RunState(str, Enum):
    IDLE = "IDLE"
    SCRAPING = "SCRAPING"
    EMBEDDING = "EMBEDDING"
    QUERY_GEN = "QUERY_GEN"
    COMPETITOR_LOOP = "COMPETITOR_LOOP"
    CONTENT_LOOP = "CONTENT_LOOP"
    DONE = "DONE"
    ERROR = "ERROR"


_STAGE_STATE = {
    Stage.SCRAPING: RunState.SCRAPING,
    Stage.EMBEDDING: RunState.EMBEDDING,
    Stage.QUERY_GENERATION: RunState.QUERY_GEN,
    Stage.COMPETITOR_ANALYSIS: RunState.COMPETITOR_LOOP,
    Stage.CONTENT_GENERATION: RunState.CONTENT_LOOP,
}


class StageFailed(Exception):
    """A prerequisite stage could not produce its output."""


class PipelineCancelled(Exception):
    pass


def _pending_stages() -> dict:
    return {stage.value: StageStatus.PENDING.value for stage in STAGES}


@dataclass
class PipelineRun:
    url: str
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: RunState = RunState.IDLE
    stage_status: dict = field(default_factory=_pending_stages)
    pages: list = field(default_factory=list)
    scraped_content: str = ""
    page_count: int = 0
    company_description: Optional[str] = None
    target_audience: Optional[str] = None
    queries: list = field(default_factory=list)
    competitor_results: list = field(default_factory=list)
    query_contents: list = field(default_factory=list)
    current_query_index: int = -1
    error: Optional[str] = None

    @property
    def processed_queries(self) -> list:
        return self.queries[:MAX_PROCESSED_QUERIES]

    @property
    def completed(self) -> bool:
        return self.state == RunState.DONE

    def snapshot(self) -> dict:
        """Independent copy of the run, shaped for a progress UI."""
        profile = None
        if self.company_description is not None:
            profile = {"description": self.company_description, "targetAudience": self.target_audience or ""}
        return {
            "runId": self.run_id,
            "url": self.url,
            "state": self.state.value,
            "stageStatus": dict(self.stage_status),
            "pages": list(self.pages),
            "pageCount": self.page_count,
            "scrapedContent": self.scraped_content,
            "companyProfile": profile,
            "queries": list(self.queries),
            "competitorResults": copy.deepcopy(self.competitor_results),
            "queryContent": copy.deepcopy(self.query_contents),
            "currentQueryIndex": self.current_query_index,
            "error": self.error,
        }


class PipelineOrchestrator:
    """Drives one run. Create a new orchestrator for every run."""

    def __init__(
        self,
        stages,
        *,
        on_update: Optional[Callable] = None,
        on_complete: Optional[Callable] = None,
        cancel: Optional[asyncio.Event] = None,
        embed_delay: float = EMBED_DELAY_SECONDS,
    ):
        self.stages = stages
        self.on_complete = on_complete
        self.cancel = cancel
        self.embed_delay = embed_delay
        self._listeners: list[Callable] = [on_update] if on_update else []

    # -----------------------------------------------------------------------
    # Publication and cancellation
    # -----------------------------------------------------------------------

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def _check_cancel(self) -> None:
        if self._cancelled():
            raise PipelineCancelled()

    async def _publish(self, run: PipelineRun) -> None:
        if self._cancelled():
            return
        snapshot = run.snapshot()
        for listener in self._listeners:
            result = listener(snapshot)
            if inspect.isawaitable(result):
                await result

    async def _call(self, awaitable):
        """Await one external call; a cancel signal abandons it."""
        if self.cancel is None:
            return await awaitable
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.cancel.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if task not in done:
            raise PipelineCancelled()
        return task.result()

    # -----------------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------------

    async def _begin(self, run: PipelineRun, stage: Stage) -> None:
        run.stage_status[stage.value] = StageStatus.PROCESSING.value
        run.state = _STAGE_STATE[stage]
        await self._publish(run)

    async def _finish(self, run: PipelineRun, stage: Stage) -> None:
        run.stage_status[stage.value] = StageStatus.COMPLETED.value
        run.current_query_index = -1
        await self._publish(run)

    async def _halt(self, run: PipelineRun, message: str) -> None:
        for stage in STAGES:
            if run.stage_status[stage.value] == StageStatus.PROCESSING.value:
                run.stage_status[stage.value] = StageStatus.ERROR.value
        run.state = RunState.ERROR
        run.error = message
        run.current_query_index = -1
        await self._publish(run)

    # -----------------------------------------------------------------------
    # Stages
    # -----------------------------------------------------------------------

    async def _scrape(self, run: PipelineRun) -> None:
        result = await self._call(self.stages.scrape(run.url))
        if not result.success or not result.data:
            raise StageFailed(result.error or "Failed to scrape website")

        data = result.data
        run.url = data.get("url") or run.url
        run.pages = list(data.get("pages") or [])
        run.scraped_content = (data.get("content") or "").strip()
        run.page_count = int(data.get("pageCount") or 0)
        if not run.scraped_content:
            logger.warning(f"[{run.run_id}] No content scraped, using URL-based analysis")

    async def _embed(self, run: PipelineRun) -> None:
        # Reserved for semantic indexing; only the transition is observable.
        await self._call(asyncio.sleep(self.embed_delay))

    async def _generate_queries(self, run: PipelineRun) -> None:
        content = run.scraped_content or f"Website: {run.url} - Analyze based on URL structure and domain."
        result = await self._call(self.stages.analyze(content, run.url))
        if not result.success or not result.data or not result.data.get("queries"):
            raise StageFailed(result.error or "Failed to analyze content")

        data = result.data
        run.company_description = data.get("companyDescription") or f"Website: {run.url}"
        run.target_audience = data.get("targetAudience") or ""
        run.queries = list(data["queries"])
        logger.info(
            f"[{run.run_id}] {len(run.queries)} queries generated, "
            f"processing first {len(run.processed_queries)}"
        )

    async def _analyze_competitors(self, run: PipelineRun) -> None:
        for index, query in enumerate(run.processed_queries):
            self._check_cancel()
            run.current_query_index = index
            await self._publish(run)

            result = await self._call(self.stages.search(query, run.url))
            if not result.success or not result.data:
                logger.warning(f"[{run.run_id}] Competitor analysis skipped for '{query}': {result.error}")
                continue

            entry = dict(result.data)
            entry["query"] = query
            run.competitor_results.append(entry)
            await self._publish(run)

    async def _generate_content(self, run: PipelineRun) -> None:
        excerpt = run.scraped_content[:CONTENT_EXCERPT_CHARS]
        for entry in list(run.competitor_results):
            self._check_cancel()
            query = entry["query"]
            run.current_query_index = run.queries.index(query) if query in run.queries else -1
            await self._publish(run)

            result = await self._call(
                self.stages.generate_query_content(
                    query,
                    run.company_description,
                    run.target_audience,
                    run.url,
                    excerpt,
                    entry,
                )
            )
            if not result.success or not result.data:
                logger.warning(f"[{run.run_id}] Content generation skipped for '{query}': {result.error}")
                continue

            run.query_contents.append(dict(result.data))
            await self._publish(run)

    # -----------------------------------------------------------------------
    # Driver
    # -----------------------------------------------------------------------

    async def run(self, url: str) -> PipelineRun:
        run = PipelineRun(url=normalize_url(url))
        start = time.time()
        logger.info(f"[{run.run_id}] Pipeline starting for {run.url}")

        steps = (
            (Stage.SCRAPING, self._scrape),
            (Stage.EMBEDDING, self._embed),
            (Stage.QUERY_GENERATION, self._generate_queries),
            (Stage.COMPETITOR_ANALYSIS, self._analyze_competitors),
            (Stage.CONTENT_GENERATION, self._generate_content),
        )
        try:
            await self._publish(run)
            for stage, step in steps:
                self._check_cancel()
                await self._begin(run, stage)
                await step(run)
                await self._finish(run, stage)
        except StageFailed as e:
            logger.error(f"[{run.run_id}] Pipeline halted at {run.state.value}: {e}")
            await self._halt(run, str(e))
            return run
        except PipelineCancelled:
            logger.info(f"[{run.run_id}] Pipeline cancelled at {run.state.value}")
            await self._halt(run, CANCELLED)
            return run
        except Exception as e:
            logger.error(f"[{run.run_id}] Pipeline failed at {run.state.value}: {e}", exc_info=True)
            await self._halt(run, GENERIC_FAILURE)
            return run

        run.state = RunState.DONE
        await self._publish(run)
        elapsed = round(time.time() - start, 1)
        logger.info(
            f"[{run.run_id}] Pipeline completed in {elapsed}s: "
            f"{len(run.competitor_results)} competitor results, {len(run.query_contents)} contents"
        )

        if self.on_complete and not self._cancelled():
            try:
                result = self.on_complete(run)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[{run.run_id}] Completion hook failed: {e}", exc_info=True)
        return run

    async def stream(self, url: str) -> AsyncIterator[dict]:
        """Run the pipeline and yield every published snapshot as it happens."""
        queue: asyncio.Queue = asyncio.Queue()
        end = object()
        self._listeners.append(queue.put_nowait)

        task = asyncio.create_task(self.run(url))
        task.add_done_callback(lambda _: queue.put_nowait(end))
        try:
            while True:
                item = await queue.get()
                if item is end:
                    break
                yield item
            await task
        finally:
            self._listeners.remove(queue.put_nowait)
            if not task.done():
                # Consumer went away: stop issuing calls and publishing.
                if self.cancel is not None:
                    self.cancel.set()
                task.cancel()
