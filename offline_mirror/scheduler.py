import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from .browser import BrowserBackend, BrowserPage, RequestInfo
from .capture import ResourceCapture, ensure_parent_dir
from .frontier import Frontier
from .output import append_error
from .registry import MirrorState, SavedDocument
from .settings import SUPPORTED_METHODS, Settings
from .urls import api_path_re, is_forced_asset, resolve, url_path, url_to_filename

TRACKED_TYPES = {"fetch", "xhr"}

# -------------------- Task tracking --------------------


class TaskTracker:
    """Keeps every spawned capture task until it finishes."""

    def __init__(self) -> None:
        self._pending: Set[asyncio.Task] = set()
        self.failed = 0

    def spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failed += 1
            logging.warning("capture task failed: %r", exc)

    def __len__(self) -> int:
        return len(self._pending)

    async def join(self) -> None:
        # Tasks may spawn more tasks while we wait.
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# -------------------- Quiescence --------------------


class PageActivity:
    """In-flight API-like request count and last activity time for one page."""

    def __init__(self, api_re: re.Pattern, clock: Callable[[], float] = time.monotonic):
        self.api_re = api_re
        self.clock = clock
        self.pending = 0
        self.last_activity = clock()

    def tracks(self, req: RequestInfo) -> bool:
        if (req.method or "GET").upper() not in SUPPORTED_METHODS:
            return False
        return req.resource_type in TRACKED_TYPES or bool(self.api_re.search(url_path(req.url)))

    def started(self, req: RequestInfo) -> None:
        if self.tracks(req):
            self.pending += 1
            self.last_activity = self.clock()

    def finished(self, req: RequestInfo) -> None:
        if self.tracks(req):
            self.pending = max(0, self.pending - 1)
            self.last_activity = self.clock()

    def idle_ms(self) -> float:
        return (self.clock() - self.last_activity) * 1000

    def is_quiet(self, quiet_ms: int) -> bool:
        return self.pending == 0 and self.idle_ms() >= quiet_ms

    async def settle(self, max_wait_ms: int, quiet_ms: int, poll_ms: int) -> bool:
        """Poll until quiet or the budget runs out; returns whether it went quiet."""
        start = self.clock()
        while (self.clock() - start) * 1000 < max_wait_ms:
            if self.is_quiet(quiet_ms):
                return True
            await asyncio.sleep(poll_ms / 1000)
        return self.is_quiet(quiet_ms)


# -------------------- Crawler --------------------


class Crawler:
    def __init__(
        self,
        settings: Settings,
        backend: BrowserBackend,
        state: MirrorState,
        out_dir: Path,
        resources: ResourceCapture,
        tracker: TaskTracker,
    ):
        self.settings = settings
        self.backend = backend
        self.state = state
        self.out_dir = out_dir
        self.resources = resources
        self.tracker = tracker
        self.frontier = Frontier(
            settings.allowed_hosts, settings.excluded_paths, settings.max_pages_effective
        )
        self.api_re = api_path_re(settings.api_path_prefixes)
        self.processed = 0

    @property
    def visited(self) -> List[str]:
        return self.frontier.visited

    async def run(self) -> None:
        await self.frontier.enqueue(self.settings.start_url)
        await asyncio.gather(*(self._worker(i) for i in range(self.settings.concurrency)))
        await self.tracker.join()
        logging.info(
            "crawl done: %d visited, %d saved, %d errors",
            len(self.visited),
            self.processed,
            len(self.state.errors),
        )

    async def _open_page(self) -> Tuple[BrowserPage, PageActivity]:
        page = await self.backend.new_page()
        activity = PageActivity(self.api_re)
        page.on_request(activity.started)
        page.on_request_done(activity.finished)
        page.on_response(lambda resp: self.tracker.spawn(self.resources.on_response(resp)))
        return page, activity

    async def _worker(self, wid: int) -> None:
        page, activity = await self._open_page()
        logging.debug("worker %d started", wid)
        try:
            while True:
                url = await self.frontier.dequeue()
                if url is None:
                    break
                try:
                    await self.process(page, activity, url)
                    self.processed += 1
                except Exception as e:
                    logging.error("error processing %s: %s", url, e)
                    self.state.errors[url] = str(e)
                    append_error(self.out_dir, url, e)
                finally:
                    await self.frontier.task_done()
                if self.settings.delay_ms:
                    await asyncio.sleep(self.settings.delay_ms / 1000)
        finally:
            await page.close()
            logging.debug("worker %d stopped", wid)

    async def _wait_important(self, page: BrowserPage, api: str) -> None:
        try:
            await page.wait_for_response(api, self.settings.important_api_timeout_ms)
        except Exception as e:
            logging.debug("important api %s not seen: %s", api, e)

    async def _load(self, page: BrowserPage, activity: PageActivity, url: str) -> None:
        s = self.settings
        waiters = [
            asyncio.ensure_future(self._wait_important(page, api))
            for api in s.important_apis
            if api
        ]
        try:
            await page.goto(url, s.nav_timeout_ms)
            try:
                await page.wait_for_network_idle(s.idle_timeout_ms)
            except Exception as e:
                logging.debug("network idle not reached for %s: %s", url, e)
            if not await activity.settle(s.max_wait_ms, s.quiet_ms, s.poll_ms):
                logging.debug("api activity still running on %s", url)
            if waiters:
                await asyncio.gather(*waiters)
        finally:
            for w in waiters:
                w.cancel()

    async def process(self, page: BrowserPage, activity: PageActivity, url: str) -> None:
        logging.info("navigating to: %s", url)
        await self._load(page, activity, url)
        html = await page.content()
        filename = url_to_filename(url)
        dest = self.out_dir / filename
        ensure_parent_dir(dest)
        dest.write_text(html, encoding="utf-8")
        self.state.pages.register(url, filename)
        self.state.documents.append(SavedDocument(filename, url))
        logging.info("saved page: %s -> %s", url, filename)

        links = [self.classify_link(href, url) for href in await page.anchor_hrefs()]
        queued = await self.frontier.enqueue_many(u for u in links if u is not None)
        logging.debug("%s: %d new links", url, queued)

    def classify_link(self, href: str, page_url: str) -> Optional[str]:
        """Start capture of forced assets; return page URLs worth queueing."""
        absu = resolve(href, page_url)
        if absu is None:
            return None
        if is_forced_asset(absu, self.settings.allowed_hosts, self.settings.asset_prefixes):
            self.tracker.spawn(self.resources.fetch_asset(absu))
            return None
        return absu
