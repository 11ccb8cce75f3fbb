import asyncio
import logging
from collections import deque
from typing import Deque, Iterable, List, Optional, Set

from .urls import in_scope, normalize


class Frontier:
    """FIFO of page URLs shared by the crawl workers.

    ``dequeue`` blocks while the queue is empty but another worker is still
    processing a page, since that page may enqueue more links. It returns
    None once the queue is drained and no page is in flight, or once the
    page cap has been reached.
    """

    def __init__(
        self,
        allowed_hosts: Iterable[str],
        excluded_paths: Iterable[str] = ("/logout", "/signout"),
        max_pages: Optional[int] = None,
    ):
        self.allowed_hosts = set(allowed_hosts)
        self.excluded_paths = tuple(excluded_paths)
        self.max_pages = max_pages
        self._queue: Deque[str] = deque()
        self._queued: Set[str] = set()
        self._seen: Set[str] = set()
        self.visited: List[str] = []
        self._active = 0
        self._cond = asyncio.Condition()

    @property
    def claimed(self) -> int:
        return len(self.visited)

    @property
    def active(self) -> int:
        return self._active

    def __len__(self) -> int:
        return len(self._queue)

    def _cap_reached(self) -> bool:
        return self.max_pages is not None and self.claimed >= self.max_pages

    def accepts(self, url: str) -> bool:
        return in_scope(url, self.allowed_hosts, self.excluded_paths)

    async def enqueue(self, url: str) -> bool:
        url = normalize(url)
        if not self.accepts(url):
            return False
        async with self._cond:
            if url in self._seen or url in self._queued:
                return False
            self._queue.append(url)
            self._queued.add(url)
            self._cond.notify()
        return True

    async def enqueue_many(self, urls: Iterable[str]) -> int:
        added = 0
        for u in urls:
            if await self.enqueue(u):
                added += 1
        return added

    async def dequeue(self) -> Optional[str]:
        async with self._cond:
            while True:
                if self._cap_reached():
                    self._cond.notify_all()
                    return None
                if self._queue:
                    url = self._queue.popleft()
                    self._queued.discard(url)
                    self._seen.add(url)
                    self.visited.append(url)
                    self._active += 1
                    return url
                if self._active == 0:
                    self._cond.notify_all()
                    return None
                await self._cond.wait()

    async def task_done(self) -> None:
        async with self._cond:
            self._active = max(0, self._active - 1)
            self._cond.notify_all()
        if self._cap_reached() and self._queue:
            logging.debug("page cap reached with %d queued", len(self._queue))
