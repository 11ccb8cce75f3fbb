"""
Scripted browser backend used by the scheduler and end-to-end tests.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin

import pytest

from offline_mirror.browser import (
    ApiExchange,
    BrowserBackend,
    BrowserPage,
    FetchResult,
    NetworkResponse,
    RequestInfo,
)
from offline_mirror.settings import Settings


@dataclass
class FakePageSpec:
    html: str
    links: List[str] = field(default_factory=list)
    # URLs of resources the page loads while rendering
    resources: List[str] = field(default_factory=list)
    # (method, url, request body) of fetch() calls the page makes
    apis: List[Tuple[str, str, Optional[str]]] = field(default_factory=list)


@dataclass
class FakeSite:
    pages: Dict[str, FakePageSpec] = field(default_factory=dict)
    # url -> (content-type, body)
    files: Dict[str, Tuple[str, bytes]] = field(default_factory=dict)


class FakePage(BrowserPage):
    def __init__(self, backend: "FakeBackend"):
        self.backend = backend
        self.url: Optional[str] = None
        self._req: List = []
        self._done: List = []
        self._resp: List = []
        self.closed = False

    def on_request(self, handler) -> None:
        self._req.append(handler)

    def on_request_done(self, handler) -> None:
        self._done.append(handler)

    def on_response(self, handler) -> None:
        self._resp.append(handler)

    def _fire(self, handlers, arg) -> None:
        for h in handlers:
            h(arg)

    async def goto(self, url: str, timeout_ms: int) -> None:
        self.backend.navigations.append(url)
        spec = self.backend.site.pages.get(url)
        if spec is None:
            raise RuntimeError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        self.url = url
        for res in spec.resources:
            ctype, body = self.backend.site.files[res]
            req = RequestInfo(url=res, method="GET", resource_type="stylesheet")
            self._fire(self._req, req)

            async def read_body(body=body) -> bytes:
                return body

            self._fire(
                self._resp,
                NetworkResponse(
                    request=req,
                    url=res,
                    status=200,
                    headers={"content-type": ctype},
                    read_body=read_body,
                ),
            )
            self._fire(self._done, req)
        for method, api_url, post_data in spec.apis:
            ctype, body = self.backend.site.files[api_url]
            req = RequestInfo(
                url=api_url, method=method, resource_type="fetch", post_data=post_data
            )
            self._fire(self._req, req)
            if self.backend.interceptor is not None:
                self.backend.interceptor(
                    ApiExchange(
                        request=req,
                        status=200,
                        status_text="OK",
                        headers={"content-type": ctype},
                        body=body,
                    )
                )
            self._fire(self._done, req)

    async def wait_for_network_idle(self, timeout_ms: int) -> None:
        pass

    async def wait_for_response(self, url_substring: str, timeout_ms: int) -> None:
        raise TimeoutError(url_substring)

    async def anchor_hrefs(self) -> List[str]:
        spec = self.backend.site.pages[self.url]
        return [urljoin(self.url, h) for h in spec.links]

    async def content(self) -> str:
        return self.backend.site.pages[self.url].html

    async def close(self) -> None:
        self.closed = True


class FakeBackend(BrowserBackend):
    def __init__(self, site: FakeSite):
        self.site = site
        self.pages: List[FakePage] = []
        self.navigations: List[str] = []
        self.fetched: List[Tuple[str, str]] = []
        self.interceptor = None
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def new_page(self) -> BrowserPage:
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def set_interceptor(self, handler) -> None:
        self.interceptor = handler

    async def fetch(self, url, *, method="GET", headers=None, timeout_ms=30_000):
        self.fetched.append((method, url))
        if url not in self.site.files:
            return FetchResult(url=url, status=404)
        ctype, body = self.site.files[url]
        return FetchResult(url=url, status=200, headers={"content-type": ctype}, body=body)


@pytest.fixture
def site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def backend(site) -> FakeBackend:
    return FakeBackend(site)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        start_url="https://site.test/",
        out_dir=str(tmp_path / "mirror"),
        concurrency=1,
        delay_ms=0,
        quiet_ms=0,
        poll_ms=1,
        fallback_fetch=False,
        force=True,
    ).validate()
