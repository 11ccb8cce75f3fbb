import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from playwright.async_api import async_playwright

from .errors import BackendError

ANCHORS_JS = (
    "() => Array.from(document.querySelectorAll('a[href]'), a => a.href)"
)

# -------------------- Records --------------------


@dataclass
class RequestInfo:
    url: str
    method: str
    resource_type: str
    post_data: Optional[str] = None


@dataclass
class NetworkResponse:
    request: RequestInfo
    url: str
    status: int
    headers: Dict[str, str]
    read_body: Callable[[], Awaitable[Optional[bytes]]]

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")


@dataclass
class ApiExchange:
    request: RequestInfo
    status: int
    status_text: str
    headers: Dict[str, str]
    body: bytes


@dataclass
class FetchResult:
    url: str
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


RequestHandler = Callable[[RequestInfo], None]
ResponseHandler = Callable[[NetworkResponse], None]
ExchangeHandler = Callable[[ApiExchange], None]

# -------------------- Interface --------------------


class BrowserPage:
    def on_request(self, handler: RequestHandler) -> None:
        raise NotImplementedError

    def on_request_done(self, handler: RequestHandler) -> None:
        """Called for both finished and failed requests."""
        raise NotImplementedError

    def on_response(self, handler: ResponseHandler) -> None:
        raise NotImplementedError

    async def goto(self, url: str, timeout_ms: int) -> None:
        raise NotImplementedError

    async def wait_for_network_idle(self, timeout_ms: int) -> None:
        raise NotImplementedError

    async def wait_for_response(self, url_substring: str, timeout_ms: int) -> None:
        raise NotImplementedError

    async def anchor_hrefs(self) -> List[str]:
        raise NotImplementedError

    async def content(self) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class BrowserBackend:
    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def new_page(self) -> BrowserPage:
        raise NotImplementedError

    async def set_interceptor(self, handler: ExchangeHandler) -> None:
        raise NotImplementedError

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        timeout_ms: int = 30_000,
    ) -> FetchResult:
        raise NotImplementedError


# -------------------- Playwright --------------------


def _request_info(req) -> RequestInfo:
    try:
        post_data = req.post_data
    except (UnicodeDecodeError, ValueError):
        post_data = None
    return RequestInfo(
        url=req.url,
        method=req.method,
        resource_type=req.resource_type,
        post_data=post_data,
    )


class PlaywrightPage(BrowserPage):
    def __init__(self, page):
        self._page = page

    def on_request(self, handler: RequestHandler) -> None:
        self._page.on("request", lambda req: handler(_request_info(req)))

    def on_request_done(self, handler: RequestHandler) -> None:
        self._page.on("requestfinished", lambda req: handler(_request_info(req)))
        self._page.on("requestfailed", lambda req: handler(_request_info(req)))

    def on_response(self, handler: ResponseHandler) -> None:
        def _on_response(resp) -> None:
            async def read_body() -> Optional[bytes]:
                try:
                    return await resp.body()
                except Exception as e:
                    logging.debug("no body for %s: %s", resp.url, e)
                    return None

            handler(
                NetworkResponse(
                    request=_request_info(resp.request),
                    url=resp.url,
                    status=resp.status,
                    headers={k.lower(): v for k, v in (resp.headers or {}).items()},
                    read_body=read_body,
                )
            )

        self._page.on("response", _on_response)

    async def goto(self, url: str, timeout_ms: int) -> None:
        await self._page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)

    async def wait_for_network_idle(self, timeout_ms: int) -> None:
        await self._page.wait_for_load_state("networkidle", timeout=timeout_ms)

    async def wait_for_response(self, url_substring: str, timeout_ms: int) -> None:
        await self._page.wait_for_event(
            "response", predicate=lambda r: url_substring in r.url, timeout=timeout_ms
        )

    async def anchor_hrefs(self) -> List[str]:
        hrefs = await self._page.evaluate(ANCHORS_JS)
        return [h for h in hrefs or [] if h]

    async def content(self) -> str:
        return await self._page.content()

    async def close(self) -> None:
        await self._page.close()


class PlaywrightBackend(BrowserBackend):
    def __init__(self, headless: bool = True, user_agent: Optional[str] = None):
        self.headless = headless
        self.user_agent = user_agent
        self._pl = None
        self._browser = None
        self._context = None

    async def start(self) -> None:
        self._pl = await async_playwright().start()
        self._browser = await self._pl.chromium.launch(headless=self.headless)
        self._context = await self._browser.new_context(
            ignore_https_errors=True, user_agent=self.user_agent
        )
        logging.info("browser launched (headless=%s)", self.headless)

    @property
    def context(self):
        if self._context is None:
            raise BackendError("backend not started")
        return self._context

    async def new_page(self) -> BrowserPage:
        return PlaywrightPage(await self.context.new_page())

    async def set_interceptor(self, handler: ExchangeHandler) -> None:
        async def _route(route) -> None:
            try:
                response = await route.fetch()
            except Exception as e:
                logging.debug("route fetch failed for %s: %s", route.request.url, e)
                await route.continue_()
                return
            try:
                body = await response.body()
                handler(
                    ApiExchange(
                        request=_request_info(route.request),
                        status=response.status,
                        status_text=response.status_text,
                        headers={k.lower(): v for k, v in response.headers.items()},
                        body=body,
                    )
                )
            except Exception as e:
                logging.debug("interceptor skipped %s: %s", route.request.url, e)
                body = None
            await route.fulfill(response=response, body=body)

        await self.context.route("**/*", _route)

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        timeout_ms: int = 30_000,
    ) -> FetchResult:
        resp = await self.context.request.fetch(
            url, method=method, headers=headers or {}, timeout=timeout_ms
        )
        try:
            return FetchResult(
                url=resp.url,
                status=resp.status,
                headers={k.lower(): v for k, v in resp.headers.items()},
                body=await resp.body(),
            )
        finally:
            await resp.dispose()

    async def close(self) -> None:
        for closer in (self._context, self._browser):
            if closer is None:
                continue
            try:
                await closer.close()
            except Exception as e:
                logging.debug("browser close: %s", e)
        if self._pl is not None:
            await self._pl.stop()
        self._pl = self._browser = self._context = None
