import asyncio
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .browser import ApiExchange, BrowserBackend, NetworkResponse, RequestInfo
from .registry import ApiRecord, MirrorState, body_hash, request_signature
from .settings import SUPPORTED_METHODS, Settings, StoreApiSpec
from .urls import asset_url_to_path, normalize, sanitize_slug

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "*/*",
    "Accept-Language": "en-US,en;q=0.7",
}
ASSET_CONTENT_TYPE_RE = re.compile(
    r"css|image|font|javascript|octet-stream|svg|webp|woff2?|ttf|eot|ico|audio|video",
    re.IGNORECASE,
)
PROGRAMMATIC_TYPES = {"fetch", "xhr", "other"}
AUTO_API_DIR = "assets/auto"


def build_session(headers: Optional[Dict[str, str]] = None) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=3,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=32, pool_maxsize=32)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    if headers:
        s.headers.update(headers)
    return s


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


# -------------------- Static resources --------------------


class ResourceCapture:
    """Writes static resources under ``assets/`` and records them in the registry."""

    def __init__(
        self,
        out_dir: Path,
        state: MirrorState,
        backend: BrowserBackend,
        settings: Settings,
        session: Optional[requests.Session] = None,
    ):
        self.out_dir = out_dir
        self.state = state
        self.backend = backend
        self.settings = settings
        if session is None and settings.fallback_fetch:
            session = build_session(settings.extra_headers)
        self.session = session

    def write_asset(self, url: str, body: bytes) -> Optional[str]:
        rel = asset_url_to_path(url, self.settings.allowed_hosts)
        if rel is None:
            return None
        # First download of a query-less form owns the shared file.
        shared = self.share_existing(url)
        if shared is not None:
            return shared
        dest = self.out_dir / rel
        ensure_parent_dir(dest)
        dest.write_bytes(body)
        self.state.assets.register(url, rel)
        logging.debug("saved asset: %s -> %s", url, rel)
        return rel

    def share_existing(self, url: str) -> Optional[str]:
        """Reuse the file of an asset saved under another query string."""
        rel = self.state.assets.lookup(url)
        if rel is not None:
            self.state.assets.register(url, rel)
        return rel

    async def on_response(self, resp: NetworkResponse) -> None:
        """Passive capture of a response observed during navigation."""
        if not ASSET_CONTENT_TYPE_RE.search(resp.content_type):
            return
        if resp.status >= 400:
            return
        url = normalize(resp.url)
        if asset_url_to_path(url, self.settings.allowed_hosts) is None:
            return
        if self.share_existing(url) is not None:
            return
        if not self.state.assets.claim(url):
            return
        try:
            body = await resp.read_body()
            if body:
                self.write_asset(url, body)
        except OSError as e:
            logging.warning("could not save %s: %s", url, e)
        finally:
            self.state.assets.release(url)

    async def _fetch_primary(self, url: str) -> Optional[bytes]:
        try:
            result = await self.backend.fetch(
                url,
                headers=self.settings.extra_headers,
                timeout_ms=int(self.settings.fetch_timeout * 1000),
            )
        except Exception as e:
            logging.debug("browser fetch failed for %s: %s", url, e)
            return None
        if not result.ok or not result.body:
            logging.debug("browser fetch %s -> HTTP %s", url, result.status)
            return None
        return result.body

    async def _fetch_fallback(self, url: str) -> Optional[bytes]:
        if self.session is None:
            return None
        try:
            resp = await asyncio.to_thread(
                self.session.get, url, timeout=self.settings.fetch_timeout
            )
        except requests.RequestException as e:
            logging.warning("error downloading %s: %s", url, e)
            return None
        if resp.status_code >= 400:
            logging.warning("failed %s -> HTTP %s", url, resp.status_code)
            return None
        return resp.content or None

    async def fetch_asset(self, url: str) -> Optional[str]:
        """Download ``url`` unless it is already saved; returns its output-relative path."""
        url = normalize(url)
        existing = self.state.assets.get(url)
        if existing is not None:
            return existing
        shared = self.share_existing(url)
        if shared is not None:
            return shared
        if asset_url_to_path(url, self.settings.allowed_hosts) is None:
            return None
        if not self.state.assets.claim(url):
            return self.state.assets.get(url)
        try:
            body = await self._fetch_primary(url)
            if body is None:
                body = await self._fetch_fallback(url)
            if body is None:
                logging.warning("could not download asset: %s", url)
                return None
            return self.write_asset(url, body)
        except OSError as e:
            logging.warning("could not save %s: %s", url, e)
            return None
        finally:
            self.state.assets.release(url)

    async def fetch_many(self, urls: Iterable[str]) -> int:
        """Download every URL not yet in the registry; returns how many were saved."""
        todo = [u for u in dict.fromkeys(normalize(u) for u in urls) if u not in self.state.assets]
        if not todo:
            return 0
        sem = asyncio.Semaphore(max(1, self.settings.concurrency))

        async def one(u: str) -> Optional[str]:
            async with sem:
                return await self.fetch_asset(u)

        results = await asyncio.gather(*(one(u) for u in todo))
        return sum(1 for r in results if r)


# -------------------- API capture --------------------


def is_programmatic(req: RequestInfo) -> bool:
    return (
        req.resource_type in PROGRAMMATIC_TYPES
        and (req.method or "GET").upper() in SUPPORTED_METHODS
    )


def auto_api_path(method: str, url: str, bhash: str, content_type: str) -> str:
    u = normalize(url)
    rest = u.split("://", 1)[-1]
    slug = sanitize_slug(f"{method.upper()}_{rest}" + (f"_body_{bhash}" if bhash else ""))
    ext = ".json" if "json" in (content_type or "").lower() else ".txt"
    return f"{AUTO_API_DIR}/{slug[:180] or 'response'}{ext}"


def decode_json_body(body: bytes) -> Optional[str]:
    """Body text with any BOM removed, or None when it is not JSON."""
    text = (body or b"").decode("utf-8-sig", "replace").lstrip("\ufeff")
    if not text.strip():
        return None
    try:
        json.loads(text)
    except ValueError:
        return None
    return text


class ApiCapture:
    """Saves JSON answers to programmatic requests and records them."""

    def __init__(self, out_dir: Path, state: MirrorState):
        self.out_dir = out_dir
        self.state = state

    async def on_exchange(self, exchange: ApiExchange) -> Optional[ApiRecord]:
        req = exchange.request
        if not is_programmatic(req):
            return None
        method = req.method.upper()
        bhash = body_hash(req.post_data)
        sig = request_signature(method, req.url, bhash)
        self.state.apis.count_call(sig)
        if not self.state.apis.claim(sig):
            return None
        try:
            text = decode_json_body(exchange.body)
            if text is None:
                logging.debug("not json, skipped: %s", sig)
                return None
            headers = dict(exchange.headers)
            content_type = headers.get("content-type", "")
            if not content_type:
                content_type = headers["content-type"] = "application/json"
            rel = auto_api_path(method, req.url, bhash, content_type)
            dest = self.out_dir / rel
            ensure_parent_dir(dest)
            await asyncio.to_thread(dest.write_text, text, encoding="utf-8")
            record = ApiRecord(
                method=method,
                url=normalize(req.url),
                status=exchange.status,
                status_text=exchange.status_text,
                headers=headers,
                body=text,
                local_path=rel,
                body_hash=bhash,
                source_signature=sig,
            )
            self.state.apis.add(record)
            logging.debug("captured api: %s -> %s", sig, rel)
            return record
        except OSError as e:
            logging.warning("could not save api response %s: %s", sig, e)
            return None
        finally:
            self.state.apis.release(sig)


# -------------------- Manual API snapshots --------------------


@dataclass
class StoredApi:
    spec: StoreApiSpec
    content: str
    data: Optional[object] = None


async def store_manual_apis(
    backend: BrowserBackend,
    specs: Iterable[StoreApiSpec],
    out_dir: Path,
    extra_headers: Optional[Dict[str, str]] = None,
    timeout_ms: int = 30_000,
) -> List[StoredApi]:
    """Fetch each configured endpoint once and write it to its local path.

    Failures are logged and skipped.
    """
    stored: List[StoredApi] = []
    for spec in specs:
        headers = {**(extra_headers or {}), **spec.headers}
        try:
            result = await backend.fetch(
                spec.url, method=spec.method, headers=headers, timeout_ms=timeout_ms
            )
        except Exception as e:
            logging.warning("store-api %s %s failed: %s", spec.method, spec.url, e)
            continue
        if not result.ok:
            logging.warning(
                "store-api %s %s -> HTTP %s", spec.method, spec.url, result.status
            )
            continue
        content = result.body.decode("utf-8", "replace")
        data = None
        if spec.type == "json":
            try:
                data = json.loads(content)
            except ValueError:
                logging.warning("store-api %s did not return JSON; kept as text", spec.url)
        dest = out_dir / spec.out_rel_path
        ensure_parent_dir(dest)
        dest.write_text(content, encoding="utf-8")
        logging.info("stored api: %s %s -> %s", spec.method, spec.url, spec.out_rel_path)
        stored.append(StoredApi(spec, content, data))
    return stored
