import html
import logging
from pathlib import Path
from typing import List, Optional, Set, Tuple
from urllib.parse import urlsplit

from .capture import ResourceCapture
from .css_refs import extract_css_urls, rewrite_css_text
from .html_refs import (
    ASSET,
    PAGE,
    bs4_parse,
    effective_base_url,
    extract_html_refs,
    rewrite_html,
    serialize_html,
)
from .js_refs import extract_js_literals, rewrite_js_text
from .registry import MirrorState, SavedDocument
from .settings import Settings
from .urls import (
    api_path_re,
    asset_url_to_path,
    has_non_page_extension,
    hostname,
    is_forced_asset,
    relative_ref,
    resolve,
    url_path,
    url_to_filename,
)

TEXT_ERRORS = "surrogateescape"


def fragment_of(ref: str) -> str:
    try:
        return urlsplit(html.unescape(ref or "").strip()).fragment
    except ValueError:
        return ""


def read_text(p: Path) -> str:
    return p.read_text(encoding="utf-8", errors=TEXT_ERRORS)


def write_text(p: Path, text: str) -> None:
    p.write_text(text, encoding="utf-8", errors=TEXT_ERRORS)


# -------------------- Resolution --------------------


class LinkResolver:
    """Maps absolute URLs to output-relative files using the finished registries."""

    def __init__(self, out_dir: Path, state: MirrorState, settings: Settings):
        self.out_dir = out_dir
        self.state = state
        self.hosts = settings.allowed_hosts
        self.prefixes = settings.asset_prefixes
        self.api_re = api_path_re(settings.api_path_prefixes)

    def on_allowed_host(self, absu: str) -> bool:
        return hostname(absu) in self.hosts

    def is_asset_like(self, absu: str) -> bool:
        return is_forced_asset(absu, self.hosts, self.prefixes)

    def is_api(self, absu: str) -> bool:
        return bool(self.api_re.search(url_path(absu)))

    def known_page(self, absu: str) -> Optional[str]:
        hit = self.state.pages.lookup(absu)
        if hit is None and self.on_allowed_host(absu):
            hit = self.state.pages.lookup(url_path(absu))
        return hit

    def asset_target(self, absu: str, assume: bool = False) -> Optional[str]:
        hit = self.state.assets.lookup(absu)
        if hit is None and assume:
            hit = asset_url_to_path(absu, self.hosts)
        return hit

    def page_target(self, absu: str) -> Optional[str]:
        hit = self.known_page(absu)
        if hit is None and self.on_allowed_host(absu):
            hit = url_to_filename(absu)
        return hit

    def href_target(self, absu: str) -> Optional[str]:
        if self.is_asset_like(absu):
            return self.asset_target(absu, assume=True)
        hit = self.known_page(absu)
        if hit is not None:
            return hit
        hit = self.state.assets.lookup(absu)
        if hit is not None:
            return hit
        return self.page_target(absu)

    def data_target(self, absu: str) -> Optional[str]:
        """Target for a URL found inside a captured JSON body."""
        if not self.on_allowed_host(absu) or self.is_api(absu):
            return None
        if self.is_asset_like(absu):
            return asset_url_to_path(absu, self.hosts)
        return self.page_target(absu)

    def doc_ref(self, doc_path: Path, target: str, fragment: str = "") -> str:
        rel = relative_ref(doc_path, self.out_dir / target)
        return f"{rel}#{fragment}" if fragment else rel


# -------------------- Engine --------------------


class RewriteEngine:
    """Post-crawl pass: capture referenced assets, then rewrite CSS, JS and pages."""

    def __init__(
        self,
        out_dir: Path,
        state: MirrorState,
        settings: Settings,
        resources: ResourceCapture,
    ):
        self.out_dir = out_dir
        self.state = state
        self.settings = settings
        self.resources = resources
        self.resolver = LinkResolver(out_dir, state, settings)
        self._done: Set[str] = set()
        self.documents_rewritten = 0
        self.resources_rewritten = 0

    async def run(self) -> None:
        saved = await self.resources.fetch_many(self.document_asset_urls())
        logging.info("assets referenced by pages: %d downloaded", saved)
        await self.process_resources()
        for doc in self.state.documents:
            try:
                self.rewrite_document(doc)
            except OSError as e:
                logging.warning("cannot rewrite %s: %s", doc.path, e)
        logging.info(
            "rewrote %d pages and %d css/js files",
            self.documents_rewritten,
            self.resources_rewritten,
        )

    # HTML

    def document_asset_urls(self) -> List[str]:
        found: List[str] = []
        for doc in self.state.documents:
            p = self.out_dir / doc.path
            try:
                soup = bs4_parse(read_text(p))
            except OSError as e:
                logging.warning("cannot read %s: %s", p, e)
                continue
            base = effective_base_url(soup, doc.url)
            for kind, raw in extract_html_refs(soup):
                absu = resolve(raw, base)
                if absu is None or asset_url_to_path(absu, self.resolver.hosts) is None:
                    continue
                if self.resolver.is_asset_like(absu):
                    found.append(absu)
                elif kind == ASSET and self.resolver.known_page(absu) is None:
                    found.append(absu)
        return list(dict.fromkeys(found))

    def rewrite_document(self, doc: SavedDocument) -> int:
        path = self.out_dir / doc.path
        soup = bs4_parse(read_text(path))
        base = effective_base_url(soup, doc.url)

        def map_ref(kind: str, raw: str) -> Optional[str]:
            absu = resolve(raw, base)
            if absu is None:
                return None
            if kind == PAGE:
                target = self.resolver.href_target(absu)
            else:
                target = self.resolver.asset_target(absu)
            if target is None:
                return None
            return self.resolver.doc_ref(path, target, fragment_of(raw))

        changed = rewrite_html(soup, map_ref)
        # Relative links now point into the mirror.
        for tag in soup.find_all("base", href=True):
            del tag["href"]
        write_text(path, serialize_html(soup))
        self.documents_rewritten += 1
        logging.debug("rewrote %s (%d refs)", doc.path, changed)
        return changed

    # CSS / JS

    def _pending_resources(self) -> List[Tuple[str, str]]:
        out = []
        for url, rel in self.state.assets.items():
            if rel in self._done or not rel.lower().endswith((".css", ".js", ".mjs")):
                continue
            out.append((url, rel))
        return out

    async def process_resources(self) -> None:
        """Capture what CSS/JS files reference and rewrite them, until nothing new appears."""
        rounds = 0
        while True:
            todo = self._pending_resources()
            if not todo:
                break
            rounds += 1
            for url, rel in todo:
                if rel in self._done:
                    continue
                self._done.add(rel)
                await self.process_resource(url, rel)
        logging.debug("css/js fixpoint after %d rounds", rounds)

    async def process_resource(self, url: str, rel: str) -> None:
        path = self.out_dir / rel
        try:
            text = read_text(path)
        except OSError as e:
            logging.warning("cannot read %s: %s", path, e)
            return
        if rel.lower().endswith(".css"):
            refs = [resolve(u, url) for u in extract_css_urls(text)]
            await self.resources.fetch_many(
                u for u in refs if u and asset_url_to_path(u, self.resolver.hosts)
            )
            new = self.rewrite_css(text, url, path)
        else:
            refs = [self.js_asset_url(u, url) for u in extract_js_literals(text)]
            await self.resources.fetch_many(u for u in refs if u)
            new = self.rewrite_js(text, url)
        if new != text:
            write_text(path, new)
            self.resources_rewritten += 1

    def rewrite_css(self, text: str, css_url: str, css_path: Path) -> str:
        def map_url(raw: str) -> Optional[str]:
            absu = resolve(raw, css_url)
            target = self.resolver.asset_target(absu) if absu else None
            if target is None:
                return None
            return self.resolver.doc_ref(css_path, target, fragment_of(raw))

        return rewrite_css_text(text, map_url)

    def js_asset_url(self, literal: str, js_url: str) -> Optional[str]:
        absu = resolve(literal, js_url)
        if absu is None or not self.resolver.on_allowed_host(absu):
            return None
        if self.resolver.is_api(absu) or not has_non_page_extension(absu):
            return None
        return absu

    def rewrite_js(self, text: str, js_url: str) -> str:
        def map_asset(literal: str) -> Optional[str]:
            absu = self.js_asset_url(literal, js_url)
            target = self.resolver.asset_target(absu) if absu else None
            if target is None:
                return None
            return target[len("assets/") :] if target.startswith("assets/") else target

        return rewrite_js_text(text, map_asset)
