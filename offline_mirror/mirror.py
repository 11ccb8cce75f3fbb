import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import requests

from .browser import BrowserBackend, PlaywrightBackend
from .capture import ApiCapture, ResourceCapture, store_manual_apis
from .output import (
    ReplacementStats,
    apply_replacements,
    copy_start_page,
    prepare_output_dir,
    write_sitemap,
    write_url_list,
)
from .registry import MirrorState
from .replay import ReplayInjector
from .rewrite import RewriteEngine
from .scheduler import Crawler, TaskTracker
from .settings import Settings


@dataclass
class MirrorReport:
    out_dir: Path
    pages_visited: int = 0
    pages_saved: int = 0
    errors: int = 0
    api_calls: int = 0
    api_records: int = 0
    manual_stored: int = 0
    assets_saved: int = 0
    documents_injected: int = 0
    replacements: ReplacementStats = field(default_factory=ReplacementStats)
    elapsed: float = 0.0


def log_report(r: MirrorReport) -> None:
    logging.info("output: %s", r.out_dir)
    logging.info("pages: %d visited, %d saved, %d errors", r.pages_visited, r.pages_saved, r.errors)
    logging.info(
        "api: %d calls, %d unique records, %d manual stores",
        r.api_calls,
        r.api_records,
        r.manual_stored,
    )
    logging.info("assets saved: %d", r.assets_saved)
    logging.info(
        "replacements: %d hits in %d files", r.replacements.hits, r.replacements.files_changed
    )
    logging.info("done in %.1fs", r.elapsed)


async def mirror_site(
    settings: Settings,
    backend: Optional[BrowserBackend] = None,
    session: Optional[requests.Session] = None,
    confirm: Optional[Callable[[Path], bool]] = None,
) -> MirrorReport:
    """Crawl, capture, rewrite and package an offline copy of a site."""
    settings.validate()
    t0 = time.monotonic()
    out_dir = prepare_output_dir(settings.out_dir, settings.force, confirm)
    logging.info("mirroring %s -> %s", settings.start_url, out_dir)
    logging.info("allowed hosts: %s", ", ".join(sorted(settings.allowed_hosts)))

    if backend is None:
        backend = PlaywrightBackend(headless=settings.headless)
    state = MirrorState()
    tracker = TaskTracker()
    resources = ResourceCapture(out_dir, state, backend, settings, session)
    apis = ApiCapture(out_dir, state)
    crawler = Crawler(settings, backend, state, out_dir, resources, tracker)

    await backend.start()
    try:
        await backend.set_interceptor(lambda ex: tracker.spawn(apis.on_exchange(ex)))
        await crawler.run()
        stored = await store_manual_apis(
            backend,
            settings.store_api_specs,
            out_dir,
            settings.extra_headers,
            int(settings.fetch_timeout * 1000),
        )
        engine = RewriteEngine(out_dir, state, settings, resources)
        await engine.run()
        await tracker.join()
    finally:
        await backend.close()

    write_url_list(out_dir, crawler.visited)
    write_sitemap(out_dir, crawler.visited)
    index = copy_start_page(out_dir, settings.start_url)

    injector = ReplayInjector(out_dir, state, settings, stored)
    injected = injector.run(state.documents, [index] if index is not None else [])
    stats = apply_replacements(out_dir, settings.replacements)

    report = MirrorReport(
        out_dir=out_dir,
        pages_visited=len(crawler.visited),
        pages_saved=crawler.processed,
        errors=len(state.errors),
        api_calls=state.apis.total_calls,
        api_records=len(state.apis),
        manual_stored=len(stored),
        assets_saved=len(state.assets),
        documents_injected=injected,
        replacements=stats,
        elapsed=time.monotonic() - t0,
    )
    log_report(report)
    return report


def run_mirror(settings: Settings, **kwargs) -> MirrorReport:
    return asyncio.run(mirror_site(settings, **kwargs))
