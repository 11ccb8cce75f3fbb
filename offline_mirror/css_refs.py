import re
from typing import Callable, List, Optional

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
# Bare-string form only; "@import url(...)" is covered by CSS_URL_RE.
CSS_IMPORT_RE = re.compile(r"@import\s+([\"'])([^\"']+)\1", re.IGNORECASE)

Mapper = Callable[[str], Optional[str]]


def _wanted(ref: str) -> bool:
    ref = ref.strip()
    return bool(ref) and not ref.lower().startswith(("data:", "#"))


def extract_css_urls(text: str) -> List[str]:
    found: List[str] = []
    for rx in (CSS_URL_RE, CSS_IMPORT_RE):
        for m in rx.finditer(text or ""):
            ref = m.group(2).strip()
            if _wanted(ref):
                found.append(ref)
    return list(dict.fromkeys(found))


def rewrite_css_text(css_text: str, map_url: Mapper) -> str:
    def repl_url(m: re.Match) -> str:
        q = m.group(1) or ""
        ref = m.group(2).strip()
        if not _wanted(ref):
            return m.group(0)
        new = map_url(ref)
        return m.group(0) if new is None else f"url({q}{new}{q})"

    def repl_import(m: re.Match) -> str:
        q = m.group(1)
        ref = m.group(2).strip()
        new = map_url(ref) if _wanted(ref) else None
        return m.group(0) if new is None else f"@import {q}{new}{q}"

    t = CSS_URL_RE.sub(repl_url, css_text)
    return CSS_IMPORT_RE.sub(repl_import, t)
