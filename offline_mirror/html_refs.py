import re
from typing import Callable, Iterator, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from .css_refs import extract_css_urls, rewrite_css_text

SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")
META_REFRESH_RE = re.compile(
    r"^(?P<head>\s*\d*\s*;?\s*url\s*=\s*)(?P<q>['\"]?)(?P<url>.+?)(?P=q)\s*$",
    re.IGNORECASE,
)

PAGE = "page"
ASSET = "asset"
# data-* values: rewritten like assets, downloaded only when they look like files
DATA = "data"

# Attributes holding a single URL. "page" refs may point at another crawled
# page; "asset" refs only ever resolve to downloaded resources.
URL_ATTRS = {
    "href": PAGE,
    "formaction": PAGE,
    "src": ASSET,
    "data": ASSET,
    "poster": ASSET,
    "xlink:href": ASSET,
}
PAGE_SRC_TAGS = {"iframe", "frame"}
SRCSET_ATTRS = ("srcset", "imagesrcset")
STRIP_ON_REWRITE = ("integrity", "crossorigin", "referrerpolicy")

# kind, raw reference -> replacement or None
RefMapper = Callable[[str, str], Optional[str]]


# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        try:
            return urljoin(fallback, tag["href"])
        except ValueError:
            pass
    return fallback


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter="html")
    except Exception:
        return str(soup)


def parse_srcset(v: str) -> List[Tuple[str, str]]:
    """``(url, descriptor)`` pairs of a srcset value."""
    out: List[Tuple[str, str]] = []
    for cand in SRCSET_SPLIT_RE.split((v or "").strip()):
        parts = WS_RE.split(cand.strip()) if cand else []
        if parts and parts[0]:
            out.append((parts[0], " ".join(parts[1:])))
    return out


def meta_refresh_url(content: str) -> Optional[str]:
    m = META_REFRESH_RE.match(content or "")
    return m.group("url").strip() if m else None


def _attr_kind(tag: Tag, attr: str) -> Optional[str]:
    if attr == "src" and tag.name in PAGE_SRC_TAGS:
        return PAGE
    if attr in URL_ATTRS:
        return URL_ATTRS[attr]
    if attr.startswith("data-"):
        return DATA
    return None


def _usable(attr: str, value: str) -> bool:
    # data-* attributes often carry plain words or JSON
    if attr.startswith("data-"):
        return "/" in value and not WS_RE.search(value)
    return True


def _is_refresh(tag: Tag) -> bool:
    return tag.name == "meta" and (tag.get("http-equiv") or "").lower() == "refresh"


def iter_url_attrs(soup: BeautifulSoup) -> Iterator[Tuple[Tag, str, str, str]]:
    """Yield ``(tag, attr, kind, value)`` for single-URL attributes in document order."""
    for tag in soup.find_all(True):
        for attr, value in list(tag.attrs.items()):
            if not isinstance(value, str):
                continue
            kind = _attr_kind(tag, attr)
            if kind is None:
                continue
            value = value.strip()
            if not value or not _usable(attr, value):
                continue
            yield tag, attr, kind, value


# -------------------- Extract --------------------


def extract_html_refs(soup: BeautifulSoup) -> List[Tuple[str, str]]:
    """Every ``(kind, raw_ref)`` found in the document, first occurrence first."""
    refs: List[Tuple[str, str]] = []
    for tag in soup.find_all(True):
        for attr, value in list(tag.attrs.items()):
            if not isinstance(value, str) or not value.strip():
                continue
            kind = _attr_kind(tag, attr)
            if kind is not None:
                if not _usable(attr, value.strip()):
                    continue
                refs.append((kind, value.strip()))
            elif attr in SRCSET_ATTRS:
                refs.extend((ASSET, u) for u, _ in parse_srcset(value))
            elif attr == "style":
                refs.extend((ASSET, u) for u in extract_css_urls(value))
            elif attr == "content" and _is_refresh(tag):
                target = meta_refresh_url(value)
                if target:
                    refs.append((PAGE, target))
        if tag.name == "style" and tag.string:
            refs.extend((ASSET, u) for u in extract_css_urls(tag.string))
    return list(dict.fromkeys(refs))


# -------------------- Rewrite --------------------


def rewrite_html(soup: BeautifulSoup, map_ref: RefMapper) -> int:
    """Rewrite URL-bearing attributes and inline CSS in place.

    Returns the number of rewritten references.
    """
    changed = 0

    def css_mapper(u: str) -> Optional[str]:
        nonlocal changed
        new = map_ref(ASSET, u)
        if new is not None:
            changed += 1
        return new

    for tag, attr, kind, value in iter_url_attrs(soup):
        new = map_ref(kind, value)
        if new is None or new == value:
            continue
        tag[attr] = new
        changed += 1
        for rm in STRIP_ON_REWRITE:
            if rm in tag.attrs:
                del tag.attrs[rm]

    for tag in soup.find_all(True):
        for attr in SRCSET_ATTRS:
            val = tag.get(attr)
            if not isinstance(val, str) or not val.strip():
                continue
            parts = []
            for url_part, desc in parse_srcset(val):
                new = map_ref(ASSET, url_part)
                if new is not None:
                    changed += 1
                parts.append(f"{new or url_part} {desc}".strip())
            tag[attr] = ", ".join(parts)
        style = tag.get("style")
        if isinstance(style, str) and style:
            new_css = rewrite_css_text(style, css_mapper)
            if new_css != style:
                tag["style"] = new_css
        content = tag.get("content")
        if isinstance(content, str) and _is_refresh(tag):
            target = meta_refresh_url(content)
            new = map_ref(PAGE, target) if target else None
            if new is not None:
                m = META_REFRESH_RE.match(content)
                tag["content"] = f"{m.group('head')}{new}"
                changed += 1

    for style in soup.find_all("style"):
        if style.string:
            new_text = rewrite_css_text(style.string, css_mapper)
            if new_text != style.string:
                style.string.replace_with(new_text)
    return changed
