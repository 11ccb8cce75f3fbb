import html
import os
import posixpath
import re
from pathlib import Path
from typing import Iterable, Optional, Sequence, Set
from urllib.parse import urljoin, urlsplit, urlunsplit

DEFAULT_PORTS = {"http": 80, "https": 443}
PAGE_EXTS = {".html", ".htm"}
UNSAFE_PATH_CHARS_RE = re.compile(r"[^a-zA-Z0-9._/-]")
MULTI_SLASH_RE = re.compile(r"/+")

# -------------------- Normalize / scope --------------------


def normalize(url: str) -> str:
    try:
        p = urlsplit(url.strip())
    except ValueError:
        return url
    scheme = p.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        return urlunsplit((p.scheme, p.netloc, p.path, p.query, ""))
    host = (p.hostname or "").lower()
    try:
        port = p.port
    except ValueError:
        return url
    netloc = f"[{host}]" if ":" in host else host
    if p.username or p.password:
        userinfo = p.username or ""
        if p.password:
            userinfo += ":" + p.password
        netloc = f"{userinfo}@{netloc}"
    if port and port != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"
    path = p.path or "/"
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"
    return urlunsplit((scheme, netloc, path, p.query, ""))


def hostname(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def is_http_url(url: str) -> bool:
    try:
        return urlsplit(url).scheme.lower() in DEFAULT_PORTS
    except ValueError:
        return False


def in_scope(
    url: str,
    allowed_hosts: Iterable[str],
    excluded_paths: Sequence[str] = ("/logout", "/signout"),
) -> bool:
    if not is_http_url(url):
        return False
    if hostname(url) not in set(allowed_hosts):
        return False
    path = urlsplit(url).path or "/"
    return not any(path.startswith(p) for p in excluded_paths)


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:", "about:")):
        return False
    return True


def resolve(ref: str, base_url: str) -> Optional[str]:
    """Entity-decode ``ref``, resolve it against ``base_url`` and normalize."""
    decoded = html.unescape(ref or "").strip()
    if not can_fetch_url(decoded):
        return None
    try:
        absu = urljoin(base_url, decoded)
    except ValueError:
        return None
    if not is_http_url(absu):
        return None
    return normalize(absu)


def strip_query(url: str) -> str:
    return url.split("?", 1)[0]


def path_and_query(url: str) -> str:
    p = urlsplit(url)
    return (p.path or "/") + (f"?{p.query}" if p.query else "")


def url_path(url: str) -> str:
    return urlsplit(url).path or "/"


# -------------------- Classification --------------------


def extension(url: str) -> str:
    return posixpath.splitext(url_path(url))[1].lower()


def has_non_page_extension(url: str) -> bool:
    ext = extension(url)
    return bool(ext) and ext not in PAGE_EXTS


def clean_asset_prefixes(prefixes: Iterable[str]) -> Set[str]:
    out: Set[str] = set()
    for prefix in prefixes:
        prefix = prefix.strip()
        if not prefix:
            continue
        if not prefix.startswith("/"):
            prefix = "/" + prefix
        prefix = prefix.rstrip("/")
        if prefix:
            out.add(prefix)
    return out


def matches_asset_prefix(url: str, prefixes: Iterable[str]) -> bool:
    path = url_path(url)
    return any(path == p or path.startswith(p + "/") for p in prefixes)


def is_forced_asset(url: str, allowed_hosts: Iterable[str], prefixes: Iterable[str]) -> bool:
    if hostname(url) not in set(allowed_hosts):
        return False
    return has_non_page_extension(url) or matches_asset_prefix(url, prefixes)


def api_path_re(prefixes: Iterable[str]) -> re.Pattern:
    names = "|".join(re.escape(p.strip("/")) for p in prefixes if p.strip("/"))
    return re.compile(rf"/({names or '(?!)'})\b", re.IGNORECASE)


# -------------------- Local layout --------------------


def url_to_filename(url: str) -> str:
    """Deterministic output-relative file name for a page or asset URL.

    The query string does not take part, so ``/img.jpg?w=1`` and
    ``/img.jpg?w=2`` share a file.
    """
    try:
        p = urlsplit(url)
    except ValueError:
        return "unknown.html"
    path = MULTI_SLASH_RE.sub("/", p.path or "/").rstrip("/")
    if not path:
        path = "/index"
    frag = "__" + p.fragment if p.fragment else ""
    name = UNSAFE_PATH_CHARS_RE.sub("_", path + frag)
    segments = [
        "_" if seg == ".." else seg for seg in name.split("/") if seg and seg != "."
    ]
    if not segments:
        segments = ["index"]
    if not posixpath.splitext(segments[-1])[1]:
        segments[-1] += ".html"
    return "/".join(segments)


def asset_url_to_path(url: str, allowed_hosts: Iterable[str]) -> Optional[str]:
    """Output-relative path of an asset, always under ``assets/``."""
    if not is_http_url(url) or hostname(url) not in set(allowed_hosts):
        return None
    rel = url_to_filename(url)
    while rel.lower().startswith("assets/"):
        rel = rel[len("assets/") :]
    return f"assets/{rel}"


def relative_ref(from_file: Path, to_file: Path) -> str:
    rel = Path(os.path.relpath(to_file, from_file.parent)).as_posix()
    if rel == ".":
        rel = "./"
    if not rel.startswith("."):
        rel = "./" + rel
    return rel


def sanitize_slug(text: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]+", "_", text).strip("_")
