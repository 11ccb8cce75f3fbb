import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple
from urllib.parse import urljoin, urlsplit

from .urls import normalize, path_and_query, strip_query, url_path

# -------------------- Assets --------------------


class AssetRegistry:
    """Absolute asset URL -> output-relative path, written at most once per URL."""

    def __init__(self) -> None:
        self._m: Dict[str, str] = {}
        self._claimed: Set[str] = set()
        self._by_bare: Dict[str, str] = {}

    def claim(self, url: str) -> bool:
        url = normalize(url)
        if url in self._m or url in self._claimed:
            return False
        self._claimed.add(url)
        return True

    def release(self, url: str) -> None:
        self._claimed.discard(normalize(url))

    def register(self, url: str, rel_path: str) -> None:
        url = normalize(url)
        self._claimed.discard(url)
        if url in self._m:
            return
        self._m[url] = rel_path
        self._by_bare.setdefault(strip_query(url), url)

    def __contains__(self, url: str) -> bool:
        return normalize(url) in self._m

    def __len__(self) -> int:
        return len(self._m)

    def get(self, url: str) -> Optional[str]:
        return self._m.get(normalize(url))

    def lookup(self, url: str) -> Optional[str]:
        # Lenient: a miss falls back to the first URL registered with the
        # same query-less form, so ?w=1 may resolve to a ?w=2 download.
        url = normalize(url)
        hit = self._m.get(url)
        if hit is not None:
            return hit
        other = self._by_bare.get(strip_query(url))
        return None if other is None else self._m[other]

    def items(self) -> List[Tuple[str, str]]:
        return list(self._m.items())


# -------------------- Pages --------------------


class PageRegistry:
    def __init__(self) -> None:
        self._m: Dict[str, str] = {}

    def register(self, url: str, filename: str) -> None:
        norm = normalize(url)
        self._m[norm] = filename
        self._m[url_path(norm)] = filename

    def lookup(self, url_or_path: str) -> Optional[str]:
        hit = self._m.get(url_or_path)
        if hit is None and "://" in url_or_path:
            hit = self._m.get(normalize(url_or_path))
        return hit

    def __len__(self) -> int:
        return len(self._m)


# -------------------- API records --------------------


def body_hash(body: Optional[str]) -> str:
    # 32-bit (h << 5) - h + c over UTF-16 code units, same as the replay shim.
    if not body:
        return ""
    data = body.encode("utf-16-le", "surrogatepass")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return str(abs(h))


def request_signature(method: str, url: str, bhash: str = "") -> str:
    base = f"{(method or 'GET').upper()} {normalize(url)}"
    return f"{base} #{bhash}" if bhash else base


@dataclass
class ApiRecord:
    method: str
    url: str
    status: int
    status_text: str
    headers: Dict[str, str]
    body: str
    local_path: str
    body_hash: str = ""
    source_signature: str = ""

    def to_json(self) -> Dict:
        return {
            "status": self.status,
            "statusText": self.status_text,
            "headers": self.headers,
            "body": self.body,
            "_localpath": self.local_path,
        }


class ApiCaptureRegistry:
    """Captured API responses keyed by request signature."""

    def __init__(self) -> None:
        self.records: Dict[str, ApiRecord] = {}
        self.call_counts: Dict[str, int] = {}
        self._claimed: Set[str] = set()

    def count_call(self, signature: str) -> None:
        self.call_counts[signature] = self.call_counts.get(signature, 0) + 1

    def claim(self, signature: str) -> bool:
        if signature in self.records or signature in self._claimed:
            return False
        self._claimed.add(signature)
        return True

    def release(self, signature: str) -> None:
        self._claimed.discard(signature)

    def add(self, record: ApiRecord) -> None:
        self._claimed.discard(record.source_signature)
        self.records.setdefault(record.source_signature, record)

    @property
    def total_calls(self) -> int:
        return sum(self.call_counts.values())

    def __len__(self) -> int:
        return len(self.records)


# -------------------- Aliases --------------------


def alias_keys(method: str, url: str, bhash: str = "") -> List[str]:
    """Lookup keys for a request, most specific first."""
    method = (method or "GET").upper()
    absu = normalize(url)
    pq = path_and_query(absu)
    path = url_path(absu)
    plain = [
        f"{method} {absu}",
        f"{method} {pq}",
        f"{method} {path}",
        absu,
        pq,
        path,
    ]
    if not bhash:
        return list(dict.fromkeys(plain))
    hashed = [f"{k} #{bhash}" for k in plain]
    return list(dict.fromkeys(hashed + plain))


KEY_METHOD_RE = re.compile(r"^([A-Z]+)\s+(.*)$")


def canonical_key(key: str, page_url: str) -> str:
    key = key.strip()
    m = KEY_METHOD_RE.match(key)
    method = m.group(1) if m else ""
    rest = m.group(2) if m else key
    hash_part = ""
    idx = rest.find(" #")
    if idx != -1:
        rest, hash_part = rest[:idx], rest[idx:]
    try:
        u = urlsplit(urljoin(page_url, rest))
        rest = (u.path or "/") + (f"?{u.query}" if u.query else "")
    except ValueError:
        pass
    rest = re.sub(r"/+", "/", rest)
    if len(rest) > 1:
        rest = rest.rstrip("/")
    return (f"{method} " if method else "") + rest + hash_part


class AliasTable:
    def __init__(self) -> None:
        self._m: Dict[str, ApiRecord] = {}

    def add(self, record: ApiRecord) -> None:
        for key in alias_keys(record.method, record.url, record.body_hash):
            self._m[key] = record

    def keys(self) -> List[str]:
        return list(self._m)

    def items(self) -> Iterator[Tuple[str, ApiRecord]]:
        return iter(self._m.items())

    def records(self) -> List[ApiRecord]:
        seen: Dict[int, ApiRecord] = {}
        for rec in self._m.values():
            seen.setdefault(id(rec), rec)
        return list(seen.values())

    def __len__(self) -> int:
        return len(self._m)

    def __contains__(self, key: str) -> bool:
        return key in self._m

    def lookup(
        self, method: str, url: str, bhash: str = "", page_url: Optional[str] = None
    ) -> Optional[ApiRecord]:
        absu = urljoin(page_url or url, url)
        wanted = alias_keys(method, absu, bhash)
        for key in wanted:
            if key in self._m:
                return self._m[key]
        base = page_url or absu
        wanted_canon = {canonical_key(k, base) for k in wanted}
        for key, rec in self._m.items():
            if canonical_key(key, base) in wanted_canon:
                return rec
        return None


@dataclass
class SavedDocument:
    path: str
    url: str


@dataclass
class MirrorState:
    assets: AssetRegistry = field(default_factory=AssetRegistry)
    pages: PageRegistry = field(default_factory=PageRegistry)
    apis: ApiCaptureRegistry = field(default_factory=ApiCaptureRegistry)
    documents: List[SavedDocument] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
