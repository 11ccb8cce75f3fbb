import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Union

import yaml

from .errors import ConfigError
from .urls import clean_asset_prefixes, hostname, is_http_url

STORE_API_TYPES = ("json", "script")
SUPPORTED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")

# -------------------- Spec strings --------------------


@dataclass(frozen=True)
class StoreApiSpec:
    type: str
    method: str
    url: str
    headers: Dict[str, str]
    local_path: str

    @property
    def out_rel_path(self) -> str:
        return self.local_path.replace("\\", "/").lstrip("/")


@dataclass(frozen=True)
class ReplacementRule:
    src: str
    dst: str


def parse_headers(text: str) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for item in text.split(","):
        if not item.strip():
            continue
        if ":" not in item:
            raise ConfigError(f"invalid header (no colon): {item}")
        k, v = item.split(":", 1)
        if k.strip() and v.strip():
            headers[k.strip()] = v.strip()
    return headers


def parse_store_api(spec: str) -> StoreApiSpec:
    """Parse ``[type:]method:url[|headers]|localPath``.

    The older ``[type:]method:url,localPath`` form is accepted as well.
    """
    headers_str = ""
    if "|" in spec:
        parts = spec.split("|")
        if len(parts) not in (2, 3):
            raise ConfigError(f"Invalid --store-api: {spec}")
        type_method_url = parts[0]
        if len(parts) == 3:
            headers_str = parts[1]
        local_path = parts[-1]
    else:
        parts = spec.rsplit(",", 1)
        if len(parts) != 2:
            raise ConfigError(f"Invalid --store-api: {spec}")
        type_method_url, local_path = parts

    head, sep, rest = type_method_url.partition(":")
    if not sep:
        raise ConfigError(f"Invalid method:url in --store-api: {type_method_url}")
    api_type = "json"
    method_url = type_method_url
    if head.lower() in STORE_API_TYPES:
        api_type = head.lower()
        method_url = rest

    method, sep, url = method_url.partition(":")
    if not sep or not method:
        raise ConfigError(f"Invalid method:url in --store-api: {method_url}")
    method = method.strip().upper()
    if method not in SUPPORTED_METHODS:
        raise ConfigError(f"Unsupported method in --store-api: {method}")
    url = url.strip()
    if not is_http_url(url):
        raise ConfigError(f"--store-api needs an http(s) URL: {url}")
    local_path = local_path.strip()
    if not local_path.strip("/"):
        raise ConfigError(f"--store-api needs a local path: {spec}")
    if ".." in local_path.replace("\\", "/").split("/"):
        raise ConfigError(f"--store-api local path must stay inside output: {local_path}")
    return StoreApiSpec(api_type, method, url, parse_headers(headers_str), local_path)


def parse_replacement(spec: str) -> ReplacementRule:
    src, sep, dst = spec.partition("::")
    if not sep:
        raise ConfigError("Each --replace must be in the format 'from::to'")
    return ReplacementRule(src, dst)


# -------------------- Settings --------------------


@dataclass
class Settings:
    start_url: str = ""
    out_dir: str = ""
    allowed_hosts: Set[str] = field(default_factory=set)
    excluded_paths: Tuple[str, ...] = ("/logout", "/signout")

    # Crawl
    max_pages: int = 5000
    ignore_max: bool = False
    concurrency: int = 3
    delay_ms: int = 200
    nav_timeout_ms: int = 120_000
    idle_timeout_ms: int = 30_000

    # Quiescence
    ajax_wait_ms: int = 0
    quiet_ms: int = 1200
    poll_ms: int = 200
    important_apis: List[str] = field(default_factory=list)
    important_api_timeout_ms: int = 30_000
    api_path_prefixes: Tuple[str, ...] = ("api", "jsl10n")

    # Capture
    asset_prefixes: List[str] = field(default_factory=list)
    extra_headers: Dict[str, str] = field(default_factory=dict)
    fetch_timeout: float = 30.0
    fallback_fetch: bool = True
    store_api: List[str] = field(default_factory=list)

    # Output
    force: bool = False
    replace: List[str] = field(default_factory=list)

    # Browser
    headless: bool = True

    # Parsed in validate()
    store_api_specs: List[StoreApiSpec] = field(default_factory=list, init=False)
    replacements: List[ReplacementRule] = field(default_factory=list, init=False)

    @property
    def max_pages_effective(self) -> Optional[int]:
        return None if self.ignore_max else self.max_pages

    @property
    def max_wait_ms(self) -> int:
        return self.ajax_wait_ms if self.ajax_wait_ms > 0 else 15_000

    @property
    def out_path(self) -> Path:
        return Path(self.out_dir).resolve()

    def validate(self) -> "Settings":
        if not is_http_url(self.start_url):
            raise ConfigError("Invalid URL. Use http:// or https://")
        if not self.out_dir:
            raise ConfigError("an output directory is required")
        if not self.allowed_hosts:
            self.allowed_hosts = {hostname(self.start_url)}
        self.allowed_hosts = {h.strip().lower() for h in self.allowed_hosts if h.strip()}
        self.concurrency = max(1, self.concurrency)
        self.max_pages = max(1, self.max_pages)
        self.delay_ms = max(0, self.delay_ms)
        self.asset_prefixes = sorted(clean_asset_prefixes(self.asset_prefixes))
        self.store_api_specs = [parse_store_api(s) for s in self.store_api]
        self.replacements = [parse_replacement(s) for s in self.replace]
        return self


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    try:
        if suf in {".toml", ".tml"}:
            with open(p, "rb") as f:
                return tomllib.load(f) or {}
        if suf in {".yaml", ".yml"}:
            with open(p, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ConfigError("Top-level YAML must be a mapping")
            return data
    except (OSError, tomllib.TOMLDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    raise ConfigError("Unsupported config format. Use .toml or .yaml")


CONFIG_GROUPS = ("crawl", "capture", "replay", "output", "general")


def flatten_config(cfg: Dict) -> Dict:
    flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
    for g in CONFIG_GROUPS:
        if isinstance(cfg.get(g), dict):
            flat.update(cfg[g])
    return {k.replace("-", "_"): v for k, v in flat.items()}
