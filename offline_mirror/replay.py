import html
import json
import logging
import posixpath
import re
from pathlib import Path
from string import Template
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

from .capture import StoredApi
from .registry import AliasTable, ApiRecord, MirrorState, SavedDocument, body_hash
from .rewrite import LinkResolver, read_text, write_text
from .settings import Settings
from .urls import is_http_url, normalize, relative_ref

HEAD_END_RE = re.compile(r"</head\s*>", re.IGNORECASE)
BODY_START_RE = re.compile(r"<body[\s>]", re.IGNORECASE)

SHIM_TEMPLATE = Template(
    r"""<script>(function(){
  window.__MIRROR_ROOT_BASE__ = ${root_base};
  window.__MIRROR_ASSET_BASE__ = ${asset_base};
  window.__MIRROR_PATH__ = function(siteRelativePath){
    var base = String(window.__MIRROR_ROOT_BASE__ || '.').replace(/\/+$/, '');
    var rel = String(siteRelativePath || '').replace(/^\/+/, '');
    if (!rel) return base || '.';
    if (!base || base === '.') return './' + rel;
    return base + '/' + rel;
  };
  window.__MIRROR_ASSET__ = function(assetRelativePath){
    var base = String(window.__MIRROR_ASSET_BASE__ || './assets').replace(/\/+$/, '');
    var rel = String(assetRelativePath || '').replace(/^\/+/, '').replace(/^assets\//i, '');
    if (!rel) return base;
    return base + '/' + rel;
  };
  window.__RESOURCE_DATA__ = ${data};
  var data = window.__RESOURCE_DATA__ || {};
  var has = Object.prototype.hasOwnProperty;

  function requestUrl(input){
    if (typeof input === 'string') return input;
    if (input && input.url) return input.url;
    return String(input);
  }

  function normalizeUrl(raw){
    var u = new URL(raw, window.location.href);
    var path = u.pathname || '/';
    if (path.length > 1) path = path.replace(/\/+$/, '') || '/';
    return {abs: u.origin + path + u.search, pq: path + u.search, path: path};
  }

  function requestMethod(input, init){
    if (init && init.method) return String(init.method).toUpperCase();
    if (input && typeof input === 'object' && input.method) return String(input.method).toUpperCase();
    return 'GET';
  }

  function bodyHash(input, init){
    var body = null;
    if (init && has.call(init, 'body')) body = init.body;
    else if (input && typeof input === 'object' && has.call(input, 'body')) body = input.body;
    if (body == null) return '';
    var str = typeof body === 'string' ? body : String(body);
    if (!str) return '';
    var h = 0;
    for (var i = 0; i < str.length; i++) {
      h = ((h << 5) - h + str.charCodeAt(i)) | 0;
    }
    return String(Math.abs(h));
  }

  function allKeys(u, method, hash){
    var plain = [
      method + ' ' + u.abs,
      method + ' ' + u.pq,
      method + ' ' + u.path,
      u.abs,
      u.pq,
      u.path
    ];
    if (!hash) return plain;
    return plain.map(function(k){ return k + ' #' + hash; }).concat(plain);
  }

  function canonicalKey(k){
    var key = String(k || '').trim();
    var m = key.match(/^([A-Z]+)\s+(.*)$/);
    var method = m ? m[1] : '';
    var rest = m ? m[2] : key;
    var hashPart = '';
    var idx = rest.indexOf(' #');
    if (idx !== -1) {
      hashPart = rest.slice(idx);
      rest = rest.slice(0, idx);
    }
    try {
      var u = new URL(rest, window.location.href);
      rest = u.pathname + u.search;
    } catch (e) {}
    rest = rest.replace(/\/+/g, '/');
    if (rest.length > 1) rest = rest.replace(/\/+$/, '');
    return (method ? method + ' ' : '') + rest + hashPart;
  }

  function findKey(input, init){
    var u;
    try { u = normalizeUrl(requestUrl(input)); } catch (e) { return null; }
    var keys = allKeys(u, requestMethod(input, init), bodyHash(input, init));
    for (var i = 0; i < keys.length; i++) {
      if (has.call(data, keys[i])) return keys[i];
    }
    var wanted = keys.map(canonicalKey);
    for (var prop in data) {
      if (!has.call(data, prop)) continue;
      if (wanted.indexOf(canonicalKey(prop)) !== -1) return prop;
    }
    return null;
  }

  window.fetch = function(input, init){
    var url = requestUrl(input);
    var method = requestMethod(input, init);
    var key = findKey(input, init);
    if (key) {
      var rec = data[key] || {};
      var body = typeof rec.body === 'string' ? rec.body : JSON.stringify(rec.body || {});
      console.log('[mirror fetch] ' + method + ' ' + url + ' -> ' + (rec._localpath || '(memory)'));
      return Promise.resolve(new Response(body, {
        status: typeof rec.status === 'number' ? rec.status : 200,
        statusText: typeof rec.statusText === 'string' ? rec.statusText : 'OK',
        headers: rec.headers || {'content-type': 'application/json'}
      }));
    }
    console.warn('[mirror fetch] MISS ' + method + ' ' + url);
    return Promise.resolve(new Response(
      JSON.stringify({error: 'Offline fetch miss', url: url}),
      {status: 404, statusText: 'Not Found', headers: {'content-type': 'application/json'}}
    ));
  };
})();</script>
"""
)


def script_json(value: Any) -> str:
    """JSON that is safe to embed in an inline script."""
    return (
        json.dumps(value, ensure_ascii=False)
        .replace("</", "<\\/")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


def data_var_name(local_path: str) -> str:
    stem = posixpath.splitext(posixpath.basename(local_path.replace("\\", "/")))[0]
    name = re.sub(r"[^A-Za-z0-9_]", "_", stem).upper()
    return f"__{name}_DATA__"


def inject_before_head_end(doc: str, snippet: str) -> str:
    m = HEAD_END_RE.search(doc)
    if m is None:
        m = BODY_START_RE.search(doc)
    if m is None:
        return snippet + doc
    return doc[: m.start()] + snippet + doc[m.start() :]


# -------------------- Alias table --------------------


def manual_record(item: StoredApi) -> ApiRecord:
    spec = item.spec
    return ApiRecord(
        method=spec.method,
        url=normalize(spec.url),
        status=200,
        status_text="OK",
        headers={"content-type": "application/json"},
        body=json.dumps(item.data, ensure_ascii=False),
        local_path=spec.out_rel_path,
        source_signature=f"{spec.method} {normalize(spec.url)}",
    )


def build_alias_table(state: MirrorState, stored: Sequence[StoredApi]) -> AliasTable:
    """Manual JSON snapshots first, then auto captures, later writes winning."""
    table = AliasTable()
    for item in stored:
        if item.spec.type == "json" and item.data is not None:
            table.add(manual_record(item))
    for record in state.apis.records.values():
        table.add(record)
    return table


# -------------------- Injection --------------------


class ReplayInjector:
    def __init__(
        self,
        out_dir: Path,
        state: MirrorState,
        settings: Settings,
        stored: Sequence[StoredApi] = (),
    ):
        self.out_dir = out_dir
        self.state = state
        self.start_url = settings.start_url
        self.stored = list(stored)
        self.resolver = LinkResolver(out_dir, state, settings)
        self.aliases = build_alias_table(state, self.stored)
        self._cache: Dict[Tuple[int, str], Dict[str, Any]] = {}

    # JSON URL rewriting

    def rewrite_json_string(self, value: str, doc_path: Path) -> str:
        decoded = html.unescape(value.strip())
        if not decoded:
            return value
        if is_http_url(decoded):
            absu = normalize(decoded)
        elif decoded.startswith("/") and not decoded.startswith("//"):
            absu = normalize(urljoin(self.start_url, decoded))
        else:
            return value
        target = self.resolver.data_target(absu)
        if target is None:
            return value
        return relative_ref(doc_path, self.out_dir / target)

    def rewrite_json_value(self, value: Any, doc_path: Path) -> Any:
        if isinstance(value, list):
            return [self.rewrite_json_value(v, doc_path) for v in value]
        if isinstance(value, dict):
            return {k: self.rewrite_json_value(v, doc_path) for k, v in value.items()}
        if isinstance(value, str):
            return self.rewrite_json_string(value, doc_path)
        return value

    def record_for(self, record: ApiRecord, doc_path: Path) -> Dict[str, Any]:
        key = (id(record), str(doc_path.parent))
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        out = record.to_json()
        content_type = next(
            (v for k, v in record.headers.items() if k.lower() == "content-type"), ""
        )
        if "json" in content_type.lower():
            try:
                parsed = json.loads(record.body)
            except ValueError:
                parsed = None
            if parsed is not None:
                out["body"] = json.dumps(
                    self.rewrite_json_value(parsed, doc_path), ensure_ascii=False
                )
        self._cache[key] = out
        return out

    def resource_data(self, doc_path: Path) -> Dict[str, Dict[str, Any]]:
        return {key: self.record_for(rec, doc_path) for key, rec in self.aliases.items()}

    def build_scripts(self, doc_path: Path) -> str:
        root_base = relative_ref(doc_path, self.out_dir).rstrip("/")
        asset_base = relative_ref(doc_path, self.out_dir / "assets").rstrip("/")
        parts: List[str] = [
            SHIM_TEMPLATE.safe_substitute(
                root_base=json.dumps(root_base),
                asset_base=json.dumps(asset_base),
                data=script_json(self.resource_data(doc_path)),
            )
        ]
        for item in self.stored:
            if item.spec.type == "script":
                parts.append(f"<script>{item.content}</script>\n")
            elif item.data is not None:
                data = self.rewrite_json_value(item.data, doc_path)
                name = data_var_name(item.spec.local_path)
                parts.append(f"<script>window.{name} = {script_json(data)};</script>\n")
        return "".join(parts)

    def inject(self, doc_path: Path) -> None:
        text = read_text(doc_path)
        write_text(doc_path, inject_before_head_end(text, self.build_scripts(doc_path)))

    def run(self, documents: Sequence[SavedDocument], extra: Sequence[Path] = ()) -> int:
        paths = [self.out_dir / d.path for d in documents]
        paths += [p for p in extra if p not in paths]
        done = 0
        for p in paths:
            try:
                self.inject(p)
                done += 1
            except OSError as e:
                logging.warning("replay shim not injected into %s: %s", p, e)
        logging.info(
            "replay shim: %d documents, %d keys, %d records",
            done,
            len(self.aliases),
            len(self.aliases.records()),
        )
        return done


def lookup_offline(
    aliases: AliasTable, method: str, url: str, body: Optional[str] = None, page_url: Optional[str] = None
) -> Optional[ApiRecord]:
    """Same resolution the replay shim performs in the browser."""
    return aliases.lookup(method, url, body_hash(body), page_url)
