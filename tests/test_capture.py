"""
Tests for static resource capture, API capture and manual API snapshots.
"""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from offline_mirror.browser import ApiExchange, NetworkResponse, RequestInfo
from offline_mirror.capture import (
    ApiCapture,
    ResourceCapture,
    auto_api_path,
    decode_json_body,
    is_programmatic,
    store_manual_apis,
)
from offline_mirror.registry import MirrorState, body_hash
from offline_mirror.settings import parse_store_api


def out_dir(settings) -> Path:
    p = Path(settings.out_dir)
    p.mkdir(parents=True, exist_ok=True)
    return p


def response(url, ctype, body=b"data", status=200):
    async def read_body():
        return body

    req = RequestInfo(url=url, method="GET", resource_type="image")
    return NetworkResponse(
        request=req, url=url, status=status, headers={"content-type": ctype}, read_body=read_body
    )


def exchange(url, body, method="GET", post_data=None, rtype="fetch", ctype="application/json"):
    headers = {"content-type": ctype} if ctype else {}
    return ApiExchange(
        request=RequestInfo(url=url, method=method, resource_type=rtype, post_data=post_data),
        status=200,
        status_text="OK",
        headers=headers,
        body=body,
    )


class TestResourceCapture:
    @pytest.mark.asyncio
    async def test_fetch_via_browser(self, settings, site, backend):
        site.files["https://site.test/img/a.png"] = ("image/png", b"PNG")
        out = out_dir(settings)
        cap = ResourceCapture(out, MirrorState(), backend, settings)
        assert await cap.fetch_asset("https://site.test/img/a.png") == "assets/img/a.png"
        assert (out / "assets/img/a.png").read_bytes() == b"PNG"
        # second call is served from the registry
        assert await cap.fetch_asset("https://site.test/img/a.png") == "assets/img/a.png"
        assert len(backend.fetched) == 1

    @pytest.mark.asyncio
    async def test_fallback_session(self, settings, backend):
        session = MagicMock(spec=requests.Session)
        session.get.return_value = MagicMock(status_code=200, content=b"x")
        out = out_dir(settings)
        cap = ResourceCapture(out, MirrorState(), backend, settings, session=session)
        assert await cap.fetch_asset("https://site.test/f.woff2") == "assets/f.woff2"
        session.get.assert_called_once_with("https://site.test/f.woff2", timeout=settings.fetch_timeout)
        assert (out / "assets/f.woff2").read_bytes() == b"x"

    @pytest.mark.asyncio
    async def test_total_failure_releases_claim(self, settings, backend):
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = requests.ConnectionError("down")
        state = MirrorState()
        cap = ResourceCapture(out_dir(settings), state, backend, settings, session=session)
        assert await cap.fetch_asset("https://site.test/x.png") is None
        assert "https://site.test/x.png" not in state.assets
        assert state.assets.claim("https://site.test/x.png")

    @pytest.mark.asyncio
    async def test_out_of_scope_not_fetched(self, settings, backend):
        cap = ResourceCapture(out_dir(settings), MirrorState(), backend, settings)
        assert await cap.fetch_asset("https://cdn.test/x.js") is None
        assert backend.fetched == []

    @pytest.mark.asyncio
    async def test_other_query_reuses_first_file(self, settings, site, backend):
        site.files["https://site.test/img.jpg?w=1"] = ("image/jpeg", b"one")
        site.files["https://site.test/img.jpg?w=2"] = ("image/jpeg", b"two")
        out = out_dir(settings)
        state = MirrorState()
        cap = ResourceCapture(out, state, backend, settings)
        assert await cap.fetch_asset("https://site.test/img.jpg?w=1") == "assets/img.jpg"
        assert await cap.fetch_asset("https://site.test/img.jpg?w=2") == "assets/img.jpg"
        assert (out / "assets/img.jpg").read_bytes() == b"one"
        assert backend.fetched == [("GET", "https://site.test/img.jpg?w=1")]
        assert state.assets.get("https://site.test/img.jpg?w=2") == "assets/img.jpg"

    @pytest.mark.asyncio
    async def test_concurrent_queries_keep_first_write(self, settings, site, backend):
        site.files["https://site.test/i.png?v=1"] = ("image/png", b"one")
        site.files["https://site.test/i.png?v=2"] = ("image/png", b"two")
        out = out_dir(settings)
        cap = ResourceCapture(out, MirrorState(), backend, settings)
        saved = await cap.fetch_many(
            ["https://site.test/i.png?v=1", "https://site.test/i.png?v=2"]
        )
        assert saved == 2
        assert (out / "assets/i.png").read_bytes() == b"one"

    @pytest.mark.asyncio
    async def test_passive_capture_keeps_first_file(self, settings, backend):
        out = out_dir(settings)
        cap = ResourceCapture(out, MirrorState(), backend, settings)
        await cap.on_response(response("https://site.test/a.css?v=1", "text/css", b"first"))
        await cap.on_response(response("https://site.test/a.css?v=2", "text/css", b"second"))
        assert (out / "assets/a.css").read_bytes() == b"first"

    @pytest.mark.asyncio
    async def test_fetch_many_counts(self, settings, site, backend):
        site.files["https://site.test/a.css"] = ("text/css", b"a{}")
        site.files["https://site.test/b.css"] = ("text/css", b"b{}")
        cap = ResourceCapture(out_dir(settings), MirrorState(), backend, settings)
        saved = await cap.fetch_many(
            ["https://site.test/a.css", "https://site.test/b.css", "https://site.test/a.css", "https://site.test/c.css"]
        )
        assert saved == 2


class TestPassiveCapture:
    @pytest.mark.asyncio
    async def test_image_saved(self, settings, backend):
        state = MirrorState()
        out = out_dir(settings)
        cap = ResourceCapture(out, state, backend, settings)
        await cap.on_response(response("https://site.test/img/p.webp", "image/webp", b"W"))
        assert state.assets.get("https://site.test/img/p.webp") == "assets/img/p.webp"
        assert (out / "assets/img/p.webp").read_bytes() == b"W"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "url,ctype,status",
        [
            ("https://site.test/page", "text/html", 200),
            ("https://cdn.test/a.png", "image/png", 200),
            ("https://site.test/missing.png", "image/png", 404),
        ],
    )
    async def test_ignored(self, settings, backend, url, ctype, status):
        state = MirrorState()
        cap = ResourceCapture(out_dir(settings), state, backend, settings)
        await cap.on_response(response(url, ctype, status=status))
        assert len(state.assets) == 0


class TestApiCapture:
    def test_auto_api_path(self):
        assert (
            auto_api_path("GET", "https://site.test/api/items?page=2", "", "application/json")
            == "assets/auto/GET_site.test_api_items_page_2.json"
        )
        assert auto_api_path("POST", "https://site.test/api/q", "42", "text/plain") == (
            "assets/auto/POST_site.test_api_q_body_42.txt"
        )

    def test_decode_json_body(self):
        assert decode_json_body(b'\xef\xbb\xbf{"a": 1}') == '{"a": 1}'
        assert decode_json_body(b"<html></html>") is None
        assert decode_json_body(b"") is None

    def test_is_programmatic(self):
        assert is_programmatic(RequestInfo("https://site.test/api", "POST", "xhr"))
        assert not is_programmatic(RequestInfo("https://site.test/", "GET", "document"))
        assert not is_programmatic(RequestInfo("https://site.test/api", "OPTIONS", "fetch"))

    @pytest.mark.asyncio
    async def test_captured_once_with_counts(self, settings):
        state = MirrorState()
        out = out_dir(settings)
        cap = ApiCapture(out, state)
        rec = await cap.on_exchange(exchange("https://site.test/api/items", b'{"items": []}'))
        again = await cap.on_exchange(exchange("https://site.test/api/items", b'{"items": [1]}'))
        assert again is None
        assert rec.local_path == "assets/auto/GET_site.test_api_items.json"
        assert json.loads((out / rec.local_path).read_text(encoding="utf-8")) == {"items": []}
        assert state.apis.call_counts["GET https://site.test/api/items"] == 2
        assert len(state.apis) == 1

    @pytest.mark.asyncio
    async def test_non_json_skipped(self, settings):
        state = MirrorState()
        cap = ApiCapture(out_dir(settings), state)
        assert await cap.on_exchange(exchange("https://site.test/api/x", b"not json")) is None
        assert len(state.apis) == 0
        assert state.apis.total_calls == 1

    @pytest.mark.asyncio
    async def test_documents_ignored(self, settings):
        state = MirrorState()
        cap = ApiCapture(out_dir(settings), state)
        ex = exchange("https://site.test/", b"{}", rtype="document")
        assert await cap.on_exchange(ex) is None
        assert state.apis.total_calls == 0

    @pytest.mark.asyncio
    async def test_bom_stripped_and_default_content_type(self, settings):
        state = MirrorState()
        cap = ApiCapture(out_dir(settings), state)
        rec = await cap.on_exchange(
            exchange("https://site.test/api/b", b'\xef\xbb\xbf{"ok": true}', ctype=None)
        )
        assert rec.body == '{"ok": true}'
        assert rec.headers["content-type"] == "application/json"

    @pytest.mark.asyncio
    async def test_post_body_in_signature(self, settings):
        state = MirrorState()
        cap = ApiCapture(out_dir(settings), state)
        payload = '{"q": "x"}'
        rec = await cap.on_exchange(
            exchange("https://site.test/api/search", b"[]", method="POST", post_data=payload)
        )
        bh = body_hash(payload)
        assert rec.source_signature == f"POST https://site.test/api/search #{bh}"
        assert rec.local_path.endswith(f"_body_{bh}.json")


class TestManualApis:
    @pytest.mark.asyncio
    async def test_store(self, site, backend, tmp_path):
        site.files["https://site.test/api/cfg"] = ("application/json", b'{"a": 1}')
        site.files["https://site.test/api/boot.js"] = ("application/javascript", b"var b=1;")
        specs = [
            parse_store_api("GET:https://site.test/api/cfg,/static/cfg.json"),
            parse_store_api("script:GET:https://site.test/api/boot.js,/static/boot.js"),
            parse_store_api("GET:https://site.test/api/missing,/static/missing.json"),
        ]
        stored = await store_manual_apis(backend, specs, tmp_path, {"X-Token": "t"})
        assert [s.spec.local_path for s in stored] == ["/static/cfg.json", "/static/boot.js"]
        assert stored[0].data == {"a": 1}
        assert stored[1].data is None
        assert (tmp_path / "static/cfg.json").read_text(encoding="utf-8") == '{"a": 1}'
        assert not (tmp_path / "static/missing.json").exists()

    @pytest.mark.asyncio
    async def test_backend_error_skipped(self, backend, tmp_path):
        async def boom(*args, **kwargs):
            raise RuntimeError("no network")

        backend.fetch = boom
        spec = parse_store_api("GET:https://site.test/api/cfg,/static/cfg.json")
        assert await store_manual_apis(backend, [spec], tmp_path) == []
