"""
Tests for output directory handling, index files and text replacements.
"""

import xml.etree.ElementTree as ET
from pathlib import Path

import pytest

from offline_mirror.errors import MirrorError, UnsafeOutputDirError
from offline_mirror.output import (
    SITEMAP_NS,
    append_error,
    apply_replacements,
    copy_start_page,
    prepare_output_dir,
    write_sitemap,
    write_url_list,
)
from offline_mirror.settings import ReplacementRule


class TestPrepareOutputDir:
    def test_creates_assets_dir(self, tmp_path):
        out = prepare_output_dir(str(tmp_path / "mirror"))
        assert (out / "assets").is_dir()

    def test_refuses_filesystem_root(self):
        with pytest.raises(UnsafeOutputDirError):
            prepare_output_dir("/", force=True)

    def test_declined_confirmation(self, tmp_path):
        out = tmp_path / "mirror"
        out.mkdir()
        (out / "keep.txt").write_text("x")
        with pytest.raises(MirrorError):
            prepare_output_dir(str(out), confirm=lambda p: False)
        assert (out / "keep.txt").exists()

    def test_confirmed_clears(self, tmp_path):
        out = tmp_path / "mirror"
        out.mkdir()
        (out / "old.html").write_text("x")
        prepare_output_dir(str(out), confirm=lambda p: True)
        assert not (out / "old.html").exists()

    def test_force_clears_without_asking(self, tmp_path):
        out = tmp_path / "mirror"
        out.mkdir()
        (out / "old.html").write_text("x")

        def never(p):
            raise AssertionError("should not ask")

        prepare_output_dir(str(out), force=True, confirm=never)
        assert not (out / "old.html").exists()
        assert (out / "assets").is_dir()


class TestIndexFiles:
    def test_url_list(self, tmp_path):
        p = write_url_list(tmp_path, ["https://site.test/", "https://site.test/b"])
        assert p.read_text(encoding="utf-8") == "https://site.test/\nhttps://site.test/b"

    def test_sitemap(self, tmp_path):
        p = write_sitemap(tmp_path, ["https://site.test/", "https://site.test/docs/a"])
        text = p.read_text(encoding="utf-8")
        assert text.startswith('<?xml version="1.0" encoding="UTF-8"?>')
        root = ET.fromstring(text.split("\n", 1)[1])
        ns = {"s": SITEMAP_NS}
        entries = root.findall("s:url", ns)
        assert [e.find("s:loc", ns).text for e in entries] == ["index.html", "docs/a.html"]
        assert entries[1].find("s:original", ns).text == "https://site.test/docs/a"

    def test_copy_start_page(self, tmp_path):
        (tmp_path / "home.html").write_text("<p>home</p>", encoding="utf-8")
        dest = copy_start_page(tmp_path, "https://site.test/home")
        assert dest == tmp_path / "index.html"
        assert dest.read_text(encoding="utf-8") == "<p>home</p>"

    def test_copy_start_page_at_root(self, tmp_path):
        (tmp_path / "index.html").write_text("<p>root</p>", encoding="utf-8")
        assert copy_start_page(tmp_path, "https://site.test/") == tmp_path / "index.html"

    def test_copy_start_page_missing(self, tmp_path):
        assert copy_start_page(tmp_path, "https://site.test/home") is None
        assert not (tmp_path / "index.html").exists()

    def test_append_error(self, tmp_path):
        append_error(tmp_path, "https://site.test/a", RuntimeError("boom"))
        append_error(tmp_path, "https://site.test/b", ValueError("bad"))
        text = (tmp_path / "errors.log").read_text(encoding="utf-8")
        assert text == (
            "https://site.test/a\nRuntimeError('boom')\n\n"
            "https://site.test/b\nValueError('bad')\n\n"
        )


class TestReplacements:
    def test_hits_and_files(self, tmp_path: Path):
        (tmp_path / "a.html").write_text("https://site.test/x https://site.test/y", encoding="utf-8")
        (tmp_path / "assets").mkdir()
        (tmp_path / "assets/s.css").write_text("body{}", encoding="utf-8")
        (tmp_path / "assets/i.png").write_bytes(b"https://site.test/")

        stats = apply_replacements(tmp_path, [ReplacementRule("https://site.test", ".")])
        assert stats.hits == 2
        assert stats.files_changed == 1
        assert stats.files_scanned == 2
        assert (tmp_path / "a.html").read_text(encoding="utf-8") == "./x ./y"
        assert (tmp_path / "assets/i.png").read_bytes() == b"https://site.test/"

    def test_rules_applied_in_order(self, tmp_path):
        (tmp_path / "a.js").write_text("alpha", encoding="utf-8")
        apply_replacements(tmp_path, [ReplacementRule("alpha", "beta"), ReplacementRule("beta", "gamma")])
        assert (tmp_path / "a.js").read_text(encoding="utf-8") == "gamma"

    def test_empty_source_ignored(self, tmp_path):
        (tmp_path / "a.html").write_text("abc", encoding="utf-8")
        stats = apply_replacements(tmp_path, [ReplacementRule("", "x")])
        assert stats.files_scanned == 0
        assert (tmp_path / "a.html").read_text(encoding="utf-8") == "abc"
