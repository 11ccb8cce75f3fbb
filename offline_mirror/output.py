import logging
import os
import shutil
import sys
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from .errors import MirrorError, UnsafeOutputDirError
from .settings import ReplacementRule
from .urls import url_to_filename

SITEMAP_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"
REPLACE_SUFFIXES = {".html", ".htm", ".css", ".js"}

# -------------------- Output directory --------------------


def ask_delete(path: Path) -> bool:
    if not (sys.stdin.isatty() and sys.stdout.isatty()):
        raise MirrorError(
            f"Output directory {path} is not empty. Re-run with --force to delete without prompt."
        )
    answer = input(f'Output directory "{path}" will be fully deleted. Continue? [y/N] ')
    return answer.strip().lower() in {"y", "yes"}


def is_unsafe_dir(path: Path) -> bool:
    s = str(path)
    if path == Path(path.anchor):
        return True
    return len(s) < 10


def prepare_output_dir(
    out_dir: str,
    force: bool = False,
    confirm: Optional[Callable[[Path], bool]] = None,
) -> Path:
    """Create an empty output directory, clearing a non-empty one first."""
    path = Path(out_dir).resolve()
    if is_unsafe_dir(path):
        raise UnsafeOutputDirError(
            f"Output directory {path} seems unsafe, refusing to clean it"
        )
    if path.exists() and any(path.iterdir()):
        if not force:
            confirm = confirm or ask_delete
            if not confirm(path):
                raise MirrorError("Aborted by user before deleting output directory.")
        logging.info("clearing output dir: %s", path)
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)
    (path / "assets").mkdir(exist_ok=True)
    return path


# -------------------- Site index files --------------------


def atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


def write_url_list(out_dir: Path, urls: Sequence[str]) -> Path:
    p = out_dir / "urls.txt"
    atomic_write_text(p, "\n".join(urls))
    return p


def write_sitemap(out_dir: Path, urls: Iterable[str]) -> Path:
    """``sitemap.xml`` pairing each saved file name with its original URL."""
    ET.register_namespace("", SITEMAP_NS)
    root = ET.Element(f"{{{SITEMAP_NS}}}urlset")
    for url in urls:
        entry = ET.SubElement(root, f"{{{SITEMAP_NS}}}url")
        ET.SubElement(entry, f"{{{SITEMAP_NS}}}loc").text = url_to_filename(url)
        ET.SubElement(entry, f"{{{SITEMAP_NS}}}original").text = url
    ET.indent(root)
    p = out_dir / "sitemap.xml"
    xml = ET.tostring(root, encoding="unicode")
    atomic_write_text(p, '<?xml version="1.0" encoding="UTF-8"?>\n' + xml + "\n")
    return p


def copy_start_page(out_dir: Path, start_url: str) -> Optional[Path]:
    src = out_dir / url_to_filename(start_url)
    dest = out_dir / "index.html"
    if not src.exists():
        logging.warning("start page was not saved, no index.html written")
        return None
    if src.resolve() != dest.resolve():
        shutil.copyfile(src, dest)
    return dest


def append_error(out_dir: Path, url: str, err: BaseException) -> None:
    with open(out_dir / "errors.log", "a", encoding="utf-8") as f:
        f.write(f"{url}\n{err!r}\n\n")


# -------------------- Replacements --------------------


@dataclass
class ReplacementStats:
    files_scanned: int = 0
    files_changed: int = 0
    hits: int = 0


def iter_text_files(root: Path) -> List[Path]:
    return sorted(
        p for p in root.rglob("*") if p.is_file() and p.suffix.lower() in REPLACE_SUFFIXES
    )


def apply_replacements(root: Path, rules: Sequence[ReplacementRule]) -> ReplacementStats:
    """Literal, in-order substring replacement across HTML, CSS and JS files."""
    stats = ReplacementStats()
    rules = [r for r in rules if r.src]
    if not rules:
        return stats
    for p in iter_text_files(root):
        stats.files_scanned += 1
        try:
            text = p.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logging.warning("skip replace in %s: %s", p, e)
            continue
        new = text
        for rule in rules:
            n = new.count(rule.src)
            if n:
                stats.hits += n
                new = new.replace(rule.src, rule.dst)
        if new != text:
            p.write_text(new, encoding="utf-8")
            stats.files_changed += 1
    logging.info(
        "replacements: %d hits in %d/%d files",
        stats.hits,
        stats.files_changed,
        stats.files_scanned,
    )
    return stats
