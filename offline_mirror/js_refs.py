import re
from typing import Callable, List, Optional

# Absolute/protocol-relative or root-relative string literals.
JS_URL_LITERAL_RE = re.compile(
    r"(?P<q>[\"'`])"
    r"(?P<u>(?:https?:)?//[^\"'`\s]+|/[^\"'`\s/][^\"'`\s]*)"
    r"(?P=q)"
)
ASSET_HELPER = "window.__MIRROR_ASSET__"

Mapper = Callable[[str], Optional[str]]


def extract_js_literals(js_text: str) -> List[str]:
    return list(dict.fromkeys(m.group("u") for m in JS_URL_LITERAL_RE.finditer(js_text or "")))


def rewrite_js_text(js_text: str, map_asset: Mapper) -> str:
    """Replace asset literals with calls to the runtime asset helper.

    ``map_asset`` returns the path below ``assets/`` or None to keep the
    literal as it is.
    """

    def repl(m: re.Match) -> str:
        q = m.group("q")
        rel = map_asset(m.group("u"))
        if rel is None:
            return m.group(0)
        return f"{ASSET_HELPER}({q}{rel}{q})"

    return JS_URL_LITERAL_RE.sub(repl, js_text)
