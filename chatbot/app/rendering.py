from __future__ import annotations

from markdown_it import MarkdownIt
from markupsafe import Markup


def _build_markdown_parser() -> MarkdownIt:
    # Raw HTML stays escaped; model output is untrusted.
    md = MarkdownIt("commonmark", {"html": False, "breaks": True})
    md.enable("table")
    md.enable("strikethrough")
    return md


_MD_PARSER: MarkdownIt | None = None


def _get_markdown_parser() -> MarkdownIt:
    global _MD_PARSER
    if _MD_PARSER is None:
        _MD_PARSER = _build_markdown_parser()
    return _MD_PARSER


def render_markdown(text: str | None) -> Markup:
    return Markup(_get_markdown_parser().render(str(text or "")))
