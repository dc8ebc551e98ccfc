from __future__ import annotations

import re
from html.parser import HTMLParser


_BLOCK_TAGS = {"br", "p", "div", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6", "table", "ul", "ol"}
_SKIP_TAGS = {"script", "style", "head", "title"}
_SPACES_PATTERN = re.compile(r"[ \t\r\f\v\xa0]+")
_BLANK_LINES_PATTERN = re.compile(r"\n\s*\n+")


class _TextCollector(HTMLParser):
    # Anchor text is kept, href attributes are not.
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
        elif tag in _BLOCK_TAGS:
            self.parts.append("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in _BLOCK_TAGS:
            self.parts.append("\n")

    def handle_data(self, data: str) -> None:
        if self._skip_depth:
            return
        self.parts.append(data)


def strip_html(markup: str) -> str:
    """Reduce HTML markup to trimmed plain text without line wrapping."""
    if not markup:
        return ""
    collector = _TextCollector()
    collector.feed(markup)
    collector.close()
    text = "".join(collector.parts)
    lines = [_SPACES_PATTERN.sub(" ", line).strip() for line in text.split("\n")]
    joined = "\n".join(lines)
    return _BLANK_LINES_PATTERN.sub("\n", joined).strip()
