from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

from timeledger.html_text import strip_html
from timeledger.models import (
    DEFAULT_TASK_ID_PREFIX,
    DEFAULT_TASK_ID_REGEX,
    ExtractionResult,
    SourceEvent,
    SyncConfig,
)


TASK_URL_PATTERN = re.compile(r"https?://(?:app\.)?clickup\.com/t/([A-Za-z0-9_-]+)", re.IGNORECASE)


@dataclass
class _BodyView:
    raw: str
    text: str


Strategy = Callable[[_BodyView], "ExtractionResult | None"]


class TaskIdExtractor:
    """Find the destination task id referenced in an event body.

    Strategies run in a fixed order and the first one that yields a result
    wins:

    1. ``url_embedded``: a task URL anywhere in the raw markup, including
       inside ``href`` attributes.
    2. ``url_full_body``: a task URL in the body stripped to plain text.
    3. ``body_exact``: the whole stripped body is a valid id.
    4. ``prefixed``: ``<prefix><id>`` anywhere in the stripped text.

    URL and prefix matches whose token fails the id shape are still returned
    with ``validated=False`` and an ``_unvalidated`` method suffix.
    """

    def __init__(self, task_id_regex: str = DEFAULT_TASK_ID_REGEX, prefix: str = DEFAULT_TASK_ID_PREFIX) -> None:
        self.id_pattern = re.compile(task_id_regex or DEFAULT_TASK_ID_REGEX)
        self.prefix = prefix or DEFAULT_TASK_ID_PREFIX
        self.prefixed_pattern = re.compile(re.escape(self.prefix) + r"([A-Za-z0-9_-]+)", re.IGNORECASE)
        self.strategies: list[Strategy] = [
            self._url_embedded,
            self._url_full_body,
            self._body_exact,
            self._prefixed,
        ]

    @classmethod
    def from_config(cls, config: SyncConfig) -> "TaskIdExtractor":
        return cls(task_id_regex=config.task_id_regex, prefix=config.task_id_prefix)

    def is_valid(self, candidate: str) -> bool:
        return bool(self.id_pattern.search(candidate))

    def _result(self, candidate: str, method: str) -> ExtractionResult:
        if self.is_valid(candidate):
            return ExtractionResult(task_ref=candidate, method=method, validated=True)
        return ExtractionResult(task_ref=candidate, method=f"{method}_unvalidated", validated=False)

    def _url_embedded(self, body: _BodyView) -> ExtractionResult | None:
        match = TASK_URL_PATTERN.search(body.raw)
        if not match:
            return None
        return self._result(match.group(1), "url_embedded")

    def _url_full_body(self, body: _BodyView) -> ExtractionResult | None:
        match = TASK_URL_PATTERN.search(body.text)
        if not match:
            return None
        return self._result(match.group(1), "url_full_body")

    def _body_exact(self, body: _BodyView) -> ExtractionResult | None:
        text = body.text.strip()
        if not text or any(ch.isspace() for ch in text):
            return None
        if not self.is_valid(text):
            return None
        return ExtractionResult(task_ref=text, method="body_exact", validated=True)

    def _prefixed(self, body: _BodyView) -> ExtractionResult | None:
        match = self.prefixed_pattern.search(body.text)
        if not match:
            return None
        return self._result(match.group(1), "prefixed")

    def extract_from_markup(self, markup: str) -> ExtractionResult | None:
        body = _BodyView(raw=markup or "", text=strip_html(markup or ""))
        for strategy in self.strategies:
            result = strategy(body)
            if result is not None:
                return result
        return None

    def extract(self, event: SourceEvent) -> ExtractionResult | None:
        return self.extract_from_markup(event.raw_body)
