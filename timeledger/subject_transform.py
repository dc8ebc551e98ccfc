from __future__ import annotations

import logging
import re
from typing import Callable

from timeledger.models import SubjectTransformConfig


SubjectTransform = Callable[[str], str]

# The only JSONata expression with a direct equivalent here.
TRIM_EXPRESSION = "$trim($)"

_logger = logging.getLogger(__name__)


def trim_subject(subject: str) -> str:
    return (subject or "").strip()


def build_subject_transform(config: SubjectTransformConfig) -> SubjectTransform:
    """Build the function deriving a time-entry description from a subject.

    The optional regex substitution runs first, then ``template`` is filled
    with ``{subject}``. A pattern that does not compile falls back to plain
    trimming. The returned function may still raise, for example on a
    template naming an unknown field; callers treat that as "keep the raw
    subject". A JSONata ``jsonata`` expression is not evaluated; anything
    other than the plain trim expression is reported and ignored.
    """
    if config.jsonata and config.jsonata.replace(" ", "") != TRIM_EXPRESSION:
        _logger.warning(
            "JSONata subject transforms are not supported, ignoring %r; use pattern, replacement and template",
            config.jsonata,
        )

    pattern: re.Pattern[str] | None = None
    if config.pattern:
        try:
            pattern = re.compile(config.pattern)
        except re.error as exc:
            _logger.error("Invalid subject transform pattern %r, falling back to trim: %s", config.pattern, exc)
            return trim_subject

    template = config.template or "{subject}"
    replacement = config.replacement
    strip = config.strip

    def transform(subject: str) -> str:
        value = subject or ""
        if pattern is not None:
            value = pattern.sub(replacement, value)
        value = template.format(subject=value)
        return value.strip() if strip else value

    return transform
