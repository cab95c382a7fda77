"""Streaming cleanup for backends whose raw deltas carry noisy markdown.

``MarkdownCleaner`` scans deltas with two states. In prose it collects text
until sentence punctuation followed by whitespace, or a newline; inside a
``**`` span it collects until the closing ``**`` so bold text is never split
across two emitted pieces. Each completed span is cleaned and returned from
``feed``; ``finish`` flushes the remainder at end of stream.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Literal

SpanKind = Literal["sentence", "line", "prefix", "markdown", "tail", "fragment"]

_BOLD = "**"
_SENTENCE_END = ".!?。！？"
_FULLWIDTH_END = "。！？"
_MIN_DUPLICATE = 20
# Prose spans are cut at the next whitespace past _SOFT_LIMIT, or anywhere past _HARD_LIMIT.
_SOFT_LIMIT = 240
_HARD_LIMIT = 480
_DUPLICATE_SCAN_LIMIT = 600

_BOILERPLATE = re.compile(
    r"^(?:#{1,6}\s*)?(?:\*\*)?\s*"
    r"(?:here(?:'s|\s+is)\s+(?:an?\s+|the\s+)?)?"
    r"(?:explanation|summary|analysis|translation|answer|response)"
    r"(?:\s+of\s+the\s+(?:text|passage|selection|selected\s+text))?"
    r"\s*(?:\*\*)?\s*:\s*(?:\*\*)?\s*",
    re.IGNORECASE,
)
_DUPLICATE_RUN = re.compile(r"(.{%d,}?)(?:\s*\1)+" % _MIN_DUPLICATE, re.DOTALL)
_SPACE_BEFORE_PUNCT = re.compile(r"[ \t]+([,.;:!?])")
_MISSING_SPACE_AFTER = re.compile(r"([,;])(?=[^\s\d,;])")
_INNER_SPACES = re.compile(r"[ \t]{2,}")
_BULLET = re.compile(r"^(?:[•·‣◦+]|-(?!-)|\*(?!\*))[ \t]*")
_NUMBERED = re.compile(r"^\d+[.)]\s")
_LIST_MARKER = re.compile(r"^\s*\d+[.)]$")
_HEADING = re.compile(r"^#{1,6}\s")
_TERMINAL = re.compile(r"[.!?:;。！？][\"'”’)\]]*$")


class ScanState(enum.Enum):
    PROSE = "prose"
    MARKDOWN_SPAN = "markdown_span"


@dataclass(frozen=True)
class Span:
    text: str
    kind: SpanKind


def _collapse_whitespace(ws: str) -> str:
    if not ws:
        return ""
    newlines = ws.count("\n")
    if newlines:
        return "\n" * min(newlines, 2)
    return " "


def _split_whitespace(text: str) -> tuple[str, str, str]:
    core = text.strip()
    if not core:
        return text, "", ""
    start = text.index(core)
    return text[:start], core, text[start + len(core):]


def is_heading(core: str, kind: SpanKind) -> bool:
    if _HEADING.match(core):
        return True
    return kind == "markdown" and core.startswith(_BOLD) and core.rstrip("*").endswith(":")


def is_bullet(core: str) -> bool:
    return core.startswith("- ") or bool(_NUMBERED.match(core))


def clean_core(core: str, kind: SpanKind) -> str:
    """Apply the per-span text rules to a span without its outer whitespace."""
    core = _BOILERPLATE.sub("", core, count=1)
    if not core:
        return ""
    if len(core) <= _DUPLICATE_SCAN_LIMIT:
        core = _DUPLICATE_RUN.sub(r"\1", core)
    core = _SPACE_BEFORE_PUNCT.sub(r"\1", core)
    core = _MISSING_SPACE_AFTER.sub(r"\1 ", core)
    core = _INNER_SPACES.sub(" ", core)
    if kind != "markdown":
        core = _BULLET.sub("- ", core, count=1)
    if kind == "tail" and core.count(_BOLD) % 2:
        dangling = core.rfind(_BOLD)
        core = (core[:dangling] + core[dangling + len(_BOLD):]).strip()
    if not core:
        return ""
    if kind in ("sentence", "line", "tail") and not is_heading(core, kind) and not is_bullet(core):
        if not _TERMINAL.search(core):
            core += "."
    return core


class MarkdownCleaner:
    def __init__(self) -> None:
        self.state = ScanState.PROSE
        self._buffer: list[str] = []
        self._carry = ""
        self._previous_core = ""
        self._previous_heading = False

    def feed(self, delta: str) -> list[str]:
        text = self._carry + delta
        self._carry = ""
        if text.endswith("*") and not text.endswith(_BOLD):
            self._carry, text = "*", text[:-1]
        spans: list[Span] = []
        index = 0
        length = len(text)
        while index < length:
            if text.startswith(_BOLD, index):
                if self.state is ScanState.PROSE:
                    self._flush_into(spans, "prefix")
                    self._buffer.append(_BOLD)
                    self.state = ScanState.MARKDOWN_SPAN
                else:
                    self._buffer.append(_BOLD)
                    self._flush_into(spans, "markdown")
                    self.state = ScanState.PROSE
                index += 2
                continue
            char = text[index]
            index += 1
            if self.state is ScanState.PROSE and self._buffer:
                if char.isspace() and self._buffer[-1] in _SENTENCE_END and not self._at_list_marker():
                    self._flush_into(spans, "sentence")
                elif len(self._buffer) >= _HARD_LIMIT or (char.isspace() and len(self._buffer) >= _SOFT_LIMIT):
                    self._flush_into(spans, "fragment")
            self._buffer.append(char)
            if self.state is ScanState.PROSE and char in _FULLWIDTH_END:
                self._flush_into(spans, "sentence")
            elif char == "\n":
                if self.state is ScanState.MARKDOWN_SPAN:
                    self.state = ScanState.PROSE
                    self._flush_into(spans, "tail")
                else:
                    self._flush_into(spans, "line")
        return self._render(spans)

    def finish(self) -> list[str]:
        spans: list[Span] = []
        if self._carry:
            self._buffer.append(self._carry)
            self._carry = ""
        self._flush_into(spans, "tail")
        self.state = ScanState.PROSE
        return self._render(spans)

    def _at_list_marker(self) -> bool:
        # "1." at the start of a line numbers an item; it does not end a sentence.
        return len(self._buffer) <= 8 and bool(_LIST_MARKER.match("".join(self._buffer)))

    def _flush_into(self, spans: list[Span], kind: SpanKind) -> None:
        if not self._buffer:
            return
        spans.append(Span("".join(self._buffer), kind))
        self._buffer.clear()

    def _render(self, spans: list[Span]) -> list[str]:
        out: list[str] = []
        for span in spans:
            cleaned = self._clean(span)
            if cleaned:
                out.append(cleaned)
        return out

    def _clean(self, span: Span) -> str:
        leading, core, trailing = _split_whitespace(span.text)
        if not core:
            return _collapse_whitespace(leading)
        cleaned = clean_core(core, span.kind)
        if not cleaned:
            return _collapse_whitespace(leading + trailing)
        heading = is_heading(cleaned, span.kind)
        if heading and self._previous_heading:
            return _collapse_whitespace(leading)
        if cleaned == self._previous_core and len(cleaned) >= _MIN_DUPLICATE:
            return ""
        self._previous_heading = heading
        self._previous_core = cleaned
        if trailing:
            cleaned = cleaned.rstrip()
        return _collapse_whitespace(leading) + cleaned + _collapse_whitespace(trailing)


def clean_text(text: str) -> str:
    """Clean a complete text in one pass."""
    cleaner = MarkdownCleaner()
    return "".join(cleaner.feed(text) + cleaner.finish())
