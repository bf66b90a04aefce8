"""
Markdown note chunker.

Splits a note into overlapping, retrieval-sized chunks:

1. A leading YAML frontmatter block is parsed (PyYAML ``safe_load``) and
   removed. Chunk offsets are relative to the remaining body.
2. A body that fits in one window becomes a single chunk.
3. Longer bodies are cut by a sliding window. Each window ends at the best
   break in the second half of the window, preferring a blank line, then a
   line end, then a sentence end (English and Korean endings), then any
   whitespace, then a hard cut. Breaks never land inside a fenced code
   block that would fit in one window.
4. The next window starts ``chunk_overlap`` characters before the previous
   end, nudged forward to a word start.

Every chunk records the stack of ATX headings in scope at its start and
the languages of any fenced code blocks it touches. Offsets are measured
in UTF-16 code units so they line up with editors that index that way.

Chunking is a pure function of (text, source_path, config).
"""

from __future__ import annotations

import bisect
import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import yaml

LOG = logging.getLogger("rag.chunker")

_FRONTMATTER_RE = re.compile(
    r"\A---[ \t]*\r?\n(.*?)^(?:---|\.\.\.)[ \t]*(?:\r?\n|\Z)(?:\r?\n)*",
    re.DOTALL | re.MULTILINE,
)
_FENCE_OPEN_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})[ \t]*([\w+#.-]*)")
_HEADING_RE = re.compile(r"^ {0,3}(#{1,6})[ \t]+(.*?)(?:[ \t]+#+)?[ \t]*$")

# Break candidates, best first. A break sits at the match end.
_BLANK_LINE_RE = re.compile(r"\n[ \t]*\n")
_LINE_END_RE = re.compile(r"\n")
_SENTENCE_END_RE = re.compile(r"[다요죠네까자라군][.?!]|[.!?](?=\s)")
_WHITESPACE_RE = re.compile(r"\s")
_BREAK_PATTERNS = (_BLANK_LINE_RE, _LINE_END_RE, _SENTENCE_END_RE, _WHITESPACE_RE)


@dataclass(frozen=True)
class ChunkerConfig:
    """Window sizes in characters."""

    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_break_ratio: float = 0.5

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be > 0, got {self.chunk_size}")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError(
                f"chunk_overlap must satisfy 0 <= overlap < chunk_size, got {self.chunk_overlap}"
            )
        if not 0.0 <= self.min_break_ratio < 1.0:
            raise ValueError(f"min_break_ratio must be in [0, 1), got {self.min_break_ratio}")


@dataclass(frozen=True)
class Chunk:
    """A contiguous slice of a note body, ready to embed."""

    id: str
    source_path: str
    content: str
    heading_path: tuple[str, ...]
    start_offset: int
    end_offset: int
    frontmatter: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    content_hash: str = ""
    ordinal: int = 0
    code_languages: tuple[str, ...] = ()


@dataclass(frozen=True)
class _Fence:
    start: int
    end: int
    language: str


@dataclass(frozen=True)
class _Heading:
    offset: int
    path: tuple[str, ...]


def source_id(source_path: str) -> str:
    """Stable 16-hex-digit prefix shared by every chunk of one note."""
    return hashlib.sha256(source_path.encode("utf-8")).hexdigest()[:16]


def chunk_id(source_path: str, ordinal: int) -> str:
    return f"{source_id(source_path)}-{ordinal:04d}"


def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """
    Separate a leading YAML frontmatter block from the body.

    Only a mapping counts as frontmatter. Invalid YAML or any other
    document (a ``---`` horizontal rule followed by prose, say) leaves the
    whole text as the body. An empty block is dropped.
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    match = _FRONTMATTER_RE.match(text)
    if match is None:
        return {}, text
    body = text[match.end():]
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        LOG.debug("Leading block is not YAML, keeping it as body: %s", exc)
        return {}, text
    if data is None:
        return {}, body
    if not isinstance(data, dict):
        return {}, text
    return {str(k): v for k, v in data.items()}, body


class _Utf16Offsets:
    """Maps code-point indices of one string to UTF-16 code-unit offsets."""

    def __init__(self, text: str) -> None:
        self._astral: Optional[list[int]] = None
        if any(ord(ch) > 0xFFFF for ch in text):
            self._astral = [i for i, ch in enumerate(text) if ord(ch) > 0xFFFF]

    def __call__(self, index: int) -> int:
        if self._astral is None:
            return index
        return index + bisect.bisect_left(self._astral, index)


def _scan_structure(body: str) -> tuple[list[_Fence], list[_Heading]]:
    """Find fenced code blocks and the heading stack at each ATX heading."""
    fences: list[_Fence] = []
    headings: list[_Heading] = []
    stack: list[tuple[int, str]] = []

    open_marker: Optional[str] = None
    open_start = 0
    open_lang = ""
    pos = 0
    for line in body.splitlines(keepends=True):
        line_start = pos
        pos += len(line)
        stripped = line.rstrip("\r\n")

        if open_marker is not None:
            closing = stripped.strip()
            if closing.startswith(open_marker) and set(closing) == {open_marker[0]}:
                fences.append(_Fence(open_start, pos, open_lang))
                open_marker = None
            continue

        fence = _FENCE_OPEN_RE.match(stripped)
        if fence:
            open_marker = fence.group(1)
            open_start = line_start
            open_lang = fence.group(2).lower()
            continue

        heading = _HEADING_RE.match(stripped)
        if heading and heading.group(2):
            level = len(heading.group(1))
            while stack and stack[-1][0] >= level:
                stack.pop()
            stack.append((level, heading.group(2)))
            headings.append(_Heading(line_start, tuple(title for _, title in stack)))

    if open_marker is not None:
        # Unclosed fence runs to the end of the note.
        fences.append(_Fence(open_start, len(body), open_lang))
    return fences, headings


class DocumentChunker:
    """
    Deterministic Markdown chunker.

    Usage::

        chunker = DocumentChunker(ChunkerConfig(chunk_size=800, chunk_overlap=100))
        chunks = chunker.chunk(note_text, "projects/alpha.md")
    """

    def __init__(self, config: Optional[ChunkerConfig] = None) -> None:
        self._config = config or ChunkerConfig()

    @property
    def config(self) -> ChunkerConfig:
        return self._config

    def split_frontmatter(self, text: str) -> tuple[dict[str, Any], str]:
        return split_frontmatter(text)

    def chunk(self, text: str, source_path: str) -> list[Chunk]:
        frontmatter, body = split_frontmatter(text)
        if not body.strip():
            return []

        fences, headings = _scan_structure(body)
        heading_offsets = [h.offset for h in headings]
        utf16 = _Utf16Offsets(body)

        chunks: list[Chunk] = []
        for start, end in self._windows(body, fences):
            content = body[start:end]
            if not content.strip():
                continue
            ordinal = len(chunks)
            at = bisect.bisect_right(heading_offsets, start)
            heading_path = headings[at - 1].path if at else ()
            languages = tuple(
                dict.fromkeys(f.language for f in fences if f.language and f.start < end and f.end > start)
            )
            chunks.append(
                Chunk(
                    id=chunk_id(source_path, ordinal),
                    source_path=source_path,
                    content=content,
                    heading_path=heading_path,
                    start_offset=utf16(start),
                    end_offset=utf16(end),
                    frontmatter=frontmatter,
                    content_hash=hashlib.sha256(content.encode("utf-8")).hexdigest(),
                    ordinal=ordinal,
                    code_languages=languages,
                )
            )
        return chunks

    # ── Windowing ─────────────────────────────────────────────────────

    def _windows(self, body: str, fences: list[_Fence]) -> list[tuple[int, int]]:
        n = len(body)
        size = self._config.chunk_size
        if n <= size:
            return [(0, n)]

        spans: list[tuple[int, int]] = []
        start = 0
        while start < n:
            limit = start + size
            if limit >= n:
                spans.append((start, n))
                break
            end = self._find_break(body, start, limit, fences)
            spans.append((start, end))
            start = self._next_start(body, start, end)
        return spans

    def _find_break(self, body: str, start: int, limit: int, fences: list[_Fence]) -> int:
        size = self._config.chunk_size
        lo = start + int(size * self._config.min_break_ratio)

        def blocked(pos: int) -> bool:
            return any(f.start < pos < f.end and f.end - f.start <= size for f in fences)

        for pattern in _BREAK_PATTERNS:
            best = _last_match_end(pattern, body, lo, limit, blocked)
            if best is not None:
                return best

        # Keep a small fence whole by ending just before it.
        for f in fences:
            if f.start < limit < f.end and f.end - f.start <= size and f.start > start:
                return f.start
        return limit

    def _next_start(self, body: str, start: int, end: int) -> int:
        candidate = max(end - self._config.chunk_overlap, start + 1)
        j = candidate
        if 0 < j < end and not body[j - 1].isspace():
            while j < end and not body[j].isspace():
                j += 1
        while j < end and body[j].isspace():
            j += 1
        return j if j < end else candidate


def _last_match_end(
    pattern: re.Pattern[str],
    body: str,
    lo: int,
    limit: int,
    blocked: Callable[[int], bool],
) -> Optional[int]:
    best = None
    for m in pattern.finditer(body, max(0, lo - 8), min(len(body), limit + 1)):
        pos = m.end()
        if lo < pos <= limit and not blocked(pos):
            best = pos
    return best
