"""Chat-style inline formatting.

Supported markup::

    **bold**  `code`  ~strike~  _italic_  @mention  https://link  www.link

Patterns are listed in priority order. When matches overlap, the one that
starts first wins; on a tie the higher-priority pattern wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_URL = r"https?://\S+|www\.\S+"

PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("bold", re.compile(r"\*\*(.+?)\*\*")),
    ("code", re.compile(r"`(.+?)`")),
    ("strike", re.compile(r"~(.+?)~")),
    ("italic", re.compile(r"_(.+?)_")),
    ("mention", re.compile(r"@(\w+)")),
    ("link", re.compile(f"({_URL})")),
]

_URL_RE = re.compile(_URL)
_MENTION_RE = re.compile(r"@(\w+)")


@dataclass(frozen=True)
class Segment:
    type: str
    content: str
    href: str | None = None
    username: str | None = None


@dataclass(frozen=True)
class _Match:
    start: int
    end: int
    priority: int
    segment: Segment


def _normalize_url(url: str) -> str:
    return f"https://{url}" if url.startswith("www.") else url


def _find_matches(text: str) -> list[_Match]:
    found: list[_Match] = []
    for priority, (kind, regex) in enumerate(PATTERNS):
        for m in regex.finditer(text):
            content = m.group(1)
            if kind == "link":
                segment = Segment(kind, content, href=_normalize_url(content))
            elif kind == "mention":
                segment = Segment(kind, content, href=f"/profile/{content}", username=content)
            else:
                segment = Segment(kind, content)
            found.append(_Match(m.start(), m.end(), priority, segment))
    found.sort(key=lambda m: (m.start, m.priority))
    return found


def parse_rich_text(text: str) -> list[Segment]:
    """Split ``text`` into typed segments; plain text fills the gaps."""
    if not text:
        return []

    kept: list[_Match] = []
    for match in _find_matches(text):
        if any(match.start < k.end and match.end > k.start for k in kept):
            continue
        kept.append(match)

    segments: list[Segment] = []
    cursor = 0
    for match in kept:
        if match.start > cursor:
            segments.append(Segment("text", text[cursor:match.start]))
        segments.append(match.segment)
        cursor = match.end
    if cursor < len(text):
        segments.append(Segment("text", text[cursor:]))
    return segments


def extract_urls(text: str) -> list[str]:
    return [_normalize_url(u) for u in _URL_RE.findall(text or "")]


def extract_mentions(text: str) -> list[str]:
    """Unique mentioned usernames, in order of first appearance."""
    seen: dict[str, None] = {}
    for name in _MENTION_RE.findall(text or ""):
        seen.setdefault(name, None)
    return list(seen)


def to_plain_text(text: str) -> str:
    """Drop formatting markers, keeping mentions as ``@name``."""
    parts = []
    for segment in parse_rich_text(text):
        if segment.type == "mention":
            parts.append(f"@{segment.content}")
        else:
            parts.append(segment.content)
    return "".join(parts)
