"""Markdown → plain text for email bodies."""

from __future__ import annotations

import re

_TABLE_ROW_RE = re.compile(r"^\|(.+)\|$", re.MULTILINE)

_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\*?Thought\*?:[^\n]*\n---"), ""),
    (re.compile(r"\*\*(.+?)\*\*"), r"\1"),
    (re.compile(r"\*(.+?)\*"), r"\1"),
    (re.compile(r"__(.+?)__"), r"\1"),
    (re.compile(r"(?<!\w)_(.+?)_(?!\w)"), r"\1"),
    (re.compile(r"^#{1,6}\s+", re.MULTILINE), ""),
    (re.compile(r"^---+$", re.MULTILINE), ""),
    (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),
    (re.compile(r"^\|[-:\s|]+\|$", re.MULTILINE), ""),
]

_BACKTICK_RE = re.compile(r"`([^`]+)`")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def _table_row(match: re.Match[str]) -> str:
    cells = [c.strip() for c in match.group(1).split("|")]
    return "  -  ".join(c for c in cells if c)


def strip_markdown(text: str) -> str:
    """Strip emphasis, headings, rules, links, tables and code ticks."""
    for pattern, repl in _RULES:
        text = pattern.sub(repl, text)
    text = _TABLE_ROW_RE.sub(_table_row, text)
    text = _BACKTICK_RE.sub(r"\1", text)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return text.strip()
