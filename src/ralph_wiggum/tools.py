"""
Tool activity summary for compact output.

OpenCode prints one line per tool call in the form ``|  Read  path/to/file``.
In compact mode those lines are folded into a running frequency summary
instead of being echoed one by one.
"""

import re
import time
from typing import Optional

from ralph_wiggum.completion import strip_ansi

TOOL_LINE_PATTERN = re.compile(r'^\|\s{2}([A-Za-z0-9_-]+)')
TOOL_SUMMARY_SEPARATOR = ' • '
TOOL_SUMMARY_PREFIX = '| Tools    '
MAX_SUMMARY_ITEMS = 6
TOOL_SUMMARY_INTERVAL = 3.0


def match_tool_line(line: str) -> Optional[str]:
    """Return the tool name if line is a tool invocation marker."""
    match = TOOL_LINE_PATTERN.match(strip_ansi(line))
    return match.group(1) if match else None


def format_tool_summary(tool_counts: dict, max_items: int = MAX_SUMMARY_ITEMS) -> str:
    """
    Render tool counts as ``name count`` pairs, most used first.

    Ties keep first-seen order. Tools beyond max_items are collapsed into a
    trailing ``+K more``.
    """
    if not tool_counts:
        return ''

    entries = sorted(tool_counts.items(), key=lambda item: item[1], reverse=True)
    shown = entries[:max_items]
    parts = [f"{name} {count}" for name, count in shown]

    remaining = len(entries) - len(shown)
    if remaining > 0:
        parts.append(f"+{remaining} more")

    return TOOL_SUMMARY_SEPARATOR.join(parts)


def collect_tool_summary_from_text(text: str) -> dict:
    """Count tool invocation markers in already-captured output."""
    counts: dict = {}
    for line in re.split(r'\r?\n', text):
        tool = match_tool_line(line)
        if tool:
            counts[tool] = counts.get(tool, 0) + 1
    return counts


class ToolSummarizer:
    """Aggregates tool invocations and renders a rate-limited summary."""

    def __init__(self, interval: float = TOOL_SUMMARY_INTERVAL, max_items: int = MAX_SUMMARY_ITEMS):
        self.interval = interval
        self.max_items = max_items
        self.counts: dict = {}
        self.last_render_at: Optional[float] = None

    def record(self, line: str) -> bool:
        """Count line if it is a tool marker. Returns True when it was."""
        tool = match_tool_line(line)
        if tool is None:
            return False
        self.counts[tool] = self.counts.get(tool, 0) + 1
        return True

    def render(self, now: Optional[float] = None, force: bool = False) -> Optional[str]:
        """
        Return the summary line if it is due, otherwise None.

        A summary is due when at least ``interval`` seconds have passed since
        the last one, or when force is set (end of stream).
        """
        if not self.counts:
            return None

        now = time.monotonic() if now is None else now
        if not force and self.last_render_at is not None and now - self.last_render_at < self.interval:
            return None

        summary = format_tool_summary(self.counts, self.max_items)
        if not summary:
            return None

        self.last_render_at = now
        return f"{TOOL_SUMMARY_PREFIX}{summary}"
