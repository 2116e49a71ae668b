"""
Completion detection for the Ralph loop.

The agent signals that its task is done by emitting the completion promise
wrapped in a tag, e.g. ``<promise>COMPLETE</promise>``.
"""

import re
from typing import Optional

ANSI_PATTERN = re.compile(r'\x1b\[[0-9;]*m')
TASK_LINE_PATTERN = re.compile(r'^\s*-\s+\[([ xX/])\]\s+')

PLACEHOLDER_PLUGIN_ERROR = 'ralph-wiggum is not yet ready for use. This is a placeholder package.'


def strip_ansi(text: str) -> str:
    """Remove terminal color escape sequences."""
    return ANSI_PATTERN.sub('', text)


def get_last_non_empty_line(output: str) -> Optional[str]:
    """Return the last non-empty line of output after ANSI stripping, or None."""
    lines = strip_ansi(output).replace('\r\n', '\n').split('\n')
    lines = [line.strip() for line in lines if line.strip()]
    return lines[-1] if lines else None


def _promise_pattern(promise: str, anchored: bool) -> re.Pattern:
    body = rf'<promise>\s*{re.escape(promise)}\s*</promise>'
    if anchored:
        body = f'^{body}$'
    return re.compile(body, re.IGNORECASE)


def is_terminal_completion(output: str, promise: str) -> bool:
    """
    Check whether the promise tag is the final non-empty line of output.

    An agent that merely mentions the tag mid-output (for example while
    reminding itself not to emit it yet) does not count as complete.
    """
    last_line = get_last_non_empty_line(output)
    if not last_line:
        return False
    return _promise_pattern(promise, anchored=True).match(last_line) is not None


def contains_completion(output: str, promise: str) -> bool:
    """Check whether the promise tag appears anywhere in output."""
    return _promise_pattern(promise, anchored=False).search(output) is not None


def all_tasks_complete(markdown: str) -> bool:
    """
    Return True only when the checklist has at least one task and every task is checked.

    ``[x]``/``[X]`` are complete; ``[ ]`` and ``[/]`` (in progress) are not.
    """
    saw_task = False
    for line in re.split(r'\r?\n', markdown):
        match = TASK_LINE_PATTERN.match(line)
        if not match:
            continue
        saw_task = True
        if match.group(1).lower() != 'x':
            return False
    return saw_task


def detect_placeholder_plugin_error(output: str) -> bool:
    return PLACEHOLDER_PLUGIN_ERROR in output
