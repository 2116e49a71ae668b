"""Ralph Wiggum Loop: iterative AI development with OpenCode."""

from ralph_wiggum.completion import all_tasks_complete, contains_completion, is_terminal_completion
from ralph_wiggum.core import __version__, main
from ralph_wiggum.state import LoopState, LoopStateStore

__all__ = [
    '__version__',
    'all_tasks_complete',
    'contains_completion',
    'is_terminal_completion',
    'LoopState',
    'LoopStateStore',
    'main',
]
