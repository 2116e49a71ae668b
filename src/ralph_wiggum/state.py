"""
Loop state persistence.

The state file marks a workspace as owned by a running loop and lets other
tools see which iteration it is on. It is removed whenever the loop ends.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

STATE_DIR_NAME = '.opencode'
STATE_FILE_NAME = 'ralph-loop.state.json'

# Attribute name -> key in the JSON file
_JSON_KEYS = {
    'active': 'active',
    'iteration': 'iteration',
    'max_iterations': 'maxIterations',
    'completion_promise': 'completionPromise',
    'prompt': 'prompt',
    'started_at': 'startedAt',
    'model': 'model',
}


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


@dataclass
class LoopState:
    """The in-progress loop, as persisted to the state file."""
    prompt: str
    completion_promise: str = 'COMPLETE'
    max_iterations: int = 0
    model: str = ''
    active: bool = True
    iteration: int = 1
    started_at: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> dict:
        """Convert to the JSON layout of the state file."""
        return {key: getattr(self, attr) for attr, key in _JSON_KEYS.items()}

    @classmethod
    def from_dict(cls, data: dict) -> 'LoopState':
        """Build from the JSON layout. A record without an active flag is inactive."""
        kwargs = {attr: data[key] for attr, key in _JSON_KEYS.items() if key in data}
        kwargs.setdefault('prompt', '')
        kwargs.setdefault('active', False)
        return cls(**kwargs)

    def max_iterations_reached(self) -> bool:
        return self.max_iterations > 0 and self.iteration > self.max_iterations


def get_state_dir(workdir: Optional[Path] = None) -> Path:
    return (workdir or Path.cwd()) / STATE_DIR_NAME


class LoopStateStore:
    """Load, save and clear the state file of one workspace."""

    def __init__(self, workdir: Optional[Path] = None):
        self.state_dir = get_state_dir(workdir)
        self.path = self.state_dir / STATE_FILE_NAME

    def save(self, state: LoopState) -> None:
        """Write the full record, creating the state directory if needed."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(state.to_dict(), indent=2), encoding='utf-8')

    def load(self) -> Optional[LoopState]:
        """Return the stored state, or None when absent or unreadable."""
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        try:
            return LoopState.from_dict(data)
        except TypeError:
            return None

    def clear(self) -> None:
        """Delete the state file. Failures are ignored."""
        try:
            self.path.unlink()
        except OSError:
            pass
