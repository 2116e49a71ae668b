"""Error types that end a Ralph loop with a specific exit code."""

from typing import Optional

# Shell convention for a process killed by signal N
SIGNAL_EXIT_BASE = 128


class RalphError(Exception):
    """Terminal loop condition carrying the process exit code."""

    exit_code = 1

    def __init__(self, message: str, *, exit_code: Optional[int] = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class UsageError(RalphError):
    """Bad command-line input, detected before the loop starts."""


class LockConflictError(RalphError):
    """Another loop already owns this workspace."""


class ChildProcessFailure(RalphError):
    """
    The agent process exited with a non-zero code.

    A negative returncode (killed by signal N) is reported as 128 + N.
    """

    def __init__(self, returncode: int):
        if returncode < 0:
            signum = -returncode
            super().__init__(
                f"OpenCode was killed by signal {signum}. Stopping the loop.",
                exit_code=SIGNAL_EXIT_BASE + signum
            )
        else:
            super().__init__(f"OpenCode exited with code {returncode}. Stopping the loop.", exit_code=returncode)
        self.returncode = returncode


class ConfigurationFailure(RalphError):
    """The agent reported a misconfiguration rather than a task failure."""

    def __init__(self, message: str, *, hint: str = ""):
        super().__init__(message)
        self.hint = hint
