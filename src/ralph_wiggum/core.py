"""
Ralph Wiggum Loop: iterative AI development with OpenCode.

Feeds the same prompt to the agent again and again until it emits the
completion promise. Progress persists in the workspace files and git, not in
the agent's context.
"""

import argparse
import io
import os
import re
import signal
import subprocess
import sys
import time
import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, TextIO

from ralph_wiggum.completion import detect_placeholder_plugin_error, is_terminal_completion
from ralph_wiggum.errors import (
    ChildProcessFailure,
    ConfigurationFailure,
    LockConflictError,
    RalphError,
    UsageError,
)
from ralph_wiggum.plugins import ensure_filtered_plugins_config
from ralph_wiggum.state import LoopState, LoopStateStore
from ralph_wiggum.streaming import (
    HEARTBEAT_INTERVAL,
    OutputStreamer,
    StreamingSubprocess,
    format_duration,
)
from ralph_wiggum.tools import TOOL_SUMMARY_INTERVAL, format_tool_summary

# Get package version
try:
    from importlib.metadata import version, PackageNotFoundError
    __version__ = version("ralph-wiggum")
except (ImportError, PackageNotFoundError):
    __version__ = "1.0.6"  # fallback for development

# ============================================================================
# CONSTANTS
# ============================================================================

# Display and formatting
SECTION_WIDTH = 68
PROMPT_PREVIEW = 80

# Loop timing (seconds)
ITERATION_DELAY = 1.0
ERROR_BACKOFF = 2.0

# Agent invocation
DEFAULT_COMPLETION_PROMISE = 'COMPLETE'
DEFAULT_AGENT_BIN = 'opencode'
AGENT_BIN_ENV = 'RALPH_OPENCODE_BIN'
AGENT_CONFIG_ENV = 'OPENCODE_CONFIG'

# Box-drawing characters
BOX_TOP_LEFT = '╔'
BOX_TOP_RIGHT = '╗'
BOX_BOTTOM_LEFT = '╚'
BOX_BOTTOM_RIGHT = '╝'
BOX_HORIZONTAL_HEAVY = '═'
BOX_VERTICAL_HEAVY = '║'
BOX_LEFT_TEE_HEAVY = '╠'
BOX_RIGHT_TEE_HEAVY = '╣'
BOX_LEFT_TEE_LIGHT = '╟'
BOX_RIGHT_TEE_LIGHT = '╢'
BOX_HORIZONTAL_LIGHT = '─'


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def truncate_text(text: str, max_len: int, smart: bool = True, indicator: str = '...') -> str:
    """
    Truncate text to max_len with optional smart word boundary detection.

    Args:
        text: Text to truncate
        max_len: Maximum length
        smart: If True, prefer whole words
        indicator: Truncation indicator string

    Returns:
        Truncated string with indicator if needed
    """
    if len(text) <= max_len:
        return text

    if smart and ' ' in text[:max_len]:
        truncated = text[:max_len].rsplit(' ', 1)[0]
    else:
        truncated = text[:max_len]

    return truncated + indicator


def prompt_preview(prompt: str) -> str:
    """Single-line preview of the task prompt."""
    return truncate_text(re.sub(r'\s+', ' ', prompt).strip(), PROMPT_PREVIEW, smart=False)


def get_work_dir_basename() -> str:
    """Get the basename of the current working directory."""
    return Path.cwd().name


def create_log_file_path() -> str:
    """Create log file path with work directory basename and timestamp."""
    work_dir = get_work_dir_basename()
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    return f'/tmp/ralph_{work_dir}_{timestamp}.log'


def print_box(*lines: str, width: int = SECTION_WIDTH) -> None:
    """Print lines inside a heavy box on the console."""
    line = BOX_HORIZONTAL_HEAVY * (width - 2)
    print(f"{BOX_TOP_LEFT}{line}{BOX_TOP_RIGHT}")
    for text in lines:
        print(f"{BOX_VERTICAL_HEAVY}  {text}")
    print(f"{BOX_BOTTOM_LEFT}{line}{BOX_BOTTOM_RIGHT}")


# ============================================================================
# LOG WRITING HELPERS
# ============================================================================

def write_to_log(log_file: TextIO, text: str, flush: bool = True) -> None:
    """Write text to log file and optionally flush."""
    log_file.write(text)
    if flush:
        log_file.flush()


def write_log_box_header(log_file: TextIO, title: str, width: int = SECTION_WIDTH) -> None:
    """Write a box header with heavy borders."""
    line = BOX_HORIZONTAL_HEAVY * (width - 2)
    write_to_log(log_file, f"{BOX_TOP_LEFT}{line}{BOX_TOP_RIGHT}\n")
    write_to_log(log_file, f"{BOX_VERTICAL_HEAVY} {title}\n")
    write_to_log(log_file, f"{BOX_LEFT_TEE_HEAVY}{line}{BOX_RIGHT_TEE_HEAVY}\n")


def write_log_box_footer(log_file: TextIO, width: int = SECTION_WIDTH) -> None:
    """Write a box footer with heavy borders."""
    line = BOX_HORIZONTAL_HEAVY * (width - 2)
    write_to_log(log_file, f"{BOX_BOTTOM_LEFT}{line}{BOX_BOTTOM_RIGHT}\n")


def write_log_box_divider(log_file: TextIO, width: int = SECTION_WIDTH) -> None:
    """Write a light divider line inside a box."""
    line = BOX_HORIZONTAL_LIGHT * (width - 2)
    write_to_log(log_file, f"{BOX_LEFT_TEE_LIGHT}{line}{BOX_RIGHT_TEE_LIGHT}\n")


def write_log_box_line(log_file: TextIO, text: str) -> None:
    """Write a line inside a box with vertical border."""
    write_to_log(log_file, f"{BOX_VERTICAL_HEAVY} {text}\n")


# ============================================================================
# LOGGING CLASSES
# ============================================================================

class TeeLogger:
    """Tee one console stream (stdout or stderr) to the log file."""

    def __init__(self, log_file: TextIO, stream_name: str = 'stdout'):
        self.log_file = log_file
        self.stream_name = stream_name
        self.stream = getattr(sys, stream_name)
        setattr(sys, stream_name, self)

    def write(self, message: str) -> int:
        """Write to both console and log file."""
        self.stream.write(message)
        self.log_file.write(message)
        self.log_file.flush()
        return len(message)

    def flush(self) -> None:
        """Flush both outputs."""
        self.stream.flush()
        self.log_file.flush()

    def restore(self) -> None:
        """Restore the original stream."""
        setattr(sys, self.stream_name, self.stream)

    def __getattr__(self, name):
        return getattr(self.stream, name)


class DetailedLogger:
    """Enhanced logger with timestamps and structured logging."""

    def __init__(self, log_file: TextIO):
        self.log_file = log_file
        self.start_time: Optional[datetime] = None

    def log_event(self, event_type: str, message: str, **kwargs) -> None:
        """Log an event with timestamp and structured data."""
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
        elapsed = ""

        if self.start_time:
            elapsed_sec = (datetime.now() - self.start_time).total_seconds()
            elapsed = f" [+{elapsed_sec:.2f}s]"

        log_line = f"[{timestamp}]{elapsed} [{event_type}] {message}"

        if kwargs:
            log_line += " | " + " | ".join(f"{k}={v}" for k, v in kwargs.items())

        write_to_log(self.log_file, log_line + "\n")

    def start_timing(self) -> None:
        """Start timing for elapsed time calculations."""
        self.start_time = datetime.now()


# ============================================================================
# PROMPT MANAGEMENT
# ============================================================================

def get_default_outer_prompt_path() -> Path:
    """Path of the prompt template bundled with the package."""
    return Path(__file__).parent / 'prompts' / 'outer-prompt-default.md'


def load_outer_prompt(outer_prompt_path) -> str:
    """Load outer prompt template from file."""
    try:
        return Path(outer_prompt_path).read_text(encoding='utf-8')
    except FileNotFoundError:
        raise UsageError(f"Outer prompt file not found: {outer_prompt_path}")
    except (OSError, UnicodeDecodeError) as e:
        raise UsageError(f"Unable to read outer prompt file: {e}")


def build_prompt(state: LoopState, template: str) -> str:
    """Render the iteration prompt for the current state."""
    if state.max_iterations > 0:
        iteration_limit = f"{state.iteration} / {state.max_iterations}"
    else:
        iteration_limit = f"{state.iteration} (unlimited)"

    return template.format(
        iteration_num=state.iteration,
        user_prompt=state.prompt,
        completion_promise=state.completion_promise,
        iteration_limit=iteration_limit
    ).strip()


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass
class LoopConfig:
    """Options of one loop run."""
    prompt: str
    completion_promise: str = DEFAULT_COMPLETION_PROMISE
    max_iterations: int = 0
    model: str = ''
    prompt_source: str = ''
    stream_output: bool = True
    verbose_tools: bool = False
    disable_plugins: bool = False
    auto_commit: bool = True
    agent_bin: str = field(default_factory=lambda: os.environ.get(AGENT_BIN_ENV) or DEFAULT_AGENT_BIN)
    outer_prompt_template: str = field(default_factory=lambda: load_outer_prompt(get_default_outer_prompt_path()))
    workdir: Optional[Path] = None
    tool_summary_interval: float = TOOL_SUMMARY_INTERVAL
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    iteration_delay: float = ITERATION_DELAY
    error_backoff: float = ERROR_BACKOFF


@dataclass
class IterationResult:
    """Result from a single agent iteration."""
    iteration_num: int
    exit_code: int
    output: str = ""
    error: str = ""
    tool_counts: dict = field(default_factory=dict)
    completion_detected: bool = False
    placeholder_error: bool = False
    duration_seconds: float = 0.0
    timestamp: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        base_dict = asdict(self)
        base_dict['success'] = self.success
        base_dict['output_length'] = len(self.output)
        base_dict['error_length'] = len(self.error)
        # Remove large fields from dict
        del base_dict['output']
        del base_dict['error']
        return base_dict


# ============================================================================
# AGENT INVOCATION
# ============================================================================

def build_agent_command(prompt: str, model: str = '', agent_bin: str = DEFAULT_AGENT_BIN) -> list:
    cmd = [agent_bin, 'run']
    if model:
        cmd.extend(['-m', model])
    cmd.append(prompt)
    return cmd


def build_agent_env(config: LoopConfig) -> dict:
    """Inherited environment, pointed at a filtered plugin config for --no-plugins."""
    env = os.environ.copy()
    if config.disable_plugins:
        env[AGENT_CONFIG_ENV] = str(ensure_filtered_plugins_config(config.workdir))
    return env


def auto_commit(iteration: int, workdir: Optional[Path] = None) -> bool:
    """
    Commit all working tree changes.

    A workspace that is not a git repository, or a commit that fails, is not
    an error for the loop.

    Returns:
        True if a commit was made
    """
    try:
        status = subprocess.run(
            ['git', 'status', '--porcelain'],
            capture_output=True,
            text=True,
            check=True,
            cwd=workdir
        )
        if not status.stdout.strip():
            return False

        subprocess.run(['git', 'add', '-A'], capture_output=True, check=True, cwd=workdir)
        subprocess.run(
            ['git', 'commit', '-m', f'Ralph iteration {iteration}: work in progress'],
            capture_output=True,
            check=True,
            cwd=workdir
        )
        return True
    except (subprocess.CalledProcessError, OSError):
        return False


# ============================================================================
# CANCELLATION
# ============================================================================

class LoopSupervisor:
    """Owns the running agent process so an interrupt can shut the loop down cleanly."""

    def __init__(self, store: LoopStateStore, logger: DetailedLogger):
        self.store = store
        self.logger = logger
        self.current_process: Optional[StreamingSubprocess] = None
        self.stopping = False

    def handle_interrupt(self, signum=None, frame=None) -> None:
        """SIGINT handler: stop gracefully, or force exit on a second interrupt."""
        if self.stopping:
            print("\nForce stopping...", flush=True)
            os._exit(1)

        self.stopping = True
        print("\nGracefully stopping Ralph loop...")

        if self.current_process is not None:
            try:
                self.current_process.terminate()
            except OSError:
                pass  # already exited

        self.store.clear()
        self.logger.log_event("CANCELLED", "Loop cancelled by user")
        print("Loop cancelled.")
        raise SystemExit(0)


# ============================================================================
# ITERATION LOGGING
# ============================================================================

def print_loop_start(config: LoopConfig) -> None:
    print_box("Ralph Wiggum Loop", "Iterative AI Development with OpenCode")

    preview = prompt_preview(config.prompt)
    if config.prompt_source:
        print(f"Task: {config.prompt_source}")
        print(f"Preview: {preview}")
    else:
        print(f"Task: {preview}")

    print(f"Completion promise: {config.completion_promise}")
    print(f"Max iterations: {config.max_iterations if config.max_iterations > 0 else 'unlimited'}")
    if config.model:
        print(f"Model: {config.model}")
    if config.disable_plugins:
        print("OpenCode plugins: non-auth plugins disabled")
    print()
    print("Starting loop... (Ctrl+C to stop)")
    print(BOX_HORIZONTAL_HEAVY * SECTION_WIDTH)


def print_iteration_summary(result: IterationResult) -> None:
    tool_summary = format_tool_summary(result.tool_counts)
    print("\nIteration Summary")
    print(BOX_HORIZONTAL_LIGHT * SECTION_WIDTH)
    print(f"Iteration: {result.iteration_num}")
    print(f"Elapsed:   {format_duration(result.duration_seconds)}")
    print(f"Tools:     {tool_summary or 'none'}")
    print(f"Exit code: {result.exit_code}")
    print(f"Completion promise: {'detected' if result.completion_detected else 'not detected'}")


def write_iteration_to_log(log_file: TextIO, result: IterationResult, max_iterations: int) -> None:
    """Write iteration record with consolidated metadata block."""
    limit = str(max_iterations) if max_iterations > 0 else 'unlimited'
    write_to_log(log_file, "\n")
    write_log_box_header(log_file, f"Iteration {result.iteration_num}/{limit} | Started: {result.timestamp}")

    status_icon = chr(9989) if result.success else chr(10060)  # ✅ or ❌
    write_log_box_line(log_file, f"Result: {status_icon} exit {result.exit_code} | Duration: {result.duration_seconds:.2f}s")
    write_log_box_line(log_file, f"Tools: {format_tool_summary(result.tool_counts) or 'none'}")
    write_log_box_line(log_file, f"Completion promise: {'detected' if result.completion_detected else 'not detected'}")

    write_log_box_divider(log_file)
    for key, value in result.to_dict().items():
        write_log_box_line(log_file, f"{key}: {value}")

    write_log_box_footer(log_file)


def write_loop_start_to_log(log_file: TextIO, config: LoopConfig) -> None:
    write_log_box_header(log_file, "RALPH WIGGUM LOOP EXECUTION")
    write_log_box_line(log_file, f"Task: {prompt_preview(config.prompt)}")
    write_log_box_line(log_file, f"Start time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    write_log_box_line(log_file, f"Completion promise: {config.completion_promise}")
    write_log_box_line(log_file, f"Max iterations: {config.max_iterations or 'unlimited'}")
    write_log_box_line(log_file, f"Agent: {config.agent_bin} | Model: {config.model or 'default'}")
    write_log_box_line(log_file, f"Stream: {config.stream_output} | Compact tools: {not config.verbose_tools}")
    write_log_box_line(log_file, f"Plugins disabled: {config.disable_plugins} | Auto-commit: {config.auto_commit}")
    write_log_box_footer(log_file)


# ============================================================================
# MAIN LOOP EXECUTION
# ============================================================================

def run_iteration(
    state: LoopState,
    config: LoopConfig,
    supervisor: LoopSupervisor,
    logger: DetailedLogger
) -> IterationResult:
    """
    Run the agent once and evaluate its output.

    Raises:
        ConfigurationFailure: The agent tried to load the placeholder plugin
        ChildProcessFailure: The agent exited with a non-zero code
    """
    prompt = build_prompt(state, config.outer_prompt_template)
    cmd = build_agent_command(prompt, state.model, config.agent_bin)
    env = build_agent_env(config)

    iteration_start = time.monotonic()
    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    logger.log_event("SUBPROCESS_START", "Starting agent",
                     cmd=' '.join(cmd[:-1] + ['[prompt]']), prompt_chars=len(prompt))

    with StreamingSubprocess(cmd, env) as proc:
        supervisor.current_process = proc
        try:
            if config.stream_output:
                streamer = OutputStreamer(
                    compact_tools=not config.verbose_tools,
                    tool_summary_interval=config.tool_summary_interval,
                    heartbeat_interval=config.heartbeat_interval,
                    iteration_start=iteration_start
                )
                output = proc.stream(streamer)
            else:
                output = proc.collect()
            exit_code = proc.wait()
        finally:
            supervisor.current_process = None

    duration = time.monotonic() - iteration_start
    logger.log_event("SUBPROCESS_END", "Agent exited",
                     returncode=exit_code, duration_sec=f"{duration:.2f}")

    if not config.stream_output:
        if output.stderr_text:
            print(output.stderr_text, file=sys.stderr)
        print(output.stdout_text)

    combined_output = f"{output.stdout_text}\n{output.stderr_text}"
    result = IterationResult(
        iteration_num=state.iteration,
        exit_code=exit_code,
        output=output.stdout_text,
        error=output.stderr_text,
        tool_counts=output.tool_counts,
        completion_detected=is_terminal_completion(output.stdout_text, state.completion_promise),
        placeholder_error=detect_placeholder_plugin_error(combined_output),
        duration_seconds=duration,
        timestamp=timestamp
    )

    print_iteration_summary(result)
    write_iteration_to_log(logger.log_file, result, state.max_iterations)

    if result.placeholder_error:
        raise ConfigurationFailure(
            "OpenCode tried to load the legacy 'ralph-wiggum' plugin. This package is CLI-only.",
            hint="Remove 'ralph-wiggum' from your opencode.json plugin list, or re-run with --no-plugins."
        )

    if exit_code != 0:
        raise ChildProcessFailure(exit_code)

    return result


def advance_state(state: LoopState, store: LoopStateStore, logger: DetailedLogger) -> None:
    state.iteration += 1
    store.save(state)
    logger.log_event("STATE_SAVED", "Advanced to next iteration", iteration=state.iteration)


def run_loop(config: LoopConfig, store: LoopStateStore, logger: Optional[DetailedLogger] = None) -> int:
    """
    Run iterations until completion, the iteration limit, or a terminal error.

    The state file is removed on every exit path except a lock conflict,
    where it belongs to the other loop.

    Returns:
        Process exit code

    Raises:
        LockConflictError: Another loop is active in this workspace
        RalphError: The loop was aborted
    """
    logger = logger or DetailedLogger(io.StringIO())

    existing_state = store.load()
    if existing_state is not None and existing_state.active:
        raise LockConflictError(
            f"A Ralph loop is already active (iteration {existing_state.iteration})\n"
            f"Started at: {existing_state.started_at}\n"
            f"To cancel it, press Ctrl+C in its terminal or delete {store.path}"
        )

    supervisor = LoopSupervisor(store, logger)
    previous_handler = signal.signal(signal.SIGINT, supervisor.handle_interrupt)

    try:
        state = LoopState(
            prompt=config.prompt,
            completion_promise=config.completion_promise,
            max_iterations=config.max_iterations,
            model=config.model
        )
        store.save(state)

        print_loop_start(config)
        write_loop_start_to_log(logger.log_file, config)
        logger.log_event("LOOP_START", "Loop started", state_file=store.path)

        while True:
            if state.max_iterations_reached():
                print()
                print_box(f"Max iterations ({config.max_iterations}) reached. Loop stopped.")
                logger.log_event("LOOP_END", "Max iterations reached", iterations=config.max_iterations)
                return 0

            limit = f" / {config.max_iterations}" if config.max_iterations > 0 else ""
            print(f"\n🔄 Iteration {state.iteration}{limit}")
            print(BOX_HORIZONTAL_LIGHT * SECTION_WIDTH)
            logger.log_event("ITERATION_START", f"Iteration {state.iteration}")

            try:
                result = run_iteration(state, config, supervisor, logger)

                if result.completion_detected:
                    print()
                    print_box(
                        f"✅ Completion promise detected: <promise>{config.completion_promise}</promise>",
                        f"Task completed in {state.iteration} iteration(s)"
                    )
                    logger.log_event("COMPLETION", "Completion promise detected", iteration=state.iteration)
                    return 0

                if config.auto_commit and auto_commit(state.iteration, config.workdir):
                    print("📝 Auto-committed changes")
                    logger.log_event("AUTO_COMMIT", "Committed working tree changes", iteration=state.iteration)

                advance_state(state, store, logger)
                time.sleep(config.iteration_delay)

            except RalphError:
                raise
            except Exception as e:
                print(f"\n❌ Error in iteration {state.iteration}: {type(e).__name__}: {e}", file=sys.stderr)
                print("Continuing to next iteration...")
                logger.log_event("ERROR", f"Iteration {state.iteration} failed: {type(e).__name__}: {e}")
                write_to_log(logger.log_file, traceback.format_exc())

                advance_state(state, store, logger)
                time.sleep(config.error_backoff)
    finally:
        store.clear()
        signal.signal(signal.SIGINT, previous_handler)


# ============================================================================
# ARGUMENT PARSING
# ============================================================================

class RalphArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports bad input as UsageError instead of exiting."""

    def error(self, message):
        raise UsageError(message)


def setup_argument_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser."""
    parser = RalphArgumentParser(
        prog='ralph',
        description='Ralph Wiggum Loop - Iterative AI development with OpenCode',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
        epilog="""
Examples:
  %(prog)s "Build a REST API for todos"
  %(prog)s "Fix the auth bug" --max-iterations 10
  %(prog)s "Add tests" --completion-promise "ALL TESTS PASS" --model openai/gpt-5.1
  %(prog)s --prompt-file ./prompt.md --max-iterations 5

How it works:
  1. Sends your prompt to OpenCode
  2. AI works on the task
  3. Checks output for completion promise
  4. If not complete, repeats with same prompt
  5. AI sees its previous work in files
  6. Continues until promise detected or max iterations

To stop manually: Ctrl+C
        """
    )

    parser.add_argument('prompt', nargs='*', help='Task description for the AI to work on')
    parser.add_argument('--max-iterations', type=int, default=0, help='Maximum iterations before stopping (default: unlimited)')
    parser.add_argument('--completion-promise', type=str, default=DEFAULT_COMPLETION_PROMISE, help='Phrase that signals completion (default: COMPLETE)')
    parser.add_argument('--model', type=str, default='', help='Model to use (e.g., anthropic/claude-sonnet)')
    parser.add_argument('-f', '--prompt-file', '--file', dest='prompt_file', type=str, help='Read prompt content from a file')
    parser.add_argument('--no-stream', dest='stream', action='store_false', help='Buffer OpenCode output and print at the end')
    parser.add_argument('--stream', dest='stream', action='store_true', default=True, help='Stream OpenCode output live (default)')
    parser.add_argument('--verbose-tools', action='store_true', help='Print every tool line (disable compact tool summary)')
    parser.add_argument('--no-plugins', action='store_true', help='Disable non-auth OpenCode plugins for this run')
    parser.add_argument('--no-commit', action='store_true', help="Don't auto-commit after each iteration")
    parser.add_argument('--log-file', type=str, default=None, help='Path to log file (default: /tmp/ralph_[work-dir-basename]_[timestamp].log)')
    parser.add_argument('--outer-prompt', type=str, default=None, help='Path to prompt template file (default: bundled template)')
    parser.add_argument('-v', '--version', action='version', version=f'%(prog)s {__version__}')

    return parser


def read_prompt_file(path: str) -> str:
    """Read a prompt file, rejecting missing, non-regular, unreadable and empty files."""
    prompt_path = Path(path)
    if not prompt_path.exists():
        raise UsageError(f"Prompt file not found: {path}")
    if not prompt_path.is_file():
        raise UsageError(f"Prompt path is not a file: {path}")

    try:
        content = prompt_path.read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError):
        raise UsageError(f"Unable to read prompt file: {path}")

    if not content.strip():
        raise UsageError(f"Prompt file is empty: {path}")
    return content


def resolve_prompt(prompt_parts: list, prompt_file: Optional[str] = None) -> tuple[str, str]:
    """
    Work out the task prompt from the command line.

    Returns:
        Tuple of (prompt, prompt_source) where prompt_source is the file the
        prompt was read from, or '' for inline text
    """
    if prompt_file:
        return read_prompt_file(prompt_file), prompt_file

    if len(prompt_parts) == 1 and os.path.exists(prompt_parts[0]):
        return read_prompt_file(prompt_parts[0]), prompt_parts[0]

    prompt = ' '.join(prompt_parts)
    if not prompt:
        raise UsageError('No prompt provided\nUsage: ralph "Your task description" [options]')
    return prompt, ''


def build_config(args: argparse.Namespace) -> LoopConfig:
    """Validate parsed arguments into a LoopConfig."""
    if args.max_iterations < 0:
        raise UsageError("--max-iterations requires a non-negative number")
    if not args.completion_promise.strip():
        raise UsageError("--completion-promise requires a value")

    prompt, prompt_source = resolve_prompt(args.prompt, args.prompt_file)

    if args.outer_prompt:
        template = load_outer_prompt(args.outer_prompt)
    else:
        template = load_outer_prompt(get_default_outer_prompt_path())

    try:
        build_prompt(LoopState(prompt=prompt), template)
    except (KeyError, IndexError, ValueError) as e:
        raise UsageError(f"Invalid outer prompt template: {e}")

    return LoopConfig(
        prompt=prompt,
        completion_promise=args.completion_promise,
        max_iterations=args.max_iterations,
        model=args.model,
        prompt_source=prompt_source,
        stream_output=args.stream,
        verbose_tools=args.verbose_tools,
        disable_plugins=args.no_plugins,
        auto_commit=not args.no_commit,
        outer_prompt_template=template
    )


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the Ralph Wiggum loop."""
    parser = setup_argument_parser()

    try:
        args = parser.parse_intermixed_args(argv)
        config = build_config(args)
    except UsageError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        print("Run 'ralph --help' for available options", file=sys.stderr)
        return 1

    log_path = args.log_file or create_log_file_path()
    try:
        log_file = open(log_path, 'w', encoding='utf-8')
    except OSError as e:
        print(f"❌ Error: Unable to open log file {log_path}: {e}", file=sys.stderr)
        return 1

    stdout_tee = TeeLogger(log_file, 'stdout')
    stderr_tee = TeeLogger(log_file, 'stderr')
    logger = DetailedLogger(log_file)
    logger.start_timing()
    store = LoopStateStore(config.workdir)

    try:
        print(f"📝 Log file: {log_path}")
        return run_loop(config, store, logger)

    except RalphError as e:
        print(f"\n❌ Error: {e}", file=sys.stderr)
        hint = getattr(e, 'hint', '')
        if hint:
            print(hint, file=sys.stderr)
        logger.log_event("LOOP_END", f"{type(e).__name__}: {e}", exit_code=e.exit_code)
        return e.exit_code

    except Exception as e:
        print(f"\n❌ Fatal error: {type(e).__name__}: {e}", file=sys.stderr)
        logger.log_event("ERROR", f"FATAL - {type(e).__name__}: {e}")
        write_to_log(log_file, traceback.format_exc())
        store.clear()
        return 1

    finally:
        stderr_tee.restore()
        stdout_tee.restore()
        log_file.close()
        print(f"\n📄 Log file: {log_path}")


if __name__ == '__main__':
    sys.exit(main())
