"""
Agent subprocess output capture.

Both output pipes are read concurrently by reader threads. Raw bytes are
decoded incrementally, reassembled into lines and either echoed or folded
into the tool summary, while a heartbeat thread reports progress when the
agent has been quiet for a while.
"""

import codecs
import os
import re
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ralph_wiggum.tools import (
    TOOL_SUMMARY_INTERVAL,
    ToolSummarizer,
    collect_tool_summary_from_text,
)

# ============================================================================
# CONSTANTS
# ============================================================================

HEARTBEAT_INTERVAL = 10.0
READ_CHUNK_SIZE = 4096
TERMINATE_TIMEOUT = 5
THREAD_JOIN_TIMEOUT = 2
LINE_BREAK_PATTERN = re.compile(r'\r?\n')


# ============================================================================
# FORMATTING
# ============================================================================

def format_duration(seconds: float) -> str:
    """Format whole seconds as M:SS, or H:MM:SS from one hour up."""
    total_seconds = max(0, int(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


# ============================================================================
# LINE REASSEMBLY
# ============================================================================

class LineAssembler:
    """
    Turn arbitrary byte chunks into complete text lines.

    Multi-byte characters split across chunks are held by the incremental
    decoder, and a trailing partial line is held until its line break
    arrives or the stream ends.
    """

    def __init__(self, encoding: str = 'utf-8'):
        self.decoder = codecs.getincrementaldecoder(encoding)(errors='replace')
        self.buffer = ''

    def feed(self, data: bytes) -> tuple[str, list[str]]:
        """
        Decode a chunk.

        Returns:
            Tuple of (decoded_text, completed_lines)
        """
        text = self.decoder.decode(data)
        return text, self._split(text)

    def finish(self) -> tuple[str, list[str]]:
        """Flush the decoder and any undelimited remainder as a final line."""
        text = self.decoder.decode(b'', final=True)
        lines = self._split(text)
        if self.buffer:
            lines.append(self.buffer)
            self.buffer = ''
        return text, lines

    def _split(self, text: str) -> list[str]:
        if not text:
            return []
        self.buffer += text
        lines = LINE_BREAK_PATTERN.split(self.buffer)
        self.buffer = lines.pop()
        return lines


# ============================================================================
# OUTPUT STREAMING
# ============================================================================

@dataclass
class StreamResult:
    """Everything the agent wrote during one iteration."""
    stdout_text: str = ""
    stderr_text: str = ""
    tool_counts: dict = field(default_factory=dict)


class OutputStreamer:
    """Live line handling shared by the stdout and stderr reader threads."""

    def __init__(
        self,
        compact_tools: bool = True,
        tool_summary_interval: float = TOOL_SUMMARY_INTERVAL,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        iteration_start: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.compact_tools = compact_tools
        self.heartbeat_interval = heartbeat_interval
        self.clock = clock
        self.summarizer = ToolSummarizer(tool_summary_interval)
        self.lock = threading.Lock()

        now = clock()
        self.iteration_start = now if iteration_start is None else iteration_start
        self.last_printed_at = now
        self.last_activity_at = now

    @property
    def tool_counts(self) -> dict:
        return self.summarizer.counts

    def handle_line(self, line: str, is_error: bool = False) -> None:
        """Route one completed line to the tool summary or echo it."""
        with self.lock:
            self.last_activity_at = self.clock()

            if self.compact_tools and self.summarizer.record(line):
                self._print_tool_summary()
                return

            self._emit(line, is_error)

    def heartbeat_if_idle(self) -> Optional[str]:
        """Print a progress line if nothing was printed for a full heartbeat interval."""
        with self.lock:
            now = self.clock()
            if now - self.last_printed_at < self.heartbeat_interval:
                return None

            elapsed = format_duration(now - self.iteration_start)
            since_activity = format_duration(now - self.last_activity_at)
            message = f"⏳ working... elapsed {elapsed} · last activity {since_activity} ago"
            self._emit(message)
            return message

    def finish(self) -> None:
        """Print the final tool summary regardless of rate limiting."""
        if not self.compact_tools:
            return
        with self.lock:
            self._print_tool_summary(force=True)

    def _print_tool_summary(self, force: bool = False) -> None:
        summary = self.summarizer.render(self.clock(), force=force)
        if summary:
            self._emit(summary)

    def _emit(self, text: str, is_error: bool = False) -> None:
        print(text, file=sys.stderr if is_error else sys.stdout, flush=True)
        self.last_printed_at = self.clock()


def stream_output_reader(pipe, chunks: list, is_error: bool, streamer: OutputStreamer, errors: list) -> None:
    """
    Read from pipe until EOF, collecting decoded text and dispatching lines.

    Args:
        pipe: Binary pipe to read from
        chunks: List to append decoded text to
        is_error: Whether this is the stderr pipe
        streamer: Line handler shared with the other reader
        errors: List to append a raised exception to, for the caller to re-raise
    """
    assembler = LineAssembler()
    try:
        for data in iter(lambda: pipe.read1(READ_CHUNK_SIZE), b''):
            text, lines = assembler.feed(data)
            chunks.append(text)
            for line in lines:
                streamer.handle_line(line, is_error)

        text, lines = assembler.finish()
        chunks.append(text)
        for line in lines:
            streamer.handle_line(line, is_error)
    except Exception as e:
        errors.append(e)
        # The child must never block on a full pipe nobody reads
        try:
            while pipe.read1(READ_CHUNK_SIZE):
                pass
        except (OSError, ValueError):
            pass


def heartbeat_monitor(streamer: OutputStreamer, interval: float, stop_event: threading.Event) -> None:
    """Emit heartbeats every interval until stop_event is set."""
    while not stop_event.wait(interval):
        streamer.heartbeat_if_idle()


def stream_process_output(
    process: subprocess.Popen,
    streamer: OutputStreamer,
    threads: Optional[list] = None
) -> StreamResult:
    """
    Consume both output pipes of process concurrently with live echo.

    The heartbeat thread is stopped and joined before returning, also when a
    reader failed or the wait was interrupted. The reader threads are added
    to threads so the owner can wait for them before closing the pipes.
    """
    stdout_chunks: list = []
    stderr_chunks: list = []
    errors: list = []
    stop_event = threading.Event()

    readers = [
        threading.Thread(
            target=stream_output_reader,
            args=(process.stdout, stdout_chunks, False, streamer, errors),
            name='ralph-stdout-reader',
            daemon=True
        ),
        threading.Thread(
            target=stream_output_reader,
            args=(process.stderr, stderr_chunks, True, streamer, errors),
            name='ralph-stderr-reader',
            daemon=True
        ),
    ]
    heartbeat_thread = threading.Thread(
        target=heartbeat_monitor,
        args=(streamer, streamer.heartbeat_interval, stop_event),
        name='ralph-heartbeat',
        daemon=True
    )

    if threads is not None:
        threads.extend(readers)

    for t in readers + [heartbeat_thread]:
        t.start()

    try:
        for t in readers:
            t.join()
    finally:
        stop_event.set()
        heartbeat_thread.join()

    if errors:
        raise errors[0]

    streamer.finish()

    return StreamResult(
        stdout_text=''.join(stdout_chunks),
        stderr_text=''.join(stderr_chunks),
        tool_counts=dict(streamer.tool_counts)
    )


def read_buffered_output(process: subprocess.Popen) -> StreamResult:
    """Collect both pipes to completion without live output."""
    stdout_bytes, stderr_bytes = process.communicate()
    stdout_text = (stdout_bytes or b'').decode('utf-8', errors='replace')
    stderr_text = (stderr_bytes or b'').decode('utf-8', errors='replace')
    return StreamResult(
        stdout_text=stdout_text,
        stderr_text=stderr_text,
        tool_counts=collect_tool_summary_from_text(f"{stdout_text}\n{stderr_text}")
    )


# ============================================================================
# SUBPROCESS MANAGEMENT
# ============================================================================

class StreamingSubprocess:
    """
    Context manager for the agent subprocess with streamed or buffered output capture.

    The agent runs in its own session, so terminating it also reaches the tool
    and language-server processes it started, which inherit the output pipes.
    """

    def __init__(self, cmd: list, env: dict):
        self.cmd = cmd
        self.env = env
        self.process: Optional[subprocess.Popen] = None
        self.threads: list = []

    def __enter__(self):
        """Start the subprocess in a new process group with both output pipes captured."""
        self.process = subprocess.Popen(
            self.cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=self.env,
            start_new_session=True
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Stop the process group, then close the pipes once no reader holds them."""
        self.terminate()
        for t in self.threads:
            t.join(timeout=THREAD_JOIN_TIMEOUT)

        if any(t.is_alive() for t in self.threads):
            # Members of the group that ignored SIGTERM still hold the pipes
            self.signal_group(signal.SIGKILL)
            for t in self.threads:
                t.join(timeout=THREAD_JOIN_TIMEOUT)
            if any(t.is_alive() for t in self.threads):
                return False

        for pipe in (self.process.stdout, self.process.stderr):
            if pipe:
                pipe.close()
        return False

    def stream(self, streamer: OutputStreamer) -> StreamResult:
        return stream_process_output(self.process, streamer, self.threads)

    def collect(self) -> StreamResult:
        return read_buffered_output(self.process)

    def wait(self) -> int:
        return self.process.wait()

    def signal_group(self, signum: int) -> None:
        """Send signum to every process in the agent's process group."""
        try:
            os.killpg(self.process.pid, signum)
        except (ProcessLookupError, PermissionError):
            pass  # group already gone

    def terminate(self) -> None:
        """
        Terminate the agent and everything it started.

        The group is signalled even when the agent itself has already exited,
        so processes it left behind do not keep the pipes open.
        """
        self.signal_group(signal.SIGTERM)
        try:
            self.process.wait(timeout=TERMINATE_TIMEOUT)
        except subprocess.TimeoutExpired:
            self.signal_group(signal.SIGKILL)
            self.process.wait()
