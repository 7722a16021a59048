"""Console output formatting utilities for jobgraph."""

from __future__ import annotations

import sys
import threading
from typing import Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-job progress lines
        """
        self.debug = debug
        self.quiet = quiet
        # workers report concurrently; keep multi-line blocks together
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        event: str,
        channel: str,
        invocation: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        lines = [
            "\nRUN STARTED",
            f"Repository: {repository}",
            f"Workflow: {workflow}",
            f"Jobs: {job_count}",
            f"Event: {event}",
            f"Toolchain: {channel}",
        ]
        if invocation:
            lines.append(f"Invocation: {invocation}")
        self._emit(*lines, "")

    def print_plan(self, levels: list[list[str]], skipped: dict[str, str] | None = None) -> None:
        """Print the topological stages, marking jobs excluded by their condition."""
        skipped = skipped or {}
        self._emit("PLAN")
        for idx, level in enumerate(levels, start=1):
            names = ", ".join(
                f"{name} (skipped: {skipped[name]})" if name in skipped else name
                for name in level
            )
            self._emit(f"  Stage {idx}: {names}")

    def print_job_start(self, name: str, environment: str) -> None:
        """Print job start message."""
        if not self.quiet:
            self._emit(f"\nJOB STARTED: {name} [{environment}]")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._emit(f"[{job}] STEP: {name}")

    def print_job_finished(self, name: str, status: str, duration: Optional[float] = None) -> None:
        if self.quiet:
            return
        suffix = f" ({duration:.1f}s)" if duration is not None else ""
        self._emit(f"[{name}] STATUS: {status}{suffix}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        output: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            output: Captured step output, shown only in debug mode
        """
        lines = [f"JOB FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
            if output:
                lines.append(output.rstrip())
        else:
            # first line only outside debug mode
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._emit(*lines)

    def print_retry(self, name: str, attempt: int, attempts: int, reason: str) -> None:
        self._emit(f"[{name}] RETRY {attempt}/{attempts}: {reason.splitlines()[0]}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        if not self.quiet:
            self._emit(f"\nJOB SKIPPED: {name} ({reason})")

    def print_artifact_published(self, job: str, name: str, sha256: str, size: int) -> None:
        if not self.quiet:
            self._emit(f"[{job}] ARTIFACT: {name} ({size} bytes, sha256 {sha256[:12]}...)")

    def print_results(self, results: dict[str, str], outcome: str) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for job, status in results.items():
            lines.append(f"  {job}: {status.upper()}")
        lines.append(f"OUTCOME: {outcome.upper()}")
        self._emit(*lines)

    def print_release(self, tag: str, action: str, reason: str, reference: Optional[str] = None) -> None:
        lines = [f"\nRELEASE {tag}: {action}", f"Reason: {reason}"]
        if reference:
            lines.append(f"Published: {reference}")
        self._emit(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_warning(self, message: str) -> None:
        self._emit(f"WARNING: {message}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
