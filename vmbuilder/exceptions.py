"""Custom exceptions for vmbuilder."""

from __future__ import annotations

from typing import List, Optional, Sequence


class BuildError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigurationError(BuildError):
    """One or more build spec defects, reported together."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors: List[str] = list(errors)
        lines = "\n".join(f"  * {err}" for err in self.errors)
        super().__init__(f"{len(self.errors)} error(s) occurred:\n{lines}")


class DriverUnavailable(BuildError):
    """VBoxManage cannot be found or fails its capability check."""


class DriverCommandError(BuildError):
    """A VBoxManage invocation exited non-zero or reported an error."""

    def __init__(self, command: Sequence[str], returncode: Optional[int], stdout: str, stderr: str) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"Command {' '.join(self.command)!r} failed (exit {returncode})"
        if stderr.strip():
            message += f"\nstderr: {stderr.strip()}"
        if stdout.strip():
            message += f"\nstdout: {stdout.strip()}"
        super().__init__(message)


class StepFailure(BuildError):
    """Raised when a pipeline step fails irrecoverably."""

    def __init__(self, step: str, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Step '{step}' failed: {message}")
        self.step = step
        self.message = message
        self.cause = cause


class ChecksumMismatch(StepFailure):
    def __init__(self, step: str, expected: str, actual: str) -> None:
        super().__init__(step, f"ISO checksum mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class CancellationRequested(Exception):
    """The build was cancelled from outside; not a failure."""
