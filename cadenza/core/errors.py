"""Rust-style error display for cadenza startup, validation and runtime errors."""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

# Absolute path to the cadenza package directory.
# Used by _find_user_frame to distinguish library frames from user code.
_CADENZA_PKG_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ErrorCode(str, Enum):
    """Error codes for cadenza errors.

    Organized by category:
    - E100-E199: Task definition errors
    - E200-E299: Config/broker errors
    - E400-E499: Work execution errors
    - E500-E599: Runtime infrastructure errors
    """

    # Task definition (E100-E199)
    TASK_NO_ROUTING_KEYS = 'E100'
    TASK_INVALID_WORK_MODEL = 'E101'
    TASK_INVALID_OPTIONS = 'E102'
    TASK_INVALID_QUEUE = 'E103'
    TASK_NOT_IMPLEMENTED = 'E104'

    # Config/broker (E200-E299)
    CONFIG_INVALID_FILE = 'E200'
    BROKER_INVALID_URL = 'E203'
    BROKER_NO_DEAD_LETTER_EXCHANGE = 'E204'
    CLI_INVALID_ARGS = 'E206'
    INVALID_TASK_LOCATOR = 'E207'
    CONFIG_INVALID_RESILIENCE = 'E208'
    CONFIG_INVALID_AUTOSCALER = 'E209'

    # Work execution (E400-E499)
    WORK_FAILED = 'E400'
    WORK_TIMED_OUT = 'E401'

    # Runtime infrastructure (E500-E599)
    SIGNAL_UNIT_CRASHED = 'E500'
    WORK_PROCESS_UNAVAILABLE = 'E501'


class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    DIM = '\033[2m'


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    YELLOW = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if _env_flag('CADENZA_FORCE_COLOR'):
        return True

    # NO_COLOR standard (https://no-color.org/)
    if os.environ.get('NO_COLOR') is not None:
        return False

    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _should_show_verbose() -> bool:
    """Determine if verbose output (full traceback) should be shown."""
    return _env_flag('CADENZA_VERBOSE')


def _should_use_plain_errors() -> bool:
    """Determine if plain Python errors should be used instead of Rust-style."""
    return _env_flag('CADENZA_PLAIN_ERRORS')


@dataclass
class SourceLocation:
    """Source code location information."""

    file: str
    line: int
    column: int | None = None

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        return cls(file=frame.f_code.co_filename, line=frame.f_lineno)

    @classmethod
    def from_function(cls, fn: Callable[..., Any]) -> SourceLocation | None:
        """Location of a function definition, or None for callables without code."""
        code = getattr(fn, '__code__', None)
        if code is None:
            return None
        return cls(file=code.co_filename, line=code.co_firstlineno)

    def get_source_line(self) -> str | None:
        try:
            line = linecache.getline(self.file, self.line)
            return line.rstrip('\n') if line else None
        except Exception:
            return None

    def format_short(self) -> str:
        """Format as 'file:line' or 'file:line:col'."""
        if self.column is not None:
            return f'{self.file}:{self.line}:{self.column}'
        return f'{self.file}:{self.line}'


@dataclass
class CadenzaError(Exception):
    """Base exception for cadenza errors.

    Provides Rust-style error formatting with:
    - Error code and category
    - Source location with code snippet
    - Notes and help text
    """

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

        if self.location is None:
            user_frame = _find_user_frame()
            if user_frame is not None:
                self.location = SourceLocation.from_frame(user_frame)

    def with_note(self, note: str) -> CadenzaError:
        """Add a note to the error (fluent API)."""
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> CadenzaError:
        """Set help text (fluent API)."""
        self.help_text = help_text
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format the error in Rust style."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        lines: list[str] = ['']

        # Error header: error[E100]: message
        code_part = f'[{self.code.value}]' if self.code else ''
        lines.append(f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}')

        if self.location:
            source_line = self.location.get_source_line()
            lines.append(
                f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}'
            )

            if source_line:
                line_num = str(self.location.line)
                padding = ' ' * len(line_num)
                stripped = source_line.lstrip()
                indent = len(source_line) - len(stripped)
                underline = ' ' * indent + '^' * len(stripped)

                lines.append(f'   {c.BLUE}{padding}|{c.RESET}')
                lines.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')
                lines.append(
                    f'   {c.BLUE}{padding}|{c.RESET} {c.RED}{underline}{c.RESET}'
                )

        for note in self.notes:
            note_lines = note.split('\n')
            lines.append(
                f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {note_lines[0]}'
            )
            for note_line in note_lines[1:]:
                lines.append(f'          {note_line}')

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            for help_line in self.help_text.split('\n'):
                lines.append(f'        {help_line}')

        return '\n'.join(lines)

    def __str__(self) -> str:
        """Plain-text representation, safe for logging."""
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _cadenza_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    """Custom exception hook for CadenzaError exceptions."""
    if _should_use_plain_errors():
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    if isinstance(exc_value, CadenzaError):
        print(exc_value.format_rust_style(), file=sys.stderr)

        if _should_show_verbose():
            print(file=sys.stderr)
            c = _Colors if _should_use_colors() else _NoColors
            print(
                f'{c.DIM}Full traceback (CADENZA_VERBOSE=1):{c.RESET}',
                file=sys.stderr,
            )
            traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)
    else:
        _original_excepthook(exc_type, exc_value, exc_tb)


def install_error_handler() -> None:
    """Install the custom exception hook for Rust-style error display."""
    sys.excepthook = _cadenza_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook


# =============================================================================
# Specific Error Classes
# =============================================================================


@dataclass
class ConfigurationError(CadenzaError):
    """Raised when a task descriptor or the app configuration is invalid."""

    pass


@dataclass
class WorkError(CadenzaError):
    """Raised when a task's work raised; the message is rejected without requeue."""

    task_name: str | None = None
    delivery_tag: int | None = None


@dataclass
class WorkTimeoutError(WorkError):
    """Raised when work exceeded its deadline and the timeout action is 'reject'."""

    timeout: float | None = None


@dataclass
class SignalUnitCrash(CadenzaError):
    """The signal-handling unit of a runtime died."""

    pass


# =============================================================================
# Phase-Gated Error Collection
# =============================================================================


class ValidationReport:
    """Collects multiple CadenzaError instances within a validation phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[CadenzaError] = []

    def add(self, error: CadenzaError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format all collected errors, then append an aborting summary."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        parts = [error.format_rust_style(use_colors=use_colors) for error in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to {len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(CadenzaError):
    """Wraps a ValidationReport containing 2+ errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Skip auto-location detection, location is per-error in the report
        super(CadenzaError, self).__init__(self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise collected errors.

    - 0 errors: no-op
    - 1 error: raises the original error
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


def _find_user_frame() -> Any | None:
    """Find the first frame outside of cadenza internals."""
    frame = inspect.currentframe()
    if frame is None:
        return None

    while frame is not None:
        filename = frame.f_code.co_filename

        if filename.startswith('<'):
            frame = frame.f_back
            continue

        if not filename.startswith(_CADENZA_PKG_DIR) and '/site-packages/' not in filename:
            return frame

        frame = frame.f_back

    return None
