"""Unit tests for Rust-style error formatting and phase-gated collection."""

from __future__ import annotations

import inspect
import os
import sys
import tempfile
from io import StringIO
from unittest import mock

import pytest

from cadenza.core.errors import (
    CadenzaError,
    ConfigurationError,
    ErrorCode,
    MultipleValidationErrors,
    SignalUnitCrash,
    SourceLocation,
    ValidationReport,
    WorkError,
    WorkTimeoutError,
    _cadenza_excepthook,
    _should_show_verbose,
    _should_use_colors,
    _should_use_plain_errors,
    install_error_handler,
    raise_collected,
    uninstall_error_handler,
)

pytestmark = pytest.mark.unit


# =============================================================================
# SourceLocation Tests
# =============================================================================


class TestSourceLocation:
    def test_format_short_without_column(self) -> None:
        loc = SourceLocation(file='/path/to/tasks.py', line=42)
        assert loc.format_short() == '/path/to/tasks.py:42'

    def test_format_short_with_column(self) -> None:
        loc = SourceLocation(file='/path/to/tasks.py', line=42, column=10)
        assert loc.format_short() == '/path/to/tasks.py:42:10'

    def test_get_source_line_existing_file(self) -> None:
        with tempfile.NamedTemporaryFile(mode='w', suffix='.py', delete=False) as f:
            f.write('line 1\nline 2\nline 3\n')
            temp_path = f.name

        try:
            assert SourceLocation(file=temp_path, line=2).get_source_line() == 'line 2'
        finally:
            os.unlink(temp_path)

    def test_get_source_line_nonexistent_file(self) -> None:
        assert SourceLocation(file='/nonexistent/path.py', line=1).get_source_line() is None

    def test_from_function(self) -> None:
        def sample_function() -> None:
            pass

        loc = SourceLocation.from_function(sample_function)
        assert loc is not None
        assert loc.file.endswith('test_errors.py')
        assert loc.line > 0

    def test_from_function_returns_none_for_callable_object(self) -> None:
        class Work:
            def __call__(self) -> None:
                pass

        assert SourceLocation.from_function(Work()) is None

    def test_from_frame(self) -> None:
        frame = inspect.currentframe()
        assert frame is not None
        loc = SourceLocation.from_frame(frame)
        assert loc.file.endswith('test_errors.py')
        assert loc.column is None


# =============================================================================
# CadenzaError Tests
# =============================================================================


class TestCadenzaError:
    def test_basic_creation(self) -> None:
        err = CadenzaError(message='something went wrong')
        assert err.message == 'something went wrong'
        assert err.code is None
        assert err.notes == []
        assert err.help_text is None
        assert err.args == ('something went wrong',)

    def test_fluent_api(self) -> None:
        err = CadenzaError(message='error').with_note('note 1').with_note('note 2').with_help('fix it')
        assert err.notes == ['note 1', 'note 2']
        assert err.help_text == 'fix it'

    def test_auto_location_points_at_caller(self) -> None:
        err = CadenzaError(message='auto-located')
        assert err.location is not None
        assert err.location.file.endswith('test_errors.py')

    def test_format_with_code(self) -> None:
        err = CadenzaError(message='no routing keys', code=ErrorCode.TASK_NO_ROUTING_KEYS)
        formatted = err.format_rust_style(use_colors=False)
        assert 'error[E100]: no routing keys' in formatted

    def test_format_with_location_snippet(self) -> None:
        with tempfile.NamedTemporaryFile(mode='w', suffix='.py', delete=False) as f:
            f.write('x = 1\n')
            f.write("    raise SomeError()\n")
            temp_path = f.name

        try:
            err = CadenzaError(
                message='error occurred',
                location=SourceLocation(file=temp_path, line=2),
            )
            formatted = err.format_rust_style(use_colors=False)
            assert f'--> {temp_path}:2' in formatted
            assert 'raise SomeError()' in formatted
            assert '    ^^^^^^^^^^^^^^^^^' in formatted
        finally:
            os.unlink(temp_path)

    def test_format_location_without_source(self) -> None:
        err = CadenzaError(
            message='gone',
            location=SourceLocation(file='/nonexistent/deleted.py', line=10),
        )
        formatted = err.format_rust_style(use_colors=False)
        assert '/nonexistent/deleted.py:10' in formatted
        assert '^' not in formatted

    def test_format_notes_and_help(self) -> None:
        err = CadenzaError(
            message='error',
            notes=['first note', 'line 1\nline 2'],
            help_text='try this\nor that',
        )
        formatted = err.format_rust_style(use_colors=False)
        assert '= note: first note' in formatted
        assert '= note: line 1' in formatted
        assert 'line 2' in formatted
        assert '= help:' in formatted
        assert 'or that' in formatted

    def test_colors(self) -> None:
        err = CadenzaError(message='colored error')
        assert '\033[' in err.format_rust_style(use_colors=True)
        assert '\033[' not in err.format_rust_style(use_colors=False)

    def test_default_colors_auto_detect(self) -> None:
        err = CadenzaError(message='auto')
        with mock.patch('cadenza.core.errors._should_use_colors', return_value=False):
            formatted = err.format_rust_style(use_colors=None)
        assert '\033[' not in formatted

    def test_str_is_plain(self) -> None:
        assert 'error: test' in str(CadenzaError(message='test'))


class TestSpecificErrors:
    def test_hierarchy(self) -> None:
        assert issubclass(ConfigurationError, CadenzaError)
        assert issubclass(WorkError, CadenzaError)
        assert issubclass(WorkTimeoutError, WorkError)
        assert issubclass(SignalUnitCrash, CadenzaError)

    def test_work_error_fields(self) -> None:
        err = WorkError(
            message='work raised KeyError',
            code=ErrorCode.WORK_FAILED,
            task_name='audit',
            delivery_tag=3,
        )
        assert err.task_name == 'audit'
        assert err.delivery_tag == 3
        assert 'error[E400]' in str(err)

    def test_timeout_error_fields(self) -> None:
        err = WorkTimeoutError(
            message='too slow',
            code=ErrorCode.WORK_TIMED_OUT,
            task_name='audit',
            delivery_tag=1,
            timeout=2.5,
        )
        assert err.timeout == 2.5
        assert isinstance(err, WorkError)

    def test_error_codes_unique(self) -> None:
        values = [code.value for code in ErrorCode]
        assert len(values) == len(set(values))


# =============================================================================
# Phase-gated collection
# =============================================================================


class TestValidationReport:
    def test_empty(self) -> None:
        report = ValidationReport('config')
        assert not report.has_errors()
        raise_collected(report)

    def test_single_error_raised_as_is(self) -> None:
        report = ValidationReport('config')
        err = ConfigurationError(message='bad url', code=ErrorCode.BROKER_INVALID_URL)
        report.add(err)

        with pytest.raises(ConfigurationError) as exc_info:
            raise_collected(report)
        assert exc_info.value is err

    def test_multiple_errors_wrapped(self) -> None:
        report = ValidationReport('config')
        report.add(ConfigurationError(message='first'))
        report.add(ConfigurationError(message='second'))

        with pytest.raises(MultipleValidationErrors) as exc_info:
            raise_collected(report)

        err = exc_info.value
        assert err.report is report
        assert err.message == 'aborting due to 2 previous errors'
        formatted = str(err)
        assert 'first' in formatted
        assert 'second' in formatted
        assert 'aborting due to 2 previous errors' in formatted


# =============================================================================
# Environment flags and excepthook
# =============================================================================


class TestEnvironmentFlags:
    def test_force_color(self) -> None:
        with mock.patch.dict(os.environ, {'CADENZA_FORCE_COLOR': '1'}):
            assert _should_use_colors()

    def test_no_color(self) -> None:
        env = {k: v for k, v in os.environ.items() if k != 'CADENZA_FORCE_COLOR'}
        env['NO_COLOR'] = ''
        with mock.patch.dict(os.environ, env, clear=True):
            assert not _should_use_colors()

    @pytest.mark.parametrize('value', ['1', 'true', 'YES'])
    def test_verbose_and_plain_flags(self, value: str) -> None:
        with mock.patch.dict(
            os.environ, {'CADENZA_VERBOSE': value, 'CADENZA_PLAIN_ERRORS': value}
        ):
            assert _should_show_verbose()
            assert _should_use_plain_errors()

    def test_flags_off_by_default(self) -> None:
        env = {
            k: v
            for k, v in os.environ.items()
            if k not in ('CADENZA_VERBOSE', 'CADENZA_PLAIN_ERRORS')
        }
        with mock.patch.dict(os.environ, env, clear=True):
            assert not _should_show_verbose()
            assert not _should_use_plain_errors()


class TestExcepthook:
    def test_install_and_uninstall(self) -> None:
        original = sys.excepthook
        try:
            install_error_handler()
            assert sys.excepthook is _cadenza_excepthook
            uninstall_error_handler()
            assert sys.excepthook is not _cadenza_excepthook
        finally:
            sys.excepthook = original

    def test_cadenza_errors_printed_rust_style(self) -> None:
        err = ConfigurationError(message='bad config', code=ErrorCode.CONFIG_INVALID_FILE)
        stderr = StringIO()
        with (
            mock.patch.dict(os.environ, {'CADENZA_PLAIN_ERRORS': '', 'CADENZA_VERBOSE': ''}),
            mock.patch.object(sys, 'stderr', stderr),
        ):
            _cadenza_excepthook(type(err), err, None)
        assert 'error[E200]: bad config' in stderr.getvalue()

    def test_other_errors_use_original_hook(self) -> None:
        err = ValueError('plain')
        with (
            mock.patch.dict(os.environ, {'CADENZA_PLAIN_ERRORS': ''}),
            mock.patch('cadenza.core.errors._original_excepthook') as original,
        ):
            _cadenza_excepthook(ValueError, err, None)
        original.assert_called_once_with(ValueError, err, None)

    def test_plain_errors_flag_bypasses_formatting(self) -> None:
        err = ConfigurationError(message='bad config')
        with (
            mock.patch.dict(os.environ, {'CADENZA_PLAIN_ERRORS': '1'}),
            mock.patch('cadenza.core.errors._original_excepthook') as original,
        ):
            _cadenza_excepthook(type(err), err, None)
        original.assert_called_once()
