"""Unit tests for the worker-process entry point."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from unittest.mock import MagicMock, patch

import pytest

from cadenza.core.autoscaler import child
from cadenza.core.defaults import ExitCode

pytestmark = pytest.mark.unit

CONFIG = {
    'broker': {'database_url': 'postgresql+psycopg://cadenza@localhost/cadenza'},
    'autoscaler': {'exit_on_idle': False},
    'loglevel': 'WARNING',
}
LOCATOR = 'cadenza.tasks.failure_logger:failure_logger'


@pytest.fixture(autouse=True)
def no_setpgrp() -> Iterator[MagicMock]:
    with patch('cadenza.core.runtime.task_runtime.os.setpgrp') as setpgrp:
        yield setpgrp


class TestRunChild:
    def test_builds_runtime_from_plain_data(
        self, no_setpgrp: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(sys, 'path', list(sys.path))
        with (
            patch.object(child, 'PostgresQueue') as queue_cls,
            patch.object(child.TaskRuntime, 'start', return_value=ExitCode.OK) as start,
        ):
            code = child.run_child(LOCATOR, CONFIG, ['/srv/app'])

        assert code == ExitCode.OK
        assert sys.path[0] == '/srv/app'
        no_setpgrp.assert_called_once_with()
        start.assert_called_once_with()
        descriptor = queue_cls.call_args.args[1]
        assert descriptor.name == 'failure_logger'

    def test_passes_exit_on_idle(self) -> None:
        with (
            patch.object(child, 'PostgresQueue'),
            patch.object(child, 'TaskRuntime') as runtime_cls,
        ):
            runtime_cls.return_value.start.return_value = ExitCode.FAILURE
            assert child.run_child(LOCATOR, CONFIG) == ExitCode.FAILURE

        assert runtime_cls.call_args.kwargs['exit_on_idle'] is False
        runtime_cls.after_fork.assert_called_once()

    def test_passes_overrides_to_config_holder(self) -> None:
        with (
            patch.object(child, 'PostgresQueue'),
            patch.object(child, 'TaskRuntime') as runtime_cls,
        ):
            runtime_cls.return_value.start.return_value = ExitCode.OK
            child.run_child(LOCATOR, CONFIG, overrides={'loglevel': 'DEBUG'})

        holder = runtime_cls.call_args.kwargs['config']
        assert holder.overrides == {'loglevel': 'DEBUG'}

    def test_bad_locator_is_software_error(self) -> None:
        assert child.run_child('cadenza_missing.tasks:audit', CONFIG) == ExitCode.SOFTWARE

    def test_not_a_task_is_software_error(self) -> None:
        assert child.run_child('cadenza.core.defaults:ExitCode', CONFIG) == ExitCode.SOFTWARE


def test_child_main_exits_with_status() -> None:
    with (
        patch.object(child, 'run_child', return_value=ExitCode.SOFTWARE),
        pytest.raises(SystemExit) as exc_info,
    ):
        child.child_main(LOCATOR, CONFIG)
    assert exc_info.value.code == 70
