# cadenza/core/autoscaler/child.py
"""Entry point executed inside every spawned worker process."""

from __future__ import annotations

import os
import sys
from typing import Any, Mapping, Optional, Sequence

from cadenza.core.config import ConfigHolder
from cadenza.core.defaults import ExitCode
from cadenza.core.errors import ConfigurationError
from cadenza.core.logging import get_logger
from cadenza.core.models.app import CadenzaConfig
from cadenza.core.queue.postgres import PostgresQueue
from cadenza.core.runtime.task_runtime import TaskRuntime
from cadenza.core.task import coerce_task
from cadenza.core.utils.imports import locate

logger = get_logger('spawner')


def run_child(
    locator: str,
    config_data: Mapping[str, Any],
    sys_path_roots: Sequence[str] = (),
    overrides: Optional[Mapping[str, Any]] = None,
) -> int:
    """
    Build a runtime for the task at ``locator`` and run it to completion.

    Everything is rebuilt here from plain data: the task is re-imported and the
    queue gateway opens its own connections, never the parent's.
    """
    for root in sys_path_roots:
        if root not in sys.path:
            sys.path.insert(0, root)

    try:
        config = CadenzaConfig.model_validate(dict(config_data))
        holder = ConfigHolder(config, overrides=overrides)
        TaskRuntime.after_fork(holder)
        definition = coerce_task(locate(locator), locator)
        logger.debug(f'[child {os.getpid()}] loaded task {definition.name!r} from {locator}')
        queue = PostgresQueue(
            config.broker, definition.descriptor, resilience=config.resilience
        )
        runtime = TaskRuntime(
            definition,
            queue,
            config=holder,
            exit_on_idle=config.autoscaler.exit_on_idle,
        )
        return runtime.start()
    except ConfigurationError as exc:
        logger.critical(f'[child {os.getpid()}] cannot start worker:\n{exc}')
        return ExitCode.SOFTWARE


def child_main(
    locator: str,
    config_data: Mapping[str, Any],
    sys_path_roots: Sequence[str] = (),
    overrides: Optional[Mapping[str, Any]] = None,
) -> None:
    """``multiprocessing.Process`` target: run the worker and exit with its status."""
    sys.exit(int(run_child(locator, config_data, sys_path_roots, overrides)))
