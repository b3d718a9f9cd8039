# cadenza/core/runtime/__init__.py
"""
Per-process task runtime.

Main components:
- TaskRuntime: subscribes a task's queue and dispatches messages to its work
- SignalUnit: turns INT/TERM/HUP and idle timeouts into runtime state changes

Example usage:
    from cadenza.core.runtime import TaskRuntime

    status = TaskRuntime(audit, queue, exit_on_idle=True).start()
"""

from cadenza.core.runtime.signals import SIGNALS, SignalUnit
from cadenza.core.runtime.task_runtime import TaskRuntime

__all__ = [
    'SIGNALS',
    'SignalUnit',
    'TaskRuntime',
]
