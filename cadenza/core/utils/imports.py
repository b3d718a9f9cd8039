"""
Resolving ``module:attr`` locators.

Worker processes are started with a fresh interpreter, so the task they run
is passed as a locator string and re-imported on the other side.
"""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import os
import sys
from typing import Any

from cadenza.core.errors import ConfigurationError, ErrorCode


def parse_locator(locator: str) -> tuple[str, str]:
    """
    Split a locator into (module_path, attribute_name).

    - "app.tasks:audit" -> ("app.tasks", "audit")
    - "/srv/app/tasks.py:audit" -> ("/srv/app/tasks.py", "audit")
    """
    module_part, sep, attr = locator.rpartition(':')
    if not sep or not module_part or not attr:
        raise ConfigurationError(
            message=f'invalid task locator {locator!r}',
            code=ErrorCode.INVALID_TASK_LOCATOR,
            help_text='use module:attribute, e.g. myapp.tasks:audit',
        )
    return module_part, attr


def find_project_root(start_dir: str) -> str | None:
    """Return start_dir if it (not a parent) holds pyproject.toml, setup.cfg or setup.py."""
    start_dir = os.path.abspath(start_dir)
    for marker in ('pyproject.toml', 'setup.cfg', 'setup.py'):
        if os.path.exists(os.path.join(start_dir, marker)):
            return start_dir
    return None


def setup_sys_path_from_cwd() -> str | None:
    """Put cwd on sys.path when it is a project root; returns cwd if added."""
    cwd = os.getcwd()
    if find_project_root(cwd) and cwd not in sys.path:
        sys.path.insert(0, cwd)
        return cwd
    return None


def is_file_path(path: str) -> bool:
    return path.endswith('.py') or os.path.sep in path or '/' in path


def _synthetic_module_name(path: str) -> str:
    """Stable module name for standalone files, identical across processes."""
    realpath = os.path.realpath(path)
    return f'cadenza._dynamic.{hashlib.sha256(realpath.encode()).hexdigest()[:12]}'


def import_file_path(file_path: str) -> Any:
    """Import a module from a file path, adding its directory to sys.path."""
    file_path = os.path.realpath(file_path)
    if not os.path.exists(file_path):
        raise FileNotFoundError(f'Module file not found: {file_path}')

    for mod in list(sys.modules.values()):
        mod_file = getattr(mod, '__file__', None)
        if mod_file and os.path.realpath(mod_file) == file_path:
            return mod

    parent_dir = os.path.dirname(file_path)
    if parent_dir not in sys.path:
        sys.path.insert(0, parent_dir)

    module_name = _synthetic_module_name(file_path)
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f'Could not load module from path: {file_path}')

    mod = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = mod
    spec.loader.exec_module(mod)
    return mod


def locate(locator: str) -> Any:
    """Import the module named by ``locator`` and return the attribute."""
    module_path, attr = parse_locator(locator)
    try:
        if is_file_path(module_path):
            module = import_file_path(module_path)
        else:
            module = importlib.import_module(module_path)
    except (ImportError, FileNotFoundError) as exc:
        raise ConfigurationError(
            message=f'cannot import {module_path!r}',
            code=ErrorCode.INVALID_TASK_LOCATOR,
            notes=[f'locator: {locator!r}', f'{type(exc).__name__}: {exc}'],
            help_text='check PYTHONPATH or run from the project root',
        ) from exc

    try:
        return getattr(module, attr)
    except AttributeError as exc:
        raise ConfigurationError(
            message=f'{module_path!r} has no attribute {attr!r}',
            code=ErrorCode.INVALID_TASK_LOCATOR,
            notes=[f'locator: {locator!r}'],
        ) from exc
