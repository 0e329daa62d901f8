"""
Import helpers for locating the application object.

- import_file_path(): load a standalone file under a stable synthetic name
- setup_sys_path_from_cwd(): make the project in cwd importable

The caller controls sys.path and module naming; nothing here walks up the
directory tree.
"""

from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from types import ModuleType

from dosewatch.core.logging import get_logger

logger = get_logger('imports')

_PROJECT_MARKERS = ('pyproject.toml', 'setup.cfg', 'setup.py')


def find_project_root(start_dir: str) -> str | None:
    """
    Return start_dir if it holds a project marker file, None otherwise.

    Only start_dir itself is checked, never its parents.
    """
    start_dir = os.path.abspath(start_dir)
    if any(os.path.exists(os.path.join(start_dir, m)) for m in _PROJECT_MARKERS):
        return start_dir
    return None


def setup_sys_path_from_cwd() -> str | None:
    """
    Put cwd on sys.path when it is a project root.

    Returns cwd if it was added, None otherwise.
    """
    cwd = os.getcwd()
    if find_project_root(cwd) and cwd not in sys.path:
        sys.path.insert(0, cwd)
        logger.debug(f'Added cwd to sys.path: {cwd}')
        return cwd
    return None


def synthetic_module_name(path: str) -> str:
    """Stable module name for a standalone file, derived from its realpath."""
    digest = hashlib.sha256(os.path.realpath(path).encode()).hexdigest()[:12]
    return f'dosewatch._dynamic.{digest}'


def import_file_path(file_path: str, module_name: str | None = None) -> ModuleType:
    """
    Import a module from a file path.

    The file's directory is added to sys.path so sibling imports resolve.
    Importing the same file twice returns the already loaded module.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ImportError: If the module can't be loaded
    """
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

    name = module_name or synthetic_module_name(file_path)
    spec = importlib.util.spec_from_file_location(name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f'Could not load module from path: {file_path}')

    mod = importlib.util.module_from_spec(spec)
    sys.modules[name] = mod
    spec.loader.exec_module(mod)
    return mod
