# Copyright Red Hat
#
# vmsnap/manager/_loader.py - Guest storage manager plugin loader
#
# This file is part of the vmsnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Storage backend plugin discovery.

Every module in ``vmsnap.manager.plugins`` whose name does not begin with
an underscore is imported and searched for public ``Plugin`` subclasses.
A backend class must declare the storage location ``marker`` it serves,
and each marker may be claimed by one backend only.
"""
from importlib.util import find_spec
from pathlib import Path
from typing import Iterator, List
import importlib
import inspect
import logging

from vmsnap import VMSNAP_SUBSYSTEM_MANAGER
from vmsnap.manager.plugins import Plugin
import vmsnap.manager.plugins as plugin_pkg

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": VMSNAP_SUBSYSTEM_MANAGER}, **kwargs)


def _plugin_module_names() -> Iterator[str]:
    for path in map(Path, plugin_pkg.__path__):
        for file in sorted(path.glob("[a-zA-Z]*.py")):
            yield f"{plugin_pkg.__name__}.{file.stem}"


def _import_plugin_module(fqname: str):
    if not find_spec(fqname):
        return None  # pragma: no cover
    _log_debug_manager("Importing backend module %s", fqname)
    try:
        return importlib.import_module(fqname)
    except (ImportError, SyntaxError) as err:  # pragma: no cover
        _log_error("Error importing backend module %s: %s", fqname, err)
        return None


def _backend_classes(module, base_class) -> List[type]:
    """
    Return the public ``base_class`` subclasses defined in ``module`` that
    declare a storage location marker.
    """
    public = getattr(module, "__all__", None)
    classes = []
    for name, cls in inspect.getmembers(module, inspect.isclass):
        if name.startswith("_") or (public is not None and name not in public):
            continue
        if cls is base_class or not issubclass(cls, base_class):
            continue
        if cls.__module__ != module.__name__:
            continue
        if not cls.marker:
            _log_warn("Ignoring backend class %s with no location marker", name)
            continue
        classes.append(cls)
    return classes


def load_plugins(base_class=Plugin) -> List[type]:
    """
    Discover the storage backend classes in ``vmsnap.manager.plugins``.

    :param base_class: The class that backends must derive from.
    :returns: Backend classes sorted by class name. When two classes claim
              the same marker the first one by name wins.
    """
    candidates = []
    for fqname in _plugin_module_names():
        module = _import_plugin_module(fqname)
        if module:
            candidates.extend(_backend_classes(module, base_class))

    by_marker = {}
    for cls in sorted(candidates, key=lambda c: c.__name__):
        if cls.marker in by_marker:
            _log_error(
                "Backend %s reuses location marker '%s' of %s, ignoring",
                cls.__name__,
                cls.marker,
                by_marker[cls.marker].__name__,
            )
            continue
        by_marker[cls.marker] = cls
    return sorted(by_marker.values(), key=lambda c: c.__name__)


def plugin_markers(plugin_classes) -> List[str]:
    """
    Return the storage location markers declared by ``plugin_classes``.
    """
    return [cls.marker for cls in plugin_classes if cls.marker]


__all__ = [
    "load_plugins",
    "plugin_markers",
]
