# quantalogic_patchbox/probe.py
"""
Scope inference: find the running test case on the call stack and borrow its
cleanup hook so substitutions are undone when the test finishes.
"""

import inspect
import logging
import unittest
from types import FrameType
from typing import Callable, List, Optional

from .exceptions import NoScopeAvailable
from .scope import HookScope, Scope

logger = logging.getLogger(__name__)

Recognizer = Callable[[FrameType], Optional[Scope]]

# Locals through which pytest exposes the node being run or set up.
_PYTEST_LOCALS = ('pyfuncitem', 'request')


def unittest_recognizer(frame: FrameType) -> Optional[Scope]:
    """Recognize a method running on behalf of a ``unittest.TestCase``."""
    case = frame.f_locals.get('self')
    if not isinstance(case, unittest.TestCase):
        return None
    # TestCase.run sets _outcome for the duration of the test
    if getattr(case, '_outcome', None) is None:
        return None
    return HookScope(case.addCleanup, f"{case.id()} cleanup")


def _is_pytest_object(obj) -> bool:
    # plugin items (e.g. pytest-asyncio) subclass pytest's own classes
    return any(cls.__module__.startswith('_pytest') for cls in type(obj).__mro__)


def pytest_recognizer(frame: FrameType) -> Optional[Scope]:
    """Recognize pytest's call frame for a test item, or a fixture request."""
    for local_name in _PYTEST_LOCALS:
        node = frame.f_locals.get(local_name)
        if node is None or not _is_pytest_object(node):
            continue
        addfinalizer = getattr(node, 'addfinalizer', None)
        if callable(addfinalizer):
            label = getattr(node, 'nodeid', None) or type(node).__name__
            return HookScope(addfinalizer, f"{label} finalizer")
    return None


_recognizers: List[Recognizer] = [unittest_recognizer, pytest_recognizer]


def register_recognizer(recognizer: Recognizer, first: bool = False) -> Recognizer:
    """
    Add a recognizer for another test runner.

    Args:
        recognizer: Callable taking a frame and returning a Scope or None.
        first: Try it before the recognizers already registered.

    Returns:
        The recognizer, so this can be used as a decorator.
    """
    if recognizer not in _recognizers:
        if first:
            _recognizers.insert(0, recognizer)
        else:
            _recognizers.append(recognizer)
    return recognizer


def unregister_recognizer(recognizer: Recognizer) -> None:
    if recognizer in _recognizers:
        _recognizers.remove(recognizer)


def recognizers() -> List[Recognizer]:
    return list(_recognizers)


def infer_scope(stacklevel: int = 1) -> Scope:
    """
    Walk outward from the caller and return the first recognized test scope.

    Raises:
        NoScopeAvailable: No frame on the stack belongs to a running test.
    """
    frame = inspect.currentframe()
    try:
        for _ in range(stacklevel + 1):
            if frame is None:
                break
            frame = frame.f_back
        while frame is not None:
            for recognizer in _recognizers:
                scope = recognizer(frame)
                if scope is not None:
                    logger.debug(f"Inferred {scope.label} from frame {frame.f_code.co_name}")
                    return scope
            frame = frame.f_back
    finally:
        del frame
    raise NoScopeAvailable()
