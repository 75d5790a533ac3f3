# quantalogic_patchbox/substitution.py
"""
Scoped substitution of module bindings.

``substitute`` swaps one or more own bindings of a module for replacement
values and attaches a restorer to a scope, so the originals come back when
the scope exits however it exits.
"""

import logging
import warnings
from collections.abc import Mapping
from typing import Any, Callable, Iterable, List, Optional, Tuple, Union

from .bindings import BindingHandle, get_caller_module, get_own_binding_table
from .exceptions import NotOwnBinding, RestorationFailure, RestorationWarning, UnknownBinding
from .probe import infer_scope
from .scope import Scope, as_scope

logger = logging.getLogger(__name__)

Requests = Union[Mapping, Iterable[Tuple[str, Any]]]
Record = List[Tuple[BindingHandle, Any]]


def _normalize_requests(requests: Requests) -> List[Tuple[str, Any]]:
    if isinstance(requests, Mapping):
        items = list(requests.items())
    else:
        items = [tuple(pair) for pair in requests]
    seen = set()
    for item in items:
        if len(item) != 2:
            raise TypeError(f"expected (name, value) pairs, got {item!r}")
        name = item[0]
        if not isinstance(name, str):
            raise TypeError(f"binding names must be strings, got {type(name).__name__}")
        if name in seen:
            raise ValueError(f"'{name}' is requested more than once")
        seen.add(name)
    return items


def _validate(table, name: str) -> BindingHandle:
    if '.' in name:
        raise NotOwnBinding(table.name, name,
                            "attributes and methods cannot be substituted; inject a strategy object instead")
    handle = BindingHandle(table, name)
    if not handle.exists():
        raise UnknownBinding(table.name, name)
    if not handle.is_own():
        raise NotOwnBinding(table.name, name, "it is defined in another module")
    return handle


def _make_restorer(record: Record) -> Callable[[], List[RestorationFailure]]:
    done = False

    def restore() -> List[RestorationFailure]:
        nonlocal done
        if done:
            return []
        done = True
        failures: List[RestorationFailure] = []
        for handle, original in reversed(record):
            try:
                handle.restore(original)
            except Exception as e:
                logger.error(f"Failed to restore {handle.qualname}: {type(e).__name__}: {e}")
                failures.append(RestorationFailure(handle.qualname, e))
            else:
                logger.debug(f"Restored {handle.qualname}")
        if failures:
            warnings.warn(RestorationWarning(failures), stacklevel=2)
        return failures

    return restore


def substitute(module_ref: Any, requests: Requests, scope: Optional[Any] = None, stacklevel: int = 1) -> None:
    """
    Replace own bindings of a module until a scope exits.

    Args:
        module_ref: Module object, dotted module name or BindingTable. ``None``
            means the module that defines the calling function.
        requests: Mapping (or iterable of pairs) from binding name to replacement.
        scope: Anything with a finish hook (Scope, ExitStack, TestCase, pytest
            request). When omitted the running test case is looked up on the
            call stack.
        stacklevel: Which caller to treat as the calling code, as in
            ``warnings.warn``.

    Raises:
        EmptyModuleContext: The module cannot be determined.
        UnknownBinding: A name is not bound in the module.
        NotOwnBinding: A name is bound but defined elsewhere.
        NoScopeAvailable: No scope given and no running test case found.
    """
    items = _normalize_requests(requests)
    if not items:
        return

    if module_ref is None:
        module_ref = get_caller_module(stacklevel)
    table = get_own_binding_table(module_ref)

    handles = [_validate(table, name) for name, _ in items]
    target = as_scope(scope) if scope is not None else infer_scope(stacklevel)

    record: Record = [(handle, handle.read()) for handle in handles]
    restore = _make_restorer(record)

    installed: Record = []
    try:
        for (handle, original), (_, value) in zip(record, items):
            handle.install(value)
            installed.append((handle, original))
            logger.debug(f"Substituted {handle.qualname}")
        target.on_exit(restore)
    except BaseException:
        logger.debug(f"Installation into {table.name} failed, rolling back {len(installed)} binding(s)")
        _make_restorer(installed)()
        raise


class substituted:
    """
    Context manager form: substitutions last exactly as long as the block.

    ::

        with substituted(mymodule, {'access': lambda: 42}):
            assert mymodule.work() == 42

    Also usable with ``async with``.
    """

    def __init__(self, module_ref: Any, requests: Requests) -> None:
        if module_ref is None:
            module_ref = get_caller_module(1)
        self.module_ref = module_ref
        self.requests = requests
        self.scope: Optional[Scope] = None

    def __enter__(self) -> Scope:
        self.scope = Scope(f"substituted({getattr(self.module_ref, '__name__', self.module_ref)!r})")
        substitute(self.module_ref, self.requests, self.scope)
        return self.scope

    def __exit__(self, exc_type, exc_value, traceback):
        self.scope.close()
        return False

    async def __aenter__(self) -> Scope:
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_value, traceback):
        return self.__exit__(exc_type, exc_value, traceback)


def apply(module_ref: Any, requests: Requests, func: Callable, *args: Any, **kwargs: Any) -> Any:
    """Run ``func(*args, **kwargs)`` with the substitutions in place and return its result."""
    if module_ref is None:
        module_ref = get_caller_module(1)
    with substituted(module_ref, requests):
        return func(*args, **kwargs)
