# quantalogic_patchbox/bindings.py
"""
Binding tables and handles used to locate the writable slot behind a name.
"""

import importlib
import inspect
import logging
import sys
import types
from typing import Any, Callable, Dict, Optional, Tuple

from .exceptions import EmptyModuleContext, UnknownBinding

logger = logging.getLogger(__name__)

# Kinds of value that carry a definition site in ``__module__``.
_DEFINED_KINDS = (types.FunctionType, types.BuiltinFunctionType, type)


class ModuleTable:
    """Writable view over a real module's own ``__dict__``."""

    # (module name, binding name) -> number of replacements currently installed
    _held: Dict[Tuple[str, str], int] = {}

    def __init__(self, module: types.ModuleType) -> None:
        self.module = module
        self.name: str = module.__name__
        self._namespace: Dict[str, Any] = vars(module)

    def __contains__(self, name: str) -> bool:
        return name in self._namespace

    def __getitem__(self, name: str) -> Any:
        return self._namespace[name]

    def __setitem__(self, name: str, value: Any) -> None:
        self._namespace[name] = value

    def is_own(self, name: str) -> bool:
        if name not in self._namespace:
            return False
        if self._held.get((self.name, name)):
            return True
        value = self._namespace[name]
        if isinstance(value, types.ModuleType):
            return False
        if isinstance(value, _DEFINED_KINDS):
            return getattr(value, '__module__', self.name) == self.name
        return True

    def hold(self, name: str) -> None:
        key = (self.name, name)
        self._held[key] = self._held.get(key, 0) + 1

    def release(self, name: str) -> None:
        key = (self.name, name)
        count = self._held.get(key, 0) - 1
        if count > 0:
            self._held[key] = count
        else:
            self._held.pop(key, None)

    def __repr__(self):
        return f"<ModuleTable {self.name}>"


class BindingTable:
    """
    Explicit table of mockable functions owned by one module.

    Register functions with ``@table.register`` and call them through the
    table (``table.fetch(...)``) so a substitution is seen by every call site::

        deps = BindingTable(__name__)

        @deps.register
        def fetch(url):
            ...

        def load(url):
            return deps.fetch(url)
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: Dict[str, Any] = {}

    def register(self, func: Optional[Callable] = None, *, name: Optional[str] = None):
        def decorator(f: Callable) -> Callable:
            key = name or f.__name__
            if key in self._entries:
                raise ValueError(f"'{key}' is already registered in '{self.name}'")
            # attribute lookup would never reach the entry
            if hasattr(type(self), key) or key in self.__dict__:
                raise ValueError(f"'{key}' clashes with an attribute of BindingTable '{self.name}'")
            self._entries[key] = f
            return f

        if func is not None:
            return decorator(func)
        return decorator

    def names(self):
        return list(self._entries)

    def __getattr__(self, name: str) -> Any:
        entries = self.__dict__.get('_entries', {})
        try:
            return entries[name]
        except KeyError:
            raise AttributeError(f"'{self.__dict__.get('name')}' has no registered binding '{name}'") from None

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __getitem__(self, name: str) -> Any:
        return self._entries[name]

    def __setitem__(self, name: str, value: Any) -> None:
        self._entries[name] = value

    def is_own(self, name: str) -> bool:
        return name in self._entries

    def __repr__(self):
        return f"<BindingTable {self.name} {sorted(self._entries)}>"


class BindingHandle:
    """Read/write access to one named slot of a binding table."""

    def __init__(self, table, name: str) -> None:
        self.table = table
        self.name = name

    @property
    def qualname(self) -> str:
        return f"{self.table.name}.{self.name}"

    def exists(self) -> bool:
        return self.name in self.table

    def is_own(self) -> bool:
        return self.table.is_own(self.name)

    def read(self) -> Any:
        try:
            return self.table[self.name]
        except KeyError:
            raise UnknownBinding(self.table.name, self.name) from None

    def write(self, value: Any) -> None:
        self.table[self.name] = value

    def install(self, value: Any) -> None:
        self.write(value)
        if isinstance(self.table, ModuleTable):
            self.table.hold(self.name)

    def restore(self, value: Any) -> None:
        self.write(value)
        if isinstance(self.table, ModuleTable):
            self.table.release(self.name)

    def __repr__(self):
        return f"<BindingHandle {self.qualname}>"


def get_own_binding_table(module_ref: Any):
    """
    Return the writable binding table for a module reference.

    Args:
        module_ref: A BindingTable, a module object, or a dotted module name.

    Returns:
        The table whose slots substitutions write into.
    """
    if isinstance(module_ref, (BindingTable, ModuleTable)):
        return module_ref
    if isinstance(module_ref, types.ModuleType):
        return ModuleTable(module_ref)
    if isinstance(module_ref, str):
        try:
            return ModuleTable(importlib.import_module(module_ref))
        except ImportError as e:
            raise EmptyModuleContext(f"cannot import module: {e}", module_ref) from e
    if all(hasattr(module_ref, attr) for attr in ('name', 'is_own', '__getitem__', '__setitem__')):
        return module_ref
    raise EmptyModuleContext("not a module or binding table", module_ref)


def get_caller_module(stacklevel: int = 1) -> types.ModuleType:
    """
    Return the module whose source defines the function ``stacklevel`` frames up.

    The module is taken from the frame's globals, so it is the module where the
    running function was defined, not whoever called it.
    """
    frame = inspect.currentframe()
    try:
        for _ in range(stacklevel + 1):
            if frame is None:
                break
            frame = frame.f_back
        if frame is None:
            raise EmptyModuleContext("no calling frame")
        module_name = frame.f_globals.get('__name__')
        module = sys.modules.get(module_name) if module_name else None
        if module is None or vars(module) is not frame.f_globals:
            raise EmptyModuleContext("calling code does not belong to an imported module", module_name)
        if module_name == '__main__' and not hasattr(module, '__file__'):
            raise EmptyModuleContext("interactive top level has no enclosing module")
        logger.debug(f"Caller module resolved to {module_name}")
        return module
    finally:
        del frame


def resolve(module_ref: Any, name: str, stacklevel: int = 1) -> BindingHandle:
    """Return a handle on ``name`` in ``module_ref`` (``None``: the calling module)."""
    if module_ref is None:
        module_ref = get_caller_module(stacklevel)
    return BindingHandle(get_own_binding_table(module_ref), name)
