# quantalogic_patchbox/__init__.py
from .exceptions import (
    EmptyModuleContext,
    NoScopeAvailable,
    NotOwnBinding,
    RestorationFailure,
    RestorationWarning,
    SubstitutionError,
    UnknownBinding,
)
from .bindings import BindingHandle, BindingTable, ModuleTable, get_caller_module, get_own_binding_table, resolve
from .scope import HookScope, Scope, as_scope
from .probe import infer_scope, pytest_recognizer, register_recognizer, unittest_recognizer, unregister_recognizer
from .substitution import apply, substitute, substituted

__all__ = [
    'substitute',
    'substituted',
    'apply',
    'resolve',
    'get_own_binding_table',
    'get_caller_module',
    'BindingTable',
    'ModuleTable',
    'BindingHandle',
    'Scope',
    'HookScope',
    'as_scope',
    'infer_scope',
    'register_recognizer',
    'unregister_recognizer',
    'unittest_recognizer',
    'pytest_recognizer',
    'SubstitutionError',
    'EmptyModuleContext',
    'UnknownBinding',
    'NotOwnBinding',
    'NoScopeAvailable',
    'RestorationFailure',
    'RestorationWarning',
]
