# quantalogic_patchbox/scope.py
import logging
from typing import Any, Callable, List

logger = logging.getLogger(__name__)


class Scope:
    """
    A lexical region whose exit runs registered actions, newest first.

    Usable directly as ``with Scope() as scope:``; actions also run when the
    block exits with an exception, which then propagates unchanged.
    """

    def __init__(self, label: str = "scope") -> None:
        self.label = label
        self._actions: List[Callable[[], Any]] = []
        self.closed = False

    def on_exit(self, action: Callable[[], Any]) -> None:
        if self.closed:
            raise RuntimeError(f"{self.label} has already exited")
        self._actions.append(action)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        logger.debug(f"Closing {self.label} with {len(self._actions)} exit action(s)")
        errors: List[Exception] = []
        while self._actions:
            action = self._actions.pop()
            try:
                action()
            except Exception as e:
                logger.error(f"Exit action {action!r} of {self.label} failed: {e}")
                errors.append(e)
        if errors:
            raise errors[0]

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False

    def __repr__(self):
        state = "closed" if self.closed else "open"
        return f"<Scope {self.label} {state}>"


class HookScope(Scope):
    """Scope whose exit is driven by someone else's finish hook."""

    def __init__(self, register: Callable[[Callable[[], Any]], Any], label: str) -> None:
        super().__init__(label)
        self._register = register

    def on_exit(self, action: Callable[[], Any]) -> None:
        self._register(action)


# Finish hooks we know how to drive, in lookup order.
_HOOK_NAMES = ('on_exit', 'callback', 'addCleanup', 'addfinalizer')


def as_scope(obj: Any) -> Scope:
    """
    Adapt an object exposing a finish hook to a Scope.

    Accepts a Scope, a ``contextlib.ExitStack`` (``callback``), a
    ``unittest.TestCase`` (``addCleanup``) or a pytest request/node
    (``addfinalizer``).
    """
    if isinstance(obj, Scope):
        return obj
    for hook_name in _HOOK_NAMES:
        hook = getattr(obj, hook_name, None)
        if callable(hook):
            return HookScope(hook, f"{type(obj).__name__}.{hook_name}")
    raise TypeError(f"{type(obj).__name__} object has no finish hook ({', '.join(_HOOK_NAMES)})")
