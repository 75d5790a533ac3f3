# quantalogic_patchbox/exceptions.py
from dataclasses import dataclass
from typing import List, Optional


class SubstitutionError(Exception):
    """Base class for every error raised while installing a substitution."""


class EmptyModuleContext(SubstitutionError):
    def __init__(self, message: str, module_ref: Optional[object] = None) -> None:
        super().__init__(message)
        self.message = message
        self.module_ref = module_ref

    def __str__(self):
        if self.module_ref is None:
            return self.message
        return f"{self.message} (got {self.module_ref!r})"


class UnknownBinding(SubstitutionError):
    def __init__(self, module_name: str, name: str) -> None:
        super().__init__(f"{module_name}.{name}")
        self.module_name = module_name
        self.name = name

    def __str__(self):
        return f"'{self.module_name}' has no binding named '{self.name}'"


class NotOwnBinding(SubstitutionError):
    def __init__(self, module_name: str, name: str, reason: str = "") -> None:
        super().__init__(f"{module_name}.{name}")
        self.module_name = module_name
        self.name = name
        self.reason = reason

    def __str__(self):
        msg = f"'{self.name}' is visible in '{self.module_name}' but not owned by it"
        if self.reason:
            msg += f": {self.reason}"
        return msg


class NoScopeAvailable(SubstitutionError):
    def __init__(self, message: str = "no active test case found on the call stack") -> None:
        super().__init__(message)
        self.message = message

    def __str__(self):
        return f"{self.message}; pass an explicit scope or use substituted()"


@dataclass
class RestorationFailure:
    qualname: str
    error: BaseException

    def __str__(self):
        return f"{self.qualname}: {type(self.error).__name__}: {self.error}"


class RestorationWarning(UserWarning):
    def __init__(self, failures: List[RestorationFailure]) -> None:
        super().__init__(failures)
        self.failures = failures

    def __str__(self):
        names = ", ".join(f.qualname for f in self.failures)
        return f"{len(self.failures)} binding(s) could not be restored: {names}"
