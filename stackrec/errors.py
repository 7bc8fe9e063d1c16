from __future__ import annotations


class StackError(Exception):
    """Base class for everything the reconciler raises on purpose."""


class DeclarationError(StackError):
    pass


# Structural errors. Raised while the graph is built, before any runtime call.


class GraphError(StackError):
    pass


class DuplicateNameError(GraphError):
    def __init__(self, name: str):
        super().__init__(f"Resource '{name}' is declared more than once.")
        self.name = name


class UnknownReferenceError(GraphError):
    def __init__(self, source: str, target: str):
        super().__init__(f"Resource '{source}' references unknown resource '{target}'.")
        self.source = source
        self.target = target


class CycleError(GraphError):
    def __init__(self, cycle: list[str]):
        super().__init__("Dependency cycle: " + " -> ".join(cycle))
        self.cycle = cycle


# Runtime errors. Contained to the failing resource and its dependents.


class AdapterError(StackError):
    pass


class RuntimeUnavailable(AdapterError):
    """The container engine could not be reached. Retryable."""


class Unsupported(AdapterError):
    """The change cannot be applied in place; the resource must be replaced."""


class NotFound(AdapterError):
    pass


class OutputUnavailable(AdapterError):
    pass


class Cancelled(StackError):
    pass
