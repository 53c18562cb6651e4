"""
Error taxonomy.

Build-time errors (BuildError subclasses) abort the whole run before any
remote mutation. API errors are scoped to a single operation.
"""
from typing import Iterable, Optional


class ConvergeError(Exception):
    """Base class for every error raised by converge."""


class ConfigError(ConvergeError):
    pass


# --------------------------------------------------------- build-time
class BuildError(ConvergeError):
    pass


class ParseError(BuildError):
    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class CycleError(BuildError):
    def __init__(self, members: Iterable[str], internal: bool = False):
        self.members = sorted(members)
        prefix = "internal invariant violation: " if internal else ""
        super().__init__(f"{prefix}dependency cycle between {', '.join(self.members)}")
        self.internal = internal


class UnresolvedReferenceError(BuildError):
    def __init__(self, where: str, reference: str, reason: str = "is not declared"):
        super().__init__(f"{where}: reference '{reference}' {reason}")
        self.where = where
        self.reference = reference


class ProtectedResourceError(BuildError):
    def __init__(self, address: str, action: str):
        super().__init__(
            f"{address} has lifecycle.prevent_destroy set and cannot be {action}"
        )
        self.address = address
        self.action = action


# --------------------------------------------------------- execution-time
class APIError(ConvergeError):
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class TransientAPIError(APIError):
    """Rate limiting, throttling, timeouts. Retried with backoff."""


class PermanentAPIError(APIError):
    """Validation or permission failures. Never retried."""


# --------------------------------------------------------- state
class ConcurrentModificationError(ConvergeError):
    pass


class StateCorruptionError(ConvergeError):
    pass
