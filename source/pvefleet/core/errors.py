from __future__ import annotations


class FleetError(Exception):
    pass


class InvalidArgumentError(FleetError):
    pass


class FailedPreconditionError(FleetError):
    pass


class NotFoundError(FleetError):
    pass


class FleetNotFoundError(NotFoundError):
    pass


class LockHeldError(FailedPreconditionError):
    def __init__(self, name: str, holder: str, acquired_at: int):
        super().__init__(f"lock {name!r} is held by {holder} since {acquired_at}")
        self.name = name
        self.holder = holder
        self.acquired_at = acquired_at


class LockLostError(FailedPreconditionError):
    def __init__(self, name: str, holder: str, current: str | None):
        owner = f"taken over by {current}" if current else "released by someone else"
        super().__init__(f"lock {name!r} held by {holder} was {owner}")
        self.name = name
        self.holder = holder
        self.current = current


class ConflictError(FleetError):
    """Observed state diverged from the last-known state of a managed node."""


class ProviderError(FleetError):
    pass


class AuthenticationError(ProviderError):
    pass


class TransientProviderError(ProviderError):
    pass


class RetryExhaustedError(ProviderError):
    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class ProviderRejectedError(ProviderError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class OperationTimeoutError(ProviderError):
    def __init__(self, operation: str, node: str, timeout_s: float):
        super().__init__(f"{operation} of {node} timed out after {timeout_s:g}s")
        self.operation = operation
        self.node = node
        self.timeout_s = timeout_s
