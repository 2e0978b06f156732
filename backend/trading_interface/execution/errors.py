class ExecutionException(Exception):
    """Base exception for execution engine errors."""
    pass


class SkipExecution(ExecutionException):
    """Policy no-op: the user's execution is aborted silently and recorded as SKIPPED."""

    def __init__(self, metric: str, reason: str):
        self.metric = metric
        self.reason = reason
        super().__init__(reason)


class InsufficientFundsError(SkipExecution):
    def __init__(self, reason: str):
        super().__init__("INSUFFICIENT_FUNDS", reason)


class DuplicatePositionError(SkipExecution):
    def __init__(self, reason: str):
        super().__init__("DUPLICATE_POSITION", reason)


class PositionLimitExceededError(SkipExecution):
    def __init__(self, reason: str):
        super().__init__("POSITION_LIMIT", reason)


class PriceUnavailableError(SkipExecution):
    def __init__(self, reason: str):
        super().__init__("DATA_UNAVAILABLE", reason)


class PositionNotFoundError(ExecutionException):
    """Position does not exist, is not owned by the user, or is already closed."""
    pass
