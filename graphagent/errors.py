"""Failure taxonomy for delegated runs.

Soft errors are resolved inside the loop by turning them into a tool output or a corrective
conversation turn. Fatal errors mark the delegation ``failed`` and escape the executor.
"""


class DelegationError(Exception):
    fatal = True

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class PlanningRequiredError(DelegationError):
    fatal = False


class UnknownToolError(DelegationError):
    fatal = False


class BudgetExceededError(DelegationError):
    fatal = False


class DuplicateEdgeDelegationError(DelegationError):
    fatal = False


class ToolExecutionError(DelegationError):
    fatal = False


class EmptySummaryError(DelegationError):
    pass


class NoWritesPerformedError(DelegationError):
    pass


class LLMServiceError(DelegationError):
    def __init__(self, message: str = "", status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DelegationCancelledError(DelegationError):
    pass
