"""Exception taxonomy for planning, payment, and execution stages."""

from __future__ import annotations

from typing import Any


class PlanEngineError(Exception):
    """Base class for every error raised by the engine."""


class PlanParseError(PlanEngineError):
    """Oracle output did not contain a parseable plan."""


class PlanningOracleError(PlanEngineError):
    """The planning oracle could not be reached or returned an unusable envelope."""


class InvalidStateTransitionError(PlanEngineError):
    """A controller operation was called in a state that does not allow it."""


class CatalogError(PlanEngineError):
    """A catalog source could not be loaded."""


# Validation family. These are collected, not raised, by PlanValidator.


class PlanValidationError(PlanEngineError):
    def __init__(self, message: str, *, step_index: int | None = None) -> None:
        self.step_index = step_index
        self.detail = message
        rendered = message if step_index is None else f"Step {step_index}: {message}"
        super().__init__(rendered)


class MissingFieldError(PlanValidationError):
    pass


class UnknownToolError(PlanValidationError):
    pass


class InvalidDependencyError(PlanValidationError):
    pass


class DependencyOutOfRangeError(PlanValidationError):
    pass


class MixedCurrencyError(PlanValidationError):
    pass


# Payment family.


class PaymentError(PlanEngineError):
    pass


class AmountMismatchError(PaymentError):
    pass


class AlreadyPaidError(PaymentError):
    pass


class AlreadyConsumedError(PaymentError):
    pass


class PaymentExpiredError(PaymentError):
    pass


class PaymentNotReceivedError(PaymentError):
    pass


# Per-step execution family.


class StepExecutionError(PlanEngineError):
    pass


class TypeMismatchError(StepExecutionError):
    def __init__(self, message: str, *, step_index: int) -> None:
        self.step_index = step_index
        super().__init__(message)


class DependencyFailedError(StepExecutionError):
    def __init__(self, step_index: int, failed: list[int]) -> None:
        self.step_index = step_index
        self.failed = sorted(failed)
        joined = ", ".join(str(idx) for idx in self.failed)
        super().__init__(f"Step {step_index} blocked by failed dependencies: {joined}")


class TransportError(StepExecutionError):
    """Connection, timeout, or server-side failure; safe to retry."""


class RemoteInvocationError(StepExecutionError):
    def __init__(
        self,
        message: str,
        *,
        tool: str,
        attempts: int,
        cause: BaseException | None = None,
    ) -> None:
        self.tool = tool
        self.attempts = attempts
        self.cause = cause
        super().__init__(message)


class RemoteToolError(RemoteInvocationError):
    """The tool service answered with a well-formed failure."""

    def __init__(
        self,
        message: str,
        *,
        tool: str,
        code: str | None = None,
        details: Any = None,
        attempts: int = 1,
    ) -> None:
        self.code = code
        self.details = details
        super().__init__(message, tool=tool, attempts=attempts)
