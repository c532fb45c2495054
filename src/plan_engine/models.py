"""Pydantic models for the plan contract, payment proofs, and execution results.

The JSON contract produced by the planning oracle uses camelCase keys
(`mcp`, `tool`, `dependsOn`, `totalCost`, `expectedOutcome`); the models
accept those aliases and also the snake_case attribute names.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ExecutionState(str, Enum):
    PLANNING = "planning"
    AWAITING_PAYMENT = "awaiting_payment"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
        ExecutionState.EXPIRED,
        ExecutionState.CANCELLED,
    }
)


class StepState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class StepOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # Not attempted because a dependency failed.
    BLOCKED = "blocked"
    # Not attempted because execution was cancelled at a batch boundary.
    SKIPPED = "skipped"


class Tool(BaseModel):
    """One priced remote capability, identified by (service_id, tool_name)."""

    model_config = ConfigDict(frozen=True)

    service_id: str = Field(min_length=1)
    tool_name: str = Field(min_length=1)
    price: Decimal = Field(ge=0)
    currency: str | None = None
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)
    endpoint: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.service_id, self.tool_name)

    @property
    def qualified_name(self) -> str:
        return f"{self.service_id}::{self.tool_name}"


class ArgumentSource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(alias="taskId")
    field: str

    @field_validator("task_id", "field", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class PendingArgument(BaseModel):
    """A parameter whose value is the output field of an earlier step."""

    source: ArgumentSource
    type: str | None = None
    value: Any = None

    @property
    def source_index(self) -> int | None:
        try:
            return int(self.source.task_id)
        except ValueError:
            return None


def is_pending_argument(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    source = value.get("source")
    return isinstance(source, dict) and "taskId" in source and "field" in source


class Step(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    service_id: str | None = Field(default=None, alias="mcp")
    tool_name: str | None = Field(default=None, alias="tool")
    params: dict[str, Any] | None = None
    reason: str | None = None
    depends_on: list[int] = Field(default_factory=list, alias="dependsOn")

    @field_validator("depends_on", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class Plan(BaseModel):
    """Ordered steps plus the oracle's narrative fields.

    `quoted_cost` is whatever the oracle wrote in `totalCost`; it is advisory
    only. `total_cost` is filled in by the cost calculator.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    intent: str | None = None
    steps: list[Step] = Field(default_factory=list)
    quoted_cost: str | None = Field(default=None, alias="totalCost")
    total_cost: Decimal | None = Field(default=None, exclude=True)
    currency: str | None = Field(default=None, exclude=True)
    reasoning: str | None = None
    expected_outcome: str | None = Field(default=None, alias="expectedOutcome")

    @field_validator("quoted_cost", mode="before")
    @classmethod
    def _cost_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("steps", mode="before")
    @classmethod
    def _steps_none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    def to_contract(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json", by_alias=True)
        if self.total_cost is not None:
            payload["totalCost"] = _format_amount(self.total_cost, self.currency)
        return payload


class PaymentProof(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    transaction_reference: str = Field(alias="transactionReference", min_length=1)
    amount: Decimal
    payer: str

    @field_validator("amount", mode="before")
    @classmethod
    def _float_via_text(cls, value: Any) -> Any:
        # Decimal(0.03) is not 0.03; go through the shortest repr instead.
        if isinstance(value, float):
            return str(value)
        return value


class StepResult(BaseModel):
    step_index: int
    service_id: str | None = None
    tool_name: str | None = None
    state: StepState = StepState.PENDING
    outcome: StepOutcome | None = None
    output: Any = None
    error: str | None = None
    error_type: str | None = None
    attempts: int = 0
    duration_ms: float = 0.0
    resolved_params: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == StepOutcome.SUCCEEDED


class ExecutionReport(BaseModel):
    """Final, caller-facing outcome of one plan lifecycle."""

    state: ExecutionState
    intent: str | None = None
    total_cost: Decimal | None = None
    currency: str | None = None
    transaction_reference: str | None = None
    results: list[StepResult] = Field(default_factory=list)
    succeeded: list[int] = Field(default_factory=list)
    failed: list[int] = Field(default_factory=list)
    blocked: list[int] = Field(default_factory=list)
    skipped: list[int] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    duration_ms: float = 0.0

    def result_for(self, step_index: int) -> StepResult | None:
        for result in self.results:
            if result.step_index == step_index:
                return result
        return None

    def outputs(self) -> dict[int, Any]:
        return {result.step_index: result.output for result in self.results if result.succeeded}


def _format_amount(amount: Decimal, currency: str | None) -> str:
    text = format(amount.normalize(), "f") if amount else "0"
    return f"{text} {currency}" if currency else text
