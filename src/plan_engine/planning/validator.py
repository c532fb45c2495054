"""Structural and semantic plan validation.

Every check runs; errors accumulate instead of short-circuiting so callers
can show the oracle (or a human) the complete list of problems.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from plan_engine.errors import (
    DependencyOutOfRangeError,
    InvalidDependencyError,
    MissingFieldError,
    MixedCurrencyError,
    PlanValidationError,
    UnknownToolError,
)
from plan_engine.models import PendingArgument, Plan, Step, is_pending_argument
from plan_engine.tools.catalog import ToolCatalog


@dataclass(frozen=True)
class ValidationReport:
    valid: bool
    errors: list[str]
    issues: tuple[PlanValidationError, ...] = ()

    def issues_of(self, kind: type[PlanValidationError]) -> list[PlanValidationError]:
        return [issue for issue in self.issues if isinstance(issue, kind)]


class PlanValidator:
    def __init__(self, catalog: ToolCatalog) -> None:
        self.catalog = catalog

    def validate(self, plan: Plan) -> ValidationReport:
        issues: list[PlanValidationError] = []

        if not _present(plan.intent):
            issues.append(MissingFieldError("Missing intent"))
        if not plan.steps:
            issues.append(MissingFieldError("No steps defined"))
        if not _present(plan.reasoning):
            issues.append(MissingFieldError("Missing reasoning"))

        step_count = len(plan.steps)
        for index, step in enumerate(plan.steps):
            issues.extend(self._step_issues(index, step))
            issues.extend(_dependency_issues(index, step, step_count))
            issues.extend(_pending_argument_issues(index, step, step_count))
        issues.extend(self._currency_issues(plan))

        return ValidationReport(
            valid=not issues,
            errors=[str(issue) for issue in issues],
            issues=tuple(issues),
        )

    def _step_issues(self, index: int, step: Step) -> list[PlanValidationError]:
        issues: list[PlanValidationError] = []
        if not _present(step.service_id):
            issues.append(MissingFieldError("Missing mcp", step_index=index))
        if not _present(step.tool_name):
            issues.append(MissingFieldError("Missing tool", step_index=index))
        if _present(step.service_id) and _present(step.tool_name):
            if self.catalog.lookup(step.service_id, step.tool_name) is None:
                issues.append(
                    UnknownToolError(
                        f"Unknown tool {step.service_id}::{step.tool_name}", step_index=index
                    )
                )
        if step.params is None:
            issues.append(MissingFieldError("Missing params", step_index=index))
        if not _present(step.reason):
            issues.append(MissingFieldError("Missing reason", step_index=index))
        return issues

    def _currency_issues(self, plan: Plan) -> list[PlanValidationError]:
        currencies: set[str] = set()
        for step in plan.steps:
            if not (_present(step.service_id) and _present(step.tool_name)):
                continue
            tool = self.catalog.lookup(step.service_id, step.tool_name)
            if tool is not None and tool.currency:
                currencies.add(tool.currency)
        if len(currencies) > 1:
            return [MixedCurrencyError(f"Plan mixes currencies {sorted(currencies)}")]
        return []


def _dependency_issues(index: int, step: Step, step_count: int) -> list[PlanValidationError]:
    issues: list[PlanValidationError] = []
    for dep in step.depends_on:
        if dep < 0 or dep >= index:
            issues.append(
                InvalidDependencyError(
                    f"Invalid dependency on step {dep} (must depend on earlier steps)",
                    step_index=index,
                )
            )
        if dep >= step_count:
            issues.append(
                DependencyOutOfRangeError(
                    f"Dependency index {dep} out of range", step_index=index
                )
            )
    return issues


def _pending_argument_issues(index: int, step: Step, step_count: int) -> list[PlanValidationError]:
    issues: list[PlanValidationError] = []
    for path, raw in iter_pending_arguments(step.params or {}):
        try:
            pending = PendingArgument.model_validate(raw)
        except ValidationError:
            issues.append(
                MissingFieldError(f"Malformed pending argument '{path}'", step_index=index)
            )
            continue
        source = pending.source_index
        if source is None:
            issues.append(
                InvalidDependencyError(
                    f"Pending argument '{path}' has non-numeric taskId {pending.source.task_id!r}",
                    step_index=index,
                )
            )
            continue
        if source < 0 or source >= index:
            issues.append(
                InvalidDependencyError(
                    f"Pending argument '{path}' references step {source} "
                    "(must reference earlier steps)",
                    step_index=index,
                )
            )
        if source >= step_count:
            issues.append(
                DependencyOutOfRangeError(
                    f"Pending argument '{path}' references step {source} out of range",
                    step_index=index,
                )
            )
        if not pending.source.field:
            issues.append(
                MissingFieldError(f"Pending argument '{path}' has empty field", step_index=index)
            )
    return issues


def iter_pending_arguments(value: Any, path: str = "") -> Iterator[tuple[str, dict[str, Any]]]:
    """Yield (dotted path, raw dict) for every PendingArgument nested in params."""
    if is_pending_argument(value):
        yield path, value
        return
    if isinstance(value, dict):
        for key, item in value.items():
            yield from iter_pending_arguments(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, list):
        for position, item in enumerate(value):
            yield from iter_pending_arguments(item, f"{path}[{position}]")


def _present(value: str | None) -> bool:
    return isinstance(value, str) and bool(value.strip())
