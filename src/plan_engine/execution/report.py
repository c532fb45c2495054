"""Assemble and render the caller-facing execution report."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from plan_engine.models import (
    ExecutionReport,
    ExecutionState,
    PaymentProof,
    Plan,
    StepOutcome,
    StepResult,
)


def build_report(
    *,
    state: ExecutionState,
    plan: Plan | None,
    results: Mapping[int, StepResult] | None = None,
    proof: PaymentProof | None = None,
    errors: list[str] | None = None,
    duration_ms: float = 0.0,
) -> ExecutionReport:
    ordered = [results[index] for index in sorted(results)] if results else []
    collected = list(errors or [])
    for result in ordered:
        if result.error and result.outcome in (StepOutcome.FAILED, StepOutcome.BLOCKED):
            collected.append(_step_error_line(result))

    return ExecutionReport(
        state=state,
        intent=plan.intent if plan else None,
        total_cost=plan.total_cost if plan else None,
        currency=plan.currency if plan else None,
        transaction_reference=proof.transaction_reference if proof else None,
        results=ordered,
        succeeded=_indices(ordered, StepOutcome.SUCCEEDED),
        failed=_indices(ordered, StepOutcome.FAILED),
        blocked=_indices(ordered, StepOutcome.BLOCKED),
        skipped=_indices(ordered, StepOutcome.SKIPPED),
        errors=collected,
        duration_ms=duration_ms,
    )


def render_report(report: ExecutionReport) -> str:
    """One-line human summary, e.g. for CLI output or logs."""
    lines: list[str] = [f"State: {report.state.value}"]
    if report.intent:
        lines.append(f"Intent: {report.intent.strip()}")
    if report.total_cost is not None:
        cost = format(report.total_cost.normalize(), "f") if report.total_cost else "0"
        lines.append(f"Cost: {cost} {report.currency}" if report.currency else f"Cost: {cost}")
    if report.transaction_reference:
        lines.append(f"Payment: {report.transaction_reference}")

    if report.results:
        lines.append(
            f"Steps: {len(report.succeeded)} succeeded, {len(report.failed)} failed, "
            f"{len(report.blocked)} blocked, {len(report.skipped)} skipped"
        )
        outputs = [
            f"#{result.step_index} {result.tool_name}={_preview(result.output)}"
            for result in report.results
            if result.succeeded
        ]
        if outputs:
            lines.append("Outputs: " + "; ".join(outputs[:5]))

    if report.errors:
        lines.append("Errors: " + "; ".join(report.errors[:5]))

    return " | ".join(lines)


def _step_error_line(result: StepResult) -> str:
    tool = f"{result.service_id}::{result.tool_name}"
    if result.error.startswith(f"Step {result.step_index}"):
        return f"{result.error} ({tool})"
    return f"Step {result.step_index} ({tool}): {result.error}"


def _indices(results: list[StepResult], outcome: StepOutcome) -> list[int]:
    return [result.step_index for result in results if result.outcome == outcome]


def _preview(value: Any, limit: int = 80) -> str:
    try:
        text = json.dumps(value, default=str, sort_keys=True)
    except (TypeError, ValueError):
        text = str(value)
    return text if len(text) <= limit else text[: limit - 3] + "..."
