"""Dependency-ordered execution behind a payment gate."""

from plan_engine.execution.composer import (
    DependencyGraphResolver,
    coerce_value,
    effective_dependencies,
    enrich_params,
    estimate_execution_time,
    extract_field,
    plan_depth,
)
from plan_engine.execution.controller import ExecutionController, PlanQuote
from plan_engine.execution.payment import GateState, PaymentGate, SpentProofLedger
from plan_engine.execution.report import build_report, render_report

__all__ = [
    "DependencyGraphResolver",
    "ExecutionController",
    "GateState",
    "PaymentGate",
    "PlanQuote",
    "SpentProofLedger",
    "build_report",
    "coerce_value",
    "effective_dependencies",
    "enrich_params",
    "estimate_execution_time",
    "extract_field",
    "plan_depth",
    "render_report",
]
