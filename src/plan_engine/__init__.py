"""Plan, price, pay for, and execute multi-step remote tool workflows."""

from plan_engine.engine import build_controller, load_catalog
from plan_engine.execution import (
    DependencyGraphResolver,
    ExecutionController,
    PaymentGate,
    PlanQuote,
    SpentProofLedger,
    render_report,
)
from plan_engine.models import (
    ExecutionReport,
    ExecutionState,
    PaymentProof,
    Plan,
    Step,
    StepResult,
    Tool,
)
from plan_engine.planning import CostCalculator, PlanGenerator, PlanValidator
from plan_engine.tools import RemoteInvoker, ToolCatalog

__all__ = [
    "CostCalculator",
    "DependencyGraphResolver",
    "ExecutionController",
    "ExecutionReport",
    "ExecutionState",
    "PaymentGate",
    "PaymentProof",
    "Plan",
    "PlanGenerator",
    "PlanQuote",
    "PlanValidator",
    "RemoteInvoker",
    "SpentProofLedger",
    "Step",
    "StepResult",
    "Tool",
    "ToolCatalog",
    "build_controller",
    "load_catalog",
    "render_report",
]
