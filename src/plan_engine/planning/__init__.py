"""Plan generation, validation, and costing."""

from plan_engine.planning.cost import CostBreakdown, CostCalculator
from plan_engine.planning.extract import extract_json_object, find_balanced_object
from plan_engine.planning.generator import PlanGenerator, normalize_tool_names, parse_plan
from plan_engine.planning.oracle import OpenAIPlanningOracle, PlanningOracle, build_oracle
from plan_engine.planning.validator import PlanValidator, ValidationReport

__all__ = [
    "CostBreakdown",
    "CostCalculator",
    "OpenAIPlanningOracle",
    "PlanGenerator",
    "PlanValidator",
    "PlanningOracle",
    "ValidationReport",
    "build_oracle",
    "extract_json_object",
    "find_balanced_object",
    "normalize_tool_names",
    "parse_plan",
]
