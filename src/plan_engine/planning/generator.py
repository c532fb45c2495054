"""Turn a natural-language query into a structured Plan via the planning oracle."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from plan_engine.errors import PlanParseError
from plan_engine.models import Plan
from plan_engine.planning.extract import extract_json_object
from plan_engine.planning.oracle import PlanningOracle
from plan_engine.tools.catalog import ToolCatalog

logger = logging.getLogger(__name__)

TOOL_SEPARATOR = "::"

PROMPT_TEMPLATE = """You are an AI agent orchestrator. Analyze this user query and create an optimal execution plan using available tools.

User Query: "{query}"

Available Tools:
{tools}

Create an execution plan that:
1. Identifies the user's intent
2. Selects the most relevant tools
3. Determines optimal execution order
4. Specifies dependencies between steps
5. Provides reasoning for each step

Respond in this exact JSON format:
{{
  "intent": "Brief description of what user wants",
  "steps": [
    {{
      "mcp": "{example_service}",
      "tool": "{example_tool}",
      "params": {{}},
      "reason": "Why this step is needed",
      "dependsOn": []
    }}
  ],
  "totalCost": "0",
  "reasoning": "Overall reasoning for this plan",
  "expectedOutcome": "What the user will get"
}}

To use the output of an earlier step as a parameter, set the parameter to
{{"source": {{"taskId": "<earlier step index>", "field": "<output field, or 0 for the single result>"}}, "type": "<number|integer|string|boolean|array|object>", "value": null}}
and list that step index in "dependsOn".

CRITICAL RULES:
- The "tool" field must be EXACTLY the tool name, NOT prefixed with the service name
- The "mcp" field must be the service name
- Only use tools that are actually needed
- Optimize for cost (use cheaper tools when possible)
- A step may only depend on steps that come before it
- Be specific with params based on the query
- Return ONLY valid JSON"""


class PlanGenerator:
    def __init__(
        self,
        *,
        catalog: ToolCatalog,
        oracle: PlanningOracle,
        timeout_s: float = 20.0,
    ) -> None:
        self.catalog = catalog
        self.oracle = oracle
        self.timeout_s = timeout_s

    def build_prompt(self, query: str) -> str:
        tools = self.catalog.all()
        lines = [
            f"- {tool.tool_name} (MCP: {tool.service_id}, Price: {_price_label(tool.price, tool.currency)}): "
            f"{tool.description}"
            for tool in tools
        ]
        example = tools[0] if tools else None
        return PROMPT_TEMPLATE.format(
            query=query.replace('"', '\\"'),
            tools="\n".join(lines) if lines else "- (no tools available)",
            example_service=example.service_id if example else "service",
            example_tool=example.tool_name if example else "tool",
        )

    def generate(self, query: str) -> Plan:
        prompt = self.build_prompt(query)
        logger.info("Requesting plan from oracle tools=%d", len(self.catalog))
        text = self.oracle.complete(prompt, timeout_s=self.timeout_s)
        plan = parse_plan(text)
        logger.info("Oracle plan parsed steps=%d intent=%s", len(plan.steps), plan.intent)
        return plan


def parse_plan(text: str) -> Plan:
    """Parse oracle text into a Plan and normalize tool-name artifacts."""
    return plan_from_dict(extract_json_object(text))


def plan_from_dict(payload: dict[str, Any]) -> Plan:
    try:
        plan = Plan.model_validate(payload)
    except ValidationError as exc:
        raise PlanParseError(f"Oracle plan does not match the plan contract: {exc}") from exc
    return normalize_tool_names(plan)


def normalize_tool_names(plan: Plan) -> Plan:
    steps = []
    for step in plan.steps:
        name = step.tool_name
        if not name or TOOL_SEPARATOR not in name:
            steps.append(step)
            continue
        prefix, _, bare = name.rpartition(TOOL_SEPARATOR)
        update: dict[str, Any] = {"tool_name": bare}
        if not step.service_id and prefix:
            update["service_id"] = prefix.rpartition(TOOL_SEPARATOR)[2]
        logger.debug("Normalized tool name raw=%s tool=%s", name, bare)
        steps.append(step.model_copy(update=update))
    return plan.model_copy(update={"steps": steps})


def _price_label(price: Any, currency: str | None) -> str:
    return f"{price} {currency}" if currency else str(price)
