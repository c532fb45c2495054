import json

import pytest
from fakes import FakeOracle

from plan_engine.errors import PlanParseError
from plan_engine.planning.extract import extract_json_object, find_balanced_object
from plan_engine.planning.generator import PlanGenerator, normalize_tool_names, parse_plan
from plan_engine.planning.validator import PlanValidator
from plan_engine.tools.catalog import ToolCatalog

WALLET_PLAN = {
    "intent": "Analyze a wallet",
    "steps": [
        {
            "mcp": "chainintel",
            "tool": "chainintel::analyze-wallet",
            "params": {"address": "0xabc", "chain": "base"},
            "reason": "Wallet overview",
            "dependsOn": [],
        }
    ],
    "totalCost": "0.01 ETH",
    "reasoning": "One call answers the question",
    "expectedOutcome": "Wallet summary",
}


def test_extract_prefers_fenced_block() -> None:
    text = 'Sure! {"ignored": true}\n```json\n{"intent": "x", "steps": []}\n```\nDone.'

    assert extract_json_object(text) == {"intent": "x", "steps": []}


def test_extract_scans_past_a_broken_fenced_block() -> None:
    text = 'Draft:\n```json\n{"intent": "draft",\n```\nFinal: {"intent": "x", "steps": []}'

    assert extract_json_object(text) == {"intent": "x", "steps": []}


def test_extract_falls_back_to_balanced_braces() -> None:
    text = 'Here is the plan: {"intent": "x", "note": "use {braces} freely"} hope it helps'

    assert extract_json_object(text)["note"] == "use {braces} freely"


def test_balanced_scan_ignores_escaped_quotes() -> None:
    text = 'prefix {"a": "say \\"}\\" now", "b": 1} suffix'

    assert json.loads(find_balanced_object(text)) == {"a": 'say "}" now', "b": 1}


@pytest.mark.parametrize(
    "text",
    ["no json here", "", '{"intent": "unterminated"', "```json\n[1, 2]\n```"],
)
def test_extract_rejects_text_without_an_object(text) -> None:
    with pytest.raises(PlanParseError):
        extract_json_object(text)


def test_parse_plan_normalizes_service_prefixed_tool_names() -> None:
    plan = parse_plan("```json\n" + json.dumps(WALLET_PLAN) + "\n```")

    assert plan.steps[0].tool_name == "analyze-wallet"
    assert plan.steps[0].service_id == "chainintel"
    report = PlanValidator(ToolCatalog.default()).validate(plan)
    assert report.valid, report.errors


def test_normalize_fills_missing_service_from_prefix() -> None:
    payload = json.loads(json.dumps(WALLET_PLAN))
    payload["steps"][0]["mcp"] = None
    plan = normalize_tool_names(parse_plan(json.dumps(payload)))

    assert plan.steps[0].service_id == "chainintel"
    assert plan.steps[0].tool_name == "analyze-wallet"


def test_parse_plan_rejects_contract_mismatch() -> None:
    with pytest.raises(PlanParseError):
        parse_plan('{"intent": "x", "steps": "not a list"}')


def test_generator_sends_catalog_in_prompt_and_parses_reply() -> None:
    oracle = FakeOracle("Plan follows\n```json\n" + json.dumps(WALLET_PLAN) + "\n```")
    generator = PlanGenerator(catalog=ToolCatalog.default(), oracle=oracle)

    plan = generator.generate('Is wallet "0xabc" risky?')

    prompt = oracle.prompts[0]
    assert "risk-score (MCP: chainintel, Price: 0.005 ETH)" in prompt
    assert '\\"0xabc\\"' in prompt
    assert plan.intent == "Analyze a wallet"
    assert plan.quoted_cost == "0.01 ETH"
    assert plan.total_cost is None


def test_generator_propagates_parse_failure() -> None:
    generator = PlanGenerator(catalog=ToolCatalog.default(), oracle=FakeOracle("I cannot help"))

    with pytest.raises(PlanParseError):
        generator.generate("anything")
