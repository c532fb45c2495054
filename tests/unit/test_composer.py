import pytest
from fakes import pending, plan_payload, step

from plan_engine.errors import InvalidDependencyError, StepExecutionError, TypeMismatchError
from plan_engine.execution.composer import (
    DependencyGraphResolver,
    coerce_value,
    effective_dependencies,
    enrich_params,
    estimate_execution_time,
    extract_field,
    plan_depth,
)
from plan_engine.models import Plan, StepOutcome, StepResult, StepState


def _plan(*steps) -> Plan:
    return Plan.model_validate(plan_payload(*steps))


def test_batches_group_independent_steps() -> None:
    plan = _plan(
        step("add"),
        step("multiply"),
        step("subtract", depends_on=[0, 1]),
        step("add"),
        step("multiply", depends_on=[2]),
        step("add", depends_on=[0]),
    )

    assert DependencyGraphResolver(plan).batches() == [[0, 1, 3], [2, 5], [4]]
    assert plan_depth(plan) == 3
    assert estimate_execution_time(plan) == 9.0
    assert estimate_execution_time(plan, seconds_per_step=1.5) == 4.5


def test_pending_sources_count_as_dependencies() -> None:
    plan = _plan(step("add"), step("add"), step("subtract", {"a": pending(0), "b": pending(1)}))

    assert effective_dependencies(plan.steps[2]) == frozenset({0, 1})
    assert DependencyGraphResolver(plan).batches() == [[0, 1], [2]]


def test_resolver_rejects_forward_references() -> None:
    with pytest.raises(InvalidDependencyError):
        DependencyGraphResolver(_plan(step("add", depends_on=[1]), step("add")))


def test_empty_plan_has_zero_depth() -> None:
    assert plan_depth(Plan()) == 0


def test_dependents_are_transitive() -> None:
    plan = _plan(step("add"), step("add", depends_on=[0]), step("add", depends_on=[1]), step("add"))

    assert DependencyGraphResolver(plan).dependents_of(0) == {1, 2}


def test_readiness_and_blocking_follow_dependency_results() -> None:
    plan = _plan(step("add"), step("add"), step("subtract", depends_on=[0, 1]))
    resolver = DependencyGraphResolver(plan)
    done = StepResult(step_index=0, state=StepState.DONE, outcome=StepOutcome.SUCCEEDED, output=1)
    failed = StepResult(step_index=1, state=StepState.ERROR, outcome=StepOutcome.FAILED, error="boom")

    assert not resolver.is_ready(2, {0: done})
    assert resolver.is_ready(0, {})
    assert resolver.blocked_by(2, {0: done, 1: failed}) == [1]
    assert not resolver.is_ready(2, {0: done, 1: failed})


def test_resolve_params_substitutes_nested_values() -> None:
    plan = _plan(
        step("add"),
        step("multiply"),
        step(
            "subtract",
            {"a": pending(0), "b": pending(1, field="value"), "extra": {"items": [pending(0, type_name="string")]}},
        ),
    )

    params = DependencyGraphResolver(plan).resolve_params(2, {0: 8, 1: {"value": "4"}})

    assert params == {"a": 8, "b": 4, "extra": {"items": ["8"]}}
    assert plan.steps[2].params["a"]["value"] is None


def test_resolve_params_requires_completed_source() -> None:
    plan = _plan(step("add"), step("subtract", {"a": pending(0)}))

    with pytest.raises(StepExecutionError):
        DependencyGraphResolver(plan).resolve_params(1, {})


def test_coercion_failure_is_attributed_to_dependent_step() -> None:
    plan = _plan(step("add"), step("subtract", {"a": pending(0, type_name="number")}))

    with pytest.raises(TypeMismatchError) as excinfo:
        DependencyGraphResolver(plan).resolve_params(1, {0: {"result": "eight"}})

    assert excinfo.value.step_index == 1
    assert "'a'" in str(excinfo.value)


def test_enrichment_fills_wallet_fields_from_first_dependency() -> None:
    plan = _plan(step("add"), step("add"), step("multiply", {"chain": "solana"}, depends_on=[0, 1]))
    wallet_output = {"result": {"wallet": {"address": "0xabc", "primaryChain": "base"}}}
    outputs = {0: wallet_output, 1: 7}

    params = DependencyGraphResolver(plan).resolve_params(2, outputs, enrich=True)

    assert params["address"] == "0xabc"
    assert params["chain"] == "solana"
    assert params["_previousResults"] == [
        {"step": 0, "result": wallet_output},
        {"step": 1, "result": 7},
    ]


def test_enrichment_is_opt_in_and_runs_after_substitution() -> None:
    plan = _plan(
        step("add"),
        step("subtract", {"address": pending(0, field="wallet.address", type_name="string")}, depends_on=[0]),
    )
    outputs = {0: {"wallet": {"address": "0xdef", "chain": "base"}}}
    resolver = DependencyGraphResolver(plan)

    assert resolver.resolve_params(1, outputs) == {"address": "0xdef"}

    enriched = resolver.resolve_params(1, outputs, enrich=True)
    assert enriched["address"] == "0xdef"
    assert enriched["chain"] == "base"


def test_enrichment_without_dependencies_is_a_copy() -> None:
    params = {"address": ""}

    enriched = enrich_params(params, [], {0: {"wallet": {"address": "0xabc"}}})

    assert enriched == {"address": ""}
    assert enriched is not params


@pytest.mark.parametrize(
    ("output", "field", "expected"),
    [
        (8, "0", 8),
        ({"result": 8}, "0", 8),
        ({"sum": 8}, "0", 8),
        ([8, 9], "0", 8),
        ({"wallet": {"risk": {"score": 71}}}, "wallet.risk.score", 71),
        ({"holders": [{"address": "0x1"}]}, "holders.0.address", "0x1"),
        ({"a.b": 1}, "a.b", 1),
    ],
)
def test_extract_field(output, field, expected) -> None:
    assert extract_field(output, field) == expected


@pytest.mark.parametrize(
    ("output", "field"),
    [({"a": 1, "b": 2}, "0"), ({"a": 1}, "missing"), (8, "value"), ([], "0")],
)
def test_extract_field_missing(output, field) -> None:
    with pytest.raises((KeyError, IndexError)):
        extract_field(output, field)


@pytest.mark.parametrize(
    ("value", "type_name", "expected"),
    [
        ("8", "number", 8),
        ("2.5", "number", 2.5),
        (4.0, "integer", 4),
        (True, "string", "true"),
        (12, "string", "12"),
        ("FALSE", "boolean", False),
        (1, "boolean", True),
        ((1, 2), "array", [1, 2]),
        ({"k": 1}, "object", {"k": 1}),
        ({"k": 1}, None, {"k": 1}),
        ([1], "any", [1]),
    ],
)
def test_coerce_value(value, type_name, expected) -> None:
    assert coerce_value(value, type_name) == expected


@pytest.mark.parametrize(
    ("value", "type_name"),
    [(True, "number"), ("abc", "number"), (2.5, "integer"), ([1], "string"), ("yes", "boolean"), (1, "array"), (1, "date")],
)
def test_coerce_value_rejects(value, type_name) -> None:
    with pytest.raises((TypeError, ValueError)):
        coerce_value(value, type_name)
