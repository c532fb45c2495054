"""Dependency-graph resolution: execution batches and pending-argument values.

A step's effective dependencies are its `dependsOn` indices plus the source
step of every PendingArgument nested in its params. Steps are layered so
that batch N holds every step whose dependencies all sit in batches < N;
steps inside a batch are independent of each other.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Mapping
from typing import Any

from plan_engine.errors import InvalidDependencyError, StepExecutionError, TypeMismatchError
from plan_engine.models import PendingArgument, Plan, Step, StepResult, StepState, is_pending_argument

logger = logging.getLogger(__name__)

PRIMARY_FIELD = "0"
PREVIOUS_RESULTS_KEY = "_previousResults"


class DependencyGraphResolver:
    def __init__(self, plan: Plan) -> None:
        self.plan = plan
        self._dependencies: dict[int, frozenset[int]] = {}
        for index, step in enumerate(plan.steps):
            deps = effective_dependencies(step)
            bad = sorted(dep for dep in deps if dep < 0 or dep >= index)
            if bad:
                raise InvalidDependencyError(
                    f"Invalid dependency on steps {bad} (must depend on earlier steps)",
                    step_index=index,
                )
            self._dependencies[index] = deps

    def dependencies_of(self, index: int) -> frozenset[int]:
        return self._dependencies[index]

    def dependents_of(self, index: int) -> set[int]:
        """All steps that directly or transitively depend on `index`."""
        found: set[int] = set()
        for candidate in range(index + 1, len(self.plan.steps)):
            deps = self._dependencies[candidate]
            if index in deps or deps & found:
                found.add(candidate)
        return found

    def batches(self) -> list[list[int]]:
        levels: dict[int, int] = {}
        for index in range(len(self.plan.steps)):
            deps = self._dependencies[index]
            levels[index] = 1 + max(levels[dep] for dep in deps) if deps else 0

        grouped: dict[int, list[int]] = {}
        for index, level in levels.items():
            grouped.setdefault(level, []).append(index)
        return [sorted(grouped[level]) for level in sorted(grouped)]

    def depth(self) -> int:
        return len(self.batches())

    def is_ready(self, index: int, results: Mapping[int, StepResult]) -> bool:
        return all(
            dep in results and results[dep].state == StepState.DONE
            for dep in self._dependencies[index]
        )

    def blocked_by(self, index: int, results: Mapping[int, StepResult]) -> list[int]:
        return sorted(
            dep
            for dep in self._dependencies[index]
            if dep in results and results[dep].state == StepState.ERROR
        )

    def resolve_params(
        self, index: int, outputs: Mapping[int, Any], *, enrich: bool = False
    ) -> dict[str, Any]:
        """Copy of the step's params with every PendingArgument replaced by its value.

        `outputs` maps completed step indices to their outputs. Raises
        `TypeMismatchError` when the referenced field is missing or cannot be
        coerced to the declared type. With `enrich`, the result then passes
        through `enrich_params` using the step's `dependsOn` order.
        """
        step = self.plan.steps[index]
        params = step.params or {}

        def _resolve(raw: dict[str, Any], path: str) -> Any:
            pending = PendingArgument.model_validate(raw)
            source = pending.source_index
            if source is None or source not in outputs:
                raise StepExecutionError(
                    f"Step {index}: argument '{path}' waits on step "
                    f"{pending.source.task_id}, which has not completed"
                )
            try:
                extracted = extract_field(outputs[source], pending.source.field)
                value = coerce_value(extracted, pending.type)
            except (KeyError, IndexError, TypeError, ValueError) as exc:
                raise TypeMismatchError(
                    f"Step {index}: argument '{path}' from step {source} "
                    f"field '{pending.source.field}': {exc}",
                    step_index=index,
                ) from exc
            logger.debug(
                "Resolved pending argument step=%d path=%s source=%d field=%s",
                index,
                path,
                source,
                pending.source.field,
            )
            return value

        resolved = _substitute(copy.deepcopy(params), "", _resolve)
        if enrich:
            resolved = enrich_params(resolved, step.depends_on, outputs)
        return resolved


def effective_dependencies(step: Step) -> frozenset[int]:
    deps = set(step.depends_on)
    for raw in _pending_values(step.params or {}):
        source = raw["source"].get("taskId")
        try:
            deps.add(int(source))
        except (TypeError, ValueError):
            continue
    return frozenset(deps)


def enrich_params(
    params: dict[str, Any], depends_on: list[int], outputs: Mapping[int, Any]
) -> dict[str, Any]:
    """Attach dependency outputs and fill wallet fields the step left unset.

    Adds `_previousResults` as `[{"step": i, "result": output}, ...]`, then
    copies `address` and `chain` (or `primaryChain`) from the `wallet` object
    of the first dependency's output. Values already present are kept.
    """
    enriched = dict(params)
    if not depends_on:
        return enriched
    enriched.setdefault(
        PREVIOUS_RESULTS_KEY, [{"step": dep, "result": outputs.get(dep)} for dep in depends_on]
    )

    wallet = _wallet_of(outputs.get(depends_on[0]))
    if wallet is None:
        return enriched
    if _unset(enriched.get("address")) and wallet.get("address"):
        enriched["address"] = wallet["address"]
        logger.debug("Filled address from dependency step=%d", depends_on[0])
    chain = wallet.get("chain") or wallet.get("primaryChain")
    if _unset(enriched.get("chain")) and chain:
        enriched["chain"] = chain
        logger.debug("Filled chain from dependency step=%d", depends_on[0])
    return enriched


def plan_depth(plan: Plan) -> int:
    if not plan.steps:
        return 0
    return DependencyGraphResolver(plan).depth()


def estimate_execution_time(plan: Plan, *, seconds_per_step: float = 3.0) -> float:
    """Seconds per step times the longest dependency chain."""
    return seconds_per_step * plan_depth(plan)


def extract_field(output: Any, field: str) -> Any:
    """Pull `field` out of a step output.

    Field "0" denotes the primary value: the output itself when it is a
    scalar, the first element of a list, or the `result` member (or sole
    member) of an object. Dotted paths walk nested objects and lists.
    """
    if field == "":
        return output
    if isinstance(output, dict) and field in output:
        return output[field]
    if field == PRIMARY_FIELD:
        return _primary_value(output)

    current = output
    for part in field.split("."):
        if isinstance(current, dict):
            if part not in current:
                raise KeyError(f"no field '{part}'")
            current = current[part]
        elif isinstance(current, (list, tuple)):
            if not part.lstrip("-").isdigit():
                raise KeyError(f"no field '{part}' on a list")
            current = current[int(part)]
        else:
            raise KeyError(f"no field '{part}' on {type(current).__name__}")
    return current


def coerce_value(value: Any, type_name: str | None) -> Any:
    kind = (type_name or "").strip().lower()
    if kind in {"", "any"}:
        return value
    coercer = _COERCERS.get(kind)
    if coercer is None:
        raise ValueError(f"unsupported declared type '{type_name}'")
    return coercer(value)


def _primary_value(output: Any) -> Any:
    if isinstance(output, dict):
        if "result" in output:
            return output["result"]
        if len(output) == 1:
            return next(iter(output.values()))
        raise KeyError("object output has no single primary value")
    if isinstance(output, (list, tuple)):
        if not output:
            raise IndexError("empty list output has no primary value")
        return output[0]
    return output


def _wallet_of(output: Any) -> dict[str, Any] | None:
    if not isinstance(output, dict):
        return None
    actual = output.get("result") or output
    wallet = actual.get("wallet") if isinstance(actual, dict) else None
    return wallet if isinstance(wallet, dict) else None


def _unset(value: Any) -> bool:
    return value is None or value == ""


def _to_number(value: Any) -> int | float:
    if isinstance(value, bool):
        raise TypeError("boolean is not a number")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            return float(text)
    raise TypeError(f"{type(value).__name__} is not a number")


def _to_integer(value: Any) -> int:
    number = _to_number(value)
    if isinstance(number, float):
        if not number.is_integer():
            raise ValueError(f"{value!r} is not an integer")
        return int(number)
    return number


def _to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise TypeError(f"{type(value).__name__} is not a string")


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    raise TypeError(f"{value!r} is not a boolean")


def _to_array(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    raise TypeError(f"{type(value).__name__} is not an array")


def _to_object(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    raise TypeError(f"{type(value).__name__} is not an object")


_COERCERS: dict[str, Callable[[Any], Any]] = {
    "number": _to_number,
    "float": _to_number,
    "integer": _to_integer,
    "int": _to_integer,
    "string": _to_string,
    "str": _to_string,
    "boolean": _to_boolean,
    "bool": _to_boolean,
    "array": _to_array,
    "list": _to_array,
    "object": _to_object,
    "dict": _to_object,
}


def _pending_values(value: Any):
    if is_pending_argument(value):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _pending_values(item)
    elif isinstance(value, list):
        for item in value:
            yield from _pending_values(item)


def _substitute(value: Any, path: str, resolve: Callable[[dict[str, Any], str], Any]) -> Any:
    if is_pending_argument(value):
        return resolve(value, path)
    if isinstance(value, dict):
        return {
            key: _substitute(item, f"{path}.{key}" if path else str(key), resolve)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_substitute(item, f"{path}[{position}]", resolve) for position, item in enumerate(value)]
    return value
