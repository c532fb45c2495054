"""Plan lifecycle: planning, payment suspension, batched execution, report."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from plan_engine.errors import (
    AlreadyConsumedError,
    DependencyFailedError,
    InvalidStateTransitionError,
    PaymentExpiredError,
    PlanningOracleError,
    PlanParseError,
    RemoteInvocationError,
    StepExecutionError,
)
from plan_engine.execution.composer import DependencyGraphResolver, estimate_execution_time
from plan_engine.execution.payment import GateState, PaymentGate, SpentProofLedger
from plan_engine.execution.report import build_report
from plan_engine.models import (
    TERMINAL_STATES,
    ExecutionReport,
    ExecutionState,
    PaymentProof,
    Plan,
    StepOutcome,
    StepResult,
    StepState,
)
from plan_engine.planning.cost import CostCalculator
from plan_engine.planning.generator import PlanGenerator, plan_from_dict
from plan_engine.planning.validator import PlanValidator, ValidationReport
from plan_engine.tools.catalog import ToolCatalog
from plan_engine.tools.gateway import RemoteInvoker

logger = logging.getLogger(__name__)

MIN_WAIT_SLICE_S = 0.01


@dataclass(frozen=True)
class PlanQuote:
    plan: Plan
    validation: ValidationReport
    total_cost: Decimal | None = None
    currency: str | None = None
    estimated_seconds: float = 0.0
    batches: list[list[int]] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.validation.valid

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": self.plan.to_contract(),
            "accepted": self.accepted,
            "errors": list(self.validation.errors),
            "totalCost": str(self.total_cost) if self.total_cost is not None else None,
            "currency": self.currency,
            "estimatedSeconds": self.estimated_seconds,
            "batches": [list(batch) for batch in self.batches],
        }


class ExecutionController:
    """Drives one plan from query to final report.

    A controller owns exactly one plan and one payment gate. Payment resumes
    execution through the gate's paid-continuation, in the thread that
    submitted the proof.
    """

    def __init__(
        self,
        *,
        catalog: ToolCatalog,
        invoker: RemoteInvoker,
        generator: PlanGenerator | None = None,
        ledger: SpentProofLedger | None = None,
        max_parallel_steps: int = 4,
        payment_timeout_s: float | None = 900.0,
        seconds_per_step: float = 3.0,
        enrich_params: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_parallel_steps < 1:
            raise ValueError("max_parallel_steps must be at least 1")
        self.catalog = catalog
        self.invoker = invoker
        self.generator = generator
        self.validator = PlanValidator(catalog)
        self.cost_calculator = CostCalculator(catalog)
        self.gate = PaymentGate(ledger=ledger, clock=clock)
        self.gate.on_paid(self._on_paid)
        self.max_parallel_steps = max_parallel_steps
        self.payment_timeout_s = payment_timeout_s
        self.seconds_per_step = seconds_per_step
        self.enrich_params = enrich_params

        self._lock = threading.RLock()
        self._finished = threading.Event()
        self._cancel_requested = threading.Event()
        self._state = ExecutionState.PLANNING
        self._plan: Plan | None = None
        self._quote: PlanQuote | None = None
        self._report: ExecutionReport | None = None

    @property
    def state(self) -> ExecutionState:
        self._expire_if_due()
        return self._state

    @property
    def current_plan(self) -> Plan | None:
        return self._plan

    @property
    def quote(self) -> PlanQuote | None:
        return self._quote

    @property
    def report(self) -> ExecutionReport | None:
        self._expire_if_due()
        return self._report

    def plan(self, query: str) -> PlanQuote:
        """Ask the oracle for a plan, then validate and price it."""
        self._require_state(ExecutionState.PLANNING, "plan")
        if self.generator is None:
            raise InvalidStateTransitionError("No plan generator configured; use load_plan()")
        try:
            plan = self.generator.generate(query)
        except (PlanParseError, PlanningOracleError) as exc:
            logger.warning("Planning failed reason=%s", exc)
            self._finish(ExecutionState.FAILED, errors=[str(exc)])
            raise
        return self._accept(plan)

    def load_plan(self, raw: Plan | Mapping[str, Any]) -> PlanQuote:
        """Accept an already-produced plan, skipping the oracle."""
        self._require_state(ExecutionState.PLANNING, "load_plan")
        try:
            plan = raw if isinstance(raw, Plan) else plan_from_dict(dict(raw))
        except PlanParseError as exc:
            self._finish(ExecutionState.FAILED, errors=[str(exc)])
            raise
        return self._accept(plan)

    def submit_payment(self, proof: PaymentProof) -> ExecutionReport:
        """Hand a proof to the gate; on acceptance the plan executes before returning.

        Payment invariant violations propagate to the caller. A mismatched
        amount leaves the plan awaiting a corrected proof.
        """
        if self._state == ExecutionState.PLANNING:
            raise InvalidStateTransitionError("Cannot submit payment before a plan is accepted")
        try:
            self.gate.submit(proof)
        except PaymentExpiredError:
            self._expire_if_due()
            raise
        except AlreadyConsumedError as exc:
            # A replayed proof ends this plan; no further proofs are accepted.
            with self._lock:
                if self.gate.cancel():
                    self._finish(ExecutionState.FAILED, errors=[str(exc)])
            raise
        report = self.report
        if report is None:
            raise InvalidStateTransitionError(
                f"Payment accepted but plan did not run (state={self._state.value})"
            )
        return report

    def wait_for_payment(self, timeout_s: float | None = None) -> ExecutionState:
        """Block until paid, cancelled, or the payment window closes."""
        current = self.state
        if current == ExecutionState.PLANNING:
            raise InvalidStateTransitionError("Cannot wait for payment before a plan is accepted")
        if current != ExecutionState.AWAITING_PAYMENT:
            return current
        if not self.gate.wait_for_payment(timeout_s):
            self.gate.expire()
            self._expire_if_due()
        return self._state

    def wait(self, timeout_s: float | None = None) -> ExecutionReport | None:
        """Block until a terminal report exists or `timeout_s` elapses.

        While the plan awaits payment the wait is cut at the payment deadline,
        so an unpaid plan still ends as expired.
        """
        deadline = None if timeout_s is None else time.monotonic() + timeout_s
        while not self._finished.is_set():
            self._expire_if_due()
            if self._finished.is_set():
                break
            slice_s = self._payment_slice()
            if deadline is not None:
                left = deadline - time.monotonic()
                if left <= 0:
                    break
                slice_s = left if slice_s is None else min(slice_s, left)
            self._finished.wait(slice_s)
        return self._report

    def cancel(self) -> bool:
        with self._lock:
            self._expire_if_due()
            if self._state in TERMINAL_STATES:
                return False
            if self._state == ExecutionState.EXECUTING:
                logger.info("Cancellation requested; honoring at next batch boundary")
                self._cancel_requested.set()
                return True
            if not self.gate.cancel():
                # Paid concurrently; execution is starting.
                self._cancel_requested.set()
                return True
            self._finish(ExecutionState.CANCELLED)
            return True

    def _accept(self, plan: Plan) -> PlanQuote:
        validation = self.validator.validate(plan)
        if not validation.valid:
            logger.warning("Plan rejected errors=%d", len(validation.errors))
            self._plan = plan
            self._quote = PlanQuote(plan=plan, validation=validation)
            self._finish(ExecutionState.FAILED, errors=list(validation.errors))
            return self._quote

        priced = self.cost_calculator.apply(plan)
        resolver = DependencyGraphResolver(priced)
        self._plan = priced
        self._quote = PlanQuote(
            plan=priced,
            validation=validation,
            total_cost=priced.total_cost,
            currency=priced.currency,
            estimated_seconds=estimate_execution_time(priced, seconds_per_step=self.seconds_per_step),
            batches=resolver.batches(),
        )
        with self._lock:
            self.gate.open(priced, timeout_s=self.payment_timeout_s)
            self._transition(ExecutionState.AWAITING_PAYMENT)
        logger.info(
            "Plan created steps=%d cost=%s currency=%s",
            len(priced.steps),
            priced.total_cost,
            priced.currency,
        )
        return self._quote

    def _on_paid(self, proof: PaymentProof) -> None:
        with self._lock:
            if self._state != ExecutionState.AWAITING_PAYMENT:
                return
            self._transition(ExecutionState.EXECUTING)
        try:
            consumed = self.gate.consume()
        except AlreadyConsumedError as exc:
            logger.warning("Payment replay rejected tx=%s", proof.transaction_reference)
            self._finish(ExecutionState.FAILED, errors=[str(exc)], proof=proof)
            return
        self._execute(consumed)

    def _execute(self, proof: PaymentProof) -> None:
        plan = self.gate.plan
        if plan is None:
            raise InvalidStateTransitionError("Cannot execute before a plan is accepted")
        started_at = time.perf_counter()
        resolver = DependencyGraphResolver(plan)
        batches = resolver.batches()
        results: dict[int, StepResult] = {}
        cancelled = False

        for number, batch in enumerate(batches):
            if self._cancel_requested.is_set():
                cancelled = True
                for index in (index for later in batches[number:] for index in later):
                    results[index] = _not_attempted(plan, index, StepOutcome.SKIPPED, "Cancelled before dispatch")
                break

            runnable: list[int] = []
            for index in batch:
                failed = resolver.blocked_by(index, results)
                if failed:
                    error = DependencyFailedError(index, failed)
                    results[index] = _not_attempted(
                        plan, index, StepOutcome.BLOCKED, str(error), error_type=type(error).__name__
                    )
                else:
                    runnable.append(index)

            logger.info(
                "Dispatching batch=%d/%d steps=%s blocked=%d",
                number + 1,
                len(batches),
                runnable,
                len(batch) - len(runnable),
            )
            results.update(self._run_batch(plan, resolver, runnable, results))

        if cancelled:
            state = ExecutionState.CANCELLED
        elif all(result.succeeded for result in results.values()):
            state = ExecutionState.COMPLETED
        else:
            state = ExecutionState.FAILED
        self._finish(
            state,
            results=results,
            proof=proof,
            duration_ms=_duration_ms(started_at),
        )

    def _run_batch(
        self,
        plan: Plan,
        resolver: DependencyGraphResolver,
        indices: list[int],
        results: Mapping[int, StepResult],
    ) -> dict[int, StepResult]:
        outputs = {index: result.output for index, result in results.items() if result.succeeded}
        if not indices:
            return {}
        if self.max_parallel_steps == 1 or len(indices) == 1:
            return {index: self._run_step(plan, resolver, index, outputs) for index in indices}

        workers = min(self.max_parallel_steps, len(indices))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="plan-step") as pool:
            futures = {
                index: pool.submit(self._run_step, plan, resolver, index, outputs)
                for index in indices
            }
            return {index: future.result() for index, future in futures.items()}

    def _run_step(
        self,
        plan: Plan,
        resolver: DependencyGraphResolver,
        index: int,
        outputs: Mapping[int, Any],
    ) -> StepResult:
        step = plan.steps[index]
        started_at = time.perf_counter()
        base = {"step_index": index, "service_id": step.service_id, "tool_name": step.tool_name}
        params: dict[str, Any] | None = None
        try:
            params = resolver.resolve_params(index, outputs, enrich=self.enrich_params)
            tool = self.catalog.require(step.service_id, step.tool_name)
            invocation = self.invoker.call(tool, params)
        except RemoteInvocationError as exc:
            return _failed(base, exc, params, started_at, attempts=exc.attempts)
        except StepExecutionError as exc:
            return _failed(base, exc, params, started_at)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected step failure step=%d tool=%s", index, step.tool_name)
            return _failed(base, exc, params, started_at)

        logger.info(
            "Step completed step=%d tool=%s attempts=%d duration_ms=%.2f",
            index,
            step.tool_name,
            invocation.attempts,
            invocation.duration_ms,
        )
        return StepResult(
            **base,
            state=StepState.DONE,
            outcome=StepOutcome.SUCCEEDED,
            output=invocation.output,
            attempts=invocation.attempts,
            duration_ms=_duration_ms(started_at),
            resolved_params=params,
        )

    def _finish(
        self,
        state: ExecutionState,
        *,
        results: Mapping[int, StepResult] | None = None,
        proof: PaymentProof | None = None,
        errors: list[str] | None = None,
        duration_ms: float = 0.0,
    ) -> None:
        with self._lock:
            self._report = build_report(
                state=state,
                plan=self._plan,
                results=results,
                proof=proof,
                errors=errors,
                duration_ms=duration_ms,
            )
            self._transition(state)
        self._finished.set()
        logger.info(
            "Plan finished state=%s succeeded=%d failed=%d blocked=%d",
            state.value,
            len(self._report.succeeded),
            len(self._report.failed),
            len(self._report.blocked),
        )

    def _transition(self, state: ExecutionState) -> None:
        if self._state in TERMINAL_STATES:
            raise InvalidStateTransitionError(
                f"Plan already finished in state {self._state.value}"
            )
        logger.debug("State transition from=%s to=%s", self._state.value, state.value)
        self._state = state

    def _expire_if_due(self) -> None:
        with self._lock:
            if self._state != ExecutionState.AWAITING_PAYMENT:
                return
            if self.gate.state == GateState.EXPIRED:
                self._finish(ExecutionState.EXPIRED, errors=["Payment window expired"])

    def _payment_slice(self) -> float | None:
        if self._state != ExecutionState.AWAITING_PAYMENT:
            return None
        remaining = self.gate.remaining_s()
        if remaining is None:
            return None
        return max(remaining, MIN_WAIT_SLICE_S)

    def _require_state(self, expected: ExecutionState, operation: str) -> None:
        current = self.state
        if current != expected:
            raise InvalidStateTransitionError(
                f"Cannot {operation} in state {current.value}"
            )


def _not_attempted(
    plan: Plan,
    index: int,
    outcome: StepOutcome,
    message: str,
    *,
    error_type: str | None = None,
) -> StepResult:
    step = plan.steps[index]
    return StepResult(
        step_index=index,
        service_id=step.service_id,
        tool_name=step.tool_name,
        state=StepState.ERROR if outcome == StepOutcome.BLOCKED else StepState.PENDING,
        outcome=outcome,
        error=message,
        error_type=error_type,
    )


def _failed(
    base: dict[str, Any],
    exc: Exception,
    params: dict[str, Any] | None,
    started_at: float,
    *,
    attempts: int = 0,
) -> StepResult:
    logger.warning(
        "Step failed step=%d tool=%s error=%s reason=%s",
        base["step_index"],
        base["tool_name"],
        type(exc).__name__,
        exc,
    )
    return StepResult(
        **base,
        state=StepState.ERROR,
        outcome=StepOutcome.FAILED,
        error=str(exc),
        error_type=type(exc).__name__,
        attempts=attempts,
        duration_ms=_duration_ms(started_at),
        resolved_params=params,
    )


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
