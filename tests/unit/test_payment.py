import threading
from decimal import Decimal

import pytest

from plan_engine.errors import (
    AlreadyConsumedError,
    AlreadyPaidError,
    AmountMismatchError,
    InvalidStateTransitionError,
    PaymentExpiredError,
    PaymentNotReceivedError,
)
from plan_engine.execution.payment import GateState, PaymentGate, SpentProofLedger
from plan_engine.models import PaymentProof, Plan


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _priced_plan(total: str = "0.03") -> Plan:
    return Plan(intent="x", total_cost=Decimal(total), currency="ETH")


def _proof(amount="0.03", reference: str = "tx-1") -> PaymentProof:
    return PaymentProof(transactionReference=reference, amount=amount, payer="0xpayer")


def test_submit_then_consume_exactly_once() -> None:
    gate = PaymentGate()
    gate.open(_priced_plan())

    gate.submit(_proof())
    proof = gate.consume()

    assert proof.transaction_reference == "tx-1"
    assert gate.state == GateState.CONSUMED
    with pytest.raises(AlreadyConsumedError):
        gate.consume()


def test_float_amount_matches_decimal_total() -> None:
    gate = PaymentGate()
    gate.open(_priced_plan())

    gate.submit(_proof(amount=0.03))

    assert gate.state == GateState.PAID


def test_amount_mismatch_allows_corrected_proof() -> None:
    gate = PaymentGate()
    gate.open(_priced_plan())

    with pytest.raises(AmountMismatchError):
        gate.submit(_proof(amount="0.02"))
    with pytest.raises(AmountMismatchError):
        gate.submit(_proof(amount="0.04"))
    assert gate.state == GateState.AWAITING_PAYMENT

    gate.submit(_proof(amount="0.030"))
    assert gate.state == GateState.PAID


def test_second_submit_is_rejected() -> None:
    gate = PaymentGate()
    gate.open(_priced_plan())
    gate.submit(_proof())

    with pytest.raises(AlreadyPaidError):
        gate.submit(_proof(reference="tx-2"))


def test_consume_before_payment_fails() -> None:
    gate = PaymentGate()
    gate.open(_priced_plan())

    with pytest.raises(PaymentNotReceivedError):
        gate.consume()


def test_gate_must_be_opened_with_priced_plan_once() -> None:
    gate = PaymentGate()
    with pytest.raises(InvalidStateTransitionError):
        gate.submit(_proof())
    with pytest.raises(InvalidStateTransitionError):
        gate.open(Plan(intent="unpriced"))

    gate.open(_priced_plan())
    with pytest.raises(InvalidStateTransitionError):
        gate.open(_priced_plan())


def test_gate_keeps_its_own_copy_of_the_plan() -> None:
    plan = _priced_plan()
    gate = PaymentGate()
    gate.open(plan)

    plan.intent = "changed"

    assert gate.plan.intent == "x"


def test_window_expires_on_deadline() -> None:
    clock = FakeClock()
    gate = PaymentGate(clock=clock)
    gate.open(_priced_plan(), timeout_s=60)

    clock.now += 61

    assert gate.state == GateState.EXPIRED
    with pytest.raises(PaymentExpiredError):
        gate.submit(_proof())


def test_wait_for_payment_times_out_without_proof() -> None:
    gate = PaymentGate()
    gate.open(_priced_plan())

    assert gate.wait_for_payment(0.01) is False
    assert gate.expire() is True
    assert gate.state == GateState.EXPIRED


def test_wait_for_payment_wakes_on_submit() -> None:
    gate = PaymentGate()
    gate.open(_priced_plan())
    outcome = {}

    waiter = threading.Thread(target=lambda: outcome.setdefault("paid", gate.wait_for_payment(5)))
    waiter.start()
    gate.submit(_proof())
    waiter.join(5)

    assert outcome["paid"] is True


def test_paid_listeners_run_after_acceptance() -> None:
    gate = PaymentGate()
    gate.open(_priced_plan())
    seen = []
    gate.on_paid(lambda proof: seen.append((proof.transaction_reference, gate.state)))

    gate.submit(_proof())

    assert seen == [("tx-1", GateState.PAID)]


def test_cancel_only_before_payment() -> None:
    gate = PaymentGate()
    gate.open(_priced_plan())

    assert gate.cancel() is True
    with pytest.raises(InvalidStateTransitionError):
        gate.submit(_proof())

    paid = PaymentGate()
    paid.open(_priced_plan())
    paid.submit(_proof())
    assert paid.cancel() is False


def test_shared_ledger_blocks_proof_reuse_across_plans() -> None:
    ledger = SpentProofLedger()
    first = PaymentGate(ledger=ledger)
    second = PaymentGate(ledger=ledger)
    first.open(_priced_plan())
    second.open(_priced_plan())

    first.submit(_proof())
    first.consume()

    assert "tx-1" in ledger
    with pytest.raises(AlreadyConsumedError):
        second.submit(_proof())
    second.submit(_proof(reference="tx-2"))
    assert second.consume().transaction_reference == "tx-2"
    assert len(ledger) == 2


def test_ledger_claim_is_atomic() -> None:
    ledger = SpentProofLedger()
    ledger.claim("tx-1")

    with pytest.raises(AlreadyConsumedError):
        ledger.claim("tx-1")
