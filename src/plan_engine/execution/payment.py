"""Payment gate: holds a validated plan until an exact-amount proof arrives.

State machine per plan:

    awaiting_payment --submit(ok)--> paid --consume--> consumed
    awaiting_payment --deadline/expire--> expired
    awaiting_payment --cancel--> cancelled

Only `consume` releases a proof to the executor, and it does so once.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections.abc import Callable
from decimal import Decimal
from enum import Enum

from plan_engine.errors import (
    AlreadyConsumedError,
    AlreadyPaidError,
    AmountMismatchError,
    InvalidStateTransitionError,
    PaymentExpiredError,
    PaymentNotReceivedError,
)
from plan_engine.models import PaymentProof, Plan

logger = logging.getLogger(__name__)

PaidCallback = Callable[[PaymentProof], None]


class GateState(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    CONSUMED = "consumed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SpentProofLedger:
    """Transaction references already spent on some plan.

    Share one ledger across gates to stop a proof from paying for two plans.
    """

    def __init__(self) -> None:
        self._spent: set[str] = set()
        self._lock = threading.Lock()

    def claim(self, transaction_reference: str) -> None:
        with self._lock:
            if transaction_reference in self._spent:
                raise AlreadyConsumedError(
                    f"Payment {transaction_reference} was already used for another plan"
                )
            self._spent.add(transaction_reference)

    def __contains__(self, transaction_reference: object) -> bool:
        with self._lock:
            return transaction_reference in self._spent

    def __len__(self) -> int:
        with self._lock:
            return len(self._spent)


class PaymentGate:
    def __init__(
        self,
        *,
        ledger: SpentProofLedger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self._clock = clock
        self._condition = threading.Condition()
        self._state: GateState | None = None
        self._plan: Plan | None = None
        self._expected: Decimal | None = None
        self._deadline: float | None = None
        self._proof: PaymentProof | None = None
        self._listeners: list[PaidCallback] = []

    @property
    def state(self) -> GateState | None:
        with self._condition:
            self._expire_if_due()
            return self._state

    @property
    def plan(self) -> Plan | None:
        return self._plan

    @property
    def expected_amount(self) -> Decimal | None:
        return self._expected

    @property
    def proof(self) -> PaymentProof | None:
        return self._proof

    def remaining_s(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def open(self, plan: Plan, *, timeout_s: float | None = None) -> None:
        if plan.total_cost is None:
            raise InvalidStateTransitionError("Plan has no computed total cost")
        with self._condition:
            if self._state is not None:
                raise InvalidStateTransitionError(
                    f"Payment gate already opened (state={self._state.value})"
                )
            self._plan = copy.deepcopy(plan)
            self._expected = plan.total_cost
            self._deadline = self._clock() + timeout_s if timeout_s is not None else None
            self._state = GateState.AWAITING_PAYMENT
        logger.info(
            "Payment gate opened amount=%s currency=%s timeout_s=%s",
            plan.total_cost,
            plan.currency,
            timeout_s,
        )

    def on_paid(self, callback: PaidCallback) -> None:
        """Register a continuation run (in the submitting thread) once payment is accepted."""
        self._listeners.append(callback)

    def submit(self, proof: PaymentProof) -> None:
        with self._condition:
            self._expire_if_due()
            if self._state is None:
                raise InvalidStateTransitionError("Payment gate has not been opened")
            if self._state == GateState.EXPIRED:
                raise PaymentExpiredError("Payment window has expired")
            if self._state == GateState.CANCELLED:
                raise InvalidStateTransitionError("Payment window was closed before payment")
            if self._state in (GateState.PAID, GateState.CONSUMED):
                raise AlreadyPaidError("Plan has already been paid")
            if self.ledger is not None and proof.transaction_reference in self.ledger:
                raise AlreadyConsumedError(
                    f"Payment {proof.transaction_reference} was already used for another plan"
                )
            if proof.amount != self._expected:
                logger.warning(
                    "Payment amount mismatch expected=%s received=%s tx=%s",
                    self._expected,
                    proof.amount,
                    proof.transaction_reference,
                )
                raise AmountMismatchError(
                    f"Payment amount mismatch. Expected: {self._expected}, Received: {proof.amount}"
                )
            self._proof = proof
            self._state = GateState.PAID
            self._condition.notify_all()
            listeners = list(self._listeners)

        logger.info("Payment accepted tx=%s payer=%s", proof.transaction_reference, proof.payer)
        for listener in listeners:
            listener(proof)

    def consume(self) -> PaymentProof:
        with self._condition:
            if self._state == GateState.CONSUMED:
                raise AlreadyConsumedError("Payment proof has already been consumed")
            if self._state != GateState.PAID or self._proof is None:
                raise PaymentNotReceivedError("Payment not received")
            if self.ledger is not None:
                self.ledger.claim(self._proof.transaction_reference)
            self._state = GateState.CONSUMED
            return self._proof

    def expire(self) -> bool:
        with self._condition:
            if self._state != GateState.AWAITING_PAYMENT:
                return False
            self._state = GateState.EXPIRED
            self._condition.notify_all()
        logger.info("Payment window expired")
        return True

    def cancel(self) -> bool:
        with self._condition:
            if self._state not in (None, GateState.AWAITING_PAYMENT):
                return False
            self._state = GateState.CANCELLED
            self._condition.notify_all()
        return True

    def wait_for_payment(self, timeout_s: float | None = None) -> bool:
        """Block until the gate leaves awaiting_payment; True if it was paid."""
        with self._condition:
            limit = timeout_s
            remaining = self.remaining_s()
            if remaining is not None:
                limit = remaining if limit is None else min(limit, remaining)
            self._condition.wait_for(
                lambda: self._state != GateState.AWAITING_PAYMENT, timeout=limit
            )
            self._expire_if_due()
            return self._state in (GateState.PAID, GateState.CONSUMED)

    def _expire_if_due(self) -> None:
        if (
            self._state == GateState.AWAITING_PAYMENT
            and self._deadline is not None
            and self._clock() >= self._deadline
        ):
            self._state = GateState.EXPIRED
            self._condition.notify_all()
            logger.info("Payment window expired")
