"""Authoritative plan cost from catalog prices."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from plan_engine.errors import MixedCurrencyError
from plan_engine.models import Plan
from plan_engine.tools.catalog import ToolCatalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CostBreakdown:
    total: Decimal
    currency: str | None
    per_step: tuple[Decimal, ...]


class CostCalculator:
    """Sum catalog prices per step. Assumes the plan already passed validation;
    raises `MixedCurrencyError` rather than adding prices in different units."""

    def __init__(self, catalog: ToolCatalog) -> None:
        self.catalog = catalog

    def calculate(self, plan: Plan) -> Decimal:
        return self.breakdown(plan).total

    def breakdown(self, plan: Plan) -> CostBreakdown:
        total = Decimal("0")
        per_step: list[Decimal] = []
        currencies: set[str] = set()
        for step in plan.steps:
            tool = self.catalog.lookup(step.service_id, step.tool_name)
            price = tool.price if tool is not None else Decimal("0")
            if tool is not None and tool.currency:
                currencies.add(tool.currency)
            per_step.append(price)
            total += price

        currency: str | None = None
        if len(currencies) == 1:
            currency = next(iter(currencies))
        elif len(currencies) > 1:
            raise MixedCurrencyError(f"Plan mixes currencies {sorted(currencies)}")
        return CostBreakdown(total=total, currency=currency, per_step=tuple(per_step))

    def apply(self, plan: Plan) -> Plan:
        """Return a copy of the plan carrying the computed total."""
        breakdown = self.breakdown(plan)
        if plan.quoted_cost:
            logger.debug(
                "Ignoring oracle quoted cost quoted=%s computed=%s", plan.quoted_cost, breakdown.total
            )
        return plan.model_copy(
            update={"total_cost": breakdown.total, "currency": breakdown.currency}
        )
