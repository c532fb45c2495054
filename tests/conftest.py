from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from fakes import CALC_ENDPOINT, FakeTransport, calculator_entries, calculator_handlers

from plan_engine.config.settings import get_settings
from plan_engine.execution.controller import ExecutionController
from plan_engine.execution.payment import SpentProofLedger
from plan_engine.tools.catalog import ToolCatalog
from plan_engine.tools.gateway import RemoteInvoker


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def calculator_catalog() -> ToolCatalog:
    return ToolCatalog.from_entries(
        calculator_entries(),
        service_endpoints={"calc": CALC_ENDPOINT},
    )


@pytest.fixture
def calculator_transport() -> FakeTransport:
    return FakeTransport(calculator_handlers())


@pytest.fixture
def make_controller(calculator_catalog: ToolCatalog) -> Callable[..., ExecutionController]:
    def _make(
        transport: FakeTransport,
        *,
        catalog: ToolCatalog | None = None,
        ledger: SpentProofLedger | None = None,
        max_parallel_steps: int = 4,
        max_attempts: int = 3,
        **kwargs: Any,
    ) -> ExecutionController:
        invoker = RemoteInvoker(
            transport=transport,
            max_attempts=max_attempts,
            backoff_base_s=0.0,
            sleep=lambda _: None,
        )
        return ExecutionController(
            catalog=catalog or calculator_catalog,
            invoker=invoker,
            ledger=ledger,
            max_parallel_steps=max_parallel_steps,
            **kwargs,
        )

    return _make
