"""Wiring factory: assemble a controller from settings."""

from __future__ import annotations

import logging

from plan_engine.config.settings import Settings, get_settings
from plan_engine.execution.controller import ExecutionController
from plan_engine.execution.payment import SpentProofLedger
from plan_engine.logging_setup import configure_logging
from plan_engine.planning.generator import PlanGenerator
from plan_engine.planning.oracle import PlanningOracle, build_oracle
from plan_engine.tools.catalog import ToolCatalog
from plan_engine.tools.gateway import CompletionHandler, RemoteInvoker, ToolTransport

logger = logging.getLogger(__name__)


def load_catalog(settings: Settings) -> ToolCatalog:
    path = settings.resolved_catalog_path()
    if path is None:
        return ToolCatalog.default(service_endpoints=settings.service_endpoints)
    logger.info("Loading tool catalog path=%s", path)
    return ToolCatalog.from_json_file(path, service_endpoints=settings.service_endpoints)


def build_invoker(
    settings: Settings,
    *,
    transport: ToolTransport | None = None,
    completion_handler: CompletionHandler | None = None,
) -> RemoteInvoker:
    return RemoteInvoker(
        transport=transport,
        timeout_s=settings.tool_timeout_s,
        max_attempts=settings.tool_max_attempts,
        backoff_base_s=settings.tool_backoff_base_s,
        backoff_max_s=settings.tool_backoff_max_s,
        completion_handler=completion_handler,
    )


def build_controller(
    settings: Settings | None = None,
    *,
    catalog: ToolCatalog | None = None,
    oracle: PlanningOracle | None = None,
    transport: ToolTransport | None = None,
    invoker: RemoteInvoker | None = None,
    ledger: SpentProofLedger | None = None,
    completion_handler: CompletionHandler | None = None,
) -> ExecutionController:
    """One controller per plan. Pass the same `ledger` to every controller
    that must reject a payment proof already spent elsewhere."""
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    catalog = catalog or load_catalog(settings)
    oracle = oracle or build_oracle(settings)
    if oracle is None:
        logger.warning("No planning oracle configured; only load_plan() is available")

    generator = (
        PlanGenerator(catalog=catalog, oracle=oracle, timeout_s=settings.oracle_timeout_s)
        if oracle is not None
        else None
    )
    return ExecutionController(
        catalog=catalog,
        invoker=invoker
        or build_invoker(settings, transport=transport, completion_handler=completion_handler),
        generator=generator,
        ledger=ledger,
        max_parallel_steps=settings.max_parallel_steps,
        payment_timeout_s=settings.payment_timeout_s,
        seconds_per_step=settings.seconds_per_step,
        enrich_params=settings.enrich_params,
    )
