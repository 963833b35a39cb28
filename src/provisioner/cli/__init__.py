"""Operator CLI: ``provisioner drivers|history|breakers|worker|init-db``."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Sequence

from provisioner.audit import AuditLedger, AuditRepository
from provisioner.cli.ux import console, header, info, print_table, success
from provisioner.config import Settings, get_settings
from provisioner.core.errors import ConfigurationError, ResourceNotFound, main_with_error_handling
from provisioner.db.repositories import ResourceRepository
from provisioner.db.session import create_schema, dispose_engine, init_engine, session_scope
from provisioner.drivers.registry import DriverRegistry, default_factories
from provisioner.logging import configure_logging
from provisioner.resilience import CircuitBreakerRegistry


def _registry(settings: Settings) -> DriverRegistry:
    return DriverRegistry.from_config(settings.drivers, default_factories(), settings=settings)


@main_with_error_handling()
def drivers_command(settings: Settings) -> int:
    registry = _registry(settings)
    specs = registry.describe()
    header("Registered drivers")
    if not specs:
        info("No drivers configured (set PROVISIONER_DRIVERS)")
        return 0
    print_table(
        "Drivers",
        ["ID", "Name", "Type", "Capabilities"],
        [
            [spec.driver_id, spec.name, spec.provider_type.value, ", ".join(sorted(spec.capabilities))]
            for spec in specs
        ],
    )
    asyncio.run(registry.aclose())
    return 0


async def _load_history(settings: Settings, resource_id: str):
    init_engine(settings)
    try:
        async with session_scope() as session:
            resource = await ResourceRepository(session).get(resource_id)
            if resource is None:
                raise ResourceNotFound(f"Resource '{resource_id}' not found", {"resource_id": resource_id})
            ledger = AuditLedger(
                AuditRepository(session), hash_provider_ids=settings.audit_hash_provider_ids
            )
            return resource, await ledger.history(resource_id)
    finally:
        await dispose_engine()


@main_with_error_handling()
def history_command(settings: Settings, resource_id: str) -> int:
    resource, entries = asyncio.run(_load_history(settings, resource_id))
    header(f"Resource {resource_id}")
    console.print(f"  order: {resource.order_ref}  driver: {resource.driver}  status: {resource.status.value}")
    print_table(
        "Audit history",
        ["#", "When", "Actor", "Action", "Before", "After"],
        [
            [
                entry.id,
                entry.created_at.isoformat(timespec="seconds"),
                entry.actor,
                entry.action,
                entry.status_before.value if entry.status_before else "-",
                entry.status_after.value,
            ]
            for entry in entries
        ],
    )
    return 0


@main_with_error_handling()
def breakers_command(settings: Settings) -> int:
    """Show per-driver breaker configuration and this process's breaker state."""
    registry = _registry(settings)
    breakers = CircuitBreakerRegistry(settings)
    for driver_id in registry.ids():
        breakers.get(driver_id)
    header("Circuit breakers")
    console.print(
        f"  open above {settings.breaker_failure_ratio:.0%} failures "
        f"(min {settings.breaker_min_calls} calls in {settings.breaker_window_seconds:.0f}s), "
        f"cooldown {settings.breaker_cooldown_seconds:.0f}s"
    )
    print_table(
        "Breakers",
        ["Driver", "State", "Calls", "Failures", "Retry after"],
        [
            [s.driver, s.state.value, s.calls, s.failures, f"{s.retry_after:.1f}s"]
            for s in breakers.statuses()
        ],
    )
    asyncio.run(registry.aclose())
    return 0


@main_with_error_handling()
def worker_command(settings: Settings) -> int:
    if settings.job_queue_backend != "memory":
        raise ConfigurationError(
            "The worker command consumes the in-memory queue; SQS jobs are handled by "
            "provisioner.workers.handler.lambda_handler",
            {"backend": settings.job_queue_backend},
        )
    from provisioner.runtime import build_runtime
    from provisioner.workers.handler import run_worker

    init_engine(settings)
    runtime = build_runtime(settings)
    info("Worker running; press Ctrl+C to stop")
    asyncio.run(run_worker(runtime.queue, runtime))  # type: ignore[arg-type]
    return 0


@main_with_error_handling()
def init_db_command(settings: Settings) -> int:
    async def _create() -> None:
        init_engine(settings)
        try:
            await create_schema()
        finally:
            await dispose_engine()

    asyncio.run(_create())
    success("Database schema created")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="provisioner", description="Provisioning orchestrator CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("drivers", help="List configured drivers and their capabilities")

    history_parser = subparsers.add_parser("history", help="Show the audit history of a resource")
    history_parser.add_argument("resource_id", help="Resource identifier")

    subparsers.add_parser("breakers", help="Show circuit breaker configuration and state")
    subparsers.add_parser("worker", help="Run a job worker on the in-memory queue")
    subparsers.add_parser("init-db", help="Create database tables")

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)

    if args.command == "drivers":
        sys.exit(drivers_command(settings))
    if args.command == "history":
        sys.exit(history_command(settings, args.resource_id))
    if args.command == "breakers":
        sys.exit(breakers_command(settings))
    if args.command == "worker":
        sys.exit(worker_command(settings))
    if args.command == "init-db":
        sys.exit(init_db_command(settings))

    parser.print_help()
    sys.exit(2)
