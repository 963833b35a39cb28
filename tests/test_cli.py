import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from provisioner.audit import AuditLedger, AuditRepository
from provisioner.cli import (
    breakers_command,
    build_parser,
    drivers_command,
    history_command,
    init_db_command,
    main,
    worker_command,
)
from provisioner.core.errors import ExitCode
from provisioner.db.models import Base
from provisioner.db.repositories import ResourceRepository
from provisioner.domain.models import Resource, ResourceSpec, ResourceStatus


def with_drivers(settings):
    return settings.model_copy(
        update={"drivers": {"hetzner": {"kind": "rest", "base_url": "https://api.example.com"}}}
    )


async def seed_resource(settings):
    engine = create_async_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with async_sessionmaker(engine, expire_on_commit=False)() as session:
        await ResourceRepository(session).create(
            Resource(
                id="res-1",
                order_ref="ord-1",
                user_id="user-1",
                driver="fake",
                plan_code="vps-small",
                region="eu-central",
                status=ResourceStatus.active,
                spec=ResourceSpec(plan="cx11", region="eu-central"),
            )
        )
        ledger = AuditLedger(AuditRepository(session))
        await ledger.record("res-1", "system", "create", None, ResourceStatus.pending)
        await ledger.record("res-1", "system", "enqueue", ResourceStatus.pending, ResourceStatus.queued)
        await session.commit()
    await engine.dispose()


def test_parser_commands():
    parser = build_parser()

    assert parser.parse_args(["history", "res-1"]).resource_id == "res-1"
    assert parser.parse_args(["init-db"]).command == "init-db"
    with pytest.raises(SystemExit):
        parser.parse_args([])


def test_drivers_command_lists_configured_drivers(settings, capsys):
    assert drivers_command(with_drivers(settings)) == 0

    out = capsys.readouterr().out
    assert "hetzner" in out
    assert "compute" in out


def test_drivers_command_without_drivers(settings, capsys):
    assert drivers_command(settings) == 0

    assert "No drivers configured" in capsys.readouterr().out


def test_drivers_command_bad_config(settings):
    broken = settings.model_copy(update={"drivers": {"legacy": {"kind": "soap"}}})

    assert drivers_command(broken) == ExitCode.CONFIG_ERROR


def test_breakers_command_shows_closed_breakers(settings, capsys):
    assert breakers_command(with_drivers(settings)) == 0

    out = capsys.readouterr().out
    assert "hetzner" in out
    assert "closed" in out


def test_init_db_then_history_of_missing_resource(settings):
    assert init_db_command(settings) == 0

    assert history_command(settings, "missing") == ExitCode.BLOCKED


def test_history_command_prints_ledger(settings, capsys):
    asyncio.run(seed_resource(settings))

    assert history_command(settings, "res-1") == 0

    out = capsys.readouterr().out
    assert "ord-1" in out
    assert "enqueue" in out


def test_worker_command_requires_memory_backend(settings):
    sqs = settings.model_copy(update={"job_queue_backend": "sqs"})

    assert worker_command(sqs) == ExitCode.CONFIG_ERROR


def test_main_dispatches_and_exits(settings):
    with (
        patch("provisioner.cli.get_settings", return_value=settings),
        patch("provisioner.cli.configure_logging"),
        pytest.raises(SystemExit) as exc_info,
    ):
        main(["init-db"])

    assert exc_info.value.code == 0
