import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clutterscore.domain.integrations.service import sync_all_integrations
from clutterscore.domain.job_events.service import process_job_events
from clutterscore.domain.playbooks.executor import run_automated_execution
from clutterscore.domain.tenants.db_models import Tenant
from clutterscore.infra.db import get_session_factory
from clutterscore.infra.logging import clear_log_context, configure_logging, update_log_context
from clutterscore.jobs import archives
from clutterscore.jobs.events import JobContext, bind_job_handlers
from clutterscore.jobs.heartbeat import record_heartbeat, record_job_result
from clutterscore.services import AppServices, build_app_services
from clutterscore.settings import settings

logger = logging.getLogger(__name__)

JobRunner = Callable[[AsyncSession], Awaitable[dict[str, int]]]

DEFAULT_JOBS = [
    "job-events",
    "archive-expiry-sweep",
    "archive-expiry-warnings",
    "archive-final-warnings",
    "archive-health",
    "archive-failure-monitor",
    "automated-playbooks",
]

ALL_JOBS = [*DEFAULT_JOBS, "archive-weekly-report", "integrations-sync"]


async def _run_job(name: str, session_factory: async_sessionmaker, runner: JobRunner) -> dict[str, int]:
    update_log_context(job=name)
    try:
        async with session_factory() as session:
            result = await runner(session)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        await record_job_result(session_factory, name, success=True)
        return result
    finally:
        clear_log_context()


async def _sync_all_tenants(
    session: AsyncSession, services: AppServices, session_factory: async_sessionmaker
) -> dict[str, int]:
    tenant_ids = list((await session.scalars(select(Tenant.tenant_id))).all())
    synced = 0
    failed = 0
    for tenant_id in tenant_ids:
        async with session_factory() as tenant_session:
            try:
                results = await sync_all_integrations(
                    tenant_session,
                    tenant_id,
                    services.connector_registry,
                    locks=services.refresh_locks,
                )
            except Exception as exc:  # noqa: BLE001
                failed += 1
                logger.warning(
                    "tenant_sync_failed",
                    extra={"extra": {"tenant_id": str(tenant_id), "error_type": type(exc).__name__}},
                )
                continue
        synced += len(results.data)
        failed += len(results.errors)
    return {"tenants": len(tenant_ids), "synced": synced, "failed": failed}


def job_runner(name: str, services: AppServices, session_factory: async_sessionmaker) -> JobRunner:
    notifier = services.notifier
    if name == "job-events":
        handlers = bind_job_handlers(JobContext(services=services, session_factory=session_factory))
        return lambda session: process_job_events(session, handlers)
    if name == "archive-expiry-sweep":
        return lambda session: archives.run_archive_expiry_sweep(
            session, services.storage, backends=services.storage_backends
        )
    if name == "archive-expiry-warnings":
        return lambda session: archives.run_archive_expiry_warnings(session, notifier)
    if name == "archive-final-warnings":
        return lambda session: archives.run_archive_final_warnings(session, notifier)
    if name == "archive-health":
        return lambda session: archives.run_archive_health(session, services.storage_backends, notifier)
    if name == "archive-weekly-report":
        return lambda session: archives.run_weekly_archive_report(session, notifier)
    if name == "archive-failure-monitor":
        return lambda session: archives.run_archive_failure_monitor(session, notifier)
    if name == "automated-playbooks":
        return lambda session: run_automated_execution(
            session_factory,
            services.connector_registry,
            tenant_locks=services.tenant_locks,
            locks=services.refresh_locks,
        )
    if name == "integrations-sync":
        return lambda session: _sync_all_tenants(session, services, session_factory)
    raise ValueError(f"unknown_job:{name}")


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run scheduled jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=ALL_JOBS, help="Job name to run")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    services = build_app_services(settings)
    session_factory = get_session_factory()

    job_names = args.jobs or DEFAULT_JOBS
    runners = [job_runner(name, services, session_factory) for name in job_names]

    while True:
        for name, runner in zip(job_names, runners):
            try:
                await _run_job(name, session_factory, runner)
            except Exception as exc:  # noqa: BLE001
                logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
                await record_job_result(session_factory, name, success=False, error_reason=type(exc).__name__)
        await record_heartbeat(session_factory, name="jobs-runner")
        if args.once:
            break
        await asyncio.sleep(args.interval)


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
