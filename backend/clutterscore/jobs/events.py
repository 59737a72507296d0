"""Outbox event handlers.

`JOB_HANDLERS` maps an event name to a coroutine taking the job context and the
event payload. `bind_job_handlers` closes them over a context so the outbox
dispatcher can call them with the payload alone. Every handler opens its own
sessions; batch handlers use one session per item and bound their concurrency.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clutterscore.domain.archives.service import (
    ARCHIVE_FILE_CREATED,
    ARCHIVE_FILE_EXPIRING,
    ARCHIVE_FILE_RESTORED,
    ArchiveService,
    connector_upload,
)
from clutterscore.domain.audit.service import run_audit
from clutterscore.domain.connectors.types import Platform
from clutterscore.domain.errors import IntegrationNotFoundError
from clutterscore.domain.integrations.service import get_integration, sync_all_integrations, sync_integration
from clutterscore.domain.job_events.service import JobHandler
from clutterscore.domain.playbooks.executor import execute_playbook, settle_interrupted_execution
from clutterscore.jobs.archives import warn_archive_expiring
from clutterscore.jobs.steps import JobSteps
from clutterscore.services import AppServices
from clutterscore.settings import settings

logger = logging.getLogger(__name__)

AUDIT_RUN = "audit/run"
INTEGRATIONS_SYNC = "integrations/sync"
PLAYBOOK_EXECUTE = "playbook/execute"
ARCHIVE_BATCH_RESTORE = "archive/batch.restore"
ARCHIVE_BATCH_DELETE = "archive/batch.delete"
ARCHIVE_MIGRATE_STORAGE = "archive/migrate.storage"


@dataclass
class JobContext:
    services: AppServices
    session_factory: async_sessionmaker[AsyncSession]

    def archive_service(self, session: AsyncSession) -> ArchiveService:
        return ArchiveService(session, self.services.storage, backends=self.services.storage_backends)

    def steps(self, name: str, payload: dict[str, Any]) -> JobSteps:
        run_key = f"{name}:{payload.get('event_id') or uuid.uuid4()}"
        return JobSteps(self.session_factory, run_key, name)


def _uuid(payload: dict[str, Any], key: str) -> uuid.UUID:
    return uuid.UUID(str(payload[key]))


def _batch_result(processed: int, errors: list[dict[str, str]]) -> dict[str, Any]:
    return {
        "success": not errors,
        "processed": processed,
        "failed": len(errors),
        "errors": errors[:50],
    }


async def _bounded_batch(
    ids: list[uuid.UUID],
    concurrency: int,
    work: Callable[[uuid.UUID], Awaitable[None]],
    *,
    event: str,
) -> dict[str, Any]:
    semaphore = asyncio.Semaphore(max(1, concurrency))
    errors: list[dict[str, str]] = []
    processed = 0

    async def _one(item_id: uuid.UUID) -> None:
        nonlocal processed
        async with semaphore:
            try:
                await work(item_id)
            except Exception as exc:  # noqa: BLE001
                errors.append({"archive_id": str(item_id), "error": str(exc) or type(exc).__name__})
                logger.warning(
                    "batch_item_failed",
                    extra={"extra": {"event": event, "archive_id": str(item_id), "error_type": type(exc).__name__}},
                )
                return
            processed += 1

    await asyncio.gather(*(_one(item_id) for item_id in ids))
    return _batch_result(processed, errors)


async def handle_audit_run(context: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
    tenant_id = _uuid(payload, "tenant_id")
    steps = context.steps(AUDIT_RUN, payload)

    async def _run() -> dict[str, Any]:
        async with context.session_factory() as session:
            outcome = await run_audit(
                session,
                tenant_id,
                context.services.connector_registry,
                user_id=payload.get("user_id"),
                locks=context.services.refresh_locks,
            )
        return outcome.to_dict()

    try:
        result = await steps.run("run-audit", _run)
    except Exception as exc:
        await steps.finish(error=str(exc) or type(exc).__name__)
        raise
    await steps.finish()
    return result


async def handle_integrations_sync(context: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
    tenant_id = _uuid(payload, "tenant_id")
    registry = context.services.connector_registry
    locks = context.services.refresh_locks
    async with context.session_factory() as session:
        platform = payload.get("platform")
        if platform:
            integration = await get_integration(session, tenant_id, Platform(platform))
            if integration is None:
                raise IntegrationNotFoundError(platform)
            await sync_integration(session, integration, registry, locks=locks)
            return {"success": True, "processed": 1, "failed": 0}
        results = await sync_all_integrations(session, tenant_id, registry, locks=locks)
    return {
        "success": not results.errors,
        "processed": len(results.data),
        "failed": len(results.errors),
        "errors": {platform.value: message for platform, message in results.errors.items()},
    }


async def handle_playbook_execute(context: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
    tenant_id = _uuid(payload, "tenant_id")
    playbook_id = _uuid(payload, "playbook_id")
    steps = context.steps(PLAYBOOK_EXECUTE, payload)

    async def _execute() -> dict[str, Any]:
        async with context.session_factory() as session:
            settled = await settle_interrupted_execution(
                session, tenant_id, playbook_id, user_id=payload.get("user_id")
            )
            if settled is not None:
                return settled.to_dict()
            outcome = await execute_playbook(
                session,
                tenant_id,
                playbook_id,
                context.services.connector_registry,
                user_id=payload.get("user_id"),
                locks=context.services.refresh_locks,
                archive_service=context.archive_service(session) if payload.get("archive_blobs") else None,
            )
        return outcome.to_dict()

    try:
        result = await steps.run("execute-playbook", _execute)
    except Exception as exc:
        await steps.finish(error=str(exc) or type(exc).__name__)
        raise
    await steps.finish()
    return result


async def handle_archive_created(context: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
    archive_id = _uuid(payload, "archive_id")
    async with context.session_factory() as session:
        service = context.archive_service(session)
        archive = await service.get(archive_id)
        stored = await service.exists(archive)
    if not stored:
        logger.warning("archive_blob_missing_after_create", extra={"extra": {"archive_id": str(archive_id)}})
    return {"success": stored, "archive_id": str(archive_id)}


async def handle_archive_restored(context: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
    tenant_id = _uuid(payload, "tenant_id")
    await context.services.notifier.notify(
        tenant_id,
        "File restored",
        f"{payload.get('file_name', 'A file')} was restored to {payload.get('platform', 'its platform')}.",
        {"archive_id": payload.get("archive_id")},
    )
    return {"success": True}


async def handle_archive_expiring(context: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
    archive_id = _uuid(payload, "archive_id")
    async with context.session_factory() as session:
        result = await warn_archive_expiring(session, context.services.notifier, archive_id)
    return {"success": result["failed"] == 0, **result}


async def handle_batch_restore(context: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
    tenant_id = _uuid(payload, "tenant_id")
    archive_ids = [uuid.UUID(str(value)) for value in payload.get("archive_ids", [])]
    registry = context.services.connector_registry

    async def _restore(archive_id: uuid.UUID) -> None:
        async with context.session_factory() as session:
            service = context.archive_service(session)
            archive = await service.get(archive_id, tenant_id=tenant_id)
            integration = await get_integration(session, tenant_id, archive.platform)
            if integration is None:
                raise IntegrationNotFoundError(archive.platform.value)
            async with registry.create(archive.platform, integration.connector_config()) as connector:
                await service.restore(
                    archive_id,
                    connector_upload(connector),
                    tenant_id=tenant_id,
                    target_location=payload.get("target_location"),
                    restored_by=payload.get("user_id"),
                )

    return await _bounded_batch(
        archive_ids, settings.archive_batch_restore_concurrency, _restore, event=ARCHIVE_BATCH_RESTORE
    )


async def handle_batch_delete(context: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
    tenant_id = _uuid(payload, "tenant_id")
    archive_ids = [uuid.UUID(str(value)) for value in payload.get("archive_ids", [])]

    async def _delete(archive_id: uuid.UUID) -> None:
        async with context.session_factory() as session:
            await context.archive_service(session).cleanup_single_archive(
                archive_id, tenant_id=tenant_id, deleted_by=payload.get("user_id"), reason="manual"
            )

    return await _bounded_batch(
        archive_ids, settings.archive_batch_delete_concurrency, _delete, event=ARCHIVE_BATCH_DELETE
    )


async def handle_migrate_storage(context: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
    tenant_id = _uuid(payload, "tenant_id")
    archive_ids = [uuid.UUID(str(value)) for value in payload.get("archive_ids", [])]
    from_provider = payload["from_provider"]
    to_provider = payload["to_provider"]

    async def _migrate(archive_id: uuid.UUID) -> None:
        async with context.session_factory() as session:
            result = await context.archive_service(session).migrate(
                tenant_id=tenant_id,
                archive_ids=[archive_id],
                from_provider=from_provider,
                to_provider=to_provider,
            )
        if result["failed"]:
            raise RuntimeError(result["failures"][0]["error"])

    return await _bounded_batch(
        archive_ids, settings.archive_migrate_concurrency, _migrate, event=ARCHIVE_MIGRATE_STORAGE
    )


JOB_HANDLERS: dict[str, Callable[[JobContext, dict[str, Any]], Awaitable[dict[str, Any]]]] = {
    AUDIT_RUN: handle_audit_run,
    INTEGRATIONS_SYNC: handle_integrations_sync,
    PLAYBOOK_EXECUTE: handle_playbook_execute,
    ARCHIVE_FILE_CREATED: handle_archive_created,
    ARCHIVE_FILE_RESTORED: handle_archive_restored,
    ARCHIVE_FILE_EXPIRING: handle_archive_expiring,
    ARCHIVE_BATCH_RESTORE: handle_batch_restore,
    ARCHIVE_BATCH_DELETE: handle_batch_delete,
    ARCHIVE_MIGRATE_STORAGE: handle_migrate_storage,
}


def bind_job_handlers(context: JobContext) -> dict[str, JobHandler]:
    def _bind(handler: Callable[[JobContext, dict[str, Any]], Awaitable[dict[str, Any]]]) -> JobHandler:
        async def _bound(payload: dict[str, Any]) -> dict[str, Any]:
            return await handler(context, payload)

        return _bound

    return {name: _bind(handler) for name, handler in JOB_HANDLERS.items()}
