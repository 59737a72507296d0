from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clutterscore.domain.activity.db_models import ActivityEvent


async def record_activity(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    action: str,
    *,
    user_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> ActivityEvent:
    """Add an activity row to the caller's session; committing is the caller's job."""

    event = ActivityEvent(
        tenant_id=tenant_id,
        action=action,
        user_id=user_id,
        metadata_json=metadata or {},
    )
    session.add(event)
    return event


async def list_activity(
    session: AsyncSession, tenant_id: uuid.UUID, *, action_prefix: str | None = None, limit: int = 50
) -> list[ActivityEvent]:
    stmt = select(ActivityEvent).where(ActivityEvent.tenant_id == tenant_id)
    if action_prefix:
        stmt = stmt.where(ActivityEvent.action.like(f"{action_prefix}%"))
    stmt = stmt.order_by(ActivityEvent.created_at.desc()).limit(limit)
    return list((await session.scalars(stmt)).all())
