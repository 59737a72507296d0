from __future__ import annotations

from datetime import datetime

from clutterscore.domain.errors import AuditQuotaExceeded
from clutterscore.domain.tenants.db_models import FREE_TIER, Tenant
from clutterscore.settings import settings
from clutterscore.shared.clock import add_months, ensure_aware, start_of_month


def next_reset_at(now: datetime) -> datetime:
    return add_months(start_of_month(now), 1)


def _roll_window(tenant: Tenant, now: datetime) -> None:
    reset_at = tenant.free_audit_reset_at
    if reset_at is None or now >= ensure_aware(reset_at):
        tenant.free_audits_used = 0
        tenant.free_audit_reset_at = next_reset_at(now)


def check_audit_quota(tenant: Tenant, now: datetime) -> None:
    """Free tenants get a fixed number of audits per calendar month; paid tiers are unlimited."""

    if tenant.plan_tier != FREE_TIER:
        return
    _roll_window(tenant, now)
    if tenant.free_audits_used >= settings.free_audits_per_month:
        raise AuditQuotaExceeded(
            "Free plan allows one audit per month. Upgrade for unlimited audits.",
            reset_at=ensure_aware(tenant.free_audit_reset_at),
        )


def consume_audit_quota(tenant: Tenant, now: datetime) -> None:
    if tenant.plan_tier != FREE_TIER:
        return
    _roll_window(tenant, now)
    tenant.free_audits_used += 1
