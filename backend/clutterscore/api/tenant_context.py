import uuid

from fastapi import HTTPException, Request, status

from clutterscore.infra.tenant_context import set_current_tenant_id

TENANT_HEADER = "X-Tenant-ID"
USER_HEADER = "X-User-ID"


async def require_tenant(request: Request) -> uuid.UUID:
    """Resolve the calling tenant from the trusted gateway header."""

    raw = request.headers.get(TENANT_HEADER)
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    try:
        tenant_id = uuid.UUID(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized") from None
    request.state.current_tenant_id = tenant_id
    set_current_tenant_id(tenant_id)
    return tenant_id


async def current_user_id(request: Request) -> str | None:
    user_id = (request.headers.get(USER_HEADER) or "").strip() or None
    request.state.current_user_id = user_id
    return user_id
