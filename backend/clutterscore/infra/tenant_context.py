import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_current_tenant_id: ContextVar[uuid.UUID | None] = ContextVar("current_tenant_id", default=None)


def set_current_tenant_id(tenant_id: uuid.UUID | None) -> None:
    _current_tenant_id.set(tenant_id)


def get_current_tenant_id() -> uuid.UUID | None:
    try:
        return _current_tenant_id.get()
    except LookupError:
        return None


@contextmanager
def tenant_id_context(tenant_id: uuid.UUID | None) -> Iterator[None]:
    token = _current_tenant_id.set(tenant_id)
    try:
        yield
    finally:
        _current_tenant_id.reset(token)
