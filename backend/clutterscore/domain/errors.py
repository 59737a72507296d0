from dataclasses import dataclass
from typing import List


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = "https://example.com/problems/domain-error"
    errors: List[dict] | None = None
    status_code: int = 400

    def __str__(self) -> str:
        return self.detail


class NotFoundError(DomainError):
    def __init__(self, detail: str, title: str = "Not Found") -> None:
        super().__init__(detail=detail, title=title, status_code=404)


class IntegrationNotFoundError(NotFoundError):
    def __init__(self, platform: str) -> None:
        super().__init__(detail=f"No active {platform} integration", title="Integration Not Found")


class PlaybookNotFoundError(NotFoundError):
    def __init__(self, playbook_id) -> None:
        super().__init__(detail=f"Playbook {playbook_id} not found", title="Playbook Not Found")


class AuditLogNotFoundError(NotFoundError):
    def __init__(self, entry_id) -> None:
        super().__init__(detail=f"Audit log entry {entry_id} not found", title="Audit Log Not Found")


class ArchiveNotFoundError(NotFoundError):
    def __init__(self, archive_id) -> None:
        super().__init__(detail=f"Archive {archive_id} not found", title="Archive Not Found")


class InvalidPlaybookTransition(DomainError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            detail=f"Playbook cannot move from {current} to {target}",
            title="Invalid Playbook Transition",
            type="https://example.com/problems/invalid-transition",
            status_code=409,
        )
        self.current = current
        self.target = target


class PlaybookExecutionAborted(DomainError):
    def __init__(self, detail: str) -> None:
        super().__init__(
            detail=detail,
            title="Playbook Execution Aborted",
            type="https://example.com/problems/capability-unsupported",
            status_code=422,
        )


class UndoExpiredError(DomainError):
    def __init__(self) -> None:
        super().__init__(
            detail="Undo window has expired (30 days)",
            title="Undo Expired",
            type="https://example.com/problems/undo-expired",
            status_code=410,
        )


class NothingToUndoError(DomainError):
    def __init__(self) -> None:
        super().__init__(
            detail="No undo actions available for this entry",
            title="Nothing To Undo",
            type="https://example.com/problems/undo-expired",
            status_code=400,
        )


class ArchiveDeletedError(DomainError):
    def __init__(self) -> None:
        super().__init__(
            detail="File has been permanently deleted",
            title="Archive Deleted",
            type="https://example.com/problems/archive-deleted",
            status_code=410,
        )


class ArchiveStateError(DomainError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail=detail, title="Invalid Archive State", status_code=409)


class AuditQuotaExceeded(DomainError):
    def __init__(self, detail: str, reset_at=None) -> None:
        super().__init__(
            detail=detail,
            title="Audit Limit Reached",
            type="https://example.com/problems/rate-limit",
            status_code=429,
        )
        self.reset_at = reset_at
