from enum import Enum

from clutterscore.domain.connectors.types import ActionType


class PlaybookStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    EXECUTING = "EXECUTING"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    DISMISSED = "DISMISSED"


class ImpactType(str, Enum):
    SECURITY = "SECURITY"
    SAVINGS = "SAVINGS"
    EFFICIENCY = "EFFICIENCY"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AuditLogStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


ITEM_TYPE_FILE = "file"
ITEM_TYPE_GUEST = "guest"
ITEM_TYPE_CHANNEL = "channel"
AUTO_APPROVE_ITEM_TYPES = frozenset({ITEM_TYPE_CHANNEL, ITEM_TYPE_FILE})

PLAYBOOK_TRANSITIONS: dict[PlaybookStatus, frozenset[PlaybookStatus]] = {
    PlaybookStatus.PENDING: frozenset(
        {PlaybookStatus.APPROVED, PlaybookStatus.EXECUTING, PlaybookStatus.DISMISSED}
    ),
    PlaybookStatus.APPROVED: frozenset({PlaybookStatus.EXECUTING, PlaybookStatus.DISMISSED}),
    PlaybookStatus.EXECUTING: frozenset({PlaybookStatus.EXECUTED, PlaybookStatus.FAILED}),
    PlaybookStatus.EXECUTED: frozenset(),
    PlaybookStatus.FAILED: frozenset(),
    PlaybookStatus.DISMISSED: frozenset(),
}

SELECTABLE_STATUSES = frozenset({PlaybookStatus.PENDING, PlaybookStatus.APPROVED})

ACTION_BY_IMPACT: dict[ImpactType, ActionType] = {
    ImpactType.SECURITY: ActionType.REVOKE_ACCESS,
    ImpactType.SAVINGS: ActionType.ARCHIVE_FILE,
    ImpactType.EFFICIENCY: ActionType.ARCHIVE_CHANNEL,
}


def can_transition(current: PlaybookStatus, target: PlaybookStatus) -> bool:
    return target in PLAYBOOK_TRANSITIONS.get(current, frozenset())
