"""Pure scoring rules for an audit run.

Every function here is deterministic for a given ``now`` and does no I/O, so the audit
service, the playbook generator and the tests share the same arithmetic.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from clutterscore.domain.connectors.types import FileData, FileType, UserData
from clutterscore.settings import settings
from clutterscore.shared.clock import ensure_aware

STORAGE_DEDUCTION_CAP = 30.0
DUPLICATE_DEDUCTION_CAP = 20.0
PUBLIC_FILE_DEDUCTION_CAP = 25.0
INACTIVE_USER_DEDUCTION_CAP = 25.0


@dataclass(frozen=True)
class RiskCounts:
    active: int
    critical: int
    moderate: int


@dataclass(frozen=True)
class ScoreBreakdown:
    score: int
    storage_waste: float
    license_waste: float
    wasted_storage_mb: float
    duplicate_files: int
    public_files: int
    inactive_users: int
    guest_users: int
    risks: RiskCounts

    @property
    def estimated_savings(self) -> float:
        return round(self.storage_waste + self.license_waste, 2)


def is_stale(file: FileData, now: datetime, *, days: int | None = None) -> bool:
    if file.last_accessed is None:
        return False
    threshold = days if days is not None else settings.stale_file_days
    return ensure_aware(file.last_accessed) < now - timedelta(days=threshold)


def is_inactive(user: UserData, now: datetime, *, days: int | None = None) -> bool:
    if user.last_active is None:
        return True
    threshold = days if days is not None else settings.inactive_user_days
    return ensure_aware(user.last_active) <= now - timedelta(days=threshold)


def wasted_files(files: Iterable[FileData], now: datetime) -> list[FileData]:
    """Duplicates plus stale files, each file counted once."""

    return [file for file in files if file.is_duplicate or is_stale(file, now)]


def annual_storage_cost(size_mb: float, *, cost_per_gb_month: float | None = None) -> float:
    cost = settings.storage_cost_per_gb_month if cost_per_gb_month is None else cost_per_gb_month
    return round(size_mb / 1024 * cost * 12, 2)


def annual_seat_cost(seats: int, *, seat_cost_month: float | None = None) -> float:
    cost = settings.seat_cost_per_month if seat_cost_month is None else seat_cost_month
    return round(seats * cost * 12, 2)


def storage_waste(files: Iterable[FileData]) -> float:
    return annual_storage_cost(sum(file.size_mb for file in files))


def count_inactive_users(users: Iterable[UserData], now: datetime) -> int:
    return sum(1 for user in users if is_inactive(user, now))


def license_waste(users: Iterable[UserData], now: datetime) -> float:
    return annual_seat_cost(count_inactive_users(users, now))


def score_deductions(
    *, storage_waste: float, duplicates: int, public_files: int, inactive_users: int
) -> list[float]:
    return [
        min(STORAGE_DEDUCTION_CAP, max(storage_waste, 0.0) / 100),
        min(DUPLICATE_DEDUCTION_CAP, max(duplicates, 0) / 10),
        min(PUBLIC_FILE_DEDUCTION_CAP, max(public_files, 0) / 5),
        min(INACTIVE_USER_DEDUCTION_CAP, max(inactive_users, 0) / 5),
    ]


def calculate_score(
    *, storage_waste: float, duplicates: int, public_files: int, inactive_users: int
) -> int:
    deductions = score_deductions(
        storage_waste=storage_waste,
        duplicates=duplicates,
        public_files=public_files,
        inactive_users=inactive_users,
    )
    score = round(100 - sum(deductions))
    return max(0, min(100, score))


def count_risks(files: Sequence[FileData], users: Sequence[UserData]) -> RiskCounts:
    public = [file for file in files if file.is_public]
    guests = sum(1 for user in users if user.is_guest)
    critical = sum(1 for file in public if file.type == FileType.DATABASE)
    return RiskCounts(
        active=len(public) + guests,
        critical=critical,
        moderate=len(public) - critical + guests,
    )


def score_audit(files: Sequence[FileData], users: Sequence[UserData], now: datetime) -> ScoreBreakdown:
    wasted = wasted_files(files, now)
    wasted_mb = round(sum(file.size_mb for file in wasted), 2)
    duplicates = sum(1 for file in files if file.is_duplicate)
    public_files = sum(1 for file in files if file.is_public)
    inactive = count_inactive_users(users, now)
    waste = annual_storage_cost(wasted_mb)
    return ScoreBreakdown(
        score=calculate_score(
            storage_waste=waste,
            duplicates=duplicates,
            public_files=public_files,
            inactive_users=inactive,
        ),
        storage_waste=waste,
        license_waste=annual_seat_cost(inactive),
        wasted_storage_mb=wasted_mb,
        duplicate_files=duplicates,
        public_files=public_files,
        inactive_users=inactive,
        guest_users=sum(1 for user in users if user.is_guest),
        risks=count_risks(files, users),
    )
