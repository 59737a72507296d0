from datetime import datetime, timedelta, timezone

from clutterscore.domain.audit import scoring
from clutterscore.domain.connectors.types import FileData, FileType, Platform, UserData

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _file(external_id: str, *, size_mb: float = 10.0, days_old: int = 1, **kwargs) -> FileData:
    return FileData(
        name=f"{external_id}.pdf",
        size_mb=size_mb,
        type=kwargs.pop("type", FileType.DOCUMENT),
        source=Platform.GOOGLE,
        external_id=external_id,
        last_accessed=NOW - timedelta(days=days_old),
        **kwargs,
    )


def _user(email: str, *, days_idle: int | None = 1, is_guest: bool = False) -> UserData:
    return UserData(
        email=email,
        name=email,
        source=Platform.SLACK,
        last_active=None if days_idle is None else NOW - timedelta(days=days_idle),
        is_guest=is_guest,
    )


def test_calculate_score_applies_each_deduction():
    score = scoring.calculate_score(storage_waste=1500, duplicates=50, public_files=10, inactive_users=10)
    assert score == 76


def test_calculate_score_is_clamped_and_caps_each_term():
    assert scoring.calculate_score(storage_waste=0, duplicates=0, public_files=0, inactive_users=0) == 100
    worst = scoring.calculate_score(
        storage_waste=10_000_000, duplicates=10_000, public_files=10_000, inactive_users=10_000
    )
    assert worst == 0
    deductions = scoring.score_deductions(
        storage_waste=10_000_000, duplicates=10_000, public_files=10_000, inactive_users=10_000
    )
    assert deductions == [30.0, 20.0, 25.0, 25.0]


def test_score_deductions_commute():
    deductions = scoring.score_deductions(storage_waste=730, duplicates=13, public_files=7, inactive_users=3)
    assert round(100 - sum(deductions)) == round(100 - sum(reversed(deductions)))


def test_annual_costs_use_configured_rates():
    assert scoring.annual_storage_cost(1024, cost_per_gb_month=0.1) == 1.2
    assert scoring.annual_seat_cost(2, seat_cost_month=15.0) == 360.0


def test_inactive_users_include_never_seen():
    users = [_user("a@x.io", days_idle=10), _user("b@x.io", days_idle=120), _user("c@x.io", days_idle=None)]
    assert scoring.count_inactive_users(users, NOW) == 2


def test_user_idle_exactly_ninety_days_is_inactive():
    assert scoring.is_inactive(_user("edge@x.io", days_idle=90), NOW, days=90) is True
    assert scoring.is_inactive(_user("fresh@x.io", days_idle=89), NOW, days=90) is False


def test_wasted_files_count_each_file_once():
    stale_duplicate = _file("f1", days_old=400, is_duplicate=True)
    fresh_duplicate = _file("f2", is_duplicate=True)
    stale = _file("f3", days_old=366)
    fresh = _file("f4")
    wasted = scoring.wasted_files([stale_duplicate, fresh_duplicate, stale, fresh], NOW)
    assert [f.external_id for f in wasted] == ["f1", "f2", "f3"]


def test_count_risks_flags_public_databases_as_critical():
    files = [
        _file("db", is_public=True, type=FileType.DATABASE),
        _file("doc", is_public=True),
        _file("private"),
    ]
    risks = scoring.count_risks(files, [_user("g@x.io", is_guest=True)])
    assert risks.active == 3
    assert risks.critical == 1
    assert risks.moderate == 2


def test_score_audit_combines_breakdown():
    files = [_file("dup", size_mb=512, is_duplicate=True), _file("old", size_mb=512, days_old=800), _file("ok")]
    users = [_user("idle@x.io", days_idle=200), _user("guest@x.io", is_guest=True)]
    breakdown = scoring.score_audit(files, users, NOW)
    assert breakdown.wasted_storage_mb == 1024
    assert breakdown.storage_waste == 1.2
    assert breakdown.license_waste == 180.0
    assert breakdown.estimated_savings == 181.2
    assert breakdown.duplicate_files == 1
    assert breakdown.inactive_users == 1
    assert breakdown.guest_users == 1
    assert 0 <= breakdown.score <= 100
