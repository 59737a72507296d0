"""Rule engine turning one audit run's records into remediation bundles."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping

from clutterscore.domain.audit import scoring
from clutterscore.domain.connectors.types import (
    CHAT_PLATFORMS,
    AuditData,
    ChannelData,
    FileData,
    FileType,
    Platform,
    UserData,
)
from clutterscore.domain.playbooks.db_models import Playbook, PlaybookItem
from clutterscore.domain.playbooks.metadata import (
    ChannelItemMetadata,
    FileItemMetadata,
    GuestItemMetadata,
    ItemMetadata,
    dump_item_metadata,
)
from clutterscore.domain.playbooks.statuses import (
    AUTO_APPROVE_ITEM_TYPES,
    ITEM_TYPE_CHANNEL,
    ITEM_TYPE_FILE,
    ITEM_TYPE_GUEST,
    ImpactType,
    PlaybookStatus,
    RiskLevel,
)
from clutterscore.settings import settings
from clutterscore.shared.clock import add_months, ensure_aware


@dataclass
class GeneratedItem:
    item_name: str
    item_type: str
    external_id: str
    metadata: ItemMetadata


@dataclass
class GeneratedPlaybook:
    title: str
    description: str
    impact: str
    impact_type: ImpactType
    source: Platform
    risk: RiskLevel
    estimated_savings: float
    items: list[GeneratedItem] = field(default_factory=list)

    @property
    def item_count(self) -> int:
        return len(self.items)

    def to_model(self, tenant_id: uuid.UUID, audit_result_id: uuid.UUID | None) -> Playbook:
        playbook = Playbook(
            tenant_id=tenant_id,
            audit_result_id=audit_result_id,
            title=self.title,
            description=self.description,
            impact=self.impact,
            impact_type=self.impact_type,
            source=self.source,
            risk=self.risk,
            item_count=self.item_count,
            estimated_savings=self.estimated_savings,
            status=PlaybookStatus.PENDING,
        )
        playbook.items = [
            PlaybookItem(
                position=position,
                item_name=item.item_name,
                item_type=item.item_type,
                external_id=item.external_id,
                metadata_json=dump_item_metadata(item.metadata),
                is_selected=True,
            )
            for position, item in enumerate(self.items)
        ]
        return playbook


def is_auto_approve_eligible(
    *, risk: RiskLevel, impact_type: ImpactType, item_types: Iterable[str], item_count: int
) -> bool:
    """Only low-risk efficiency bundles of a handful of safe item types may run unattended."""

    if risk != RiskLevel.LOW or impact_type != ImpactType.EFFICIENCY:
        return False
    if item_count > settings.auto_approve_max_items:
        return False
    return all(item_type in AUTO_APPROVE_ITEM_TYPES for item_type in item_types)


def playbook_is_auto_approve_eligible(playbook: Playbook) -> bool:
    return is_auto_approve_eligible(
        risk=playbook.risk,
        impact_type=playbook.impact_type,
        item_types=[item.item_type for item in playbook.items],
        item_count=playbook.item_count,
    )


def _file_metadata(file: FileData) -> FileItemMetadata:
    return FileItemMetadata(
        path=file.path,
        parent_id=file.parent_id,
        size_mb=file.size_mb,
        file_type=file.type.value,
        mime_type=file.mime_type,
        url=file.url,
        owner_email=file.owner_email,
        is_public=file.is_public,
        shared_with=list(file.shared_with),
        duplicate_group=file.duplicate_group,
        last_accessed=file.last_accessed,
    )


def _file_item(file: FileData) -> GeneratedItem:
    return GeneratedItem(
        item_name=file.name,
        item_type=ITEM_TYPE_FILE,
        external_id=file.external_id,
        metadata=_file_metadata(file),
    )


def _gb_label(files: Iterable[FileData]) -> str:
    total_mb = sum(file.size_mb for file in files)
    return f"Save {round(total_mb / 1024, 2)} GB"


def duplicate_targets(files: Iterable[FileData]) -> list[FileData]:
    """Every member of a duplicate group except the most recently accessed one."""

    groups: dict[str, list[FileData]] = {}
    for file in files:
        groups.setdefault(file.duplicate_key, []).append(file)

    targets: list[FileData] = []
    for key, members in groups.items():
        if len(members) < 2:
            continue
        ordered = sorted(
            members,
            key=lambda f: (ensure_aware(f.last_accessed), f.external_id),
            reverse=True,
        )
        for member in ordered[1:]:
            member.duplicate_group = key
            targets.append(member)
    return targets


def _duplicates_playbook(platform: Platform, files: list[FileData]) -> GeneratedPlaybook | None:
    targets = duplicate_targets(files)
    if not targets:
        return None
    return GeneratedPlaybook(
        title=f"Remove {len(targets)} Duplicate Files",
        description=f"Found {len(targets)} duplicate files wasting storage space",
        impact=_gb_label(targets),
        impact_type=ImpactType.SAVINGS,
        source=platform,
        risk=RiskLevel.LOW,
        estimated_savings=scoring.storage_waste(targets),
        items=[_file_item(file) for file in targets],
    )


def _public_files_playbook(platform: Platform, files: list[FileData]) -> GeneratedPlaybook | None:
    public = [file for file in files if file.is_public]
    if not public:
        return None
    risk = RiskLevel.CRITICAL if any(file.type == FileType.DATABASE for file in public) else RiskLevel.HIGH
    return GeneratedPlaybook(
        title=f"Secure {len(public)} Publicly Shared Files",
        description=f"Found {len(public)} files that are publicly accessible",
        impact="Reduce security risks",
        impact_type=ImpactType.SECURITY,
        source=platform,
        risk=risk,
        estimated_savings=0.0,
        items=[_file_item(file) for file in public],
    )


def _stale_files_playbook(
    platform: Platform, files: list[FileData], now: datetime
) -> GeneratedPlaybook | None:
    stale = [file for file in files if scoring.is_stale(file, now)]
    if not stale:
        return None
    return GeneratedPlaybook(
        title=f"Archive {len(stale)} Old Unused Files",
        description="Files not accessed in over a year",
        impact=_gb_label(stale),
        impact_type=ImpactType.SAVINGS,
        source=platform,
        risk=RiskLevel.MEDIUM,
        estimated_savings=scoring.storage_waste(stale),
        items=[_file_item(file) for file in stale],
    )


def is_dormant_channel(channel: ChannelData, now: datetime) -> bool:
    if channel.is_archived or channel.member_count >= settings.dormant_channel_max_members:
        return False
    if channel.last_activity is None:
        return True
    cutoff = add_months(now, -settings.dormant_channel_months)
    return ensure_aware(channel.last_activity) <= cutoff


def _dormant_channels_playbook(
    platform: Platform, channels: list[ChannelData], now: datetime
) -> GeneratedPlaybook | None:
    if platform not in CHAT_PLATFORMS:
        return None
    dormant = [channel for channel in channels if is_dormant_channel(channel, now)]
    if not dormant:
        return None
    return GeneratedPlaybook(
        title=f"Archive {len(dormant)} Inactive Channels",
        description=(
            f"Channels with fewer than {settings.dormant_channel_max_members} members and no "
            f"activity in {settings.dormant_channel_months} months"
        ),
        impact="Reduce workspace clutter",
        impact_type=ImpactType.EFFICIENCY,
        source=platform,
        risk=RiskLevel.LOW,
        estimated_savings=0.0,
        items=[
            GeneratedItem(
                item_name=channel.name,
                item_type=ITEM_TYPE_CHANNEL,
                external_id=channel.external_id,
                metadata=ChannelItemMetadata(
                    channel_name=channel.name,
                    member_count=channel.member_count,
                    is_private=channel.is_private,
                    last_activity=channel.last_activity,
                ),
            )
            for channel in dormant
        ],
    )


def _guest_users_playbook(platform: Platform, users: list[UserData]) -> GeneratedPlaybook | None:
    guests = [user for user in users if user.is_guest]
    if not guests:
        return None
    return GeneratedPlaybook(
        title=f"Review {len(guests)} Guest Users",
        description="Guest users have access to your workspace",
        impact="Reduce security risks",
        impact_type=ImpactType.SECURITY,
        source=platform,
        risk=RiskLevel.HIGH,
        estimated_savings=scoring.annual_seat_cost(len(guests)),
        items=[
            GeneratedItem(
                item_name=user.email,
                item_type=ITEM_TYPE_GUEST,
                external_id=user.external_id or user.email,
                metadata=GuestItemMetadata(
                    email=user.email,
                    name=user.name,
                    role=user.role,
                    license_type=user.license_type,
                    last_active=user.last_active,
                ),
            )
            for user in guests
        ],
    )


def generate_for_platform(platform: Platform, data: AuditData, now: datetime) -> list[GeneratedPlaybook]:
    candidates = [
        _duplicates_playbook(platform, data.files),
        _public_files_playbook(platform, data.files),
        _stale_files_playbook(platform, data.files, now),
        _dormant_channels_playbook(platform, data.channels or [], now),
        _guest_users_playbook(platform, data.users),
    ]
    return [playbook for playbook in candidates if playbook is not None]


def generate_playbooks(results: Mapping[Platform, AuditData], now: datetime) -> list[GeneratedPlaybook]:
    playbooks: list[GeneratedPlaybook] = []
    for platform, data in results.items():
        playbooks.extend(generate_for_platform(platform, data, now))
    return playbooks
