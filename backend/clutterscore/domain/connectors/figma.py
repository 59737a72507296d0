from __future__ import annotations

from typing import Any

from clutterscore.domain.connectors.base import (
    Connector,
    mark_duplicates,
    mb_to_gb,
    name_size_hash,
    parse_timestamp,
    utcnow,
)
from clutterscore.domain.connectors.types import AuditData, FileData, FileType, Platform, UserData

FILE_SIZE_ESTIMATE_MB = 5.0


class FigmaConnector(Connector):
    """Read-only: Figma's REST API exposes no file or member mutations."""

    platform = Platform.FIGMA
    base_url = "https://api.figma.com/v1/"

    def _auth_headers(self) -> dict[str, str]:
        return {"X-Figma-Token": self.config.access_token}

    async def _probe(self) -> bool:
        me = await self._json("GET", "me")
        return bool(me.get("id"))

    async def fetch_audit_data(self) -> AuditData:
        me = await self._json("GET", "me")
        team_id = me.get("team_id") or self.config.metadata.get("team_id")
        files = await self._fetch_files(team_id) if team_id else []
        mark_duplicates(files)
        users = [
            UserData(
                email=me.get("email") or "",
                name=me.get("handle") or "Unknown User",
                source=self.platform,
                role="user" if team_id else "owner",
                external_id=me.get("id"),
                license_type="full",
            )
        ]
        return AuditData(
            files=files,
            users=users,
            storage_used_gb=mb_to_gb(sum(f.size_mb for f in files)),
            total_licenses=len(users),
            active_users=len(users),
        )

    async def _fetch_files(self, team_id: str) -> list[FileData]:
        body = await self._json("GET", f"teams/{team_id}/projects")
        files: list[FileData] = []
        for project in body.get("projects") or []:
            project_files: dict[str, Any] = await self._json("GET", f"projects/{project['id']}/files")
            for item in project_files.get("files") or []:
                name = item.get("name") or "Untitled"
                files.append(
                    FileData(
                        name=name,
                        size_mb=FILE_SIZE_ESTIMATE_MB,
                        type=FileType.OTHER,
                        source=self.platform,
                        external_id=item["key"],
                        last_accessed=parse_timestamp(item.get("last_modified")) or utcnow(),
                        mime_type="application/figma",
                        file_hash=name_size_hash(name, FILE_SIZE_ESTIMATE_MB),
                        url=f"https://www.figma.com/file/{item['key']}",
                        path=f"/{project.get('name', '')}/{name}",
                        parent_id=str(project["id"]),
                    )
                )
        return files
