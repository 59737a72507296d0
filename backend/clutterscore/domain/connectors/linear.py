from __future__ import annotations

from typing import Any

from clutterscore.domain.connectors.base import Connector, parse_timestamp
from clutterscore.domain.connectors.errors import ConnectorError
from clutterscore.domain.connectors.types import AuditData, Platform, UserData

USERS_QUERY = """
query Users($after: String) {
  users(first: 100, after: $after) {
    nodes { id name email admin guest active lastSeen }
    pageInfo { hasNextPage endCursor }
  }
}
"""


class LinearConnector(Connector):
    platform = Platform.LINEAR
    base_url = "https://api.linear.app/"

    async def _graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        body = await self._json("POST", "graphql", json={"query": query, "variables": variables or {}})
        if body.get("errors"):
            message = body["errors"][0].get("message", "GraphQL error")
            raise ConnectorError("linear_graphql_error", f"Linear API error: {message}")
        return body.get("data") or {}

    async def _probe(self) -> bool:
        data = await self._graphql("query { viewer { id } }")
        return bool((data.get("viewer") or {}).get("id"))

    async def fetch_audit_data(self) -> AuditData:
        users: list[UserData] = []
        after: str | None = None
        while True:
            data = await self._graphql(USERS_QUERY, {"after": after})
            connection = data.get("users") or {}
            for node in connection.get("nodes") or []:
                users.append(
                    UserData(
                        email=node.get("email") or "",
                        name=node.get("name") or "Unknown User",
                        source=self.platform,
                        role="admin" if node.get("admin") else "user",
                        external_id=node.get("id"),
                        last_active=parse_timestamp(node.get("lastSeen")),
                        is_guest=bool(node.get("guest")),
                        license_type="active" if node.get("active") else "inactive",
                    )
                )
            page_info = connection.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            after = page_info.get("endCursor")
        return AuditData(
            files=[],
            users=users,
            storage_used_gb=0.0,
            total_licenses=len(users),
            active_users=sum(1 for u in users if u.license_type == "active"),
        )
