from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


_USABLE_STATUSES = ("APPROVED", "ACTIVE")


class TemplateNotFoundError(Exception):
    """No approved template with that name exists for the tenant."""


@dataclass
class MessageTemplate:
    name: str
    language: str
    category: str
    components: list[dict[str, Any]] = field(default_factory=list)
    id: str | None = None


class TemplateLookup:
    table_name = "templates"

    def __init__(self, client: Any) -> None:
        self.client = client

    def get(self, tenant_id: str, name: str, language: str | None = None) -> MessageTemplate:
        query = (
            self.client.table(self.table_name)
            .select("id, name, language, category, components, status")
            .eq("tenant_id", tenant_id)
            .eq("name", name)
        )
        if language:
            query = query.eq("language", language)
        result = query.execute()
        rows = [row for row in result.data or [] if str(row.get("status") or "").upper() in _USABLE_STATUSES]
        if not rows:
            raise TemplateNotFoundError(f"Template '{name}' not found or not approved")
        row = rows[0]
        components = row.get("components") or []
        if isinstance(components, dict):
            components = components.get("components") or []
        return MessageTemplate(
            id=row.get("id"),
            name=row["name"],
            language=row.get("language") or "en_US",
            category=str(row.get("category") or "MARKETING").upper(),
            components=components,
        )
