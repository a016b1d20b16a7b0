"""
Pledge reporting for the admin dashboard.

Groups pledges by participant email and exports the grouped rows as an
XLSX workbook.
"""

from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from typing import Dict, List, Optional, Sequence

from openpyxl import Workbook

from sevaboard.services.catalog_models import Pledge
from sevaboard.services.store import CatalogStore, pledges_query


NO_EMAIL = "(no email)"
SHEET_TITLE = "By Email"
EXPORT_COLUMNS = ("Email", "Name", "Phone", "Total Items Taken", "Items", "Last Activity")
EXPORT_FILENAME = "annakut_pledges_by_email.xlsx"

# openpyxl stores strings starting with "=" as formulas
RISKY_FORMULA_PREFIXES = ("=",)


@dataclass
class ParticipantSummary:
    """All pledges of one email address rolled into a single row."""
    email: str
    name: str = ""
    phone: str = ""
    items: List[str] = field(default_factory=list)
    last_at: Optional[datetime] = None

    @property
    def count(self) -> int:
        return len(self.items)

    def to_dict(self) -> Dict[str, object]:
        return {
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "count": self.count,
            "items": list(self.items),
            "lastAt": self.last_at.isoformat() if self.last_at else None,
        }


def group_by_email(pledges: Sequence[Pledge]) -> List[ParticipantSummary]:
    """
    Roll pledges up per email (trimmed, case-insensitive).

    The first non-empty name and phone seen for an email win. Rows are
    sorted by latest activity, most recent first.
    """
    groups: Dict[str, ParticipantSummary] = {}
    for pledge in pledges:
        key = (pledge.email or "").strip().lower() or NO_EMAIL
        entry = groups.get(key)
        if entry is None:
            entry = ParticipantSummary(
                email=(pledge.email or "").strip() or NO_EMAIL,
                name=pledge.name or "",
                phone=pledge.phone or "",
            )
            groups[key] = entry

        entry.items.extend(item.name for item in pledge.items)
        if pledge.created_at and (entry.last_at is None or pledge.created_at > entry.last_at):
            entry.last_at = pledge.created_at
        if not entry.name and pledge.name:
            entry.name = pledge.name
        if not entry.phone and pledge.phone:
            entry.phone = pledge.phone

    return sorted(
        groups.values(),
        key=lambda g: g.last_at.timestamp() if g.last_at else 0,
        reverse=True,
    )


def guard_formula(value: str) -> str:
    """Prefix text that a spreadsheet would otherwise evaluate as a formula."""
    if value and value.startswith(RISKY_FORMULA_PREFIXES):
        return "'" + value
    return value


def export_workbook(summaries: Sequence[ParticipantSummary]) -> bytes:
    """Render grouped rows to XLSX bytes."""
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = SHEET_TITLE
    sheet.append(list(EXPORT_COLUMNS))
    for row in summaries:
        sheet.append([
            guard_formula(row.email),
            guard_formula(row.name),
            guard_formula(row.phone),
            row.count,
            guard_formula(", ".join(row.items)),
            row.last_at.strftime("%Y-%m-%d %H:%M:%S") if row.last_at else "",
        ])

    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class PledgeReportService:
    """Reads pledges from the store and builds dashboard views."""

    def __init__(self, store: CatalogStore):
        self.store = store

    async def load_pledges(self) -> List[Pledge]:
        docs = await self.store.list_documents(pledges_query())
        return [Pledge.from_document(d.id, d.data) for d in docs]

    async def summary(self) -> List[ParticipantSummary]:
        return group_by_email(await self.load_pledges())

    async def export(self) -> bytes:
        return export_workbook(await self.summary())
