"""
Tests for pledge reporting.

Grouping is tested on Pledge values directly; the export is read back with
openpyxl.
"""

from datetime import datetime, timezone
from io import BytesIO

import pytest
from openpyxl import load_workbook

from sevaboard.services.catalog_models import ItemRef, Pledge
from sevaboard.services.pledge_report import (
    EXPORT_COLUMNS,
    NO_EMAIL,
    SHEET_TITLE,
    PledgeReportService,
    export_workbook,
    group_by_email,
    guard_formula,
)
from sevaboard.services.store import PLEDGES


def at(hour):
    return datetime(2026, 10, 20, hour, 0, tzinfo=timezone.utc)


def pledge(pledge_id, email, items, hour, name="", phone=""):
    return Pledge(
        id=pledge_id,
        name=name,
        email=email,
        phone=phone,
        items=tuple(ItemRef(n.lower(), n) for n in items),
        created_at=at(hour),
    )


class TestGroupByEmail:
    """Test rolling pledges up per participant."""

    def test_groups_case_insensitively(self):
        rows = group_by_email([
            pledge("p1", "Asha@Example.com", ["Ladoo"], 9, name="Asha"),
            pledge("p2", "asha@example.com ", ["Barfi", "Jalebi"], 11),
        ])

        assert len(rows) == 1
        assert rows[0].count == 3
        assert rows[0].items == ["Ladoo", "Barfi", "Jalebi"]
        assert rows[0].last_at == at(11)
        assert rows[0].name == "Asha"

    def test_first_non_empty_name_and_phone_win(self):
        rows = group_by_email([
            pledge("p1", "a@example.com", ["Ladoo"], 9),
            pledge("p2", "a@example.com", ["Barfi"], 10, name="Asha", phone="111"),
            pledge("p3", "a@example.com", ["Jalebi"], 11, name="Asha P", phone="222"),
        ])

        assert (rows[0].name, rows[0].phone) == ("Asha", "111")

    def test_missing_email_grouped_under_placeholder(self):
        rows = group_by_email([
            pledge("p1", "", ["Ladoo"], 9, name="Walk-in"),
            pledge("p2", "  ", ["Barfi"], 10),
        ])

        assert len(rows) == 1
        assert rows[0].count == 2
        assert rows[0].email == NO_EMAIL

    def test_sorted_by_latest_activity(self):
        rows = group_by_email([
            pledge("p1", "early@example.com", ["Ladoo"], 8),
            pledge("p2", "late@example.com", ["Barfi"], 12),
            pledge("p3", "early@example.com", ["Jalebi"], 10),
        ])

        assert [r.email for r in rows] == ["late@example.com", "early@example.com"]

    def test_to_dict(self):
        row = group_by_email([pledge("p1", "a@example.com", ["Ladoo"], 9, name="Asha")])[0]

        assert row.to_dict() == {
            "email": "a@example.com",
            "name": "Asha",
            "phone": "",
            "count": 1,
            "items": ["Ladoo"],
            "lastAt": "2026-10-20T09:00:00+00:00",
        }


class TestExport:
    """Test the XLSX export."""

    def test_workbook_layout(self):
        rows = group_by_email([
            pledge("p1", "a@example.com", ["Ladoo", "Barfi"], 9, name="Asha", phone="+1 555"),
        ])

        sheet = load_workbook(BytesIO(export_workbook(rows)))[SHEET_TITLE]
        values = list(sheet.iter_rows(values_only=True))

        assert values[0] == EXPORT_COLUMNS
        assert values[1] == ("a@example.com", "Asha", "+1 555", 2, "Ladoo, Barfi", "2026-10-20 09:00:00")

    def test_formula_like_text_is_escaped(self):
        rows = group_by_email([pledge("p1", "a@example.com", ["=SUM(A1)"], 9, name="=cmd")])

        sheet = load_workbook(BytesIO(export_workbook(rows)))[SHEET_TITLE]

        assert sheet["B2"].value == "'=cmd"
        assert sheet["E2"].value == "'=SUM(A1)"
        assert sheet["B2"].data_type == "s"

    def test_guard_formula(self):
        assert guard_formula("=1+1") == "'=1+1"
        assert guard_formula("+1 555 0100") == "+1 555 0100"
        assert guard_formula("") == ""


class TestPledgeReportService:
    @pytest.mark.asyncio
    async def test_summary_from_store(self, store):
        store.put((PLEDGES,), "p1", {"name": "Asha", "email": "a@example.com", "phone": "1",
                                     "items": [{"id": "ladoo", "name": "Ladoo"}], "createdAt": at(9)})
        store.put((PLEDGES,), "p2", {"name": "Ravi", "email": "r@example.com", "phone": "2",
                                     "items": [{"id": "barfi", "name": "Barfi"}], "createdAt": at(10)})
        store.put((PLEDGES,), "p3", {"name": "Asha", "email": "A@example.com", "phone": "1",
                                     "items": [{"id": "apples", "name": "Apples"}], "createdAt": at(11)})

        service = PledgeReportService(store)
        pledges = await service.load_pledges()
        rows = await service.summary()

        assert [p.id for p in pledges] == ["p3", "p2", "p1"]
        assert [(r.email.lower(), r.count) for r in rows] == [("a@example.com", 2), ("r@example.com", 1)]

    @pytest.mark.asyncio
    async def test_export_from_store(self, store):
        store.put((PLEDGES,), "p1", {"name": "Asha", "email": "a@example.com", "phone": "1",
                                     "items": [{"id": "ladoo", "name": "Ladoo"}], "createdAt": at(9)})

        content = await PledgeReportService(store).export()

        sheet = load_workbook(BytesIO(content)).active
        assert sheet.title == SHEET_TITLE
        assert sheet.max_row == 2
