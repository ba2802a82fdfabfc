"""Tests for hubsync.sync.spreadsheet.

Covers sheet parsing (header aliases, CSV directories, .xlsx workbooks,
snapshots), the import template, and SpreadsheetImporter writes through
the repository, including sections and tabs synthesized for resource
rows.
"""

import re

import pytest
from openpyxl import Workbook

from hubsync.errors import PermissionDeniedError
from hubsync.repository import HubRepository
from hubsync.sync.spreadsheet import (
    SheetPayload,
    SheetResource,
    SheetSection,
    SheetTab,
    SpreadsheetImporter,
    parse_workbook,
    payload_from_snapshot,
    random_id,
    read_csv_workbook,
    read_xlsx_workbook,
    resource_id_for,
    write_xlsx_template,
)


def _section(store, section_id):
    return next(s for s in store.tables["sections"] if s["section_id"] == section_id)


# -------------------------------------------------------------------------
# Parsing
# -------------------------------------------------------------------------


class TestParseWorkbook:
    def test_header_aliases(self):
        payload = parse_workbook(
            {
                "Sections": [
                    {"Section ID": "ops", "Name": "Operations", "Visible": "no", "Order": "3"},
                    {"sectionId": "hr", "name": "HR"},
                    {"Name": "no id"},
                ],
                "Tabs": [
                    {"Section ID": "ops", "Tab ID": "guides", "Tab Name": "Guides", "Index": "2"},
                    {"Section ID": "ops", "Tab Name": "orphan"},
                ],
                "Resources": [
                    {
                        "Section ID": "ops",
                        "Type (tab id)": "Guides",
                        "Title": "Onboarding",
                        "URL": "example.com/x",
                        "Tags (comma)": "a, b,,c",
                    },
                    {"Title": "", "URL": ""},
                ],
            }
        )

        assert payload.sections == [
            SheetSection(id="ops", name="Operations", visible=False, order=3),
            SheetSection(id="hr", name="HR"),
        ]
        assert payload.tabs == [SheetTab(section_id="ops", id="guides", name="Guides", index=2)]
        assert len(payload.resources) == 1
        resource = payload.resources[0]
        assert (resource.type, resource.url, resource.tags) == (
            "Guides",
            "example.com/x",
            ["a", "b", "c"],
        )

    @pytest.mark.parametrize(
        "raw, expected",
        [("Yes", True), ("TRUE", True), ("1", True), ("0", False), ("", True)],
    )
    def test_visible_values(self, raw, expected):
        payload = parse_workbook({"Sections": [{"Section ID": "ops", "Visible": raw}]})
        assert payload.sections[0].visible is expected

    def test_bad_order_becomes_zero(self):
        payload = parse_workbook({"Sections": [{"Section ID": "ops", "Order": "first"}]})
        assert payload.sections[0].order == 0


class TestReadCsvWorkbook:
    def test_reads_present_sheets(self, tmp_path):
        (tmp_path / "Sections.csv").write_text(
            "\ufeffSection ID,Name\nops,Operations\n", encoding="utf-8"
        )
        (tmp_path / "Resources.csv").write_text(
            "Section ID,Type (tab id),Title\nops,guides,Runbook\n", encoding="utf-8"
        )

        payload = read_csv_workbook(tmp_path)

        assert [s.id for s in payload.sections] == ["ops"]
        assert payload.tabs == []
        assert payload.resources[0].title == "Runbook"

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_csv_workbook(tmp_path / "nope")


class TestReadXlsxWorkbook:
    def test_template_reads_back(self, tmp_path):
        path = write_xlsx_template(tmp_path / "t" / "template.xlsx")

        payload = read_xlsx_workbook(path)

        assert path.is_file()
        section = payload.sections[0]
        assert (section.id, section.name, section.visible, section.order) == (
            "example",
            "Example",
            True,
            1,
        )
        assert [(t.id, t.index) for t in payload.tabs] == [
            ("playbooks", 1),
            ("box-links", 2),
            ("dashboards", 3),
        ]
        resource = payload.resources[0]
        assert (resource.type, resource.title) == ("playbooks", "Getting Started")
        assert resource.tags == ["onboarding", "setup"]

    def test_blank_cells_and_missing_sheets(self, tmp_path):
        wb = Workbook()
        ws = wb.active
        ws.title = "Resources"
        ws.append(["Section ID", "Type (tab id)", "Title", "URL"])
        ws.append(["ops", "guides", "Runbook", None])
        ws.append([None, None, None, None])
        wb.save(tmp_path / "book.xlsx")

        payload = read_xlsx_workbook(tmp_path / "book.xlsx")

        assert payload.sections == [] and payload.tabs == []
        assert [(r.title, r.url) for r in payload.resources] == [("Runbook", "")]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_xlsx_workbook(tmp_path / "nope.xlsx")

    def test_not_a_workbook(self, tmp_path):
        path = tmp_path / "notes.xlsx"
        path.write_text("just text")

        with pytest.raises(ValueError, match="not a readable .xlsx workbook"):
            read_xlsx_workbook(path)


class TestPayloadFromSnapshot:
    def test_types_preferred_over_tabs(self):
        snapshot = {
            "sections": [
                {
                    "section_id": "ops",
                    "name": "Ops",
                    "config": {
                        "tabs": ["x"],
                        "types": [{"id": "guides", "name": "Guides"}, {"id": "faq"}],
                        "visible": False,
                        "intro": "Hi",
                    },
                }
            ]
        }
        payload = payload_from_snapshot(snapshot)
        assert [(t.id, t.index) for t in payload.tabs] == [("guides", 1), ("faq", 2)]
        assert payload.sections[0].visible is False
        assert payload.sections[0].intro == "Hi"

    def test_tabs_and_names_fallback(self):
        snapshot = {
            "sections": [
                {"section_id": "ops", "config": {"tabs": ["a", "b"], "tab_names": ["A"]}}
            ]
        }
        payload = payload_from_snapshot(snapshot)
        assert [(t.id, t.name) for t in payload.tabs] == [("a", "A"), ("b", "")]

    def test_incomplete_resources_skipped(self):
        snapshot = {
            "resources": {
                "ops": [
                    {"type": "Guides", "title": "Kept", "extra": {"category": "guide"}},
                    {"type": "guides"},
                    {"title": "no type"},
                ]
            }
        }
        payload = payload_from_snapshot(snapshot)
        assert payload.resources == [
            SheetResource(section_id="ops", type="guides", title="Kept", category="guide")
        ]


def test_resource_id_is_deterministic():
    a = resource_id_for("ops", "guides", "Guide", "example.com/x")
    b = resource_id_for("ops", "guides", "guide ", "https://EXAMPLE.com/x/")
    assert a == b
    assert a != resource_id_for("hr", "guides", "Guide", "example.com/x")


def test_random_id_format():
    assert re.fullmatch(r"sec-[a-z0-9]{8}", random_id("sec"))


# -------------------------------------------------------------------------
# Importer
# -------------------------------------------------------------------------


@pytest.fixture
def importer(repository):
    return SpreadsheetImporter(repository)


class TestImporter:
    async def test_sections_and_config_scalars(self, admin_store, importer):
        payload = SheetPayload(sections=[SheetSection(id="ops", intro="Hello", visible=False, order=2)])

        summary = await importer.import_payload(payload)

        assert summary.sections_ok == 1
        row = _section(admin_store, "ops")
        assert row["name"] == "ops"
        assert (row["config"]["intro"], row["config"]["visible"], row["config"]["order"]) == (
            "Hello",
            False,
            2,
        )

    async def test_section_import_keeps_existing_tabs(self, admin_store, importer):
        admin_store.seed("sections", {"section_id": "ops", "name": "Ops", "config": {"tabs": ["faq"]}})

        await importer.import_payload(SheetPayload(sections=[SheetSection(id="ops", name="Ops")]))

        assert _section(admin_store, "ops")["config"]["tabs"] == ["faq"]

    async def test_tabs_ordered_by_index(self, admin_store, importer):
        payload = SheetPayload(
            sections=[SheetSection(id="ops")],
            tabs=[
                SheetTab(section_id="ops", id="faq", name="FAQ", index=2),
                SheetTab(section_id="ops", id="Guides", name="Guides", index=1),
            ],
        )

        summary = await importer.import_payload(payload)

        assert summary.tabs_ok == 2
        config = _section(admin_store, "ops")["config"]
        assert config["tabs"] == ["guides", "faq"]
        assert config["tab_names"] == ["Guides", "FAQ"]

    async def test_duplicate_tab_rows_counted_once(self, admin_store, importer):
        payload = SheetPayload(
            sections=[SheetSection(id="ops")],
            tabs=[
                SheetTab(section_id="ops", id="Guides", name="Guides", index=1),
                SheetTab(section_id="ops", id="guides", name="Guides v2", index=2),
            ],
        )

        summary = await importer.import_payload(payload)

        assert summary.tabs_ok == 1
        assert _section(admin_store, "ops")["config"]["tab_names"] == ["Guides v2"]

    async def test_resource_creates_missing_section_and_type(self, admin_store, importer):
        payload = SheetPayload(
            resources=[SheetResource(section_id="ops", type="Box Links", title="Drive", url="box.com/d")]
        )

        summary = await importer.import_payload(payload)

        assert (summary.resources_ok, summary.tabs_ok) == (1, 1)
        config = _section(admin_store, "ops")["config"]
        assert config["tabs"] == ["box-links"]
        assert config["tab_names"] == ["Box Links"]
        stored = admin_store.tables["resources"][0]
        assert stored["type"] == "box-links"
        assert stored["extra"]["originalType"] == "Box Links"

    async def test_synthesized_ids(self, admin_store, importer):
        payload = SheetPayload(resources=[SheetResource(section_id="", type="9", title="")])

        summary = await importer.import_payload(payload)

        assert summary.resources_ok == 1
        stored = admin_store.tables["resources"][0]
        assert re.fullmatch(r"sec-[a-z0-9]{8}", stored["section_id"])
        assert re.fullmatch(r"t-[a-z0-9]{8}", stored["type"])
        assert stored["title"].startswith("Untitled-")
        assert stored["extra"]["originalTitle"] == ""

    async def test_reimport_updates_in_place(self, admin_store, importer):
        payload = SheetPayload(
            sections=[SheetSection(id="ops")],
            resources=[SheetResource(section_id="ops", type="guides", title="Guide", url="x.com")],
        )

        await importer.import_payload(payload)
        await importer.import_payload(payload)

        assert len(admin_store.tables["resources"]) == 1

    async def test_failed_resource_row_isolated(self, admin_store, importer):
        admin_store.fail("upsert", "resources", when=lambda row: row["title"] == "Bad")
        payload = SheetPayload(
            sections=[SheetSection(id="ops")],
            resources=[
                SheetResource(section_id="ops", type="guides", title="Good"),
                SheetResource(section_id="ops", type="guides", title="Bad"),
                SheetResource(section_id="ops", type="guides", title="Also good"),
            ],
        )

        summary = await importer.import_payload(payload)

        assert summary.resources_ok == 2
        assert [e.row for e in summary.resources_err] == [2]
        assert summary.resources_err[0].section_id == "ops"

    async def test_failed_section_row_isolated(self, admin_store, importer):
        admin_store.fail("upsert", "sections", when=lambda row: row["section_id"] == "bad")
        payload = SheetPayload(sections=[SheetSection(id="bad"), SheetSection(id="ok")])

        summary = await importer.import_payload(payload)

        assert summary.sections_ok == 1
        assert summary.sections_err[0].id == "bad"

    async def test_progress_events(self, importer):
        seen = []
        payload = SheetPayload(
            sections=[SheetSection(id="ops")],
            resources=[SheetResource(section_id="ops", type="guides", title="G")],
        )

        await importer.import_payload(payload, seen.append)

        assert seen[0].counts == {"sections": 1, "tabs": 0, "resources": 1}
        assert [e.status for e in seen[1:-1]] == ["ok", "ok"]
        assert seen[-1].step.value == "done"

    async def test_viewer_rejected(self, store, retry, feed):
        store.sign_in_as("v-1", role="viewer")
        importer = SpreadsheetImporter(HubRepository(store, retry, feed))

        with pytest.raises(PermissionDeniedError, match="import spreadsheets"):
            await importer.import_payload(SheetPayload(sections=[SheetSection(id="ops")]))

        assert store.writes() == []
