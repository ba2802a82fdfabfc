"""Workspace sync, merge and bulk migration.

Modules:

- ``merge_key``     -- Canonical record identity across fetch paths.
- ``config_merger`` -- Non-destructive section config updates.
- ``refresh``       -- ``RefreshScheduler``: realtime + poll refresh.
- ``migration``     -- ``MigrationEngine``: snapshot export and restore.
- ``spreadsheet``   -- Sheet/CSV/JSON import of sections, tabs, resources.
- ``models``        -- Records and migration bookkeeping.
- ``reporter``      -- Human-readable and JSON report formatting.

Usage example
-------------
::

    from hubsync.repository import HubRepository
    from hubsync.sync import MigrationEngine, format_import_summary

    engine = MigrationEngine(HubRepository(client))
    snapshot = await engine.export_raw_state()
    summary = await engine.import_raw_state(snapshot, on_progress=print)
    print(format_import_summary(summary))
"""

from .config_merger import ConfigMerger, merge_config, normalize_type_id
from .merge_key import merge_key, merge_records
from .migration import MigrationEngine, dump_snapshot, load_snapshot
from .models import ImportSummary, MigrationStep, ProgressEvent, RowError
from .refresh import RefreshScheduler
from .reporter import format_export_totals, format_import_summary, summary_to_json
from .spreadsheet import (
    SheetPayload,
    SpreadsheetImporter,
    parse_workbook,
    payload_from_snapshot,
    read_csv_workbook,
)

__all__ = [
    "ConfigMerger",
    "ImportSummary",
    "MigrationEngine",
    "MigrationStep",
    "ProgressEvent",
    "RefreshScheduler",
    "RowError",
    "SheetPayload",
    "SpreadsheetImporter",
    "dump_snapshot",
    "format_export_totals",
    "format_import_summary",
    "load_snapshot",
    "merge_config",
    "merge_key",
    "merge_records",
    "normalize_type_id",
    "parse_workbook",
    "payload_from_snapshot",
    "read_csv_workbook",
    "summary_to_json",
]
