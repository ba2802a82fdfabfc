"""Import/export report formatting functions.

- ``format_import_summary`` -- per-family counts plus sampled row errors.
- ``format_export_totals`` -- record counts of a snapshot.
- ``summary_to_json`` -- structured dict for MCP tool output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import FAMILIES

if TYPE_CHECKING:
    from .models import ImportSummary

MAX_SAMPLED_ERRORS = 5

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_import_summary(summary: ImportSummary, title: str = "Import") -> str:
    """Format an import summary as human-readable text.

    Every family is listed, even when nothing was written to it. Only the
    first ``MAX_SAMPLED_ERRORS`` row errors per family are shown.

    Args:
        summary: The completed import summary.
        title: Heading for the report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    total_ok = summary.total_ok
    total_err = summary.total_errors
    lines.append(f"{title} finished: {total_ok} rows written, {total_err} failed")
    if summary.elevated:
        state = "reverted" if summary.reverted else "NOT reverted"
        lines.append(f"Temporary edit-all permission granted and {state}")
    lines.append("")

    for family in FAMILIES:
        ok = getattr(summary, f"{family}_ok")
        errors = getattr(summary, f"{family}_err")
        lines.append(f"  {family}: {ok} ok, {len(errors)} failed")

    for family in FAMILIES:
        errors = getattr(summary, f"{family}_err")
        if not errors:
            continue
        lines.append("")
        lines.append(f"{family.capitalize()} errors:")
        for err in errors[:MAX_SAMPLED_ERRORS]:
            ref = err.id or err.key or err.section_id or "-"
            lines.append(f"  row {err.row} ({ref}): {err.error}")
        remaining = len(errors) - MAX_SAMPLED_ERRORS
        if remaining > 0:
            lines.append(f"  ... and {remaining} more")

    return "\n".join(lines).rstrip()


def format_export_totals(snapshot: dict) -> str:
    """One line per record family with its row count."""
    totals = snapshot.get("totalRecords") or {}
    lines = [f"Export taken {snapshot.get('exportDate', 'unknown')}"]
    for family, count in totals.items():
        lines.append(f"  {family}: {count}")
    lines.append(f"Total: {sum(totals.values())} records")
    return "\n".join(lines)


# ------------------------------------------------------------------
# Machine-readable output
# ------------------------------------------------------------------


def summary_to_json(summary: ImportSummary) -> dict:
    """Convert an import summary to a JSON-serialisable dict.

    Keys are camelCase (``sectionsOk``, ``resourcesErr``...) with
    ``totalOk`` and ``totalErrors`` added.
    """
    data = summary.to_dict()
    data["totalOk"] = summary.total_ok
    data["totalErrors"] = summary.total_errors
    return data
