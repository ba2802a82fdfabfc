"""Non-destructive updates to a section's nested configuration.

Several editors may change different parts of one section config at the
same time (one edits tabs, another the intro text). ``merge_config``
applies a partial change on top of the stored config:

- Array fields (``tabs``, ``tab_names``, ``types``, ``categories``): a
  non-empty incoming array replaces the stored one; an empty or absent
  one leaves it alone.
- Scalar fields (``intro``, ``visible``, ``order``): any incoming value
  other than ``None`` wins, including ``False`` and ``0``. Defaults only
  fill in when neither side has a value.
- Any other key is carried over from the stored config, or set when the
  caller supplies it.

``ConfigMerger.save`` wraps the read-merge-write cycle: a no-op merge
writes nothing, writes are conditional on ``updated_at`` when the row
has one, and a failed verification re-runs the whole merge once.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from typing import Any

from ..core.client import StoreClient
from ..core.realtime import ChangeEvent, ChangeFeed
from ..core.retry import RetryableRemoteCall, call_store

logger = logging.getLogger(__name__)

ARRAY_FIELDS = ("tabs", "tab_names", "types", "categories")
SCALAR_DEFAULTS: dict[str, Any] = {"intro": "", "visible": True, "order": 0}
DEFAULT_CATEGORIES = ["process", "procedure", "guide", "template", "checklist"]

TYPE_ID_SYNONYMS = {
    "playbook": "playbooks",
    "boxlink": "box-links",
    "boxlinks": "box-links",
    "box": "box-links",
    "dashboard": "dashboards",
}

_TYPE_ID_PATTERN = re.compile(r"^[a-z][a-z0-9-]{1,49}$")
_SECTION_COLUMNS = "section_id,name,icon,color,config,updated_at"


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------


def normalize_type_id(raw: Any) -> str:
    """Canonical tab/type id: ``"Box Links"`` and ``"box_links"`` give ``"box-links"``."""
    value = str(raw or "").strip().lower()
    value = re.sub(r"[\s_]+", "-", value)
    value = re.sub(r"[^a-z0-9-]", "-", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return TYPE_ID_SYNONYMS.get(value, value)


def is_valid_type_id(type_id: str) -> bool:
    return bool(_TYPE_ID_PATTERN.match(type_id or ""))


def _row_fields(row: Any) -> tuple[str, str, str]:
    if isinstance(row, dict):
        raw_id = row.get("id") or row.get("name") or ""
        return str(raw_id), str(row.get("name") or "").strip(), str(row.get("icon") or "").strip()
    raw_id, name, icon = (list(row) + ["", ""])[:3]
    return str(raw_id or ""), str(name or "").strip(), str(icon or "").strip()


def dedupe_type_rows(rows: Iterable[Any]) -> list[dict]:
    """Normalize ids and drop duplicates; the latest row for an id wins.

    The winning row also fixes the id's position: ids are ordered by the
    index of their last occurrence. Rows may be dicts with ``id``/``name``
    /``icon`` or ``(id, name, icon)`` tuples. Rows whose id normalizes to
    nothing are skipped.
    """
    last_index: dict[str, int] = {}
    by_id: dict[str, dict] = {}
    for idx, row in enumerate(rows):
        raw_id, name, icon = _row_fields(row)
        type_id = normalize_type_id(raw_id)
        if not type_id:
            continue
        last_index[type_id] = idx
        by_id[type_id] = {"id": type_id, "name": name or type_id, "icon": icon}
    ordered = sorted(last_index, key=last_index.__getitem__)
    return [by_id[type_id] for type_id in ordered]


def build_tab_config(
    section_id: str, rows: Iterable[Any], existing: dict | None = None
) -> dict:
    """Build the partial config for an ordered list of type rows.

    Returns ``tabs``, ``tab_names`` and ``types`` index-aligned with each
    other. Stored type metadata fills in missing names and icons.
    """
    existing_types = {
        str(t.get("id") or "").strip(): t
        for t in (existing or {}).get("types") or []
        if isinstance(t, dict)
    }
    types = []
    for row in dedupe_type_rows(rows):
        prior = existing_types.get(row["id"], {})
        name = row["name"] if row["name"] != row["id"] else prior.get("name") or row["id"]
        types.append(
            {
                "id": row["id"],
                "name": name,
                "icon": row["icon"] or prior.get("icon") or "",
                "key": f"{section_id}:{row['id']}",
            }
        )
    return {
        "tabs": [t["id"] for t in types],
        "tab_names": [t["name"] for t in types],
        "types": types,
    }


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def parse_config(raw: Any) -> dict:
    """Stored configs may arrive as JSON text; anything unusable becomes ``{}``."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unparseable section config")
            return {}
    return dict(raw) if isinstance(raw, dict) else {}


def _realign_tab_names(merged: dict) -> None:
    tabs = merged.get("tabs") or []
    names = merged.get("tab_names") or []
    if not tabs or not names or len(tabs) == len(names):
        return
    type_names = {
        str(t.get("id")): t.get("name")
        for t in merged.get("types") or []
        if isinstance(t, dict)
    }
    logger.debug(
        "Realigning tab_names (%d) to tabs (%d)", len(names), len(tabs)
    )
    merged["tab_names"] = [
        type_names.get(tab) or (names[i] if i < len(names) else "") or tab
        for i, tab in enumerate(tabs)
    ]


def merge_config(existing: Any, incoming: Any) -> dict:
    """Apply the partial config *incoming* on top of *existing*.

    Neither argument is modified.
    """
    base = parse_config(existing)
    change = parse_config(incoming)

    merged = dict(base)
    for key, value in change.items():
        if key in ARRAY_FIELDS or key in SCALAR_DEFAULTS:
            continue
        if value is not None:
            merged[key] = value

    for key in ARRAY_FIELDS:
        new = change.get(key)
        old = base.get(key)
        if isinstance(new, list) and new:
            merged[key] = list(new)
        else:
            merged[key] = list(old) if isinstance(old, list) else []

    for key, default in SCALAR_DEFAULTS.items():
        if change.get(key) is not None:
            merged[key] = change[key]
        elif base.get(key) is not None:
            merged[key] = base[key]
        else:
            merged[key] = default

    _realign_tab_names(merged)
    return merged


def configs_equal(a: Any, b: Any) -> bool:
    """Compare configs by canonical JSON serialization."""
    return json.dumps(parse_config(a), sort_keys=True, default=str) == json.dumps(
        parse_config(b), sort_keys=True, default=str
    )


# ---------------------------------------------------------------------------
# Store-backed save
# ---------------------------------------------------------------------------


class ConfigMerger:
    """Read-merge-write of ``sections.config`` with verification.

    Args:
        client: Store binding.
        retry: Retry wrapper for every remote call.
        feed: Optional feed notified after a successful write.
        max_attempts: Whole-merge attempts before giving up.
    """

    def __init__(
        self,
        client: StoreClient,
        retry: RetryableRemoteCall | None = None,
        feed: ChangeFeed | None = None,
        max_attempts: int = 2,
    ) -> None:
        self.client = client
        self.retry = retry or RetryableRemoteCall()
        self.feed = feed
        self.max_attempts = max_attempts

    async def _read(self, section_id: str) -> dict | None:
        return await call_store(
            self.retry,
            self.client.select,
            "sections",
            columns=_SECTION_COLUMNS,
            filters={"section_id": section_id},
            single=True,
        )

    async def load(self, section_id: str) -> dict:
        """Current stored config for *section_id* (``{}`` when missing)."""
        row = await self._read(section_id)
        return parse_config(row.get("config")) if row else {}

    async def _write(self, section_id: str, row: dict | None, merged: dict) -> bool:
        """Write *merged*; returns False when a conditional write lost the race."""
        if row is None:
            await call_store(
                self.retry,
                self.client.upsert,
                "sections",
                {"section_id": section_id, "name": section_id, "config": merged},
                on_conflict="section_id",
            )
            return True

        filters: dict[str, Any] = {"section_id": section_id}
        if row.get("updated_at"):
            filters["updated_at"] = row["updated_at"]
        updated = await call_store(
            self.retry,
            self.client.update,
            "sections",
            {"config": merged},
            filters,
        )
        return bool(updated)

    async def save(self, section_id: str, partial: dict | None) -> bool:
        """Merge *partial* into the stored config of *section_id*.

        Returns:
            True when the stored config equals the merge result (including
            the no-op case, which performs no write). False when the
            stored value still differs after every attempt.

        Raises:
            StoreError: Read or write failures are not swallowed.
        """
        for attempt in range(1, self.max_attempts + 1):
            row = await self._read(section_id)
            existing = parse_config(row.get("config")) if row else {}
            merged = merge_config(existing, partial)

            if row is not None and configs_equal(existing, merged):
                logger.debug("Section %s config unchanged, skipping write", section_id)
                return True

            if not await self._write(section_id, row, merged):
                logger.warning(
                    "Section %s changed concurrently (attempt %d/%d)",
                    section_id,
                    attempt,
                    self.max_attempts,
                )
                continue

            stored = await self._read(section_id)
            if stored is not None and configs_equal(stored.get("config"), merged):
                if self.feed is not None:
                    self.feed.publish(
                        ChangeEvent("sections", "UPDATE", {"section_id": section_id})
                    )
                return True

            logger.warning(
                "Section %s config verification mismatch (attempt %d/%d)",
                section_id,
                attempt,
                self.max_attempts,
            )

        return False
