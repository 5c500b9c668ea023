"""crm_import.matcher

Identity Matcher: parsed rows + user directory + existing opportunities →
classified staging rows.

Matching is pure: the same three inputs always produce the same output, so a
batch can be re-matched deterministically.

Opportunity matching:
    Exact external-id lookup only.  A miss (or a row without an external id)
    is always ``new``.

Field diff (existing opportunity found):
    stage, close_date, rating, next_step, restricted to the columns the
    export actually carried.  Values are compared as strings (dates as ISO).
    A blank stage cell is ignored because every stored opportunity has one.

Owner matching:
    Case-folded, whitespace-collapsed exact comparison with directory display
    names.  Accents are significant.  A name shared by two directory users is
    ambiguous and stays unmatched.

Classification (``classify``) is the single place where the status pair is
derived; the staging store calls it again after a manual assignment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Mapping

from crm_import.export_config import TERMINAL_STAGES
from crm_import.normalize import normalize_owner_name
from crm_import.record_parser import ParsedRow
from crm_import.shared import (
    DirectoryUser,
    ExistingOpportunity,
    MatchStatus,
    UserMatchStatus,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TRACKED_FIELDS = ("stage", "close_date", "rating", "next_step")

# Staging / changes-map key → opportunity column
TRACKED_COLUMNS = {
    "stage": "stage",
    "close_date": "expected_close_date",
    "rating": "rating",
    "next_step": "next_step",
}

OWNER_NOTE_PREFIX = "Owner from CRM export: "

_BASE_STATUSES = frozenset({MatchStatus.NEW, MatchStatus.CHANGED, MatchStatus.UNCHANGED})


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StagingRow:
    """Matcher output for one parsed row."""

    parsed: ParsedRow
    base_status: MatchStatus
    match_status: MatchStatus
    user_match_status: UserMatchStatus
    matched_user_id: str | None = None
    matched_opportunity_id: str | None = None
    owner_note: str | None = None
    changes: dict[str, dict[str, str | None]] = field(default_factory=dict)
    is_selected: bool = False

    @property
    def row_number(self) -> int:
        return self.parsed.row_number

    @property
    def auto_eligible(self) -> bool:
        return (
            self.match_status is MatchStatus.NEW
            and self.user_match_status is UserMatchStatus.UNMATCHED
        )


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def is_terminal_stage(stage: str | None, terminal_stages: Iterable[str] = TERMINAL_STAGES) -> bool:
    return stage is not None and stage in frozenset(terminal_stages)


def is_auto_eligible(
    base_status: MatchStatus,
    user_match_status: UserMatchStatus,
    stage: str | None,
    terminal_stages: Iterable[str] = TERMINAL_STAGES,
) -> bool:
    """Unowned closed-stage new rows proceed without an owner."""
    return (
        base_status is MatchStatus.NEW
        and user_match_status is UserMatchStatus.UNMATCHED
        and is_terminal_stage(stage, terminal_stages)
    )


def classify(
    base_status: MatchStatus,
    user_match_status: UserMatchStatus,
    stage: str | None,
    terminal_stages: Iterable[str] = TERMINAL_STAGES,
) -> MatchStatus:
    """Derive the row's match_status from its opportunity and owner outcome.

    - unchanged stays unchanged regardless of the owner (nothing to apply)
    - unmatched owner → conflict, unless the row is auto-eligible
    - otherwise the opportunity outcome (new / changed) stands
    """
    base_status = MatchStatus(base_status)
    user_match_status = UserMatchStatus(user_match_status)
    if base_status not in _BASE_STATUSES:
        raise ValueError(f"base status must be new/changed/unchanged, got {base_status.value}")
    if base_status is MatchStatus.UNCHANGED:
        return MatchStatus.UNCHANGED
    if user_match_status is UserMatchStatus.UNMATCHED and not is_auto_eligible(
        base_status, user_match_status, stage, terminal_stages
    ):
        return MatchStatus.CONFLICT
    return base_status


def default_selection(match_status: MatchStatus) -> bool:
    """Everything that would mutate the store starts selected."""
    return MatchStatus(match_status) is not MatchStatus.UNCHANGED


# ---------------------------------------------------------------------------
# Field diff
# ---------------------------------------------------------------------------

def _field_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    return text or None


def diff_fields(
    parsed: ParsedRow,
    existing: ExistingOpportunity,
) -> dict[str, dict[str, str | None]]:
    """Return {field: {"from": old, "to": new}} for every differing tracked field."""
    changes: dict[str, dict[str, str | None]] = {}
    for name in TRACKED_FIELDS:
        if name not in parsed.provided or name in parsed.unparsed:
            continue
        new = _field_value(getattr(parsed, name))
        if name == "stage" and new is None:
            continue
        old = _field_value(getattr(existing, name))
        if new != old:
            changes[name] = {"from": old, "to": new}
    return changes


# ---------------------------------------------------------------------------
# Owner lookup
# ---------------------------------------------------------------------------

def build_user_index(users: Iterable[DirectoryUser]) -> dict[str, list[str]]:
    """normalized display name → user ids carrying that name."""
    index: dict[str, list[str]] = {}
    for user in users:
        key = normalize_owner_name(user.name)
        if key is None:
            continue
        index.setdefault(key, []).append(str(user.id))
    return index


def resolve_owner(
    owner_name: str | None,
    user_index: Mapping[str, list[str]],
) -> tuple[str | None, UserMatchStatus]:
    key = normalize_owner_name(owner_name)
    if key is None:
        return None, UserMatchStatus.UNMATCHED
    ids = user_index.get(key) or []
    if len(ids) != 1:
        return None, UserMatchStatus.UNMATCHED
    return ids[0], UserMatchStatus.MATCHED


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------

def match_row(
    parsed: ParsedRow,
    user_index: Mapping[str, list[str]],
    existing_by_external_id: Mapping[str, ExistingOpportunity],
    terminal_stages: Iterable[str] = TERMINAL_STAGES,
) -> StagingRow:
    existing = (
        existing_by_external_id.get(parsed.external_id)
        if parsed.external_id is not None
        else None
    )
    if existing is None:
        base_status = MatchStatus.NEW
        changes: dict[str, dict[str, str | None]] = {}
    else:
        changes = diff_fields(parsed, existing)
        base_status = MatchStatus.CHANGED if changes else MatchStatus.UNCHANGED

    user_id, user_status = resolve_owner(parsed.owner_name, user_index)
    status = classify(base_status, user_status, parsed.stage, terminal_stages)

    owner_note = None
    if parsed.owner_name and is_auto_eligible(base_status, user_status, parsed.stage, terminal_stages):
        owner_note = f"{OWNER_NOTE_PREFIX}{parsed.owner_name}"

    return StagingRow(
        parsed=parsed,
        base_status=base_status,
        match_status=status,
        user_match_status=user_status,
        matched_user_id=user_id,
        matched_opportunity_id=existing.id if existing is not None else None,
        owner_note=owner_note,
        changes=changes,
        is_selected=default_selection(status),
    )


def match_rows(
    rows: Iterable[ParsedRow],
    users: Iterable[DirectoryUser],
    existing_by_external_id: Mapping[str, ExistingOpportunity],
    terminal_stages: Iterable[str] = TERMINAL_STAGES,
) -> list[StagingRow]:
    """Classify every parsed row, preserving input order."""
    user_index = build_user_index(users)
    terminal = frozenset(terminal_stages)
    return [
        match_row(row, user_index, existing_by_external_id, terminal)
        for row in rows
    ]
